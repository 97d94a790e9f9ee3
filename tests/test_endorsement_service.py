"""
Endorsement engine tests.

Covers:
  - endorse: first endorsement, in/out-of-workflow flag, field mutations
  - receive: step advance, out-of-workflow re-seat on repeated offices
  - receive_bulk: per-item isolation
  - hold / resume / cancel: administrator-only status actions
  - complete: final step guard
  - ActionNotAllowed reasons mirror get_cannot_*_reason
"""

import pytest
from sqlalchemy.exc import OperationalError

from opts.core.clock import as_utc
from opts.core.exceptions import ActionNotAllowed, NotFoundError, ValidationError
from opts.models.notification import Notification
from opts.models.transaction import (
    ACTION_CANCEL,
    ACTION_ENDORSE,
    ACTION_HOLD,
    ACTION_RECEIVE,
    ACTION_RESUME,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_ON_HOLD,
    TransactionAction,
    TransactionStatusHistory,
)
from opts.services.endorsement import EndorsementService
from opts.services.notification import NotificationService


@pytest.fixture()
def svc(clock):
    return EndorsementService(clock=clock)


def _forward(svc, tx, endorsers, offices, to_abbr):
    """Endorse from the current office to *to_abbr* and receive there."""
    holder = next(u for u in endorsers.values() if u.office_id == tx.current_office_id)
    svc.endorse(tx, holder, None, offices[to_abbr].id)
    svc.receive(tx, endorsers[to_abbr])


# ═════════════════════════════════════════════════════════════════════════════
# ENDORSE
# ═════════════════════════════════════════════════════════════════════════════


class TestEndorse:
    def test_first_endorsement_moves_to_in_progress(self, svc, new_transaction, endorsers, offices, clock):
        tx = new_transaction("PR")
        mbo = endorsers["MBO"]
        clock.advance(hours=1)

        action = svc.endorse(tx, mbo, None, offices["MMO"].id, notes="Budget cleared")

        assert tx.status == STATUS_IN_PROGRESS
        history = TransactionStatusHistory.query.filter_by(transaction_id=tx.id).one()
        assert history.reason == "First endorsement"
        assert action.action_type == ACTION_ENDORSE
        assert action.from_office_id == offices["MBO"].id
        assert action.to_office_id == offices["MMO"].id
        assert action.from_user_id == mbo.id
        assert action.workflow_step_id == tx.current_step_id
        assert action.is_out_of_workflow is False
        assert action.notes == "Budget cleared"

        assert tx.current_office_id == offices["MMO"].id
        assert tx.current_user_id is None
        assert tx.received_at is None
        assert as_utc(tx.endorsed_at) == clock()
        assert tx.current_step.step_order == 1

    def test_expected_next_office(self, svc, new_transaction, offices):
        tx = new_transaction("PR")
        assert svc.get_expected_next_office(tx) == offices["MMO"].id

    def test_out_of_workflow_is_flagged_and_notified(self, svc, new_transaction, endorsers, offices, admin):
        tx = new_transaction("PR")

        action = svc.endorse(tx, endorsers["MBO"], None, offices["BAC"].id)

        assert action.is_out_of_workflow is True
        recipients = {n.recipient_user_id for n in Notification.query.filter_by(category="routing")}
        assert recipients == {admin.id, endorsers["MMO"].id}

    def test_unknown_target_office(self, svc, new_transaction, endorsers):
        tx = new_transaction("PR")
        with pytest.raises(NotFoundError):
            svc.endorse(tx, endorsers["MBO"], None, 9999)
        assert TransactionAction.query.count() == 0

    def test_administrator_bypasses_office_affinity(self, svc, new_transaction, offices, admin):
        tx = new_transaction("PR")
        assert svc.can_endorse(tx, admin)
        action = svc.endorse(tx, admin, None, offices["MMO"].id)
        assert action.from_office_id == offices["MBO"].id


class TestEndorseReasons:
    def test_no_routing_role(self, svc, new_transaction, make_user):
        tx = new_transaction("PR")
        clerk = make_user("MBO")
        reason = "You do not have permission to endorse transactions."
        assert svc.get_cannot_endorse_reason(tx, clerk) == reason
        with pytest.raises(ActionNotAllowed) as exc_info:
            svc.endorse(tx, clerk, None, 1)
        assert exc_info.value.reason == reason
        assert str(exc_info.value) == reason

    def test_wrong_office(self, svc, new_transaction, endorsers):
        tx = new_transaction("PR")
        assert svc.get_cannot_endorse_reason(tx, endorsers["MMO"]) == (
            "This transaction is not currently at your office."
        )
        assert not svc.can_endorse(tx, endorsers["MMO"])

    def test_must_be_received(self, svc, new_transaction, endorsers, offices):
        tx = new_transaction("PR")
        svc.endorse(tx, endorsers["MBO"], None, offices["MMO"].id)
        assert svc.get_cannot_endorse_reason(tx, endorsers["MMO"]) == (
            "Transaction must be received before endorsing."
        )

    def test_on_hold(self, svc, new_transaction, endorsers, offices, admin):
        tx = new_transaction("PR")
        _forward(svc, tx, endorsers, offices, "MMO")
        svc.hold(tx, admin, "Missing signature")
        assert svc.get_cannot_endorse_reason(tx, endorsers["MMO"]) == (
            'Transaction status must be "In Progress" to endorse.'
        )

    def test_final_step(self, svc, new_transaction, endorsers, offices):
        tx = new_transaction("PO")
        _forward(svc, tx, endorsers, offices, "MMO-PO")
        _forward(svc, tx, endorsers, offices, "MMO-PSMD")
        assert tx.current_step.is_final_step
        assert svc.get_cannot_endorse_reason(tx, endorsers["MMO-PSMD"]) == (
            "Transaction is at the final workflow step."
        )
        assert svc.get_expected_next_office(tx) is None


# ═════════════════════════════════════════════════════════════════════════════
# RECEIVE
# ═════════════════════════════════════════════════════════════════════════════


class TestReceive:
    def test_in_workflow_receipt_advances_step(self, svc, new_transaction, endorsers, offices, clock):
        tx = new_transaction("PR")
        step_one = tx.current_step_id
        svc.endorse(tx, endorsers["MBO"], None, offices["MMO"].id)
        clock.advance(hours=3)

        action = svc.receive(tx, endorsers["MMO"], notes="Got it")

        assert action.action_type == ACTION_RECEIVE
        assert action.from_office_id == offices["MBO"].id
        assert action.to_office_id == offices["MMO"].id
        assert action.from_user_id == endorsers["MBO"].id
        assert action.to_user_id == endorsers["MMO"].id
        assert action.workflow_step_id == step_one
        assert action.is_out_of_workflow is False

        assert as_utc(tx.received_at) == clock()
        assert tx.current_user_id == endorsers["MMO"].id
        assert tx.current_step.step_order == 2

    def test_receipt_notifies_receiving_office(self, svc, new_transaction, endorsers, offices, make_user):
        colleague = make_user("MMO", "Endorser")
        tx = new_transaction("PR")
        svc.endorse(tx, endorsers["MBO"], None, offices["MMO"].id)
        svc.receive(tx, endorsers["MMO"])

        recipients = {n.recipient_user_id for n in Notification.query.filter_by(category="receipt")}
        assert recipients == {endorsers["MMO"].id, colleague.id}

    def test_out_of_workflow_reseats_to_lowest_matching_step(self, svc, new_transaction, endorsers, offices):
        # VCH: MBO → MACCO → MMO → MTO → MMO → MTO
        tx = new_transaction("VCH")
        _forward(svc, tx, endorsers, offices, "MACCO")
        assert tx.current_step.step_order == 2

        svc.endorse(tx, endorsers["MACCO"], None, offices["MTO"].id)
        action = svc.receive(tx, endorsers["MTO"])

        assert action.is_out_of_workflow is True
        assert tx.current_step.step_order == 4

    def test_out_of_workflow_to_repeated_office_picks_first_occurrence(
        self, svc, new_transaction, endorsers, offices,
    ):
        tx = new_transaction("VCH")
        svc.endorse(tx, endorsers["MBO"], None, offices["MMO"].id)
        svc.receive(tx, endorsers["MMO"])
        assert tx.current_step.step_order == 3

    def test_out_of_workflow_to_office_off_route_keeps_step(self, svc, new_transaction, endorsers, offices):
        tx = new_transaction("VCH")
        _forward(svc, tx, endorsers, offices, "MACCO")

        svc.endorse(tx, endorsers["MACCO"], None, offices["BAC"].id)
        svc.receive(tx, endorsers["BAC"])
        assert tx.current_step.step_order == 2

        # Back on route: step 2's successor is MMO
        action = svc.endorse(tx, endorsers["BAC"], None, offices["MMO"].id)
        assert action.is_out_of_workflow is False
        svc.receive(tx, endorsers["MMO"])
        assert tx.current_step.step_order == 3

    def test_out_of_workflow_does_not_move_backwards(self, svc, new_transaction, endorsers, offices):
        tx = new_transaction("VCH")
        _forward(svc, tx, endorsers, offices, "MACCO")
        _forward(svc, tx, endorsers, offices, "MMO")
        _forward(svc, tx, endorsers, offices, "MTO")
        assert tx.current_step.step_order == 4

        # MBO only appears at step 1
        svc.endorse(tx, endorsers["MTO"], None, offices["MBO"].id)
        svc.receive(tx, endorsers["MBO"])
        assert tx.current_step.step_order == 4


class TestReceiveReasons:
    def test_already_received(self, svc, new_transaction, endorsers):
        tx = new_transaction("PR")
        reason = "Transaction has already been received."
        assert svc.get_cannot_receive_reason(tx, endorsers["MBO"]) == reason
        with pytest.raises(ActionNotAllowed, match=reason):
            svc.receive(tx, endorsers["MBO"])

    def test_second_receive_is_rejected(self, svc, new_transaction, endorsers, offices):
        tx = new_transaction("PR")
        svc.endorse(tx, endorsers["MBO"], None, offices["MMO"].id)
        svc.receive(tx, endorsers["MMO"])
        with pytest.raises(ActionNotAllowed):
            svc.receive(tx, endorsers["MMO"])
        assert TransactionAction.query.filter_by(action_type=ACTION_RECEIVE).count() == 1

    def test_wrong_office(self, svc, new_transaction, endorsers, offices):
        tx = new_transaction("PR")
        svc.endorse(tx, endorsers["MBO"], None, offices["MMO"].id)
        assert svc.get_cannot_receive_reason(tx, endorsers["BAC"]) == (
            "This transaction is not currently at your office."
        )

    def test_on_hold(self, svc, new_transaction, endorsers, offices, admin):
        tx = new_transaction("PR")
        svc.endorse(tx, endorsers["MBO"], None, offices["MMO"].id)
        svc.hold(tx, admin, "Budget freeze")
        assert svc.get_cannot_receive_reason(tx, endorsers["MMO"]) == (
            'Transaction status must be "In Progress" to receive.'
        )


class TestReceiveBulk:
    def test_per_item_isolation(self, svc, new_transaction, endorsers, offices):
        first = new_transaction("PR")
        second = new_transaction("PR")
        stuck = new_transaction("PR")
        for tx in (first, second):
            svc.endorse(tx, endorsers["MBO"], None, offices["MMO"].id)

        result = svc.receive_bulk([first.id, stuck.id, second.id, first.id, 9999], endorsers["MMO"])

        assert result["success"] == [first.id, second.id]
        assert result["failed"] == [
            {"id": stuck.id, "reason": "This transaction is not currently at your office."},
            {"id": first.id, "reason": "Transaction has already been received."},
            {"id": 9999, "reason": "Transaction id=9999 not found"},
        ]
        assert TransactionAction.query.filter_by(
            transaction_id=first.id, action_type=ACTION_RECEIVE,
        ).count() == 1
        assert first.received_at is not None
        assert second.received_at is not None

    def test_notification_failure_keeps_committed_receipt(
        self, svc, new_transaction, endorsers, offices, monkeypatch,
    ):
        tx = new_transaction("PR")
        svc.endorse(tx, endorsers["MBO"], None, offices["MMO"].id)

        def _broken(*args, **kwargs):
            raise OperationalError("INSERT INTO notifications", {}, Exception("db hiccup"))

        monkeypatch.setattr(NotificationService, "notify_received", staticmethod(_broken))

        result = svc.receive_bulk([tx.id], endorsers["MMO"])

        assert result == {"success": [tx.id], "failed": []}
        assert tx.received_at is not None
        assert TransactionAction.query.filter_by(
            transaction_id=tx.id, action_type=ACTION_RECEIVE,
        ).count() == 1

    def test_unexpected_error_does_not_abort_batch(
        self, svc, new_transaction, endorsers, offices, monkeypatch,
    ):
        broken, fine = new_transaction("PR"), new_transaction("PR")
        for tx in (broken, fine):
            svc.endorse(tx, endorsers["MBO"], None, offices["MMO"].id)
        real_receive = svc.receive

        def _receive(tx, user, **kwargs):
            if tx.id == broken.id:
                raise RuntimeError("scanner offline")
            return real_receive(tx, user, **kwargs)

        monkeypatch.setattr(svc, "receive", _receive)

        result = svc.receive_bulk([broken.id, fine.id], endorsers["MMO"])

        assert result == {
            "success": [fine.id],
            "failed": [{"id": broken.id, "reason": "scanner offline"}],
        }
        assert fine.received_at is not None

    def test_empty_input(self, svc, endorsers):
        assert svc.receive_bulk([], endorsers["MMO"]) == {"success": [], "failed": []}


# ═════════════════════════════════════════════════════════════════════════════
# HOLD / RESUME / CANCEL
# ═════════════════════════════════════════════════════════════════════════════


class TestStatusActions:
    def test_hold_and_resume(self, svc, new_transaction, endorsers, offices, admin):
        tx = new_transaction("PR")
        _forward(svc, tx, endorsers, offices, "MMO")

        hold = svc.hold(tx, admin, "Awaiting documents")
        assert tx.status == STATUS_ON_HOLD
        assert hold.action_type == ACTION_HOLD
        assert hold.reason == "Awaiting documents"
        assert hold.from_office_id == offices["MMO"].id

        resume = svc.resume(tx, admin)
        assert tx.status == STATUS_IN_PROGRESS
        assert resume.action_type == ACTION_RESUME
        assert resume.reason == "Resumed by administrator"
        latest = (
            TransactionStatusHistory.query.filter_by(transaction_id=tx.id)
            .order_by(TransactionStatusHistory.id.desc()).first()
        )
        assert latest.reason == "Resumed by administrator"

    def test_routing_fields_survive_hold(self, svc, new_transaction, endorsers, offices, admin):
        tx = new_transaction("PR")
        _forward(svc, tx, endorsers, offices, "MMO")
        step_id, office_id = tx.current_step_id, tx.current_office_id

        svc.hold(tx, admin, "Audit")
        svc.resume(tx, admin, "Audit done")

        assert (tx.current_step_id, tx.current_office_id) == (step_id, office_id)
        assert svc.can_endorse(tx, endorsers["MMO"])

    def test_hold_requires_reason(self, svc, new_transaction, endorsers, offices, admin):
        tx = new_transaction("PR")
        _forward(svc, tx, endorsers, offices, "MMO")
        with pytest.raises(ValidationError, match="reason is required"):
            svc.hold(tx, admin, "  ")
        assert tx.status == STATUS_IN_PROGRESS

    def test_hold_requires_administrator(self, svc, new_transaction, endorsers, offices):
        tx = new_transaction("PR")
        _forward(svc, tx, endorsers, offices, "MMO")
        reason = "Only administrators can hold transactions."
        assert svc.get_cannot_hold_reason(tx, endorsers["MMO"]) == reason
        with pytest.raises(ActionNotAllowed, match=reason):
            svc.hold(tx, endorsers["MMO"], "No")

    def test_hold_requires_in_progress(self, svc, new_transaction, admin):
        tx = new_transaction("PR")
        assert svc.get_cannot_hold_reason(tx, admin) == (
            'Transaction must be "In Progress" to place on hold.'
        )

    def test_resume_requires_on_hold(self, svc, new_transaction, endorsers, offices, admin):
        tx = new_transaction("PR")
        _forward(svc, tx, endorsers, offices, "MMO")
        assert svc.get_cannot_resume_reason(tx, admin) == 'Transaction must be "On Hold" to resume.'
        assert svc.get_cannot_resume_reason(tx, endorsers["MMO"]) == (
            "Only administrators can resume transactions."
        )

    def test_cancel_from_on_hold(self, svc, new_transaction, endorsers, offices, admin):
        tx = new_transaction("PR")
        _forward(svc, tx, endorsers, offices, "MMO")
        svc.hold(tx, admin, "Duplicate request")

        action = svc.cancel(tx, admin, "Duplicate request")

        assert tx.status == STATUS_CANCELLED
        assert action.action_type == ACTION_CANCEL
        assert svc.get_cannot_cancel_reason(tx, admin) == (
            'Transaction must be "In Progress" or "On Hold" to cancel.'
        )
        assert not svc.can_endorse(tx, endorsers["MMO"])

    def test_cancel_requires_reason(self, svc, new_transaction, endorsers, offices, admin):
        tx = new_transaction("PR")
        _forward(svc, tx, endorsers, offices, "MMO")
        with pytest.raises(ValidationError):
            svc.cancel(tx, admin, None)


# ═════════════════════════════════════════════════════════════════════════════
# COMPLETE
# ═════════════════════════════════════════════════════════════════════════════


class TestComplete:
    def test_not_at_final_step(self, svc, new_transaction, endorsers, offices):
        tx = new_transaction("PO")
        _forward(svc, tx, endorsers, offices, "MMO-PO")
        reason = "Transaction is not at the final workflow step."
        assert svc.get_cannot_complete_reason(tx, endorsers["MMO-PO"]) == reason
        with pytest.raises(ActionNotAllowed, match=reason):
            svc.complete(tx, endorsers["MMO-PO"], None)

    def test_created_cannot_complete(self, svc, new_transaction, endorsers):
        tx = new_transaction("PO")
        assert svc.get_cannot_complete_reason(tx, endorsers["BAC"]) == (
            'Transaction status must be "In Progress" to complete.'
        )

    def test_must_be_received(self, svc, new_transaction, endorsers, offices):
        tx = new_transaction("PO")
        _forward(svc, tx, endorsers, offices, "MMO-PO")
        svc.endorse(tx, endorsers["MMO-PO"], None, offices["MMO-PSMD"].id)
        assert svc.get_cannot_complete_reason(tx, endorsers["MMO-PSMD"]) == (
            "Transaction must be received before completing."
        )

    def test_complete_at_final_step(self, svc, new_transaction, endorsers, offices):
        tx = new_transaction("PO")
        _forward(svc, tx, endorsers, offices, "MMO-PO")
        _forward(svc, tx, endorsers, offices, "MMO-PSMD")

        action = svc.complete(tx, endorsers["MMO-PSMD"], None, notes="Delivered")

        assert tx.status == STATUS_COMPLETED
        assert action.to_office_id is None
        assert action.from_office_id == offices["MMO-PSMD"].id
        creator_notes = Notification.query.filter_by(
            recipient_user_id=endorsers["BAC"].id, category="completion",
        ).all()
        assert len(creator_notes) == 1
