"""
Endorsement Engine

Moves transactions between offices and owns the ``TransactionAction``
ledger. After workflow assignment this is the only code that writes the
routing fields of a transaction.

Every mutating operation follows the same shape:

    lock row → precondition → ledger append → field mutation
             → optional status transition → commit → notifications

and is a single unit of work: on any failure the session is rolled back
and the exception propagates. Notifications run after the commit; a
failure there is logged and does not undo the routing change.

Preconditions come in pairs, ``can_x(tx, user)`` and
``get_cannot_x_reason(tx, user)``. Mutations called while ``can_x`` is
false raise ``ActionNotAllowed`` carrying the same reason string.

Office affinity means ``user.office_id == tx.current_office_id``; holders
of the Administrator role bypass it.

Usage:
    svc = EndorsementService(clock=clock)
    if svc.can_endorse(tx, user):
        svc.endorse(tx, user, action_taken_id=1, to_office_id=bac.id)

    result = svc.receive_bulk([1, 2, 3], user)
    # {"success": [1, 3], "failed": [{"id": 2, "reason": "..."}]}
"""

import logging

from opts.core.clock import resolve_clock
from opts.core.exceptions import ActionNotAllowed, NotFoundError, ValidationError
from opts.models import db
from opts.models.directory import ROLE_ADMINISTRATOR, ROUTING_ROLES, Office
from opts.models.transaction import (
    ACTION_CANCEL,
    ACTION_COMPLETE,
    ACTION_ENDORSE,
    ACTION_HOLD,
    ACTION_RECEIVE,
    ACTION_RESUME,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CREATED,
    STATUS_IN_PROGRESS,
    STATUS_ON_HOLD,
    ProcurementStatusHistory,
    Transaction,
    TransactionAction,
)
from opts.models.workflow import CATEGORY_VCH
from opts.services.notification import NotificationService
from opts.services.state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)

DEFAULT_RESUME_REASON = "Resumed by administrator"
FIRST_ENDORSEMENT_REASON = "First endorsement"
PROCUREMENT_COMPLETED_REASON = "All transactions (PR, PO, VCH) completed"


class EndorsementService:
    """Routing actions on transactions."""

    def __init__(self, clock=None):
        self.clock = resolve_clock(clock)

    # ── Shared helpers ───────────────────────────────────────────────────

    @staticmethod
    def _has_routing_role(user) -> bool:
        return user.has_any_role(ROUTING_ROLES)

    @staticmethod
    def _is_at_office(tx, user) -> bool:
        return user.has_role(ROLE_ADMINISTRATOR) or user.office_id == tx.current_office_id

    @staticmethod
    def _lock(tx):
        """Re-read the row under ``SELECT … FOR UPDATE`` before checking preconditions."""
        db.session.flush()
        db.session.refresh(tx, with_for_update=True)

    @staticmethod
    def _require(action: str, reason: str | None):
        if reason is not None:
            raise ActionNotAllowed(action, reason)

    @staticmethod
    def _require_reason(action: str, reason: str | None):
        if reason is None or not reason.strip():
            raise ValidationError(
                f"A reason is required to {action} a transaction.",
                details={"reason": "required"},
            )

    def _state_machine(self, tx):
        return TransactionStateMachine(tx, clock=self.clock)

    @staticmethod
    def _seat(tx, step):
        tx.current_step = step
        tx.current_step_id = step.id

    @staticmethod
    def _latest_endorsement_to(tx, office_id):
        return (
            TransactionAction.query
            .filter_by(transaction_id=tx.id, action_type=ACTION_ENDORSE, to_office_id=office_id)
            .order_by(TransactionAction.created_at.desc(), TransactionAction.id.desc())
            .first()
        )

    @staticmethod
    def _notify(tx, event_type, send, *args):
        """Run a post-commit notification; the routing change is already durable."""
        try:
            send(tx, *args)
        except Exception:
            db.session.rollback()
            logger.exception(
                "Notification failed after %s of transaction %s", event_type, tx.id,
                extra={"transaction_id": tx.id, "event_type": f"{event_type}_notify_failed"},
            )

    @staticmethod
    def _log_action(tx, event_type, message, *args, level=logging.INFO):
        logger.log(
            level, message, *args,
            extra={"transaction_id": tx.id, "event_type": event_type,
                   "office_id": tx.current_office_id},
        )

    # ═════════════════════════════════════════════════════════════════════
    # ENDORSE
    # ═════════════════════════════════════════════════════════════════════

    def get_cannot_endorse_reason(self, tx, user) -> str | None:
        if not self._has_routing_role(user):
            return "You do not have permission to endorse transactions."
        if not self._is_at_office(tx, user):
            return "This transaction is not currently at your office."
        if tx.received_at is None and tx.status != STATUS_CREATED:
            return "Transaction must be received before endorsing."
        if tx.status not in (STATUS_IN_PROGRESS, STATUS_CREATED):
            return 'Transaction status must be "In Progress" to endorse.'
        if tx.current_step is not None and tx.current_step.is_final_step:
            return "Transaction is at the final workflow step."
        return None

    def can_endorse(self, tx, user) -> bool:
        return self.get_cannot_endorse_reason(tx, user) is None

    def get_expected_next_office(self, tx) -> int | None:
        """Office id of the step after the current one, or None at/after the final step."""
        step = tx.current_step
        if step is None or step.is_final_step:
            return None
        next_step = step.get_next_step()
        return next_step.office_id if next_step is not None else None

    def endorse(self, tx, user, action_taken_id, to_office_id, notes=None, ip_address=None):
        """
        Forward *tx* to *to_office_id*.

        A transaction still in ``Created`` moves to ``In Progress`` first.
        Endorsing anywhere other than the expected next office is allowed
        but flags the ledger row ``is_out_of_workflow``.

        Returns the new TransactionAction.
        """
        self._lock(tx)
        self._require("endorse", self.get_cannot_endorse_reason(tx, user))
        if db.session.get(Office, to_office_id) is None:
            raise NotFoundError("Office", to_office_id)

        now = self.clock()
        expected_office_id = self.get_expected_next_office(tx)
        is_out_of_workflow = expected_office_id != to_office_id
        from_office_id = tx.current_office_id

        try:
            if tx.status == STATUS_CREATED:
                self._state_machine(tx).transition_to(
                    STATUS_IN_PROGRESS, FIRST_ENDORSEMENT_REASON, user, commit=False,
                )

            action = TransactionAction(
                transaction_id=tx.id,
                action_type=ACTION_ENDORSE,
                action_taken_id=action_taken_id,
                from_office_id=from_office_id,
                to_office_id=to_office_id,
                from_user_id=user.id,
                workflow_step_id=tx.current_step_id,
                is_out_of_workflow=is_out_of_workflow,
                notes=notes,
                ip_address=ip_address,
                created_at=now,
            )
            db.session.add(action)

            tx.current_office_id = to_office_id
            tx.current_user_id = None
            tx.endorsed_at = now
            tx.received_at = None

            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        if is_out_of_workflow:
            self._log_action(
                tx, "endorse_out_of_workflow",
                "Out-of-workflow endorsement of transaction %s: office %s → %s (expected %s)",
                tx.id, from_office_id, to_office_id, expected_office_id,
                level=logging.WARNING,
            )
            self._notify(
                tx, "endorse", NotificationService.notify_out_of_workflow, action, expected_office_id,
            )
        else:
            self._log_action(
                tx, "endorse", "Endorsed transaction %s: office %s → %s",
                tx.id, from_office_id, to_office_id,
            )
        return action

    # ═════════════════════════════════════════════════════════════════════
    # RECEIVE
    # ═════════════════════════════════════════════════════════════════════

    def get_cannot_receive_reason(self, tx, user) -> str | None:
        if not self._has_routing_role(user):
            return "You do not have permission to receive transactions."
        if not self._is_at_office(tx, user):
            return "This transaction is not currently at your office."
        if tx.received_at is not None:
            return "Transaction has already been received."
        if tx.status != STATUS_IN_PROGRESS:
            return 'Transaction status must be "In Progress" to receive.'
        if self._latest_endorsement_to(tx, tx.current_office_id) is None:
            return "No endorsement to this office was found."
        return None

    def can_receive(self, tx, user) -> bool:
        return self.get_cannot_receive_reason(tx, user) is None

    def _reseat_step(self, tx, endorsement):
        """Move ``current_step`` to match the office that just received."""
        step = tx.current_step
        if step is None:
            return
        if not endorsement.is_out_of_workflow:
            next_step = step.get_next_step()
            if next_step is not None:
                self._seat(tx, next_step)
            return

        # Out-of-workflow: lowest step at or after the current one held by this office
        for candidate in step.workflow.steps:
            if candidate.step_order >= step.step_order and candidate.office_id == tx.current_office_id:
                self._seat(tx, candidate)
                return

    def receive(self, tx, user, notes=None, ip_address=None):
        """
        Confirm custody of *tx* at its current office.

        Returns the new TransactionAction.
        """
        self._lock(tx)
        self._require("receive", self.get_cannot_receive_reason(tx, user))

        now = self.clock()
        endorsement = self._latest_endorsement_to(tx, tx.current_office_id)

        try:
            action = TransactionAction(
                transaction_id=tx.id,
                action_type=ACTION_RECEIVE,
                from_office_id=endorsement.from_office_id,
                to_office_id=tx.current_office_id,
                from_user_id=endorsement.from_user_id,
                to_user_id=user.id,
                workflow_step_id=tx.current_step_id,
                is_out_of_workflow=endorsement.is_out_of_workflow,
                notes=notes,
                ip_address=ip_address,
                created_at=now,
            )
            db.session.add(action)

            tx.received_at = now
            tx.current_user_id = user.id
            self._reseat_step(tx, endorsement)

            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        self._log_action(
            tx, "receive", "Received transaction %s at office %s (step %s)",
            tx.id, tx.current_office_id, tx.current_step_id,
        )
        self._notify(tx, "receive", NotificationService.notify_received, action)
        return action

    def receive_bulk(self, transaction_ids, user, notes=None, ip_address=None) -> dict:
        """
        Receive each id in its own unit of work.

        A failure on one id never affects the others and is reported, not
        raised.
        """
        results = {"success": [], "failed": []}
        for tx_id in transaction_ids:
            try:
                tx = db.session.get(Transaction, tx_id)
                if tx is None or tx.is_deleted:
                    raise NotFoundError("Transaction", tx_id)
                self.receive(tx, user, notes=notes, ip_address=ip_address)
            except Exception as exc:
                db.session.rollback()
                logger.warning(
                    "Bulk receive failed for transaction %s: %s", tx_id, exc,
                    extra={"transaction_id": tx_id, "event_type": "receive_bulk_failed"},
                )
                results["failed"].append({"id": tx_id, "reason": str(exc)})
            else:
                results["success"].append(tx_id)
        return results

    # ═════════════════════════════════════════════════════════════════════
    # HOLD / RESUME / CANCEL
    # ═════════════════════════════════════════════════════════════════════

    def get_cannot_hold_reason(self, tx, user) -> str | None:
        if not user.has_role(ROLE_ADMINISTRATOR):
            return "Only administrators can hold transactions."
        if tx.status != STATUS_IN_PROGRESS:
            return 'Transaction must be "In Progress" to place on hold.'
        return None

    def can_hold(self, tx, user) -> bool:
        return self.get_cannot_hold_reason(tx, user) is None

    def get_cannot_resume_reason(self, tx, user) -> str | None:
        if not user.has_role(ROLE_ADMINISTRATOR):
            return "Only administrators can resume transactions."
        if tx.status != STATUS_ON_HOLD:
            return 'Transaction must be "On Hold" to resume.'
        return None

    def can_resume(self, tx, user) -> bool:
        return self.get_cannot_resume_reason(tx, user) is None

    def get_cannot_cancel_reason(self, tx, user) -> str | None:
        if not user.has_role(ROLE_ADMINISTRATOR):
            return "Only administrators can cancel transactions."
        if tx.status not in (STATUS_IN_PROGRESS, STATUS_ON_HOLD):
            return 'Transaction must be "In Progress" or "On Hold" to cancel.'
        return None

    def can_cancel(self, tx, user) -> bool:
        return self.get_cannot_cancel_reason(tx, user) is None

    def _status_action(self, tx, user, action_type, new_status, reason, ip_address):
        """Transition plus one ledger row, committed together."""
        try:
            self._state_machine(tx).transition_to(new_status, reason, user, commit=False)
            action = TransactionAction(
                transaction_id=tx.id,
                action_type=action_type,
                from_office_id=tx.current_office_id,
                from_user_id=user.id,
                workflow_step_id=tx.current_step_id,
                reason=reason,
                ip_address=ip_address,
                created_at=self.clock(),
            )
            db.session.add(action)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        self._log_action(tx, action_type, "Transaction %s → %s (%s)", tx.id, new_status, reason)
        return action

    def hold(self, tx, user, reason, ip_address=None):
        self._require_reason("hold", reason)
        self._lock(tx)
        self._require("hold", self.get_cannot_hold_reason(tx, user))
        return self._status_action(tx, user, ACTION_HOLD, STATUS_ON_HOLD, reason, ip_address)

    def resume(self, tx, user, reason=None, ip_address=None):
        self._lock(tx)
        self._require("resume", self.get_cannot_resume_reason(tx, user))
        return self._status_action(
            tx, user, ACTION_RESUME, STATUS_IN_PROGRESS, reason or DEFAULT_RESUME_REASON, ip_address,
        )

    def cancel(self, tx, user, reason, ip_address=None):
        self._require_reason("cancel", reason)
        self._lock(tx)
        self._require("cancel", self.get_cannot_cancel_reason(tx, user))
        return self._status_action(tx, user, ACTION_CANCEL, STATUS_CANCELLED, reason, ip_address)

    # ═════════════════════════════════════════════════════════════════════
    # COMPLETE
    # ═════════════════════════════════════════════════════════════════════

    def get_cannot_complete_reason(self, tx, user) -> str | None:
        if not self._has_routing_role(user):
            return "You do not have permission to complete transactions."
        if not self._is_at_office(tx, user):
            return "This transaction is not currently at your office."
        if tx.received_at is None:
            return "Transaction must be received before completing."
        if tx.status != STATUS_IN_PROGRESS:
            return 'Transaction status must be "In Progress" to complete.'
        if tx.current_step is None or not tx.current_step.is_final_step:
            return "Transaction is not at the final workflow step."
        return None

    def can_complete(self, tx, user) -> bool:
        return self.get_cannot_complete_reason(tx, user) is None

    def complete(self, tx, user, action_taken_id, notes=None, ip_address=None):
        """
        Close *tx* at its final workflow step.

        Completing a voucher also closes the owning procurement once every
        live transaction of it is Completed.

        Returns the new TransactionAction.
        """
        self._lock(tx)
        self._require("complete", self.get_cannot_complete_reason(tx, user))

        try:
            action = TransactionAction(
                transaction_id=tx.id,
                action_type=ACTION_COMPLETE,
                action_taken_id=action_taken_id,
                from_office_id=tx.current_office_id,
                to_office_id=None,
                from_user_id=user.id,
                workflow_step_id=tx.current_step_id,
                notes=notes,
                ip_address=ip_address,
                created_at=self.clock(),
            )
            db.session.add(action)
            self._state_machine(tx).transition_to(STATUS_COMPLETED, None, user, commit=False)
            self.check_and_update_procurement_status(tx, user)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        self._log_action(tx, "complete", "Completed transaction %s", tx.id)
        self._notify(tx, "complete", NotificationService.notify_completed)
        return action

    def check_and_update_procurement_status(self, tx, user) -> bool:
        """
        Close the procurement when its voucher completes and nothing else is open.

        Soft-deleted transactions are ignored. Does not commit.
        Returns True when the procurement status changed.
        """
        if tx.category != CATEGORY_VCH:
            return False

        procurement = tx.procurement
        if procurement is None or procurement.status == STATUS_COMPLETED:
            return False

        db.session.flush()
        pending = procurement.active_transactions().filter(Transaction.status != STATUS_COMPLETED).count()
        if pending:
            return False

        old_status = procurement.status
        procurement.status = STATUS_COMPLETED
        db.session.add(ProcurementStatusHistory(
            procurement_id=procurement.id,
            old_status=old_status,
            new_status=STATUS_COMPLETED,
            reason=PROCUREMENT_COMPLETED_REASON,
            changed_by_user_id=user.id,
            created_at=self.clock(),
        ))
        logger.info(
            "Procurement %s completed", procurement.id,
            extra={"procurement_id": procurement.id, "transaction_id": tx.id,
                   "event_type": "procurement_completed"},
        )
        return True
