"""
Transaction state machine tests.

Covers:
  - Edge table lookups (can_transition_to / get_available_transitions)
  - transition_to history rows, clock stamping and actor
  - Rejected edges leave the transaction untouched
  - commit=False folding into a caller's unit of work
"""

import pytest

from opts.core.exceptions import InvalidStateTransition, ValidationError
from opts.core.clock import as_utc
from opts.models import db
from opts.models.transaction import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CREATED,
    STATUS_IN_PROGRESS,
    STATUS_ON_HOLD,
    TransactionStatusHistory,
    validate_transaction_transition,
)
from opts.services.state_machine import TransactionStateMachine


class TestTransitionTable:
    @pytest.mark.parametrize("old,new", [
        (STATUS_CREATED, STATUS_IN_PROGRESS),
        (STATUS_IN_PROGRESS, STATUS_COMPLETED),
        (STATUS_IN_PROGRESS, STATUS_ON_HOLD),
        (STATUS_IN_PROGRESS, STATUS_CANCELLED),
        (STATUS_ON_HOLD, STATUS_IN_PROGRESS),
        (STATUS_ON_HOLD, STATUS_CANCELLED),
    ])
    def test_legal_edges(self, old, new):
        assert validate_transaction_transition(old, new)

    @pytest.mark.parametrize("old,new", [
        (STATUS_CREATED, STATUS_COMPLETED),
        (STATUS_CREATED, STATUS_ON_HOLD),
        (STATUS_ON_HOLD, STATUS_COMPLETED),
        (STATUS_COMPLETED, STATUS_IN_PROGRESS),
        (STATUS_CANCELLED, STATUS_IN_PROGRESS),
        (STATUS_IN_PROGRESS, STATUS_IN_PROGRESS),
        ("Unknown", STATUS_IN_PROGRESS),
    ])
    def test_illegal_edges(self, old, new):
        assert not validate_transaction_transition(old, new)


class TestStateMachine:
    def test_available_transitions_in_table_order(self, new_transaction):
        tx = new_transaction("PR")
        tx.status = STATUS_IN_PROGRESS
        sm = TransactionStateMachine(tx)
        assert sm.get_available_transitions() == [STATUS_COMPLETED, STATUS_ON_HOLD, STATUS_CANCELLED]

    def test_terminal_has_no_transitions(self, new_transaction):
        tx = new_transaction("PR")
        tx.status = STATUS_COMPLETED
        sm = TransactionStateMachine(tx)
        assert sm.get_available_transitions() == []
        assert sm.is_terminal()

    def test_transition_writes_history(self, new_transaction, endorsers, clock):
        tx = new_transaction("PR")
        actor = endorsers["MBO"]
        clock.advance(hours=2)

        entry = TransactionStateMachine(tx, clock=clock).transition_to(
            STATUS_IN_PROGRESS, "Kick-off", actor,
        )

        assert tx.status == STATUS_IN_PROGRESS
        assert entry.old_status == STATUS_CREATED
        assert entry.new_status == STATUS_IN_PROGRESS
        assert entry.reason == "Kick-off"
        assert entry.changed_by_user_id == actor.id
        assert as_utc(entry.created_at) == clock()
        assert TransactionStatusHistory.query.filter_by(transaction_id=tx.id).count() == 1

    def test_invalid_transition_raises_and_leaves_status(self, new_transaction):
        tx = new_transaction("PR")
        sm = TransactionStateMachine(tx)

        with pytest.raises(InvalidStateTransition) as exc_info:
            sm.transition_to(STATUS_COMPLETED)

        assert str(exc_info.value) == 'Cannot transition from "Created" to "Completed"'
        assert isinstance(exc_info.value, ValidationError)
        assert tx.status == STATUS_CREATED
        assert TransactionStatusHistory.query.filter_by(transaction_id=tx.id).count() == 0

    def test_completed_cannot_reopen(self, new_transaction):
        tx = new_transaction("PR")
        tx.status = STATUS_COMPLETED
        db.session.commit()

        with pytest.raises(InvalidStateTransition, match='from "Completed" to "In Progress"'):
            TransactionStateMachine(tx).transition_to(STATUS_IN_PROGRESS)

    def test_commit_false_is_rolled_back_with_caller(self, new_transaction):
        tx = new_transaction("PR")
        TransactionStateMachine(tx).transition_to(STATUS_IN_PROGRESS, commit=False)
        db.session.rollback()

        assert tx.status == STATUS_CREATED
        assert TransactionStatusHistory.query.filter_by(transaction_id=tx.id).count() == 0
