"""
Transaction State Machine

Guard layer over ``Transaction.status``. It knows the legal edges
(``TRANSACTION_TRANSITIONS``) and writes one ``TransactionStatusHistory``
row per accepted change; it knows nothing about offices or workflow steps.

    Created ──► In Progress ──► Completed
                  │   ▲   │
                  ▼   │   └───► Cancelled
                 On Hold ─────► Cancelled

Usage:
    sm = TransactionStateMachine(tx)
    if sm.can_transition_to("On Hold"):
        sm.transition_to("On Hold", reason="Awaiting documents", actor=admin)
"""

import logging

from opts.core.clock import resolve_clock
from opts.core.exceptions import InvalidStateTransition
from opts.models import db
from opts.models.transaction import (
    TERMINAL_STATUSES,
    TRANSACTION_TRANSITIONS,
    TransactionStatusHistory,
    validate_transaction_transition,
)

logger = logging.getLogger(__name__)


class TransactionStateMachine:
    """Status guard for a single transaction."""

    def __init__(self, transaction, clock=None):
        self.transaction = transaction
        self.clock = resolve_clock(clock)

    def can_transition_to(self, new_status: str) -> bool:
        return validate_transaction_transition(self.transaction.status, new_status)

    def transition_to(self, new_status: str, reason: str | None = None, actor=None, *, commit: bool = True):
        """
        Move the transaction to *new_status* and record the change.

        Raises InvalidStateTransition without touching the transaction when
        the edge is not in the table. With ``commit=False`` the change is only
        added to the session so a caller can fold it into a larger unit of
        work.

        Returns the new TransactionStatusHistory row.
        """
        tx = self.transaction
        old_status = tx.status
        if not self.can_transition_to(new_status):
            raise InvalidStateTransition(old_status, new_status)

        tx.status = new_status
        entry = TransactionStatusHistory(
            transaction_id=tx.id,
            old_status=old_status,
            new_status=new_status,
            reason=reason,
            changed_by_user_id=actor.id if actor is not None else None,
            created_at=self.clock(),
        )
        db.session.add(entry)

        if commit:
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        logger.info(
            "Transaction %s: %s → %s", tx.id, old_status, new_status,
            extra={"transaction_id": tx.id, "event_type": "status_change"},
        )
        return entry

    def get_available_transitions(self) -> list[str]:
        return list(TRANSACTION_TRANSITIONS.get(self.transaction.status, []))

    def is_terminal(self) -> bool:
        return self.transaction.status in TERMINAL_STATUSES
