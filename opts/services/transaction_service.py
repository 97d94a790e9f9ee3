"""
Transaction lifecycle: create, soft delete, procurement rules.

Sits beside the routing engine: it creates transactions (and routes them
through ``WorkflowAssignmentService``) and soft-deletes them. Deletion is
not a status transition; it is recorded in the audit log with the status
the transaction had when it was removed.

Document chain per procurement:  PR → PO → VCH
    - a PO needs a live PR, a VCH needs a live PO
    - each category at most once per procurement
    - a PR cannot be deleted while a PO exists, a PO while a VCH exists
"""

from __future__ import annotations

import logging

from opts.core.clock import resolve_clock
from opts.core.exceptions import NoActiveWorkflow, ValidationError
from opts.models import db
from opts.models.audit import write_audit
from opts.models.transaction import (
    STATUS_CREATED,
    STATUS_IN_PROGRESS,
    Procurement,
    ProcurementStatusHistory,
    Transaction,
)
from opts.models.workflow import CATEGORY_PO, CATEGORY_PR, CATEGORY_VCH
from opts.services.workflow_assignment import WorkflowAssignmentService

logger = logging.getLogger(__name__)


class ProcurementBusinessRules:
    """Which documents a procurement may gain or lose. Soft-deleted rows do not count."""

    @staticmethod
    def _has(procurement: Procurement, category: str) -> bool:
        return procurement.active_transactions(category).count() > 0

    def can_create_pr(self, procurement: Procurement) -> bool:
        return not self._has(procurement, CATEGORY_PR)

    def can_create_po(self, procurement: Procurement) -> bool:
        return self._has(procurement, CATEGORY_PR) and not self._has(procurement, CATEGORY_PO)

    def can_create_vch(self, procurement: Procurement) -> bool:
        return self._has(procurement, CATEGORY_PO) and not self._has(procurement, CATEGORY_VCH)

    def can_delete_pr(self, procurement: Procurement) -> bool:
        return not self._has(procurement, CATEGORY_PO)

    def can_delete_po(self, procurement: Procurement) -> bool:
        return not self._has(procurement, CATEGORY_VCH)

    def can_create(self, procurement: Procurement, category: str) -> bool:
        checks = {
            CATEGORY_PR: self.can_create_pr,
            CATEGORY_PO: self.can_create_po,
            CATEGORY_VCH: self.can_create_vch,
        }
        return checks[category](procurement)

    def can_delete(self, procurement: Procurement, category: str) -> bool:
        checks = {
            CATEGORY_PR: self.can_delete_pr,
            CATEGORY_PO: self.can_delete_po,
        }
        check = checks.get(category)
        return check(procurement) if check else True


def create_procurement(title: str, actor) -> Procurement:
    if not (title or "").strip():
        raise ValidationError("Procurement title is required", details={"title": "required"})
    procurement = Procurement(title=title.strip(), created_by_user_id=actor.id)
    db.session.add(procurement)
    db.session.commit()
    logger.info("Procurement created id=%s", procurement.id,
                extra={"procurement_id": procurement.id, "event_type": "procurement_created"})
    return procurement


def create_transaction(
    procurement: Procurement,
    category: str,
    actor,
    reference_number: str | None = None,
    require_workflow: bool = True,
    clock=None,
) -> Transaction:
    """Create a transaction in ``Created`` and route it to step 1.

    Args:
        require_workflow: When True a missing workflow aborts creation and
            ``NoActiveWorkflow`` propagates. When False the transaction is
            kept without routing fields and a warning is logged.

    Raises:
        ValidationError: the procurement chain does not allow *category*.
        NoActiveWorkflow: see *require_workflow*.
    """
    rules = ProcurementBusinessRules()
    if category not in (CATEGORY_PR, CATEGORY_PO, CATEGORY_VCH):
        raise ValidationError(f"Invalid transaction category: {category}", details={"category": category})
    if not rules.can_create(procurement, category):
        raise ValidationError(
            f"Procurement {procurement.id} cannot take a new {category}",
            details={"category": category, "procurement_id": procurement.id},
        )

    assignment = WorkflowAssignmentService(clock=clock)
    try:
        tx = Transaction(
            category=category,
            reference_number=reference_number,
            status=STATUS_CREATED,
            procurement_id=procurement.id,
            created_by_user_id=actor.id,
            created_at=resolve_clock(clock)(),
        )
        db.session.add(tx)
        db.session.flush()

        try:
            assignment.assign_workflow(tx, actor, commit=False)
        except NoActiveWorkflow:
            if require_workflow:
                raise
            logger.warning(
                "Transaction %s created without workflow: no active %s workflow", tx.id, category,
                extra={"transaction_id": tx.id, "event_type": "workflow_missing"},
            )

        if procurement.status == STATUS_CREATED:
            procurement.status = STATUS_IN_PROGRESS
            db.session.add(ProcurementStatusHistory(
                procurement_id=procurement.id,
                old_status=STATUS_CREATED,
                new_status=STATUS_IN_PROGRESS,
                reason=f"{category} created",
                changed_by_user_id=actor.id,
                created_at=resolve_clock(clock)(),
            ))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Transaction created id=%s category=%s", tx.id, category,
                extra={"transaction_id": tx.id, "procurement_id": procurement.id,
                       "event_type": "transaction_created"})
    return tx


def delete_transaction(tx: Transaction, actor, reason: str | None = None, clock=None) -> None:
    """Soft-delete *tx* and write a ``transaction.delete`` audit row."""
    if tx.is_deleted:
        raise ValidationError(f"Transaction {tx.id} is already deleted", details={"id": tx.id})
    if not ProcurementBusinessRules().can_delete(tx.procurement, tx.category):
        raise ValidationError(
            f"Cannot delete {tx.category} while a later document in the chain exists",
            details={"category": tx.category},
        )

    clock = resolve_clock(clock)
    try:
        tx.soft_delete(clock)
        write_audit(
            entity_type="transaction",
            entity_id=tx.id,
            action="transaction.delete",
            actor=actor.email,
            actor_user_id=actor.id,
            diff={"status": tx.status, "category": tx.category, "reason": reason},
            timestamp=clock(),
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Transaction soft-deleted id=%s status=%s", tx.id, tx.status,
                extra={"transaction_id": tx.id, "event_type": "transaction_deleted"})
