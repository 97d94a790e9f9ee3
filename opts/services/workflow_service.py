"""
Workflow template maintenance.

Creates and edits workflow templates together with their steps. Step ids
are preserved across edits (positional sync) so ledger rows and in-flight
transactions keep pointing at the same step rows.

Step input format (list, in route order):
    [{"office_id": 1, "expected_days": 2, "action_taken_id": None}, ...]

The last step in the list is always the final step.
"""

from __future__ import annotations

import logging

from opts.core.exceptions import NotFoundError, ValidationError
from opts.models import db
from opts.models.audit import write_audit
from opts.models.directory import Office
from opts.models.transaction import TERMINAL_STATUSES, Transaction, TransactionAction
from opts.models.workflow import TRANSACTION_CATEGORIES, Workflow, WorkflowStep

logger = logging.getLogger(__name__)

# Temporary step_order shift while reordering under UNIQUE(workflow_id, step_order)
_ORDER_OFFSET = 10000

_UPDATABLE_FIELDS = ("name", "description", "is_active")


# ── Validation ───────────────────────────────────────────────────────────────


def _validate_workflow_data(data: dict, *, partial: bool = False) -> None:
    errors = {}
    if not partial or "category" in data:
        if data.get("category") not in TRANSACTION_CATEGORIES:
            errors["category"] = f"must be one of {', '.join(TRANSACTION_CATEGORIES)}"
    if not partial or "name" in data:
        if not (data.get("name") or "").strip():
            errors["name"] = "required"
    if errors:
        raise ValidationError("Invalid workflow data", details=errors)


def _validate_steps(steps: list[dict]) -> None:
    if not steps:
        raise ValidationError("A workflow needs at least one step", details={"steps": "required"})

    errors = {}
    for index, step in enumerate(steps, start=1):
        office_id = step.get("office_id")
        if office_id is None or db.session.get(Office, office_id) is None:
            errors[f"steps.{index}.office_id"] = f"unknown office {office_id}"
        days = step.get("expected_days")
        if not isinstance(days, int) or isinstance(days, bool) or days < 1:
            errors[f"steps.{index}.expected_days"] = "must be a positive integer"
    if errors:
        raise ValidationError("Invalid workflow steps", details=errors)


def _apply_step(step: WorkflowStep, data: dict, position: int, total: int) -> None:
    step.office_id = data["office_id"]
    step.expected_days = data["expected_days"]
    step.step_order = position
    step.is_final_step = position == total
    step.action_taken_id = data.get("action_taken_id")


# ── Create / update ──────────────────────────────────────────────────────────


def create_with_steps(data: dict, steps: list[dict], actor=None) -> Workflow:
    """Create a workflow and its steps in one unit of work.

    Args:
        data: ``category``, ``name`` and optionally ``description`` /
              ``is_active``.
        steps: Step dicts in route order.

    Returns:
        The persisted Workflow.
    """
    _validate_workflow_data(data)
    _validate_steps(steps)

    try:
        workflow = Workflow(
            category=data["category"],
            name=data["name"].strip(),
            description=data.get("description", ""),
            is_active=data.get("is_active", True),
            created_by_user_id=actor.id if actor is not None else None,
        )
        total = len(steps)
        for position, step_data in enumerate(steps, start=1):
            step = WorkflowStep()
            _apply_step(step, step_data, position, total)
            workflow.steps.append(step)
        db.session.add(workflow)
        db.session.flush()

        write_audit(
            entity_type="workflow", entity_id=workflow.id, action="workflow.create",
            actor=actor.email if actor is not None else "system",
            actor_user_id=actor.id if actor is not None else None,
            diff={"category": workflow.category, "steps": total},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Workflow created id=%s category=%s steps=%s", workflow.id, workflow.category, total)
    return workflow


def _occupied_step_ids(step_ids: list[int]) -> list[int]:
    """Subset of *step_ids* that a non-terminal transaction currently sits on."""
    if not step_ids:
        return []
    rows = (
        db.session.query(Transaction.current_step_id)
        .filter(
            Transaction.current_step_id.in_(step_ids),
            Transaction.status.notin_(TERMINAL_STATUSES),
        )
        .distinct()
        .all()
    )
    return [r.current_step_id for r in rows]


def _remove_orphan_step(step: WorkflowStep) -> None:
    """Delete a step the workflow no longer has, detaching history from it."""
    TransactionAction.query.filter_by(workflow_step_id=step.id).update(
        {TransactionAction.workflow_step_id: None}, synchronize_session=False,
    )
    Transaction.query.filter(
        Transaction.current_step_id == step.id,
        Transaction.status.in_(TERMINAL_STATUSES),
    ).update({Transaction.current_step_id: None}, synchronize_session=False)
    db.session.delete(step)


def update_with_steps(workflow: Workflow, data: dict, steps: list[dict], actor=None) -> Workflow:
    """Update a workflow and re-sync its steps by position.

    Existing step rows at positions 1..n are updated in place; extra input
    steps are appended; surplus existing steps are removed.

    Raises:
        ValidationError: invalid input, a category change, or a surplus step
            still occupied by a non-terminal transaction.
    """
    if "category" in data and data["category"] != workflow.category:
        raise ValidationError(
            "Workflow category cannot be changed", details={"category": "immutable"},
        )
    _validate_workflow_data(data, partial=True)
    _validate_steps(steps)

    existing = sorted(workflow.steps, key=lambda s: s.step_order)
    surplus = existing[len(steps):]
    occupied = _occupied_step_ids([s.id for s in surplus])
    if occupied:
        raise ValidationError(
            "Cannot remove workflow steps that active transactions are currently on",
            details={"step_ids": occupied},
        )

    old_snapshot = [(s.office_id, s.expected_days) for s in existing]
    try:
        for field in _UPDATABLE_FIELDS:
            if field in data:
                setattr(workflow, field, data[field])

        WorkflowStep.query.filter_by(workflow_id=workflow.id).update(
            {WorkflowStep.step_order: WorkflowStep.step_order + _ORDER_OFFSET},
            synchronize_session="evaluate",
        )

        total = len(steps)
        for position, step_data in enumerate(steps, start=1):
            if position <= len(existing):
                _apply_step(existing[position - 1], step_data, position, total)
            else:
                step = WorkflowStep(workflow_id=workflow.id)
                _apply_step(step, step_data, position, total)
                db.session.add(step)
        db.session.flush()

        for step in surplus:
            _remove_orphan_step(step)
        db.session.flush()
        db.session.expire(workflow, ["steps"])

        write_audit(
            entity_type="workflow", entity_id=workflow.id, action="workflow.update",
            actor=actor.email if actor is not None else "system",
            actor_user_id=actor.id if actor is not None else None,
            diff={
                "steps": {
                    "old": old_snapshot,
                    "new": [(s["office_id"], s["expected_days"]) for s in steps],
                },
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Workflow updated id=%s steps=%s removed=%s", workflow.id, total, len(surplus))
    return workflow


# ── Guards ───────────────────────────────────────────────────────────────────


def can_deactivate(workflow: Workflow) -> bool:
    """False when *workflow* is the only active workflow of its category."""
    if not workflow.is_active:
        return True
    others = (
        Workflow.query
        .filter(
            Workflow.category == workflow.category,
            Workflow.is_active.is_(True),
            Workflow.id != workflow.id,
        )
        .count()
    )
    return others > 0


def can_delete(workflow: Workflow) -> bool:
    """False when any transaction references *workflow*."""
    return not db.session.query(
        Transaction.query.filter_by(workflow_id=workflow.id).exists()
    ).scalar()


def has_active_transactions(workflow: Workflow) -> bool:
    return db.session.query(
        Transaction.query.filter(
            Transaction.workflow_id == workflow.id,
            Transaction.status.notin_(TERMINAL_STATUSES),
        ).exists()
    ).scalar()


def deactivate_workflow(workflow: Workflow, actor=None) -> Workflow:
    if not can_deactivate(workflow):
        raise ValidationError(
            f"Cannot deactivate the only active {workflow.category} workflow",
            details={"workflow_id": workflow.id},
        )
    try:
        workflow.is_active = False
        write_audit(
            entity_type="workflow", entity_id=workflow.id, action="workflow.update",
            actor=actor.email if actor is not None else "system",
            actor_user_id=actor.id if actor is not None else None,
            diff={"is_active": {"old": True, "new": False}},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Workflow deactivated id=%s", workflow.id)
    return workflow


def delete_workflow(workflow_id: int, actor=None) -> None:
    """Hard-delete a workflow that no transaction has ever used."""
    workflow = db.session.get(Workflow, workflow_id)
    if workflow is None:
        raise NotFoundError("Workflow", workflow_id)
    if not can_delete(workflow):
        raise ValidationError(
            "Cannot delete a workflow that transactions reference",
            details={"workflow_id": workflow_id},
        )
    try:
        write_audit(
            entity_type="workflow", entity_id=workflow_id, action="workflow.delete",
            actor=actor.email if actor is not None else "system",
            actor_user_id=actor.id if actor is not None else None,
            diff={"category": workflow.category, "name": workflow.name},
        )
        db.session.delete(workflow)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Workflow deleted id=%s", workflow_id)
