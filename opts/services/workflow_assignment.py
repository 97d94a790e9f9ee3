"""
Workflow Assignment Service

Binds a freshly created transaction to the active workflow template of its
category and seats it at step 1.

Usage:
    svc = WorkflowAssignmentService()
    svc.assign_workflow(tx, actor)          # raises NoActiveWorkflow
    preview = svc.get_workflow_preview("PR")
"""

import logging

from opts.core.clock import resolve_clock
from opts.core.exceptions import NoActiveWorkflow, ValidationError
from opts.models import db
from opts.models.workflow import Workflow

logger = logging.getLogger(__name__)


class WorkflowAssignmentService:
    """Resolves and binds workflow templates."""

    def __init__(self, clock=None):
        self.clock = resolve_clock(clock)

    def get_active_workflow(self, category: str):
        """Newest active workflow for *category*, or None."""
        return (
            Workflow.query
            .filter_by(category=category, is_active=True)
            .order_by(Workflow.created_at.desc(), Workflow.id.desc())
            .first()
        )

    def has_active_workflow(self, category: str) -> bool:
        return self.get_active_workflow(category) is not None

    def assign_workflow(self, transaction, actor, *, commit: bool = True):
        """
        Seat *transaction* at step 1 of the active workflow.

        The creator becomes the holder and ``received_at`` is stamped, since
        the originating office already has the document in hand.

        Raises:
            NoActiveWorkflow: no active workflow for the category. The
                transaction is left untouched.
            ValidationError: the workflow has no step 1.
        """
        workflow = self.get_active_workflow(transaction.category)
        if workflow is None:
            raise NoActiveWorkflow(transaction.category)

        first_step = workflow.get_first_step()
        if first_step is None:
            raise ValidationError(
                f"Workflow {workflow.id} has no first step",
                details={"workflow_id": workflow.id},
            )

        transaction.workflow = workflow
        transaction.workflow_id = workflow.id
        transaction.current_step = first_step
        transaction.current_step_id = first_step.id
        transaction.current_office_id = first_step.office_id
        transaction.current_user_id = actor.id
        transaction.received_at = self.clock()

        if commit:
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        logger.info(
            "Assigned workflow %s to transaction %s (office=%s)",
            workflow.id, transaction.id, first_step.office_id,
            extra={"transaction_id": transaction.id, "workflow_id": workflow.id,
                   "event_type": "workflow_assigned"},
        )
        return workflow

    def get_workflow_preview(self, category: str) -> dict | None:
        """Read-only summary of the route a new *category* document would take."""
        workflow = self.get_active_workflow(category)
        if workflow is None:
            return None

        steps = []
        for step in workflow.steps:
            office = step.office
            steps.append({
                "step_order": step.step_order,
                "office_name": office.name if office else "Unknown",
                "office_abbreviation": office.abbreviation if office else "Unknown",
                "expected_days": step.expected_days,
                "is_final_step": step.is_final_step,
            })

        return {
            "workflow_id": workflow.id,
            "workflow_name": workflow.name,
            "total_steps": len(steps),
            "total_expected_days": sum(s["expected_days"] for s in steps),
            "steps": steps,
        }
