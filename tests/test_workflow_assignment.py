"""Workflow assignment and preview."""

import pytest

from opts.core.clock import as_utc
from opts.core.exceptions import NoActiveWorkflow, ValidationError
from opts.models import db
from opts.services import seed_service, workflow_service
from opts.services.transaction_service import create_procurement, create_transaction
from opts.services.workflow_assignment import WorkflowAssignmentService


def _unrouted(category, actor, clock):
    procurement = create_procurement("Laptops", actor)
    return create_transaction(procurement, category, actor, require_workflow=False, clock=clock)


class TestActiveWorkflow:
    def test_newest_active_wins(self, workflows, offices):
        newer = workflow_service.create_with_steps(
            {"category": "PR", "name": "Fast-track PR"},
            [{"office_id": offices["MBO"].id, "expected_days": 1}],
        )
        svc = WorkflowAssignmentService()
        assert svc.get_active_workflow("PR").id == newer.id

    def test_inactive_ignored(self, workflows):
        workflows["PO"].is_active = False
        db.session.commit()
        svc = WorkflowAssignmentService()
        assert svc.get_active_workflow("PO") is None
        assert not svc.has_active_workflow("PO")
        assert svc.has_active_workflow("PR")


class TestAssignWorkflow:
    def test_seats_at_step_one(self, offices, endorsers, clock):
        actor = endorsers["MBO"]
        tx = _unrouted("PR", actor, clock)
        assert tx.workflow_id is None
        seed_service.seed_actions_taken()
        seed_service.seed_workflows()
        clock.advance(minutes=5)

        workflow = WorkflowAssignmentService(clock=clock).assign_workflow(tx, actor)

        assert workflow.category == "PR"
        assert tx.workflow_id == workflow.id
        assert tx.current_step.step_order == 1
        assert tx.current_office_id == offices["MBO"].id
        assert tx.current_user_id == actor.id
        assert as_utc(tx.received_at) == clock()

    def test_no_active_workflow_leaves_transaction_untouched(self, offices, make_user, clock):
        actor = make_user("MBO", "Endorser")
        tx = _unrouted("PR", actor, clock)

        with pytest.raises(NoActiveWorkflow, match="PR"):
            WorkflowAssignmentService(clock=clock).assign_workflow(tx, actor)

        assert tx.workflow_id is None
        assert tx.current_step_id is None
        assert tx.current_office_id is None
        assert tx.received_at is None

    def test_no_active_workflow_message(self):
        assert str(NoActiveWorkflow("VCH")) == "No active workflow found for category: VCH"
        assert isinstance(NoActiveWorkflow("VCH"), ValidationError)


class TestWorkflowPreview:
    def test_pr_preview(self, workflows):
        preview = WorkflowAssignmentService().get_workflow_preview("PR")

        assert preview["workflow_id"] == workflows["PR"].id
        assert preview["total_steps"] == 5
        assert preview["total_expected_days"] == 11
        assert [s["office_abbreviation"] for s in preview["steps"]] == [
            "MBO", "MMO", "BAC", "MMO-PO", "BAC",
        ]
        assert [s["is_final_step"] for s in preview["steps"]] == [False] * 4 + [True]

    def test_none_without_workflow(self, offices):
        assert WorkflowAssignmentService().get_workflow_preview("VCH") is None
