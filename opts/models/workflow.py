"""
Procurement Routing Engine
Workflow template models.

Models:
    - ActionTaken: catalogue of "what was done" tags recorded on ledger rows
    - Workflow: an ordered office route for one transaction category
    - WorkflowStep: one office stop on a workflow, with its SLA in business days

Several workflows may be active for a category at once; routing always uses
the newest (see ``WorkflowAssignmentService.get_active_workflow``). An office
may appear more than once on the same workflow.
"""

from datetime import datetime, timezone

from opts.models import db

# ── Constants ────────────────────────────────────────────────────────────────

CATEGORY_PR = "PR"
CATEGORY_PO = "PO"
CATEGORY_VCH = "VCH"
TRANSACTION_CATEGORIES = (CATEGORY_PR, CATEGORY_PO, CATEGORY_VCH)

CATEGORY_LABELS = {
    CATEGORY_PR: "Purchase Request",
    CATEGORY_PO: "Purchase Order",
    CATEGORY_VCH: "Voucher",
}


class ActionTaken(db.Model):
    __tablename__ = "action_taken"

    id = db.Column(db.Integer, primary_key=True)
    description = db.Column(db.String(200), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {"id": self.id, "description": self.description, "is_active": self.is_active}

    def __repr__(self):
        return f"<ActionTaken {self.id}: {self.description}>"


class Workflow(db.Model):
    """Routing template for one category."""

    __tablename__ = "workflows"
    __table_args__ = (
        db.Index("idx_workflow_category_active", "category", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(10), nullable=False, comment="PR | PO | VCH")
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    steps = db.relationship(
        "WorkflowStep",
        back_populates="workflow",
        order_by="WorkflowStep.step_order",
        cascade="all",
    )
    transactions = db.relationship("Transaction", back_populates="workflow", lazy="dynamic")

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def total_expected_days(self) -> int:
        return sum(step.expected_days for step in self.steps)

    def get_step(self, step_order: int):
        """Return the step at *step_order*, or None."""
        for step in self.steps:
            if step.step_order == step_order:
                return step
        return None

    def get_first_step(self):
        return self.get_step(1)

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "category": self.category,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "total_steps": self.total_steps,
            "total_expected_days": self.total_expected_days,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<Workflow {self.id}: {self.category} {self.name}>"


class WorkflowStep(db.Model):
    """One office stop on a workflow."""

    __tablename__ = "workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "step_order", name="uq_workflow_step_order"),
        db.CheckConstraint("expected_days > 0", name="ck_workflow_step_expected_days"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    office_id = db.Column(db.Integer, db.ForeignKey("offices.id"), nullable=False)
    step_order = db.Column(db.Integer, nullable=False, comment="1-based position in the route")
    expected_days = db.Column(db.Integer, nullable=False, comment="SLA in business days")
    is_final_step = db.Column(db.Boolean, default=False, nullable=False)
    action_taken_id = db.Column(
        db.Integer, db.ForeignKey("action_taken.id", ondelete="SET NULL"), nullable=True,
    )

    workflow = db.relationship("Workflow", back_populates="steps")
    office = db.relationship("Office")
    action_taken = db.relationship("ActionTaken")

    def get_next_step(self):
        return self.workflow.get_step(self.step_order + 1) if self.workflow else None

    def get_previous_step(self):
        return self.workflow.get_step(self.step_order - 1) if self.workflow else None

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "office_id": self.office_id,
            "office_name": self.office.name if self.office else None,
            "office_abbreviation": self.office.abbreviation if self.office else None,
            "step_order": self.step_order,
            "expected_days": self.expected_days,
            "is_final_step": self.is_final_step,
            "action_taken_id": self.action_taken_id,
        }

    def __repr__(self):
        return f"<WorkflowStep {self.id}: wf={self.workflow_id} #{self.step_order}>"
