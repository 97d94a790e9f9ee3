"""
Procurement Routing Engine
Transaction domain models.

Models:
    - Procurement: the purchase a PR / PO / VCH chain belongs to
    - ProcurementStatusHistory: append-only procurement status log
    - Transaction: one routed document (PR, PO or VCH)
    - TransactionAction: append-only routing ledger
    - TransactionStatusHistory: append-only transaction status log

Routing fields on Transaction (workflow, current step / office / user,
received_at, endorsed_at) are written by the workflow assignment and
endorsement services only. A freshly endorsed transaction has
``received_at = NULL`` until the target office confirms receipt.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import validates

from opts.core.exceptions import ValidationError
from opts.models import db
from opts.models.soft_delete import SoftDeleteMixin
from opts.models.workflow import TRANSACTION_CATEGORIES

# ── Status constants ─────────────────────────────────────────────────────────

STATUS_CREATED = "Created"
STATUS_IN_PROGRESS = "In Progress"
STATUS_ON_HOLD = "On Hold"
STATUS_COMPLETED = "Completed"
STATUS_CANCELLED = "Cancelled"

TRANSACTION_STATUSES = (
    STATUS_CREATED,
    STATUS_IN_PROGRESS,
    STATUS_ON_HOLD,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
)
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_CANCELLED})

PROCUREMENT_STATUSES = (STATUS_CREATED, STATUS_IN_PROGRESS, STATUS_COMPLETED)

# Order of each target list is the order callers present choices in
TRANSACTION_TRANSITIONS = {
    STATUS_CREATED:     [STATUS_IN_PROGRESS],
    STATUS_IN_PROGRESS: [STATUS_COMPLETED, STATUS_ON_HOLD, STATUS_CANCELLED],
    STATUS_ON_HOLD:     [STATUS_IN_PROGRESS, STATUS_CANCELLED],
    STATUS_COMPLETED:   [],
    STATUS_CANCELLED:   [],
}


def validate_transaction_transition(old_status, new_status):
    """Return True if Transaction status transition is valid."""
    return new_status in TRANSACTION_TRANSITIONS.get(old_status, [])

# ── Ledger action types ──────────────────────────────────────────────────────

ACTION_ENDORSE = "endorse"
ACTION_RECEIVE = "receive"
ACTION_HOLD = "hold"
ACTION_RESUME = "resume"
ACTION_CANCEL = "cancel"
ACTION_COMPLETE = "complete"
ACTION_BYPASS = "bypass"

ACTION_TYPES = (
    ACTION_ENDORSE,
    ACTION_RECEIVE,
    ACTION_HOLD,
    ACTION_RESUME,
    ACTION_CANCEL,
    ACTION_COMPLETE,
    ACTION_BYPASS,
)


def _utcnow():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════
# PROCUREMENT
# ═══════════════════════════════════════════════════════════════
class Procurement(SoftDeleteMixin, db.Model):
    __tablename__ = "procurements"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=STATUS_CREATED)
    created_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    transactions = db.relationship(
        "Transaction", back_populates="procurement", lazy="dynamic",
        cascade="all",
    )
    status_history = db.relationship(
        "ProcurementStatusHistory", back_populates="procurement",
        order_by="ProcurementStatusHistory.id", cascade="all",
    )

    def active_transactions(self, category: str | None = None):
        """Query of non-deleted transactions, optionally filtered by category."""
        q = self.transactions.filter(Transaction.deleted_at.is_(None))
        if category:
            q = q.filter(Transaction.category == category)
        return q

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def __repr__(self):
        return f"<Procurement {self.id}: {self.status}>"


class ProcurementStatusHistory(db.Model):
    """Append-only log of procurement status changes."""

    __tablename__ = "procurement_status_history"

    id = db.Column(db.Integer, primary_key=True)
    procurement_id = db.Column(
        db.Integer, db.ForeignKey("procurements.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    old_status = db.Column(db.String(20), nullable=True)
    new_status = db.Column(db.String(20), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    changed_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    procurement = db.relationship("Procurement", back_populates="status_history")

    def to_dict(self):
        return {
            "id": self.id,
            "procurement_id": self.procurement_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "reason": self.reason,
            "changed_by_user_id": self.changed_by_user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# TRANSACTION
# ═══════════════════════════════════════════════════════════════
class Transaction(SoftDeleteMixin, db.Model):
    """A routed procurement document."""

    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("idx_tx_status_office", "status", "current_office_id"),
        db.Index("idx_tx_procurement_category", "procurement_id", "category"),
    )

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(10), nullable=False, comment="PR | PO | VCH (immutable)")
    reference_number = db.Column(db.String(100), nullable=True, index=True)
    status = db.Column(db.String(20), nullable=False, default=STATUS_CREATED)

    procurement_id = db.Column(
        db.Integer, db.ForeignKey("procurements.id", ondelete="CASCADE"), nullable=False, index=True,
    )

    # Routing fields
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    current_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="SET NULL"), nullable=True,
    )
    current_office_id = db.Column(
        db.Integer, db.ForeignKey("offices.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    current_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    endorsed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_overdue_notified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    procurement = db.relationship("Procurement", back_populates="transactions")
    workflow = db.relationship("Workflow", back_populates="transactions")
    current_step = db.relationship("WorkflowStep", foreign_keys=[current_step_id])
    current_office = db.relationship("Office", foreign_keys=[current_office_id])
    current_user = db.relationship("User", foreign_keys=[current_user_id])
    created_by = db.relationship("User", foreign_keys=[created_by_user_id])

    actions = db.relationship(
        "TransactionAction",
        back_populates="transaction",
        order_by="TransactionAction.id",
        cascade="all",
    )
    status_history = db.relationship(
        "TransactionStatusHistory",
        back_populates="transaction",
        order_by="TransactionStatusHistory.id",
        cascade="all",
    )

    @validates("category")
    def _validate_category(self, key, value):
        if value not in TRANSACTION_CATEGORIES:
            raise ValidationError(
                f"Invalid transaction category: {value}",
                details={"category": f"must be one of {', '.join(TRANSACTION_CATEGORIES)}"},
            )
        if self.category is not None and value != self.category:
            raise ValidationError(
                "Transaction category cannot be changed after creation",
                details={"category": "immutable"},
            )
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_received(self) -> bool:
        return self.received_at is not None

    def latest_action(self):
        """Most recent ledger row, or None."""
        return (
            TransactionAction.query
            .filter_by(transaction_id=self.id)
            .order_by(TransactionAction.created_at.desc(), TransactionAction.id.desc())
            .first()
        )

    def to_dict(self):
        return {
            "id": self.id,
            "category": self.category,
            "reference_number": self.reference_number,
            "status": self.status,
            "procurement_id": self.procurement_id,
            "workflow_id": self.workflow_id,
            "current_step_id": self.current_step_id,
            "current_office_id": self.current_office_id,
            "current_user_id": self.current_user_id,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "endorsed_at": self.endorsed_at.isoformat() if self.endorsed_at else None,
            "created_by_user_id": self.created_by_user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def __repr__(self):
        return f"<Transaction {self.id}: {self.category} {self.status}>"


class TransactionAction(db.Model):
    """
    Append-only routing ledger.

    One row per engine operation. Rows are never updated or deleted except
    by cascade from their transaction.
    """

    __tablename__ = "transaction_actions"
    __table_args__ = (
        db.Index("idx_tx_action_tx_created", "transaction_id", "created_at"),
        db.Index("idx_tx_action_to_office", "to_office_id", "action_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(
        db.Integer, db.ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False,
    )
    action_type = db.Column(db.String(20), nullable=False, comment="endorse | receive | hold | …")
    action_taken_id = db.Column(
        db.Integer, db.ForeignKey("action_taken.id", ondelete="SET NULL"), nullable=True,
    )
    from_office_id = db.Column(
        db.Integer, db.ForeignKey("offices.id", ondelete="SET NULL"), nullable=True,
    )
    to_office_id = db.Column(
        db.Integer, db.ForeignKey("offices.id", ondelete="SET NULL"), nullable=True,
    )
    from_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    to_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    workflow_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="SET NULL"), nullable=True,
    )
    is_out_of_workflow = db.Column(db.Boolean, default=False, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    transaction = db.relationship("Transaction", back_populates="actions")
    action_taken = db.relationship("ActionTaken")
    from_office = db.relationship("Office", foreign_keys=[from_office_id])
    to_office = db.relationship("Office", foreign_keys=[to_office_id])
    from_user = db.relationship("User", foreign_keys=[from_user_id])
    to_user = db.relationship("User", foreign_keys=[to_user_id])
    workflow_step = db.relationship("WorkflowStep")

    def to_dict(self):
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "action_type": self.action_type,
            "action_taken_id": self.action_taken_id,
            "from_office_id": self.from_office_id,
            "to_office_id": self.to_office_id,
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "workflow_step_id": self.workflow_step_id,
            "is_out_of_workflow": self.is_out_of_workflow,
            "notes": self.notes,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<TransactionAction {self.id}: tx={self.transaction_id} {self.action_type}>"


class TransactionStatusHistory(db.Model):
    """Append-only log of transaction status changes."""

    __tablename__ = "transaction_status_history"

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(
        db.Integer, db.ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    old_status = db.Column(db.String(20), nullable=False)
    new_status = db.Column(db.String(20), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    changed_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    transaction = db.relationship("Transaction", back_populates="status_history")

    def to_dict(self):
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "reason": self.reason,
            "changed_by_user_id": self.changed_by_user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
