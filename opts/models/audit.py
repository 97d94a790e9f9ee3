"""
Procurement Routing Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for events that sit
      outside the routing ledger (soft deletes, workflow template edits).
"""

import json
from datetime import datetime, timezone

from opts.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"transaction", "workflow"}

AUDIT_ACTIONS = {
    "transaction.delete",
    "workflow.create",
    "workflow.update",
    "workflow.delete",
}


class AuditLog(db.Model):
    """
    Immutable audit trail.

    One row per action. ``diff_json`` carries an old→new snapshot or the
    state captured at the moment of the action.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="transaction | workflow",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(60), nullable=False,
        comment="transaction.delete | workflow.update | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    actor_user_id: int | None = None,
    diff: dict | None = None,
    timestamp: datetime | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if entity_type not in AUDIT_ENTITY_TYPES or action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit event: {entity_type}/{action}")
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    if timestamp is not None:
        log.timestamp = timestamp
    db.session.add(log)
    db.session.flush()
    return log
