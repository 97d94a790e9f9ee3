"""
Soft Delete Mixin

Adds a `deleted_at` timestamp column and query helpers for soft delete.
Models that include this mixin are marked as deleted rather than
physically removed, so the routing ledger of a deleted transaction stays
readable.

Usage:
    class Transaction(SoftDeleteMixin, db.Model):
        ...

    tx.soft_delete()
    db.session.commit()

    Transaction.query_active().all()   # excludes deleted
    Transaction.query.all()            # includes deleted
"""

from opts.core.clock import resolve_clock
from opts.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self, clock=None):
        """Mark this record as deleted."""
        self.deleted_at = resolve_clock(clock)()

    def restore(self):
        """Restore a soft-deleted record."""
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))

    @classmethod
    def query_deleted(cls):
        """Return only soft-deleted records."""
        return cls.query.filter(cls.deleted_at.isnot(None))
