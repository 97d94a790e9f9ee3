"""
ETA / Delay Calculator

Derives schedule health for a transaction from its workflow step SLAs, the
time it was received at the current office and its action ledger. All
results are in business days (see ``opts.utils.business_days``).

Severity bands (configurable via Flask config):
    0 delay days                           → on_track
    1 .. OPTS_SEVERITY_WARNING_MAX_DAYS     → warning
    above                                  → overdue

Usage:
    eta = EtaCalculator(clock=clock)
    eta.get_delay_severity(tx)      # "warning"
    eta.annotate(tx)                # dict for list / detail views
"""

import logging
from datetime import datetime

from flask import current_app, has_app_context

from opts.core.clock import as_utc, resolve_clock
from opts.models.transaction import TERMINAL_STATUSES, TransactionAction
from opts.utils.business_days import add_business_days, business_days_between

logger = logging.getLogger(__name__)

SEVERITY_ON_TRACK = "on_track"
SEVERITY_WARNING = "warning"
SEVERITY_OVERDUE = "overdue"

DEFAULT_IDLE_THRESHOLD_DAYS = 2
DEFAULT_SEVERITY_WARNING_MAX_DAYS = 2


def _config_value(key, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


class EtaCalculator:
    """Read-only schedule projections for transactions."""

    def __init__(self, clock=None, idle_threshold_days=None, warning_max_days=None):
        self.clock = resolve_clock(clock)
        self.idle_threshold_days = (
            idle_threshold_days if idle_threshold_days is not None
            else _config_value("OPTS_IDLE_THRESHOLD_DAYS", DEFAULT_IDLE_THRESHOLD_DAYS)
        )
        self.warning_max_days = (
            warning_max_days if warning_max_days is not None
            else _config_value("OPTS_SEVERITY_WARNING_MAX_DAYS", DEFAULT_SEVERITY_WARNING_MAX_DAYS)
        )

    # ── Projections ──────────────────────────────────────────────────────

    def get_current_step_eta(self, tx) -> datetime | None:
        if tx.status in TERMINAL_STATUSES:
            return None
        step = tx.current_step
        if tx.received_at is None or step is None:
            return None
        return add_business_days(as_utc(tx.received_at), step.expected_days)

    def get_completion_eta(self, tx) -> datetime | None:
        """Remaining SLA budget across the current and later steps, projected from now."""
        if tx.status in TERMINAL_STATUSES:
            return None
        workflow = tx.workflow
        if workflow is None or tx.received_at is None:
            return None

        current_order = tx.current_step.step_order if tx.current_step is not None else 0
        remaining = [s for s in workflow.steps if s.step_order >= current_order]
        if not remaining:
            return None

        now = self.clock()
        total_days = sum(s.expected_days for s in remaining)
        spent = business_days_between(as_utc(tx.received_at), now)
        return add_business_days(now, max(0, total_days - spent))

    def get_delay_days(self, tx) -> int:
        eta = self.get_current_step_eta(tx)
        now = self.clock()
        if eta is None or now <= eta:
            return 0
        return business_days_between(eta, now)

    def get_days_at_current_step(self, tx) -> int:
        if tx.received_at is None:
            return 0
        return business_days_between(as_utc(tx.received_at), self.clock())

    # ── Health flags ─────────────────────────────────────────────────────

    def is_stagnant(self, tx) -> bool:
        """True when delayed, or when no ledger activity for the idle threshold."""
        if tx.status in TERMINAL_STATUSES:
            return False
        if self.get_delay_days(tx) > 0:
            return True

        last_action = (
            TransactionAction.query
            .filter_by(transaction_id=tx.id)
            .order_by(TransactionAction.created_at.desc(), TransactionAction.id.desc())
            .first()
        )
        if last_action is None:
            return False
        idle = business_days_between(as_utc(last_action.created_at), self.clock())
        return idle >= self.idle_threshold_days

    def get_delay_severity(self, tx) -> str:
        if tx.status in TERMINAL_STATUSES:
            return SEVERITY_ON_TRACK
        delay = self.get_delay_days(tx)
        if delay == 0:
            return SEVERITY_ON_TRACK
        if delay <= self.warning_max_days:
            return SEVERITY_WARNING
        return SEVERITY_OVERDUE

    def annotate(self, tx) -> dict:
        """All schedule fields for one transaction, ISO-formatted for display."""
        current_eta = self.get_current_step_eta(tx)
        completion_eta = self.get_completion_eta(tx)
        return {
            "eta_current_step": current_eta.isoformat() if current_eta else None,
            "eta_completion": completion_eta.isoformat() if completion_eta else None,
            "delay_days": self.get_delay_days(tx),
            "days_at_current_step": self.get_days_at_current_step(tx),
            "is_stagnant": self.is_stagnant(tx),
            "delay_severity": self.get_delay_severity(tx),
        }
