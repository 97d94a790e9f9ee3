"""
Procurement Routing Engine
Overdue sweep.

Finds In Progress transactions whose current step ETA has passed and
notifies the current holder plus all Administrators. Each transaction is
notified at most once per renotify window (``OPTS_OVERDUE_RENOTIFY_HOURS``).

Run from cron via ``flask opts check-overdue``.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import current_app, has_app_context
from sqlalchemy import or_

from opts.core.clock import resolve_clock
from opts.models import db
from opts.models.transaction import STATUS_IN_PROGRESS, Transaction
from opts.services.eta import EtaCalculator
from opts.services.notification import NotificationService

logger = logging.getLogger(__name__)

DEFAULT_RENOTIFY_HOURS = 24


def _renotify_hours() -> int:
    if has_app_context():
        return current_app.config.get("OPTS_OVERDUE_RENOTIFY_HOURS", DEFAULT_RENOTIFY_HOURS)
    return DEFAULT_RENOTIFY_HOURS


def check_overdue_transactions(clock=None) -> int:
    """Notify on overdue transactions.

    Returns:
        Number of transactions notified.
    """
    clock = resolve_clock(clock)
    now = clock()
    cutoff = now - timedelta(hours=_renotify_hours())
    eta = EtaCalculator(clock=clock)

    candidates = (
        Transaction.query_active()
        .filter(
            Transaction.status == STATUS_IN_PROGRESS,
            Transaction.current_step_id.isnot(None),
            or_(
                Transaction.last_overdue_notified_at.is_(None),
                Transaction.last_overdue_notified_at <= cutoff,
            ),
        )
        .order_by(Transaction.id)
        .all()
    )

    notified = 0
    for tx in candidates:
        delay_days = eta.get_delay_days(tx)
        if delay_days <= 0:
            continue

        try:
            tx.last_overdue_notified_at = now
            NotificationService.notify_overdue(tx, delay_days)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        notified += 1
        logger.info(
            "Overdue notice sent for transaction %s (%s business days late)", tx.id, delay_days,
            extra={"transaction_id": tx.id, "event_type": "overdue_notified"},
        )

    logger.info("Overdue sweep finished: %s transaction(s) notified", notified)
    return notified
