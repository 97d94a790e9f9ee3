"""
Timeline projection.

Read-only views of a transaction's route for detail pages: one entry per
workflow step (completed / current / upcoming) and the ledger history.
"""

import logging

from opts.core.clock import as_utc, resolve_clock
from opts.models import db
from opts.models.directory import User
from opts.models.transaction import (
    ACTION_COMPLETE,
    ACTION_ENDORSE,
    ACTION_RECEIVE,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    TransactionAction,
)
from opts.services.eta import EtaCalculator
from opts.utils.business_days import add_business_days, business_days_between

logger = logging.getLogger(__name__)

STEP_COMPLETED = "completed"
STEP_CURRENT = "current"
STEP_UPCOMING = "upcoming"
STEP_CANCELLED = "cancelled"


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def _office_ref(office):
    if office is None:
        return None
    return {"id": office.id, "name": office.name, "abbreviation": office.abbreviation}


def _user_ref(user):
    if user is None:
        return None
    return {"id": user.id, "name": user.name}


class TimelineService:
    """Builds step-by-step route views for one transaction."""

    def __init__(self, clock=None, eta_calculator=None):
        self.clock = resolve_clock(clock)
        self.eta = eta_calculator or EtaCalculator(clock=self.clock)

    @staticmethod
    def _empty_timeline():
        return {
            "steps": [],
            "progress_percentage": 0,
            "total_steps": 0,
            "completed_steps": 0,
            "is_out_of_workflow": False,
        }

    @staticmethod
    def _ledger(tx):
        return (
            TransactionAction.query
            .filter_by(transaction_id=tx.id)
            .order_by(TransactionAction.created_at, TransactionAction.id)
            .all()
        )

    @staticmethod
    def _step_completion(step, tx, ledger):
        """(completed_at, completed_by, actual_days) for a step the transaction has left."""
        departures = [
            a for a in ledger
            if a.workflow_step_id == step.id and a.action_type in (ACTION_ENDORSE, ACTION_COMPLETE)
        ]
        if not departures:
            return None, None, None
        departure = departures[-1]
        left_at = as_utc(departure.created_at)

        # Arrival: latest receipt at this office before leaving; step 1 starts at creation
        arrivals = [
            a for a in ledger
            if a.action_type == ACTION_RECEIVE
            and a.to_office_id == step.office_id
            and as_utc(a.created_at) <= left_at
        ]
        arrived_at = as_utc(arrivals[-1].created_at) if arrivals else as_utc(tx.created_at)
        actual_days = business_days_between(arrived_at, left_at) if arrived_at else None
        return left_at, departure.from_user, actual_days

    def get_timeline(self, tx) -> dict:
        workflow = tx.workflow
        if workflow is None:
            return self._empty_timeline()

        steps = list(workflow.steps)
        ledger = self._ledger(tx)
        current_order = tx.current_step.step_order if tx.current_step is not None else 0

        current_eta = self.eta.get_current_step_eta(tx)
        running_eta = current_eta or self.clock()

        entries = []
        completed = 0
        for step in steps:
            entry = {
                "step_order": step.step_order,
                "office": _office_ref(step.office),
                "expected_days": step.expected_days,
                "is_final_step": step.is_final_step,
            }
            finished = tx.status == STATUS_COMPLETED or step.step_order < current_order

            if finished:
                completed_at, completed_by, actual_days = self._step_completion(step, tx, ledger)
                entry.update({
                    "status": STEP_COMPLETED,
                    "completed_at": _iso(completed_at),
                    "completed_by": _user_ref(completed_by),
                    "actual_days": actual_days,
                })
                completed += 1
            elif tx.status == STATUS_CANCELLED:
                entry["status"] = STEP_CANCELLED
            elif step.step_order == current_order:
                holder = db.session.get(User, tx.current_user_id) if tx.current_user_id else None
                entry.update({
                    "status": STEP_CURRENT,
                    "current_holder": _user_ref(holder),
                    "days_at_step": self.eta.get_days_at_current_step(tx),
                    "eta": _iso(current_eta),
                    "is_overdue": self.eta.get_delay_days(tx) > 0,
                })
            else:
                running_eta = add_business_days(running_eta, step.expected_days)
                entry.update({
                    "status": STEP_UPCOMING,
                    "estimated_arrival": running_eta.date().isoformat(),
                })
            entries.append(entry)

        total = len(steps)
        return {
            "steps": entries,
            "progress_percentage": round(completed / total * 100) if total else 0,
            "total_steps": total,
            "completed_steps": completed,
            "is_out_of_workflow": any(a.is_out_of_workflow for a in ledger),
        }

    def get_action_history(self, tx) -> list[dict]:
        """Ledger rows, newest first, with display labels."""
        actions = (
            TransactionAction.query
            .filter_by(transaction_id=tx.id)
            .order_by(TransactionAction.created_at.desc(), TransactionAction.id.desc())
            .all()
        )
        return [
            {
                "id": a.id,
                "action_type": a.action_type,
                "from_user": _user_ref(a.from_user),
                "to_user": _user_ref(a.to_user),
                "from_office": _office_ref(a.from_office),
                "to_office": _office_ref(a.to_office),
                "action_taken": a.action_taken.description if a.action_taken else None,
                "notes": a.notes,
                "reason": a.reason,
                "is_out_of_workflow": a.is_out_of_workflow,
                "workflow_step_order": a.workflow_step.step_order if a.workflow_step else None,
                "created_at": _iso(a.created_at),
            }
            for a in actions
        ]
