"""
Reference data seeding.

Idempotent: offices and action-taken tags are matched by their natural key
(abbreviation / description) and only missing rows are inserted. Standard
workflows are created only for categories that have no workflow yet.
"""

import logging

from opts.models import db
from opts.models.directory import ROLE_ADMINISTRATOR, ROLE_ENDORSER, Office, Role
from opts.models.workflow import (
    CATEGORY_PO,
    CATEGORY_PR,
    CATEGORY_VCH,
    ActionTaken,
    Workflow,
)
from opts.services import workflow_service

logger = logging.getLogger(__name__)

DEFAULT_OFFICES = [
    ("Municipal Budget Office", "MBO"),
    ("Municipal Mayor's Office", "MMO"),
    ("Bids and Awards Committee", "BAC"),
    ("MMO - Procurement Office", "MMO-PO"),
    ("MMO - Property and Supply Management Division", "MMO-PSMD"),
    ("Municipal Accounting Office", "MACCO"),
    ("Municipal Treasurer Office", "MTO"),
]

DEFAULT_ROLES = [
    (ROLE_ADMINISTRATOR, "Full routing control, including hold / resume / cancel"),
    (ROLE_ENDORSER, "Endorses, receives and completes transactions at their office"),
]

DEFAULT_ACTIONS_TAKEN = [
    "Creation of Purchase Request",
    "Creation of Purchase Order",
    "Creation of Voucher",
    "For Obligation Request",
    "For Approval",
    "For BAC Meeting (Mode of Procurement)",
    "For Canvassing",
    "For Award",
    "To Complete P.R",
    "For Mayor's Signature",
    "For Supplier Signature",
    "Waiting For Delivery",
    "For Preparation of Check with Signature",
    "Check for Mayor's Signature",
    "For Disbursement and Completion of Voucher",
]

# (office abbreviation, expected business days, default action taken)
DEFAULT_WORKFLOWS = {
    CATEGORY_PR: (
        "Standard Purchase Request Workflow",
        [
            ("MBO", 2, "Creation of Purchase Request"),
            ("MMO", 2, "For Approval"),
            ("BAC", 3, "For BAC Meeting (Mode of Procurement)"),
            ("MMO-PO", 2, "For Canvassing"),
            ("BAC", 2, "To Complete P.R"),
        ],
    ),
    CATEGORY_PO: (
        "Standard Purchase Order Workflow",
        [
            ("BAC", 2, "Creation of Purchase Order"),
            ("MMO-PO", 2, "For Supplier Signature"),
            ("MMO-PSMD", 2, "Waiting For Delivery"),
        ],
    ),
    CATEGORY_VCH: (
        "Standard Voucher Workflow",
        [
            ("MBO", 2, "Creation of Voucher"),
            ("MACCO", 2, "For Obligation Request"),
            ("MMO", 2, "Check for Mayor's Signature"),
            ("MTO", 1, "For Preparation of Check with Signature"),
            ("MMO", 2, "Check for Mayor's Signature"),
            ("MTO", 1, "For Disbursement and Completion of Voucher"),
        ],
    ),
}


def seed_directory() -> int:
    """Insert missing offices and roles. Returns the number of rows added."""
    added = 0
    for name, abbreviation in DEFAULT_OFFICES:
        if Office.query.filter_by(abbreviation=abbreviation).first() is None:
            db.session.add(Office(name=name, abbreviation=abbreviation))
            added += 1
    for name, description in DEFAULT_ROLES:
        if Role.query.filter_by(name=name).first() is None:
            db.session.add(Role(name=name, description=description))
            added += 1
    db.session.flush()
    return added


def seed_actions_taken() -> int:
    added = 0
    for description in DEFAULT_ACTIONS_TAKEN:
        if ActionTaken.query.filter_by(description=description).first() is None:
            db.session.add(ActionTaken(description=description))
            added += 1
    db.session.flush()
    return added


def seed_workflows() -> int:
    """Create the standard workflow for every category that has none.

    Expects offices and action-taken tags to be seeded already.
    """
    offices = {o.abbreviation: o.id for o in Office.query.all()}
    actions = {a.description: a.id for a in ActionTaken.query.all()}

    created = 0
    for category, (name, steps) in DEFAULT_WORKFLOWS.items():
        if Workflow.query.filter_by(category=category).first() is not None:
            continue
        step_data = [
            {
                "office_id": offices.get(abbreviation),
                "expected_days": days,
                "action_taken_id": actions.get(action),
            }
            for abbreviation, days, action in steps
        ]
        workflow_service.create_with_steps({"category": category, "name": name}, step_data)
        created += 1
    return created


def seed_all() -> dict:
    """Seed every reference table. Commits."""
    try:
        counts = {"directory": seed_directory(), "actions_taken": seed_actions_taken()}
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    counts["workflows"] = seed_workflows()
    logger.info("Seed finished: %s", counts)
    return counts
