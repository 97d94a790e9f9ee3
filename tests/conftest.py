"""
Shared pytest fixtures for the routing engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - clock: steppable clock, starts Monday 2026-02-09 09:00 UTC
    - offices: standard offices keyed by abbreviation
    - make_user: user factory (office abbreviation + role names)
    - workflows: standard PR / PO / VCH workflows keyed by category
    - endorsers / admin: routing users
    - new_transaction: procurement + routed transaction factory
"""

from datetime import datetime, timedelta, timezone

import pytest

from opts import create_app
from opts.models import db as _db
from opts.models.directory import ROLE_ADMINISTRATOR, ROLE_ENDORSER, Office, Role, User, UserRole
from opts.models.workflow import Workflow
from opts.services import seed_service
from opts.services.transaction_service import create_procurement, create_transaction

MONDAY = datetime(2026, 2, 9, 9, 0, tzinfo=timezone.utc)


class SteppableClock:
    """Zero-argument clock whose reading tests move explicitly."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value):
        self.now = value
        return self.now


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def clock():
    return SteppableClock(MONDAY)


# ── Directory fixtures ───────────────────────────────────────────────────


@pytest.fixture()
def offices():
    """Standard offices (and routing roles), keyed by abbreviation."""
    seed_service.seed_directory()
    _db.session.commit()
    return {o.abbreviation: o for o in Office.query.all()}


_seq = iter(range(1, 99999))


@pytest.fixture()
def make_user(offices):
    """Factory: ``make_user("MBO", "Endorser")`` → committed User."""

    def _make(office_abbreviation=None, *role_names, name=None):
        n = next(_seq)
        office = offices.get(office_abbreviation) if office_abbreviation else None
        user = User(
            name=name or f"User {n}",
            email=f"user{n}@opts.test",
            office_id=office.id if office else None,
        )
        _db.session.add(user)
        for role_name in role_names:
            role = Role.query.filter_by(name=role_name).first()
            _db.session.add(UserRole(user=user, role=role))
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def endorsers(offices, make_user):
    """One Endorser per standard office, keyed by abbreviation."""
    return {abbr: make_user(abbr, ROLE_ENDORSER, name=f"{abbr} Endorser") for abbr in offices}


@pytest.fixture()
def admin(make_user):
    return make_user(None, ROLE_ADMINISTRATOR, name="Admin")


# ── Workflow / transaction fixtures ──────────────────────────────────────


@pytest.fixture()
def workflows(offices):
    """Standard PR / PO / VCH workflows, keyed by category."""
    seed_service.seed_actions_taken()
    _db.session.commit()
    seed_service.seed_workflows()
    return {w.category: w for w in Workflow.query.all()}


@pytest.fixture()
def new_transaction(workflows, endorsers, clock):
    """Factory: create a procurement (or reuse one) and a routed transaction.

    PR creators sit in MBO, PO creators in BAC, VCH creators in MBO, matching
    step 1 of the standard workflows. Without an explicit procurement, a new
    one is created together with the earlier documents of the chain, so
    ``new_transaction("VCH")`` also creates its PR and PO.
    """
    creators = {"PR": "MBO", "PO": "BAC", "VCH": "MBO"}
    chain = ("PR", "PO", "VCH")

    def _make(category="PR", procurement=None, reference_number=None):
        creator = endorsers[creators[category]]
        if procurement is None:
            procurement = create_procurement("Office supplies", creator)
            for earlier in chain[:chain.index(category)]:
                create_transaction(procurement, earlier, endorsers[creators[earlier]], clock=clock)
        return create_transaction(
            procurement, category, creator,
            reference_number=reference_number, clock=clock,
        )

    return _make
