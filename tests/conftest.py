"""
Shared pytest fixtures for the Property Works test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - factory: helpers that insert users, interventions, assignments and quotes
    - manager / provider / second_provider / tenant: pre-created users
    - outsider: a manager of another team
"""

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from propworks import create_app
from propworks.models import db as _db
from propworks.models.auth import User
from propworks.models.intervention import (
    ConfirmationStatus,
    Intervention,
    InterventionAssignment,
    InterventionTimeSlot,
)
from propworks.models.property import Building, Lot, PropertyManager
from propworks.models.quote import Quote

TEAM_ID = 1


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


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
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


class Factory:
    """Direct-to-DB builders; every helper commits so services see the rows."""

    _seq = itertools.count(1)

    def user(self, role="provider", *, team_id=TEAM_ID, push_token=None, name=None):
        n = next(self._seq)
        u = User(
            team_id=team_id,
            email=f"{role}{n}@example.test",
            full_name=name or f"{role.title()} {n}",
            role=role,
            push_token=push_token,
        )
        _db.session.add(u)
        _db.session.commit()
        return u

    def building(self, *, team_id=TEAM_ID, name="Residence Les Tilleuls"):
        b = Building(team_id=team_id, name=name)
        _db.session.add(b)
        _db.session.commit()
        return b

    def lot(self, building=None, *, reference="A-101"):
        lot = Lot(building_id=building.id if building else None, reference=reference)
        _db.session.add(lot)
        _db.session.commit()
        return lot

    def property_manager(self, user, *, building=None, lot=None):
        pm = PropertyManager(
            user_id=user.id,
            building_id=building.id if building else None,
            lot_id=lot.id if lot else None,
        )
        _db.session.add(pm)
        _db.session.commit()
        return pm

    def intervention(self, status="pending", *, created_by=None, team_id=TEAM_ID,
                     title="Leaking kitchen tap", **fields):
        i = Intervention(
            team_id=team_id,
            title=title,
            status=status,
            created_by=created_by.id if created_by is not None else None,
            **fields,
        )
        _db.session.add(i)
        _db.session.commit()
        return i

    def assign(self, intervention, user, role=None, *, is_primary=False,
               requires_confirmation=False, confirmation_status=None,
               provider_instructions=None):
        a = InterventionAssignment(
            intervention_id=intervention.id,
            user_id=user.id,
            role=role or user.role,
            is_primary=is_primary,
            requires_confirmation=requires_confirmation,
            confirmation_status=confirmation_status or (
                ConfirmationStatus.PENDING.value if requires_confirmation
                else ConfirmationStatus.NOT_REQUIRED.value
            ),
            provider_instructions=provider_instructions,
        )
        _db.session.add(a)
        _db.session.commit()
        return a

    def quote(self, intervention, provider, status="pending", *, amount=Decimal("250.00")):
        q = Quote(
            intervention_id=intervention.id,
            provider_id=provider.id,
            status=status,
            amount=amount,
        )
        _db.session.add(q)
        _db.session.commit()
        return q

    def time_slot(self, intervention, *, provider=None, start=None, hours=2,
                  status="pending", proposed_by=None):
        start = start or datetime(2026, 11, 3, 9, 0, tzinfo=timezone.utc)
        slot = InterventionTimeSlot(
            intervention_id=intervention.id,
            provider_id=provider.id if provider is not None else None,
            start_time=start,
            end_time=start + timedelta(hours=hours),
            status=status,
            proposed_by=proposed_by.id if proposed_by is not None else None,
        )
        _db.session.add(slot)
        _db.session.commit()
        return slot


@pytest.fixture()
def factory():
    return Factory()


@pytest.fixture()
def manager(factory):
    return factory.user("manager")


@pytest.fixture()
def provider(factory):
    return factory.user("provider")


@pytest.fixture()
def second_provider(factory):
    return factory.user("provider")


@pytest.fixture()
def tenant(factory):
    return factory.user("tenant")


@pytest.fixture()
def outsider(factory):
    """A manager of another team."""
    return factory.user("manager", team_id=TEAM_ID + 1)


@pytest.fixture()
def dispatcher(app):
    """The app's notification dispatcher with counters reset."""
    d = app.extensions["notification_dispatcher"]
    d.processed = d.dropped = d.channel_failures = 0
    return d
