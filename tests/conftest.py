"""
Shared pytest fixtures for the Deed Workflow Service test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - actors: one Actor per role
    - sale_deed_fields: a complete sale-deed fields bag
    - submitted_form: a sale-deed form in ``submitted``
    - advance_through: callable that approves stages in order
"""

from datetime import datetime, timezone

import pytest

from deedflow import create_app
from deedflow.models import db as _db
from deedflow.services import workflow_engine, workflow_hooks
from deedflow.services.permission import Actor

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


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
        workflow_hooks.clear_hooks()
        yield
        workflow_hooks.clear_hooks()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def actors():
    """One actor per role, keyed by role name, plus the form owner."""
    return {
        "owner": Actor(id="user-1", role="user"),
        "other_user": Actor(id="user-2", role="user"),
        "agent": Actor(id="agent-1", role="agent"),
        "staff1": Actor(id="s1-anna", role="staff1"),
        "staff2": Actor(id="s2-bora", role="staff2"),
        "staff3": Actor(id="s3-cem", role="staff3"),
        "staff4": Actor(id="s4-deniz", role="staff4"),
        "staff5": Actor(id="s5-efe", role="staff5"),
        "admin": Actor(id="admin-1", role="admin"),
    }


@pytest.fixture()
def sale_deed_fields():
    return {
        "sellerName": "Ravi Kumar",
        "buyerName": "Meera Shah",
        "propertyValue": 40_000,
        "propertyAddress": "12 Lake Road",
    }


@pytest.fixture()
def submitted_form(sale_deed_fields, actors):
    """A sale-deed form freshly submitted by the owner."""
    return workflow_engine.submit_form(
        "sale-deed", actors["owner"].id, sale_deed_fields, now=T0,
    )


@pytest.fixture()
def advance_through(actors):
    """Approve ``stages`` in order for ``form_id`` and return the form.

    staff1 gets ``stampDuty=2450`` patched in on approval.
    """

    def _advance(form_id, *stages, now=T0):
        form = None
        for stage in stages:
            patches = {"stampDuty": 2450} if stage == "staff1" else None
            form = workflow_engine.advance(
                form_id, stage, "approve", actors[stage], f"{stage} ok", patches, now=now,
            )
        return form

    return _advance
