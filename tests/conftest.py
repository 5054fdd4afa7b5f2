"""
conftest.py — Shared pytest fixtures for the Nexora analytics test suite.

Database fixtures run against an in-memory SQLite engine (``StaticPool`` so
every session and the TestClient's worker threads share one connection).
Time is frozen at ``NOW`` everywhere the code accepts a clock.

Seeded tenant (4w window = 2026-09-21 12:00 .. 2026-10-19 12:00 UTC):

    Alpha Works   owner u-owner; manager u-manager; members u-member, u-multi
                  10 live in-range tasks: 5 done, 2 in progress, 1 overdue,
                  2 pending (one of them wholly unassigned)
    Beta Labs     owner u-multi; 2 open tasks
    Gamma Depot   owner u-solo; no projects
    Closed Site   soft-deleted, u-owner still holds an owner membership
    u-outsider    no memberships at all
"""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nexora.db import Base, get_db
from nexora.models.models import Facility, Project, Task, User, UserFacility
from nexora.services.analytics.aggregator import AnalyticsAggregator
from nexora.services.analytics.cache import ReportCache
from nexora.services.analytics.data_access import AnalyticsDataSource
from nexora.services.analytics.export import ExportService


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def at(month: int, day: int, hour: int = 9) -> datetime:
    return datetime(2026, month, day, hour, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

def _users():
    return [
        User(id="u-owner", firebase_uid="fb-owner", email="olivia@nexora.dev", first_name="Olivia", last_name="Owner"),
        User(id="u-manager", firebase_uid="fb-manager", email="manny@nexora.dev", first_name="Manny", last_name="Manager"),
        User(id="u-member", firebase_uid="fb-mia", email="mia@nexora.dev", first_name="Mia", last_name="Member"),
        User(id="u-multi", firebase_uid="fb-max", email="max@nexora.dev", first_name="Max", last_name="Multi"),
        User(id="u-solo", firebase_uid="fb-solo", email="sol@nexora.dev", display_name="Sol Solo"),
        User(id="u-outsider", firebase_uid="fb-oscar", email="oscar@nexora.dev", first_name="Oscar", last_name="Outsider"),
    ]


def _facilities():
    return [
        Facility(id="f-alpha", name="Alpha Works", owner_id="u-owner",
                 members=["u-owner", "u-manager", "u-member", "u-multi"], created_at=at(7, 1)),
        Facility(id="f-beta", name="Beta Labs", owner_id="u-multi", members=["u-multi"], created_at=at(7, 2)),
        Facility(id="f-gamma", name="Gamma Depot", owner_id="u-solo", members=["u-solo"], created_at=at(7, 3)),
        Facility(id="f-closed", name="Closed Site", owner_id="u-owner", members=["u-owner"],
                 created_at=at(7, 4), deleted_at=at(10, 1)),
    ]


def _memberships():
    rows = [
        ("m1", "u-owner", "f-alpha", "owner"),
        ("m2", "u-manager", "f-alpha", "manager"),
        ("m3", "u-member", "f-alpha", "member"),
        ("m4", "u-multi", "f-alpha", "member"),
        ("m5", "u-multi", "f-beta", "owner"),
        ("m6", "u-solo", "f-gamma", "owner"),
        ("m7", "u-owner", "f-closed", "owner"),
    ]
    return [
        UserFacility(id=mid, user_id=uid, facility_id=fid, role=role, created_at=at(8, i + 1))
        for i, (mid, uid, fid, role) in enumerate(rows)
    ]


def _projects():
    return [
        Project(id="p-web", facility_id="f-alpha", name="Website Relaunch", assignees=["u-member"], created_at=at(7, 10)),
        Project(id="p-ops", facility_id="f-alpha", name="Ops Runbook", assignees=[], created_at=at(7, 11)),
        Project(id="p-old", facility_id="f-alpha", name="Legacy Portal", assignees=[], archived=True, created_at=at(7, 12)),
        Project(id="p-beta", facility_id="f-beta", name="Beta Research", assignees=[], created_at=at(7, 13)),
    ]


def _task(tid, project_id, status, created, updated=None, due=None, assignee_id=None, assignee_ids=None, deleted=None):
    return Task(
        id=tid,
        project_id=project_id,
        title=f"Task {tid}",
        status=status,
        assignee_id=assignee_id,
        assignee_ids=assignee_ids,
        created_at=created,
        updated_at=updated or created,
        due_date=due,
        deleted_at=deleted,
    )


def _tasks():
    return [
        # Alpha, in range
        _task("t01", "p-web", "done", at(10, 1), at(10, 10), assignee_id="u-member"),
        _task("t02", "p-web", "done", at(10, 2), at(10, 10), assignee_id="u-member"),
        _task("t03", "p-web", "completed", at(10, 3), at(10, 10), assignee_id="u-member"),
        _task("t04", "p-web", "done", at(10, 4), at(10, 10), assignee_id="u-manager"),
        _task("t05", "p-web", "done", at(10, 5), at(10, 10), assignee_ids=["u-owner"]),
        _task("t06", "p-web", "in-progress", at(10, 6), due=at(11, 15), assignee_id="fb-mia"),
        _task("t07", "p-web", "review", at(10, 7), due=at(11, 20), assignee_id="u-manager"),
        _task("t08", "p-web", "todo", at(9, 30), due=at(10, 10), assignee_id="u-multi"),
        _task("t09", "p-web", "todo", at(10, 9)),
        _task("t10", "p-ops", "todo", at(10, 11), due=at(12, 1)),
        # Alpha, excluded or out of range
        _task("t11", "p-web", "todo", at(10, 12), assignee_id="u-member", deleted=at(10, 13)),
        _task("t12", "p-old", "todo", at(10, 12), assignee_id="u-member"),
        _task("t13", "p-web", "done", at(7, 1), at(8, 1), assignee_id="u-manager"),
        _task("t14", "p-web", "done", at(9, 1), at(9, 5), assignee_id="u-member"),
        # Beta
        _task("b01", "p-beta", "in_progress", at(10, 14), due=at(10, 22), assignee_id="u-multi"),
        _task("b02", "p-beta", "todo", at(10, 15), assignee_id="u-multi"),
    ]


def seed_tenant(session):
    for group in (_users(), _facilities(), _memberships(), _projects(), _tasks()):
        session.add_all(group)
        session.flush()
    session.commit()


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seeded(db):
    seed_tenant(db)
    return db


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def source(seeded):
    return AnalyticsDataSource(seeded)


@pytest.fixture
def cache():
    return ReportCache(ttl_seconds=60)


@pytest.fixture
def aggregator(source, cache):
    return AnalyticsAggregator(source, cache, clock=lambda: NOW)


@pytest.fixture
def exporter(tmp_path):
    return ExportService(str(tmp_path / "exports"), base_url="http://testserver", clock=lambda: NOW)


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def client(seeded, exporter):
    from nexora.main import app
    from nexora.routes.analytics import get_clock, get_export_service

    app.dependency_overrides[get_db] = lambda: seeded
    app.dependency_overrides[get_clock] = lambda: (lambda: NOW)
    app.dependency_overrides[get_export_service] = lambda: exporter
    app.state.report_cache = ReportCache(ttl_seconds=60)
    app.state.limiter.reset()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(subject: str) -> dict:
    from nexora.auth.security import create_access_token
    return {"Authorization": f"Bearer {create_access_token(subject)}"}
