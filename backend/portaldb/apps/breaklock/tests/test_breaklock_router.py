from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from portaldb.apps.accounts import models as account_models
from portaldb.apps.breaklock import router as breaklock_router
from portaldb.apps.breaklock import schemas as breaklock_schemas
from portaldb.apps.breaklock import services as breaklock_services
from portaldb.database import get_db, get_read_db
from portaldb.main import app
from portaldb.security import get_current_active_user


def _create_org_and_users(db, code: str = "RTR01"):
    org = account_models.Org(code=code, name=f"Router {code}", time_zone="UTC")
    db.add(org)
    db.commit()
    admin = account_models.User(
        org_id=org.id,
        email=f"admin-{code.lower()}@example.com",
        full_name="Admin Router",
        role=account_models.AccountRole.ORG_ADMIN,
    )
    employees = [
        account_models.User(org_id=org.id, email=f"emp{idx}-{code.lower()}@example.com", full_name=f"Emp {idx}")
        for idx in range(3)
    ]
    db.add_all([admin, *employees])
    db.commit()
    return org, admin, employees


def test_start_endpoint_reports_already_active_as_soft_success(db_session):
    _org, _admin, (alice, *_rest) = _create_org_and_users(db_session)

    first = breaklock_router.start_break(payload=None, db=db_session, current_user=alice)
    second = breaklock_router.start_break(payload=None, db=db_session, current_user=alice)

    assert first.ok is True and first.already_active is False
    assert second.ok is True and second.already_active is True
    assert second.break_.id == first.break_.id
    assert 0 < second.break_.remaining_seconds <= breaklock_services.DEFAULT_DURATION_MINUTES * 60


def test_start_endpoint_maps_capacity_reached_to_409(db_session):
    org, admin, employees = _create_org_and_users(db_session)
    breaklock_router.update_capacity(
        payload=breaklock_schemas.CapacityUpdate(capacity=1),
        db=db_session,
        current_user=admin,
    )
    breaklock_router.start_break(payload=None, db=db_session, current_user=employees[0])

    with pytest.raises(HTTPException) as excinfo:
        breaklock_router.start_break(payload=None, db=db_session, current_user=employees[1])

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["code"] == "capacity_reached"
    assert excinfo.value.detail["next_free_at"]


def test_end_endpoint_without_break_is_409(db_session):
    _org, _admin, employees = _create_org_and_users(db_session)

    with pytest.raises(HTTPException) as excinfo:
        breaklock_router.end_my_break(db=db_session, current_user=employees[0])

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["code"] == "not_active"


def test_override_endpoint_is_admin_only(db_session):
    _org, admin, employees = _create_org_and_users(db_session)
    started = breaklock_router.start_break(payload=None, db=db_session, current_user=employees[0])

    with pytest.raises(HTTPException) as excinfo:
        breaklock_router.override_end_break(break_id=started.break_.id, db=db_session, current_user=employees[1])
    assert excinfo.value.status_code == 403

    ended = breaklock_router.override_end_break(break_id=started.break_.id, db=db_session, current_user=admin)
    assert ended.break_.end_reason == "ADMIN_OVERRIDE"
    assert ended.break_.is_active is False

    with pytest.raises(HTTPException) as excinfo:
        breaklock_router.override_end_break(break_id=started.break_.id, db=db_session, current_user=admin)
    assert excinfo.value.status_code == 404


def test_status_endpoint_shows_pool_and_my_break(db_session):
    _org, _admin, employees = _create_org_and_users(db_session)
    breaklock_router.start_break(
        payload=breaklock_schemas.StartBreakRequest(duration_minutes=15),
        db=db_session,
        current_user=employees[0],
    )

    mine = breaklock_router.read_status(db=db_session, current_user=employees[0])
    theirs = breaklock_router.read_status(db=db_session, current_user=employees[1])

    assert mine.active_count == 1
    assert mine.my_break is not None
    assert mine.my_break.remaining_seconds <= 15 * 60
    assert theirs.my_break is None
    assert theirs.available == mine.capacity - 1


@pytest.fixture()
def acting():
    """Holds the user the overridden auth dependency returns."""
    return {}


@pytest.fixture()
def client(file_session_factory, acting):
    def override_get_db():
        db = file_session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_read_db] = override_get_db
    app.dependency_overrides[get_current_active_user] = lambda: acting["user"]
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


def _seed_http(session_factory):
    db = session_factory()
    try:
        return _create_org_and_users(db, code="HTTP01")
    finally:
        db.close()


def test_http_start_end_and_capacity_flow(client, acting, file_session_factory):
    _org, admin, employees = _seed_http(file_session_factory)

    acting["user"] = admin
    response = client.put("/breaklock/capacity", json={"capacity": 1})
    assert response.status_code == 200
    assert response.json()["capacity"] == 1

    response = client.put("/breaklock/capacity", json={"capacity": 0})
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "invalid_value"

    acting["user"] = employees[0]
    response = client.post("/breaklock/start", json={"duration_minutes": 5})
    assert response.status_code == 200
    body = response.json()
    assert body["already_active"] is False
    assert body["break"]["subject_id"] == employees[0].id

    response = client.put("/breaklock/capacity", json={"capacity": 4})
    assert response.status_code == 403

    acting["user"] = employees[1]
    response = client.post("/breaklock/start")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "capacity_reached"

    active = client.get("/breaklock/active").json()
    assert [item["subject_id"] for item in active] == [employees[0].id]

    acting["user"] = employees[0]
    response = client.post("/breaklock/end")
    assert response.status_code == 200
    assert response.json()["break"]["end_reason"] == "MANUAL"

    board = client.get("/breaklock/today").json()
    assert board["total"] == 1
    assert board["people"][0]["label"] == employees[0].email


def test_http_tick_requires_shared_secret(client, file_session_factory, monkeypatch):
    _org, _admin, employees = _seed_http(file_session_factory)
    db = file_session_factory()
    try:
        breaklock_services.start_break(
            db,
            org_id=employees[0].org_id,
            subject_id=employees[0].id,
            label=employees[0].display_label,
            duration=timedelta(minutes=1),
            now=datetime.now(timezone.utc) - timedelta(minutes=5),
        )
    finally:
        db.close()

    monkeypatch.delenv("BREAKLOCK_TICK_SECRET", raising=False)
    assert client.post("/breaklock/tick").status_code == 503

    monkeypatch.setenv("BREAKLOCK_TICK_SECRET", "s3cret")
    assert client.post("/breaklock/tick", headers={"X-Tick-Secret": "wrong"}).status_code == 401

    response = client.post("/breaklock/tick", headers={"X-Tick-Secret": "s3cret"})
    assert response.status_code == 200
    assert response.json() == {"ok": True, "ended": 1, "scanned": 1, "skipped": 0, "failed": 0}

    again = client.post("/breaklock/tick", headers={"X-Tick-Secret": "s3cret"})
    assert again.json()["ended"] == 0


def _parse_api_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def test_http_break_times_carry_utc_offset(client, acting, file_session_factory):
    _org, _admin, employees = _seed_http(file_session_factory)
    acting["user"] = employees[0]
    client.post("/breaklock/start", json={"duration_minutes": 5})
    client.post("/breaklock/end")
    client.post("/breaklock/start", json={"duration_minutes": 5})

    active = client.get("/breaklock/active").json()
    assert _parse_api_time(active[0]["started_at"]).utcoffset() == timedelta(0)
    assert _parse_api_time(active[0]["ends_at"]).utcoffset() == timedelta(0)

    board = client.get("/breaklock/today").json()
    ended = [item for item in board["people"][0]["breaks"] if item["ended_at"]]
    assert _parse_api_time(ended[0]["ended_at"]).utcoffset() == timedelta(0)


def test_break_read_normalizes_naive_times_to_utc():
    naive = datetime(2026, 3, 2, 14, 0)
    read = breaklock_schemas.BreakRead(
        id="b1",
        org_id="o1",
        subject_id="u1",
        label="emp",
        started_at=naive,
        ends_at=naive + timedelta(minutes=30),
        ended_at=datetime(2026, 3, 2, 16, 10, tzinfo=timezone(timedelta(hours=2))),
        is_active=False,
    )

    assert read.started_at.tzinfo == timezone.utc
    assert read.ends_at == datetime(2026, 3, 2, 14, 30, tzinfo=timezone.utc)
    assert read.ended_at == datetime(2026, 3, 2, 14, 10, tzinfo=timezone.utc)
    assert read.ended_at.tzinfo == timezone.utc


def test_http_reads_use_read_session_and_report_outage_as_503(client, acting, file_session_factory):
    _org, admin, _employees = _seed_http(file_session_factory)

    def lost_connection(*args, **kwargs):
        raise OperationalError("SELECT break_records", {}, Exception("replica unreachable"))

    def broken_read_db():
        db = file_session_factory()
        db.query = lost_connection
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_read_db] = broken_read_db
    acting["user"] = admin

    for path in ("/breaklock/status", "/breaklock/active", "/breaklock/today", "/breaklock/capacity"):
        response = client.get(path)
        assert response.status_code == 503, path
        assert response.json()["detail"]["code"] == "store_unavailable"

    # Writes stay on the primary session.
    response = client.put("/breaklock/capacity", json={"capacity": 3})
    assert response.status_code == 200
    assert response.json()["capacity"] == 3


def test_http_tick_reports_store_outage_as_503(file_session_factory, monkeypatch):
    def lost_connection(*args, **kwargs):
        raise OperationalError("SELECT break_records", {}, Exception("server closed the connection"))

    def broken_db():
        db = file_session_factory()
        db.query = lost_connection
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setenv("BREAKLOCK_TICK_SECRET", "s3cret")
    app.dependency_overrides[get_db] = broken_db
    try:
        with TestClient(app) as test_client:
            response = test_client.post("/breaklock/tick", headers={"X-Tick-Secret": "s3cret"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "store_unavailable"


def test_health_endpoints(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/").json()["status"] == "ok"
