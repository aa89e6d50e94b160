import os
from datetime import datetime, timedelta

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

from fastapi.testclient import TestClient

import core.config as config
from core.audit_constants import ENTITY_DEADLINE, ENTITY_IDEA, ENTITY_TASK
from core.models import AuditEvent, Deadline, Task
from core.services.entity_repository import EntityRepository


@pytest.fixture
def client(server_db):
    from app.main import app

    app.state.operation_limiter.limiter.reset()
    # Lifespan is skipped: the server_db fixture stands in for init_db
    yield TestClient(app)
    app.state.operation_limiter.limiter.reset()


def _headers(user_id, **extra):
    headers = {"X-User-Id": user_id}
    headers.update(extra)
    return headers


def test_delete_requires_actor(client, seed):
    lab = seed.lab()
    task_id = seed.task(seed.study(lab)).id

    response = client.delete(f"/api/task/{task_id}")

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "UNAUTHENTICATED"


def test_delete_unknown_type_is_bad_request(client):
    response = client.delete("/api/protocol/p1", headers=_headers("user-1"))

    assert response.status_code == 400
    assert response.json()["code"] == "UNSUPPORTED_ENTITY_TYPE"


def test_delete_task_soft_deletes(client, seed, fresh):
    user = seed.user()
    lab = seed.lab()
    task_id = seed.task(seed.study(lab), title="Calibrate eye tracker").id

    response = client.delete(f"/api/task/{task_id}", headers=_headers(user.id, **{"X-Request-Id": "r-42"}))

    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "deletedEntity": {"id": task_id, "name": "Calibrate eye tracker"},
        "softDeleted": True,
    }
    assert fresh(Task, task_id).is_active is False
    assert "x-content-type-options" in response.headers


def test_delete_missing_and_blocked(client, seed):
    user = seed.user()
    lab = seed.lab()
    study = seed.study(lab)
    seed.task(study)

    missing = client.delete("/api/study/nope", headers=_headers(user.id))
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"

    blocked = client.delete(f"/api/study/{study.id}", headers=_headers(user.id))
    assert blocked.status_code == 400
    body = blocked.json()
    assert body["code"] == "HAS_DEPENDENCIES"
    assert body["dependencies"] == {"tasks": 1}
    assert body["message"] == "Cannot delete: 1 task(s)"


def test_destructive_limit_returns_retry_after(client, seed):
    user = seed.user()
    lab = seed.lab()
    study = seed.study(lab)
    task_ids = [seed.task(study, title=f"t{index}").id for index in range(config.RATE_LIMIT_DESTRUCTIVE_CEILING + 1)]

    responses = [client.delete(f"/api/task/{task_id}", headers=_headers(user.id)) for task_id in task_ids]

    assert [response.status_code for response in responses[:-1]] == [200] * config.RATE_LIMIT_DESTRUCTIVE_CEILING
    throttled = responses[-1]
    assert throttled.status_code == 429
    assert throttled.json()["code"] == "RATE_LIMITED"
    assert int(throttled.headers["Retry-After"]) >= 1


def test_archive_list_restore_and_purge(client, seed, db_session, fresh):
    user = seed.user()
    lab = seed.lab()
    study = seed.study(lab)
    seed.member(lab, user)
    task = seed.task(study, title="Archive me")
    task_id = task.id
    EntityRepository(db_session).soft_delete(ENTITY_TASK, task, actor_id=user.id)
    task.deleted_at = datetime.utcnow() - timedelta(days=27)
    db_session.commit()

    listing = client.get("/api/archive", params={"labId": lab.id, "withinDays": 7}, headers=_headers(user.id))
    assert listing.status_code == 200
    body = listing.json()
    assert body["count"] == 1
    assert body["retentionDays"] == config.SOFT_DELETE_RETENTION_DAYS
    assert body["items"][0]["entityId"] == task_id

    restored = client.post("/api/archive/restore", json={"type": "task", "id": task_id}, headers=_headers(user.id))
    assert restored.status_code == 200
    assert restored.json()["ok"] is True
    assert fresh(Task, task_id).is_active is True

    again = client.post("/api/archive/restore", json={"type": "task", "id": task_id}, headers=_headers(user.id))
    assert again.status_code == 400
    assert again.json()["code"] == "NOT_SOFT_DELETED"

    client.delete(f"/api/task/{task_id}", headers=_headers(user.id))
    purged = client.delete(f"/api/archive/task/{task_id}", headers=_headers(user.id))
    assert purged.status_code == 200
    assert fresh(Task, task_id) is None


def test_archive_rejects_bad_window(client):
    response = client.get("/api/archive", params={"withinDays": -3}, headers=_headers("user-1"))

    assert response.status_code == 400
    assert response.json()["field"] == "withinDays"


def test_audit_logs_endpoint_lists_deletions(client, seed):
    user = seed.user()
    lab = seed.lab()
    seed.member(lab, user, is_admin=True)
    idea_id = seed.idea(lab).id
    client.delete(f"/api/idea/{idea_id}", headers=_headers(user.id))

    response = client.get(
        "/api/audit-logs",
        params={"entityType": "idea", "entityId": idea_id},
        headers=_headers(user.id),
    )

    assert response.status_code == 200
    logs = response.json()["logs"]
    assert len(logs) == 1
    assert logs[0]["action"] == "DELETE"
    assert logs[0]["metadata"]["isSoftDelete"] is True
    assert logs[0]["metadata"]["userAgent"] == "testclient"

    bad = client.get("/api/audit-logs", params={"action": "ARCHIVE"}, headers=_headers(user.id))
    assert bad.status_code == 400


def test_oversized_request_headers_still_audit_the_delete(client, seed, db_session):
    user = seed.user()
    lab = seed.lab()
    task_id = seed.task(seed.study(lab)).id

    response = client.delete(
        f"/api/task/{task_id}",
        headers=_headers(user.id, **{"X-Request-Id": "r" * 600, "User-Agent": "u" * 900}),
    )

    assert response.status_code == 200
    rows = db_session.query(AuditEvent).filter(AuditEvent.entity_id == task_id).all()
    assert [row.action for row in rows] == ["DELETE"]
    assert rows[0].metadata_["requestId"] == "r" * config.MAX_REQUEST_ID_LENGTH
    assert len(rows[0].metadata_["userAgent"]) == config.MAX_CLIENT_ID_LENGTH


def test_audit_address_ignores_untrusted_forwarded_for(client, seed, db_session):
    user = seed.user()
    lab = seed.lab()
    task_id = seed.task(seed.study(lab)).id

    client.delete(f"/api/task/{task_id}", headers=_headers(user.id, **{"X-Forwarded-For": "6.6.6.6"}))

    row = db_session.query(AuditEvent).filter(AuditEvent.entity_id == task_id).one()
    assert row.metadata_["ipAddress"] == "testclient"


def test_archive_listing_is_scoped_to_memberships(client, seed, db_session):
    member = seed.user()
    outsider = seed.user()
    lab = seed.lab()
    seed.member(lab, member)
    idea = seed.idea(lab)
    EntityRepository(db_session).soft_delete(ENTITY_IDEA, idea, actor_id=member.id)
    db_session.commit()
    params = {"withinDays": 30}

    assert client.get("/api/archive", params=params, headers=_headers(member.id)).json()["count"] == 1
    assert client.get("/api/archive", params=params, headers=_headers(outsider.id)).json()["count"] == 0

    forbidden = client.get("/api/archive", params={"labId": lab.id}, headers=_headers(outsider.id))
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "FORBIDDEN"


def test_archive_listing_filters_by_type(client, seed, db_session):
    user = seed.user()
    lab = seed.lab()
    seed.member(lab, user)
    repo = EntityRepository(db_session)
    repo.soft_delete(ENTITY_IDEA, seed.idea(lab), actor_id=user.id)
    deadline = seed.deadline(lab)
    repo.soft_delete(ENTITY_DEADLINE, deadline, actor_id=user.id)
    db_session.commit()

    response = client.get(
        "/api/archive",
        params={"labId": lab.id, "withinDays": 30, "type": "deadline"},
        headers=_headers(user.id),
    )

    assert response.status_code == 200
    assert [item["entityId"] for item in response.json()["items"]] == [deadline.id]
    unknown = client.get("/api/archive", params={"type": "protocol"}, headers=_headers(user.id))
    assert unknown.status_code == 400


def test_audit_logs_require_lab_admin(client, seed):
    admin = seed.user()
    researcher = seed.user()
    outsider = seed.user()
    lab = seed.lab()
    other_lab = seed.lab(name="Vision Lab")
    seed.member(lab, admin, is_admin=True)
    seed.member(lab, researcher)
    client.delete(f"/api/idea/{seed.idea(lab).id}", headers=_headers(admin.id))
    client.delete(f"/api/idea/{seed.idea(other_lab).id}", headers=_headers(admin.id))

    logs = client.get("/api/audit-logs", headers=_headers(admin.id)).json()["logs"]
    assert [log["labId"] for log in logs] == [lab.id]

    assert client.get("/api/audit-logs", headers=_headers(researcher.id)).status_code == 403
    assert client.get("/api/audit-logs", headers=_headers(outsider.id)).status_code == 403
    other = client.get("/api/audit-logs", params={"labId": other_lab.id}, headers=_headers(admin.id))
    assert other.status_code == 403


def test_health_reports_database(client, monkeypatch):
    monkeypatch.setattr(config, "HEALTH_CHECK_SCHEMA", False)
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["database"]["ok"] is True


def test_health_flags_unmigrated_schema(client, monkeypatch):
    monkeypatch.setattr(config, "HEALTH_CHECK_SCHEMA", True)
    response = client.get("/health")

    # Tables were created without alembic, so no revision is stamped
    assert response.status_code == 503
    assert response.json()["detail"]["database"]["schema_up_to_date"] is False
