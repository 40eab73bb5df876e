"""
API tests for /api/todos, /api/reminders and the reminder cron endpoint.
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from agencydesk.models.security_event import SecurityEvent
from agencydesk.models.task_reminder import TaskReminder
from agencydesk.models.todo import Todo
from agencydesk.platform.field_encryption import ENCRYPTED_PREFIX


def _create(client, headers, text="Renew policy", **fields):
    response = client.post("/api/todos", json={"text": text, **fields}, headers=headers)
    assert response.status_code == 201
    return response.json()["data"]


def _iso_in(minutes: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(minutes=minutes)).isoformat()


# =============================================================================
# Todos
# =============================================================================

class TestTodosApi:

    def test_create_and_get(self, client, db_session, owner, agency, login):
        headers = login(owner, agency)
        todo = _create(client, headers, notes="Private note", priority="high", assignedTo="Olivia")
        assert todo["notes"] == "Private note"
        assert todo["assigned_to"] == "Olivia"

        fetched = client.get("/api/todos", params={"id": todo["id"]}, headers=headers).json()["data"]
        assert fetched["notes"] == "Private note"

        db_session.expire_all()
        assert db_session.get(Todo, todo["id"]).notes.startswith(ENCRYPTED_PREFIX)

    @pytest.mark.security
    def test_prefixed_notes_are_encrypted(self, client, db_session, owner, agency, login):
        headers = login(owner, agency)
        todo = _create(client, headers, notes="enc:v1:café SSN 123-45-6789")
        assert todo["notes"] == "enc:v1:café SSN 123-45-6789"

        db_session.expire_all()
        stored = db_session.get(Todo, todo["id"]).notes
        assert "123-45-6789" not in stored

        listed = client.get("/api/todos", headers=headers)
        assert listed.status_code == 200
        assert listed.json()["data"]["items"][0]["notes"] == "enc:v1:café SSN 123-45-6789"

    def test_text_too_long(self, client, owner, agency, login):
        response = client.post("/api/todos", json={"text": "x" * 1001}, headers=login(owner, agency))
        assert response.status_code == 400

    def test_update(self, client, owner, agency, login):
        headers = login(owner, agency)
        todo = _create(client, headers)
        response = client.put("/api/todos", json={"id": todo["id"], "status": "done"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["completed"] is True

    def test_delete(self, client, db_session, owner, agency, login):
        headers = login(owner, agency)
        todo = _create(client, headers)
        response = client.delete("/api/todos", params={"id": todo["id"]}, headers=headers)
        assert response.status_code == 200
        db_session.expire_all()
        assert db_session.get(Todo, todo["id"]) is None

    @pytest.mark.security
    def test_cross_tenant_delete_is_404(self, client, db_session, owner, agency, other_owner, other_agency, login):
        todo = _create(client, login(owner, agency), text="Keep me")
        client.cookies.clear()

        response = client.delete("/api/todos", params={"id": todo["id"]}, headers=login(other_owner, other_agency))
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Task not found", "code": "NOT_FOUND"}

        db_session.expire_all()
        assert db_session.get(Todo, todo["id"]).text == "Keep me"

    @pytest.mark.security
    def test_cross_tenant_update_is_404(self, client, db_session, owner, agency, other_owner, other_agency, login):
        todo = _create(client, login(owner, agency), text="Keep me")
        response = client.put(
            "/api/todos",
            json={"id": todo["id"], "text": "changed"},
            headers=login(other_owner, other_agency),
        )
        assert response.status_code == 404
        db_session.expire_all()
        assert db_session.get(Todo, todo["id"]).text == "Keep me"

    @pytest.mark.security
    def test_agency_header_cannot_reach_other_agency(self, client, owner, agency, other_owner, other_agency, login):
        _create(client, login(other_owner, other_agency), text="Theirs")
        headers = {**login(owner, agency), "X-Agency-Id": other_agency.id}
        items = client.get("/api/todos", headers=headers).json()["data"]["items"]
        assert items == []

    def test_requires_session(self, client):
        response = client.get("/api/todos")
        assert response.status_code == 401
        assert response.json()["success"] is False


class TestTodoPaginationApi:

    def test_page_size_capped(self, client, settings, owner, agency, login):
        headers = login(owner, agency)
        body = client.get("/api/todos", params={"pageSize": 1000}, headers=headers).json()["data"]
        assert body["pageSize"] == settings.max_page_size

    def test_default_page_size(self, client, settings, owner, agency, login):
        body = client.get("/api/todos", headers=login(owner, agency)).json()["data"]
        assert body["pageSize"] == settings.default_page_size
        assert body["page"] == 1

    @pytest.mark.parametrize("params", [{"page": 0}, {"pageSize": 0}])
    def test_invalid_paging(self, client, owner, agency, login, params):
        response = client.get("/api/todos", params=params, headers=login(owner, agency))
        assert response.status_code == 400

    def test_pages(self, client, owner, agency, login):
        headers = login(owner, agency)
        for i in range(3):
            _create(client, headers, text=f"Task {i}")
        first = client.get("/api/todos", params={"pageSize": 2}, headers=headers).json()["data"]
        second = client.get("/api/todos", params={"pageSize": 2, "page": 2}, headers=headers).json()["data"]
        assert first["total"] == 3
        assert first["hasMore"] is True
        assert second["hasMore"] is False
        assert len(first["items"]) + len(second["items"]) == 3


class TestReorderApi:

    def test_move_down(self, client, owner, agency, login):
        headers = login(owner, agency)
        first = _create(client, headers, text="A")
        second = _create(client, headers, text="B")

        response = client.post("/api/todos/reorder", json={"todoId": first["id"], "direction": "down"}, headers=headers)
        assert response.status_code == 200
        orders = {t["id"]: t["display_order"] for t in response.json()["data"]["updatedTasks"]}
        assert orders == {first["id"]: 1, second["id"]: 0}

    def test_up_with_shared_order(self, client, db_session, owner, agency, login):
        headers = login(owner, agency)
        first = _create(client, headers, text="A")
        second = _create(client, headers, text="B")
        db_session.expire_all()
        for todo_id in (first["id"], second["id"]):
            db_session.get(Todo, todo_id).display_order = 3
        db_session.commit()

        response = client.post("/api/todos/reorder", json={"todoId": second["id"], "direction": "up"}, headers=headers)
        assert response.status_code == 200
        orders = {t["id"]: t["display_order"] for t in response.json()["data"]["updatedTasks"]}
        assert orders == {second["id"]: 0, first["id"]: 1}

    def test_up_on_first(self, client, owner, agency, login):
        headers = login(owner, agency)
        first = _create(client, headers, text="A")
        response = client.post("/api/todos/reorder", json={"todoId": first["id"], "direction": "up"}, headers=headers)
        assert response.json()["data"]["updatedTasks"] == []

    def test_invalid_direction(self, client, owner, agency, login):
        headers = login(owner, agency)
        first = _create(client, headers, text="A")
        response = client.post(
            "/api/todos/reorder", json={"todoId": first["id"], "direction": "sideways"}, headers=headers
        )
        assert response.status_code == 400

    def test_two_modes_rejected(self, client, owner, agency, login):
        headers = login(owner, agency)
        first = _create(client, headers, text="A")
        response = client.post(
            "/api/todos/reorder",
            json={"todoId": first["id"], "direction": "up", "newOrder": 0},
            headers=headers,
        )
        assert response.status_code == 400


# =============================================================================
# Reminders
# =============================================================================

class TestRemindersApi:

    def test_crud(self, client, db_session, owner, agency, login):
        headers = login(owner, agency)
        todo = _create(client, headers)

        created = client.post(
            "/api/reminders",
            json={"todoId": todo["id"], "reminderTime": _iso_in(60), "reminderType": "chat_message"},
            headers=headers,
        )
        assert created.status_code == 201
        reminder_id = created.json()["data"]["id"]

        listed = client.get("/api/reminders", params={"todoId": todo["id"]}, headers=headers).json()["data"]
        assert [r["id"] for r in listed] == [reminder_id]

        patched = client.patch(
            "/api/reminders",
            json={"reminderId": reminder_id, "status": "cancelled"},
            headers=headers,
        )
        assert patched.json()["data"]["status"] == "cancelled"

        deleted = client.delete("/api/reminders", params={"id": reminder_id}, headers=headers)
        assert deleted.status_code == 200
        db_session.expire_all()
        assert db_session.get(TaskReminder, reminder_id) is None

    def test_past_time_rejected(self, client, owner, agency, login):
        headers = login(owner, agency)
        todo = _create(client, headers)
        response = client.post(
            "/api/reminders", json={"todoId": todo["id"], "reminderTime": _iso_in(-10)}, headers=headers
        )
        assert response.status_code == 400

    @pytest.mark.security
    def test_cross_tenant_reminder_is_404(self, client, owner, agency, other_owner, other_agency, login):
        todo = _create(client, login(owner, agency))
        response = client.post(
            "/api/reminders",
            json={"todoId": todo["id"], "reminderTime": _iso_in(60)},
            headers=login(other_owner, other_agency),
        )
        assert response.status_code == 404


@pytest.mark.security
class TestProcessRemindersApi:

    def _due_reminder(self, db_session, client, owner, agency, login):
        todo = _create(client, login(owner, agency))
        client.cookies.clear()
        db_session.add(TaskReminder(
            agency_id=agency.id,
            todo_id=todo["id"],
            reminder_time=datetime.now(timezone.utc) - timedelta(minutes=1),
            reminder_type="chat_message",
            status="pending",
            created_by="Olivia",
        ))
        db_session.commit()

    def test_bearer_secret(self, client, settings, db_session, owner, agency, login):
        self._due_reminder(db_session, client, owner, agency, login)
        response = client.post("/api/reminders/process", headers={"Authorization": f"Bearer {settings.cron_secret}"})
        assert response.status_code == 200
        assert response.json()["data"] == {"processed": 1, "successful": 1, "failed": 0}
        assert response.json()["message"] == "Processed 1 reminders"

    def test_cron_jwt_on_get(self, client, settings):
        token = jwt.encode(
            {"sub": "cron", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            settings.cron_secret,
            algorithm="HS256",
        )
        response = client.get("/api/reminders/process", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["data"]["processed"] == 0

    def test_service_api_key(self, client, settings):
        response = client.post("/api/reminders/process", headers={"X-API-Key": settings.service_api_key})
        assert response.status_code == 200

    def test_session_is_not_enough(self, client, owner, agency, login):
        response = client.post("/api/reminders/process", headers=login(owner, agency))
        assert response.status_code == 401

    def test_missing_credentials(self, client, db_session):
        response = client.post("/api/reminders/process")
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

        db_session.expire_all()
        events = db_session.query(SecurityEvent).filter(
            SecurityEvent.event_type == "unauthorized_api_access"
        ).all()
        assert len(events) == 1
