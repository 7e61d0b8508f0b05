"""
Tests de la API HTTP (FastAPI TestClient) y del WebSocket /ws.
"""

from datetime import datetime, timedelta

import lifecycle
import main
import scheduler
import storage
from database import utcnow
from events import broadcaster
from exceptions import ExternalProviderError


def _create(client, headers, difficulty="medium", **extra):
    response = client.post("/quests", headers=headers, json={
        "title": "Morning run",
        "description": "Run 5km before breakfast",
        "difficulty": difficulty,
        **extra,
    })
    assert response.status_code == 200, response.text
    return response.json()


def _sweep(session_factory, hours=25):
    db = session_factory()
    try:
        return [q.id for q in scheduler.sweep_expired(db, utcnow() + timedelta(hours=hours))]
    finally:
        db.close()


class TestAuth:
    def test_register_and_me(self, client, register):
        user_id, headers = register("artemis")

        me = client.get("/auth/me", headers=headers).json()

        assert me["id"] == user_id
        assert me["username"] == "artemis"
        assert (me["level"], me["xp"], me["xpass"]) == (1, 0, 100)
        assert me["title"] == "Novice Challenger"
        assert me["is_locked"] is False

    def test_duplicate_username(self, client, register):
        register("artemis")
        response = client.post("/auth/register", json={
            "username": "Artemis", "email": "other@example.com",
            "password": "secret123", "display_name": "Other",
        })
        assert response.status_code == 409

    def test_login_with_email(self, client, register):
        register("apollo")
        response = client.post("/auth/login", json={"username": "apollo@example.com", "password": "secret123"})

        assert response.status_code == 200
        assert response.json()["display_name"] == "Apollo"

    def test_wrong_password(self, client, register):
        register("apollo")
        response = client.post("/auth/login", json={"username": "apollo", "password": "wrong-pass"})
        assert response.status_code == 401

    def test_locked_account_cannot_log_in(self, client, register, session_factory):
        user_id, headers = register("apollo")
        db = session_factory()
        try:
            storage.update_user(db, user_id, {"is_locked": True})
            db.commit()
        finally:
            db.close()

        response = client.post("/auth/login", json={"username": "apollo", "password": "secret123"})

        assert response.status_code == 403
        assert "bloqueada" in response.json()["detail"]
        # El token ya emitido sigue sirviendo para resolver el castigo
        assert client.get("/auth/me", headers=headers).json()["is_locked"] is True

    def test_requires_token(self, client):
        assert client.get("/quests").status_code in (401, 403)
        assert client.get("/quests", headers={"Authorization": "Bearer nope"}).status_code == 401


class TestQuests:
    def test_create_and_detail(self, client, register):
        _, headers = register()
        quest = _create(client, headers, difficulty="hard")

        assert quest["status"] == "active"
        assert quest["xp_reward"] == 300
        assert [o["type"] for o in quest["punishment_options"]] == ["xp", "xpass", "physical"]

        detail = client.get(f"/quests/{quest['id']}", headers=headers).json()
        assert detail["id"] == quest["id"]

    def test_invalid_difficulty(self, client, register):
        _, headers = register()
        response = client.post("/quests", headers=headers, json={
            "title": "x", "description": "y", "difficulty": "epic",
        })
        assert response.status_code == 422

    def test_detail_of_someone_else(self, client, register):
        _, owner = register()
        _, intruder = register()
        quest = _create(client, owner)

        assert client.get(f"/quests/{quest['id']}", headers=intruder).status_code == 403
        assert client.get("/quests/9999", headers=owner).status_code == 404

    def test_list_and_filter(self, client, register):
        _, headers = register()
        first = _create(client, headers)
        _create(client, headers)
        client.post("/quests/complete", headers=headers, json={"quest_id": first["id"], "proof": "done"})

        assert len(client.get("/quests", headers=headers).json()) == 2
        completed = client.get("/quests", headers=headers, params={"status": "completed"}).json()
        assert [q["id"] for q in completed] == [first["id"]]

    def test_complete_flow(self, client, register):
        _, headers = register()
        quest = _create(client, headers)

        response = client.post("/quests/complete", headers=headers, json={
            "quest_id": quest["id"], "proof": "https://img.example.com/run.jpg",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["quest"]["status"] == "completed"
        assert body["user_update"] == {
            "previous_xp": 0, "new_xp": 150,
            "previous_level": 1, "new_level": 1, "leveled_up": False,
        }

        again = client.post("/quests/complete", headers=headers, json={"quest_id": quest["id"], "proof": "x"})
        assert again.status_code == 409
        assert again.json()["type"] == "StateConflictError"

    def test_complete_with_blank_proof(self, client, register):
        _, headers = register()
        quest = _create(client, headers)

        response = client.post("/quests/complete", headers=headers, json={"quest_id": quest["id"], "proof": "  "})
        assert response.status_code == 422

    def test_stats(self, client, register):
        _, headers = register()
        quest = _create(client, headers)
        _create(client, headers)
        client.post("/quests/complete", headers=headers, json={"quest_id": quest["id"], "proof": "done"})

        stats = client.get("/user/stats", headers=headers).json()

        assert stats == {
            "active": 1, "completed": 1, "streak": 1,
            "current_xp": 150, "next_level_xp": 1500, "xp_percentage": 10,
        }

    def test_updates_cursor(self, client, register):
        _, headers = register()
        first = client.get("/quests/updates", headers=headers).json()
        assert first["quests"] == []

        quest = _create(client, headers)
        changed = client.get("/quests/updates", headers=headers).json()
        assert [q["id"] for q in changed["quests"]] == [quest["id"]]

        replay = client.get("/quests/updates", headers=headers, params={"since": changed["cursor"]}).json()
        assert [q["id"] for q in replay["quests"]] == [quest["id"]]
        assert replay["cursor"] == changed["cursor"]

    def test_updates_cursor_without_overlap(self, client, register, monkeypatch):
        monkeypatch.setattr(main, "UPDATES_OVERLAP", timedelta(0))
        _, headers = register()
        _create(client, headers)
        cursor = client.get("/quests/updates", headers=headers).json()["cursor"]

        quiet = client.get("/quests/updates", headers=headers, params={"since": cursor}).json()

        assert quiet["quests"] == []
        assert quiet["cursor"] == cursor

    def test_late_commit_behind_cursor_is_served(self, client, register, session_factory):
        user_id, headers = register()
        _create(client, headers)
        cursor = client.get("/quests/updates", headers=headers).json()["cursor"]

        # Escritura sellada un segundo antes del cursor que hace commit después del poll
        db = session_factory()
        try:
            late = lifecycle.create_quest(db, user_id, {
                "title": "Late", "description": "Committed after the poll", "difficulty": "easy",
                "expires_at": utcnow() + timedelta(hours=24),
            })
            late.updated_at = datetime.fromisoformat(cursor) - timedelta(seconds=1)
            db.commit()
            late_id = late.id
        finally:
            db.close()

        changed = client.get("/quests/updates", headers=headers, params={"since": cursor}).json()
        assert late_id in [q["id"] for q in changed["quests"]]


class TestPunishmentFlow:
    def test_fail_then_punish(self, client, register, session_factory):
        _, headers = register()
        quest = _create(client, headers, difficulty="hard")
        xpass_option = next(o for o in quest["punishment_options"] if o["type"] == "xpass")

        assert _sweep(session_factory) == [quest["id"]]
        assert client.get("/auth/me", headers=headers).json()["is_locked"] is True

        response = client.post("/quests/punishment", headers=headers, json={
            "quest_id": quest["id"], "punishment_id": xpass_option["id"],
        })

        assert response.status_code == 200
        user = response.json()["user"]
        assert (user["xpass"], user["is_locked"]) == (0, False)
        assert client.get(f"/quests/{quest['id']}", headers=headers).json()["status"] == "punished"

    def test_insufficient_xpass(self, client, register, session_factory):
        _, headers = register()
        first = _create(client, headers, difficulty="hard")
        second = _create(client, headers, difficulty="hard")
        _sweep(session_factory)

        def pay(quest):
            option = next(o for o in quest["punishment_options"] if o["type"] == "xpass")
            return client.post("/quests/punishment", headers=headers, json={
                "quest_id": quest["id"], "punishment_id": option["id"],
            })

        assert pay(first).status_code == 200
        response = pay(second)
        assert response.status_code == 400
        assert response.json()["details"] == {"required": 100, "available": 0}

    def test_punish_active_quest(self, client, register):
        _, headers = register()
        quest = _create(client, headers)
        option = quest["punishment_options"][0]

        response = client.post("/quests/punishment", headers=headers, json={
            "quest_id": quest["id"], "punishment_id": option["id"],
        })
        assert response.status_code == 409


class TestSuggestionsAndXPass:
    def test_predefined_suggestions(self, client, register):
        _, headers = register()
        suggestions = client.get("/quests/suggestions", headers=headers).json()
        assert len(suggestions) == 5

    def test_accept_suggestion(self, client, register):
        _, headers = register()
        suggestion = client.get("/quests/suggestions", headers=headers).json()[3]

        response = client.post("/quests/accept-suggestion", headers=headers, json=suggestion)

        assert response.status_code == 200
        quest = response.json()
        assert quest["created_by"] == "suggestion"
        assert quest["xp_reward"] == 300
        assert len(quest["punishment_options"]) == 3

    def test_xpass_top_up(self, client, register):
        _, headers = register()
        response = client.post("/xpass/add", headers=headers, json={"amount": 40})
        assert response.json()["xpass"] == 140

        assert client.post("/xpass/add", headers=headers, json={"amount": 0}).status_code == 422

    def test_achievements_start_empty(self, client, register):
        _, headers = register()
        assert client.get("/achievements", headers=headers).json() == []


class TestAI:
    def test_daily_tasks(self, client, register, provider):
        _, headers = register()

        quests = client.post("/ai/daily-tasks", headers=headers).json()
        again = client.post("/ai/daily-tasks", headers=headers).json()

        assert len(quests) == 7
        assert sum(q["is_special_challenge"] for q in quests) == 1
        assert [q["id"] for q in again] == [q["id"] for q in quests]
        assert len(provider.requests) == 7

    def test_provider_failure_is_502(self, client, register, provider):
        _, headers = register()
        provider.error = ExternalProviderError("provider down")

        response = client.post("/ai/daily-tasks", headers=headers)

        assert response.status_code == 502
        assert client.get("/quests", headers=headers).json() == []

    def test_suggest(self, client, register):
        _, headers = register()
        response = client.get("/ai/suggest", headers=headers, params={"difficulty": "easy"})

        assert response.status_code == 200
        assert response.json()["difficulty"] == "easy"
        assert client.get("/quests", headers=headers).json() == []

    def test_daily_challenge(self, client, register):
        _, headers = register()

        first = client.get("/ai/daily-challenge", headers=headers).json()
        second = client.get("/ai/daily-challenge", headers=headers).json()

        assert first["is_special_challenge"] is True
        assert second["id"] == first["id"]


class TestRealtime:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"

    def test_websocket_receives_new_task(self, client, register):
        _, headers = register()

        with client.websocket_connect("/ws") as ws:
            quest = _create(client, headers)
            message = ws.receive_json()

        assert message["type"] == "NEW_TASK"
        assert message["data"]["id"] == quest["id"]

    def test_failed_send_still_releases_the_observer(self, client):
        before = broadcaster.subscriber_count

        with client.websocket_connect("/ws"):
            assert broadcaster.subscriber_count == before + 1
            # Un set no es serializable a JSON: el envío falla en el servidor
            broadcaster.emit("NEW_TASK", {"tags": {"a", "b"}})

        assert broadcaster.subscriber_count == before
