"""Progression HTTP API tests."""

from __future__ import annotations

import pytest

pytestmark = pytest.mark.asyncio

EVENT_TS = "2024-05-06T10:00:00+00:00"


def _event(uid: int, delta: int, **extra) -> dict:
    return {"user_id": uid, "point_delta": delta, "activity_type": "task", "timestamp": EVENT_TS, **extra}


class TestEventsEndpoint:
    async def test_submit_event(self, client, make_user):
        uid = (await make_user()).id

        response = await client.post("/api/v1/events", json=_event(uid, 150, companion_experience=10))

        assert response.status_code == 200
        data = response.json()
        assert data["new_total_points"] == 150
        assert data["new_level"] == 2
        assert data["leveled_up"] is True
        assert data["streak_result"]["transition"] == "created"
        assert data["evolution_result"]["name"] == "Adventurer"
        assert data["notifications"][0]["event"] == "level_up"
        assert data["failures"] == {}

    async def test_duplicate_event(self, client, make_user):
        uid = (await make_user()).id
        body = _event(uid, 20, event_id="evt-42")

        await client.post("/api/v1/events", json=body)
        response = await client.post("/api/v1/events", json=body)

        assert response.json()["duplicate"] is True
        assert response.json()["new_total_points"] == 20

    async def test_negative_delta_requires_correction(self, client, make_user):
        uid = (await make_user()).id

        response = await client.post("/api/v1/events", json=_event(uid, -10))

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    async def test_unknown_user(self, client):
        response = await client.post("/api/v1/events", json=_event(404, 10))

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    async def test_malformed_body(self, client):
        response = await client.post("/api/v1/events", json={"user_id": 1})

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"
        assert response.json()["errors"]

    async def test_out_of_order_streak_reported(self, client, make_user):
        uid = (await make_user()).id
        await client.post("/api/v1/events", json=_event(uid, 10, timestamp="2024-05-08T10:00:00+00:00"))

        response = await client.post("/api/v1/events", json=_event(uid, 10))

        assert response.status_code == 200
        assert response.json()["failures"] == {"streak": "out_of_order_event"}
        assert response.json()["new_total_points"] == 20


class TestLevelsAndProgress:
    async def test_levels(self, client):
        response = await client.get("/api/v1/levels")

        assert response.status_code == 200
        levels = response.json()["levels"]
        assert [lv["level"] for lv in levels] == [1, 2, 3, 4]
        assert levels[1]["benefits"] == ["Custom avatar frame"]

    async def test_progress(self, client, make_user):
        uid = (await make_user()).id
        await client.post("/api/v1/events", json=_event(uid, 150))

        response = await client.get(f"/api/v1/users/{uid}/progress")

        data = response.json()
        assert data["total_points"] == 150
        assert data["level"] == 2
        assert data["next_level"] == 3
        assert data["points_into_level"] == 50
        assert data["points_for_level"] == 150
        assert data["percent"] == 33.33

    async def test_progress_unknown_user(self, client):
        response = await client.get("/api/v1/users/999/progress")
        assert response.status_code == 404

    async def test_points_history(self, client, make_user):
        uid = (await make_user()).id
        await client.post("/api/v1/events", json=_event(uid, 10, reason="task_completed"))

        response = await client.get(f"/api/v1/users/{uid}/points/history", params={"limit": 5})

        entries = response.json()["entries"]
        assert len(entries) == 1
        assert entries[0]["amount"] == 10
        assert entries[0]["reason"] == "task_completed"


class TestStreakEndpoints:
    async def test_streaks(self, client, make_user):
        uid = (await make_user()).id
        await client.post("/api/v1/events", json=_event(uid, 10))

        listing = await client.get(f"/api/v1/users/{uid}/streaks")
        single = await client.get(f"/api/v1/users/{uid}/streaks/task")

        assert [s["activity_type"] for s in listing.json()["streaks"]] == ["task"]
        assert single.json()["consecutive_days"] == 1
        assert single.json()["rewards_received"] == []

    async def test_missing_streak(self, client, make_user):
        uid = (await make_user()).id

        response = await client.get(f"/api/v1/users/{uid}/streaks/login")

        assert response.status_code == 404


class TestCompanionEndpoints:
    async def test_unlock_and_rename(self, client, make_user):
        uid = (await make_user()).id

        created = await client.post(f"/api/v1/users/{uid}/companion", json={"name": "Pixel", "type": "fox"})
        renamed = await client.patch(f"/api/v1/users/{uid}/companion", json={"name": "Byte"})
        fetched = await client.get(f"/api/v1/users/{uid}/companion")

        assert created.status_code == 201
        assert created.json()["type"] == "fox"
        assert renamed.json()["name"] == "Byte"
        assert fetched.json()["name"] == "Byte"
        assert fetched.json()["next_evolution_level"] == 5

    async def test_double_unlock_conflict(self, client, make_user):
        uid = (await make_user()).id
        await client.post(f"/api/v1/users/{uid}/companion", json={"name": "Pixel"})

        response = await client.post(f"/api/v1/users/{uid}/companion", json={"name": "Again"})

        assert response.status_code == 409
        assert response.json()["code"] == "already_exists"

    async def test_no_companion(self, client, make_user):
        uid = (await make_user()).id

        response = await client.get(f"/api/v1/users/{uid}/companion")

        assert response.status_code == 404
