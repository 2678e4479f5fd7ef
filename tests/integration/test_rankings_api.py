"""Ranking HTTP API tests."""

from __future__ import annotations

import pytest

pytestmark = pytest.mark.asyncio

AT = "2024-01-03T12:00:00+00:00"


async def _submit(client, uid: int, delta: int, ts: str = AT) -> None:
    response = await client.post("/api/v1/events", json={
        "user_id": uid, "point_delta": delta, "activity_type": "task", "timestamp": ts,
    })
    assert response.status_code == 200


class TestRankingEndpoints:
    async def test_recompute_then_read(self, client, make_user):
        a = (await make_user(department="eng")).id
        b = (await make_user(department="ops")).id
        await _submit(client, a, 30)
        await _submit(client, b, 50)

        recomputed = await client.post("/api/v1/rankings/weekly/recompute", params={"at": AT})
        listing = await client.get("/api/v1/rankings/weekly", params={"at": AT})

        assert recomputed.status_code == 200
        data = listing.json()
        assert data["period_start"].startswith("2024-01-01T00:00:00")
        assert data["period_end"].startswith("2024-01-08T00:00:00")
        assert [(e["user_id"], e["position"]) for e in data["entries"]] == [(b, 1), (a, 2)]

    async def test_department_bucket(self, client, make_user):
        a = (await make_user(department="eng")).id
        b = (await make_user(department="ops")).id
        await _submit(client, a, 30)
        await _submit(client, b, 50)

        await client.post("/api/v1/rankings/monthly/recompute", params={"at": AT, "department": "eng"})
        response = await client.get("/api/v1/rankings/monthly", params={"at": AT, "department": "eng"})

        assert response.json()["department"] == "eng"
        assert [e["user_id"] for e in response.json()["entries"]] == [a]

    async def test_user_position_live(self, client, make_user):
        uid = (await make_user()).id
        await _submit(client, uid, 10)

        response = await client.get(f"/api/v1/rankings/all-time/users/{uid}")

        assert response.status_code == 200
        assert response.json()["position"] == 1
        assert response.json()["live"] is True

    async def test_user_without_points_in_period(self, client, make_user):
        uid = (await make_user()).id
        await _submit(client, uid, 10)

        response = await client.get(
            f"/api/v1/rankings/weekly/users/{uid}", params={"at": "2024-02-14T12:00:00+00:00"},
        )

        assert response.status_code == 404

    async def test_unknown_ranking_type(self, client):
        response = await client.get("/api/v1/rankings/daily")
        assert response.status_code == 422

    async def test_naive_at_rejected(self, client):
        response = await client.get("/api/v1/rankings/weekly", params={"at": "2024-01-03T12:00:00"})

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"
