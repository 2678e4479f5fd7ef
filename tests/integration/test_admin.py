"""Admin command tests: parsed arguments executed against the test store."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from gamify.admin import execute, parse_args
from gamify.errors import AggregationInProgress, NotFound, ValidationError
from gamify.rankings.period_utils import RankingType, bucket_key
from gamify.rankings.ranking_service import get_ranking
from gamify.rankings.ranking_worker import closed_marker_key

# Wednesday of the ISO week starting 2024-01-01.
AT = "2024-01-03T12:00:00+00:00"
WEEK_START = datetime(2024, 1, 1, tzinfo=timezone.utc)


async def _run(db, *argv: str) -> dict:
    return await execute(parse_args(list(argv)), db)


@pytest.mark.asyncio
class TestLevelsAndUsers:
    async def test_seed_levels_is_idempotent(self, db_session):
        first = await _run(db_session, "seed-levels")
        second = await _run(db_session, "seed-levels")

        assert first == {"inserted": 10}
        assert second == {"inserted": 0}

    async def test_create_user(self, db_session):
        result = await _run(db_session, "create-user", "Ada Lovelace", "--department", "research")

        assert result["name"] == "Ada Lovelace"
        assert result["role"] == "user"

    async def test_promote_and_demote(self, db_session, make_user):
        uid = (await make_user()).id

        promoted = await _run(db_session, "promote", str(uid))
        assert promoted == {"user_id": uid, "old_role": "user", "new_role": "manager"}
        await _run(db_session, "promote", str(uid))

        with pytest.raises(ValidationError):
            await _run(db_session, "promote", str(uid))

        demoted = await _run(db_session, "demote", str(uid))
        assert demoted["new_role"] == "manager"

    async def test_demote_lowest_role(self, db_session, make_user):
        uid = (await make_user()).id
        with pytest.raises(ValidationError):
            await _run(db_session, "demote", str(uid))

    async def test_promote_unknown_user(self, db_session):
        with pytest.raises(NotFound):
            await _run(db_session, "promote", "31337")


@pytest.mark.asyncio
class TestCorrections:
    async def test_correct_points(self, db_session, make_user):
        uid = (await make_user()).id
        await _run(db_session, "seed-levels")

        added = await _run(db_session, "correct-points", str(uid), "150", "--reason", "missed credit")
        removed = await _run(db_session, "correct-points", str(uid), "-200", "--reason", "duplicate credit")

        assert added["total_points"] == 150
        assert added["level"] == 2
        assert removed["total_points"] == 0
        assert removed["level"] == 1

    async def test_correction_event_id_applies_once(self, db_session, make_user):
        uid = (await make_user()).id

        await _run(db_session, "correct-points", str(uid), "40", "--event-id", "fix-1")
        again = await _run(db_session, "correct-points", str(uid), "40", "--event-id", "fix-1")

        assert again["duplicate"] is True
        assert again["total_points"] == 40


@pytest.mark.asyncio
class TestRankingCommands:
    async def test_recompute_rankings(self, db_session, make_user):
        uid = (await make_user(department="eng")).id
        await _run(db_session, "correct-points", str(uid), "25")

        result = await _run(db_session, "recompute-rankings", "all-time")

        assert result == {"type": "all-time", "buckets": {"*": 1, "eng": 1}}

    async def test_close_period(self, db_session, make_user):
        await make_user()

        result = await _run(db_session, "close-period", "weekly", "--at", "2024-01-10T12:00:00+00:00")

        assert result["period_start"] == "2024-01-01T00:00:00+00:00"
        assert result["buckets"] == {"*": 0}
        assert await get_ranking(db_session, RankingType.WEEKLY, datetime(2024, 1, 1, tzinfo=timezone.utc)) == []

    async def test_close_all_time_rejected(self, db_session):
        with pytest.raises(ValidationError):
            await _run(db_session, "close-period", "all-time")


class FakeRedis:
    """SET NX / EVAL / GET over a dict, enough for bucket locks and markers."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.lock_keys: list[str] = []

    async def set(self, key, value, nx=False, ex=None):
        if key.startswith("ranking:lock:"):
            self.lock_keys.append(key)
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0


@pytest.mark.asyncio
class TestRankingCommandsWithRedis:
    async def test_recompute_takes_bucket_locks(self, db_session, make_user):
        await make_user(department="eng")
        redis = FakeRedis()

        result = await execute(parse_args(["recompute-rankings", "weekly", "--at", AT]), db_session, redis)

        assert result["buckets"] == {"*": 0, "eng": 0}
        assert redis.lock_keys == [
            f"ranking:lock:{bucket_key(RankingType.WEEKLY, WEEK_START)}",
            f"ranking:lock:{bucket_key(RankingType.WEEKLY, WEEK_START, 'eng')}",
        ]
        # released after the recompute
        assert redis.store == {}

    async def test_recompute_skips_bucket_locked_by_worker(self, db_session, make_user):
        await make_user(department="eng")
        redis = FakeRedis()
        redis.store[f"ranking:lock:{bucket_key(RankingType.WEEKLY, WEEK_START)}"] = "worker-token"

        result = await execute(parse_args(["recompute-rankings", "weekly", "--at", AT]), db_session, redis)

        assert result["buckets"] == {"eng": 0}

    async def test_close_period_marks_period_closed(self, db_session, make_user):
        await make_user()
        redis = FakeRedis()
        previous_week = datetime(2023, 12, 25, tzinfo=timezone.utc)

        await execute(parse_args(["close-period", "weekly", "--at", AT]), db_session, redis)

        assert closed_marker_key(RankingType.WEEKLY, previous_week) in redis.store

    async def test_close_period_with_locked_bucket_fails(self, db_session, make_user):
        await make_user()
        redis = FakeRedis()
        previous_week = datetime(2023, 12, 25, tzinfo=timezone.utc)
        redis.store[f"ranking:lock:{bucket_key(RankingType.WEEKLY, previous_week)}"] = "worker-token"

        with pytest.raises(AggregationInProgress):
            await execute(parse_args(["close-period", "weekly", "--at", AT]), db_session, redis)

        assert closed_marker_key(RankingType.WEEKLY, previous_week) not in redis.store


class TestParseArgs:
    def test_rejects_unknown_ranking_type(self):
        with pytest.raises(SystemExit):
            parse_args(["recompute-rankings", "daily"])

    def test_rejects_naive_timestamp(self):
        with pytest.raises(SystemExit):
            parse_args(["recompute-rankings", "weekly", "--at", "2024-01-03T12:00:00"])

    def test_repeatable_department(self):
        args = parse_args(["recompute-rankings", "monthly", "--department", "eng", "--department", "ops"])
        assert args.departments == ["eng", "ops"]
