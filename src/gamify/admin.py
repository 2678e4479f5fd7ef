"""Administrative command line.

Usage:
    gamify-admin seed-levels
    gamify-admin create-user "Ada Lovelace" --email ada@example.com --department research
    gamify-admin promote 42
    gamify-admin demote 42
    gamify-admin correct-points 42 -150 --reason "duplicate task credit"
    gamify-admin recompute-rankings weekly --at 2024-01-03T12:00:00+00:00
    gamify-admin close-period monthly
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from gamify.config import get_settings
from gamify.database import close_db, get_session_factory, init_db
from gamify.errors import ProgressionError, ValidationError
from gamify.locks import BucketGuard
from gamify.middleware.logging import setup_logging
from gamify.progression.orchestrator import ProgressionOrchestrator, ScoredEvent
from gamify.progression.seed import load_level_table, seed_levels
from gamify.rankings.period_utils import RankingType, previous_period_bounds
from gamify.rankings.ranking_service import RankingAggregator
from gamify.rankings.ranking_worker import CLOSED_MARKER_TTL, closed_marker_key
from gamify.redis_client import create_redis
from gamify.users.service import ROLES, create_user, get_user, set_role


def _parse_at(value: str) -> datetime:
    try:
        at = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO timestamp: {value!r}") from exc
    if at.tzinfo is None:
        raise argparse.ArgumentTypeError("timestamp must include a timezone offset")
    return at


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="gamify-admin",
        description="Administrative commands for the progression engine",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed-levels", help="Insert missing level definitions")

    p = sub.add_parser("create-user", help="Create a user")
    p.add_argument("name")
    p.add_argument("--email")
    p.add_argument("--department")
    p.add_argument("--role", choices=ROLES, default="user")

    p = sub.add_parser("promote", help="Raise a user's role by one step")
    p.add_argument("user_id", type=int)

    p = sub.add_parser("demote", help="Lower a user's role by one step")
    p.add_argument("user_id", type=int)

    p = sub.add_parser("correct-points", help="Apply an administrative point correction")
    p.add_argument("user_id", type=int)
    p.add_argument("delta", type=int)
    p.add_argument("--reason", default="admin_correction")
    p.add_argument("--event-id", help="Idempotency key; replays with the same id are ignored")

    for name, help_text in (
        ("recompute-rankings", "Rebuild every bucket of the period containing --at"),
        ("close-period", "Final recompute of the period before the one containing --at"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("type", choices=[t.value for t in RankingType])
        p.add_argument("--at", type=_parse_at, default=None, help="ISO timestamp (default: now)")
        p.add_argument("--department", action="append", dest="departments",
                       help="Restrict to these departments (repeatable)")

    return parser.parse_args(argv)


async def _change_role(db: AsyncSession, user_id: int, step: int) -> dict[str, Any]:
    user = await get_user(db, user_id)
    idx = ROLES.index(user.role) if user.role in ROLES else 0
    new_idx = idx + step
    if not 0 <= new_idx < len(ROLES):
        msg = f"User {user_id} is already {user.role!r}"
        raise ValidationError(msg)
    await set_role(db, user_id, ROLES[new_idx])
    await db.commit()
    return {"user_id": user_id, "old_role": ROLES[idx], "new_role": ROLES[new_idx]}


async def execute(
    args: argparse.Namespace,
    db: AsyncSession,
    redis: aioredis.Redis | None = None,
) -> dict[str, Any]:
    """Run one parsed command against ``db`` and return a JSON-able summary.

    Ranking commands take the same Redis bucket locks as the ranking
    worker when ``redis`` is given, and ``close-period`` records the
    period as closed so the scheduled close-out does not repeat it.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)

    if args.command == "seed-levels":
        inserted = await seed_levels(db)
        return {"inserted": inserted}

    if args.command == "create-user":
        user = await create_user(db, args.name, args.email, args.department, args.role)
        await db.commit()
        return {"user_id": user.id, "name": user.name, "role": user.role}

    if args.command == "promote":
        return await _change_role(db, args.user_id, +1)

    if args.command == "demote":
        return await _change_role(db, args.user_id, -1)

    if args.command == "correct-points":
        orchestrator = ProgressionOrchestrator(await load_level_table(db), tz=settings.tz)
        outcome = await orchestrator.handle_event(db, ScoredEvent(
            user_id=args.user_id,
            point_delta=args.delta,
            activity_type="admin_correction",
            timestamp=now,
            reason=args.reason,
            event_id=args.event_id,
            correction=True,
        ))
        return {
            "user_id": outcome.user_id,
            "total_points": outcome.new_total_points,
            "level": outcome.new_level,
            "duplicate": outcome.duplicate,
        }

    aggregator = RankingAggregator(
        BucketGuard(redis, ttl_seconds=settings.ranking_lock_ttl_seconds),
        tz=settings.tz,
    )
    at = args.at or now
    ranking_type = RankingType(args.type)

    if args.command == "recompute-rankings":
        buckets = await aggregator.recompute_period(db, ranking_type, at, args.departments)
        return {"type": ranking_type.value, "buckets": {k or "*": len(v) for k, v in buckets.items()}}

    if args.command == "close-period":
        bounds = previous_period_bounds(ranking_type, at, settings.tz)
        if bounds is None:
            msg = "The all-time ranking has no closed periods"
            raise ValidationError(msg)
        start, _ = bounds
        buckets = await aggregator.recompute_period(
            db, ranking_type, start, args.departments, skip_busy=False,
        )
        if redis is not None:
            await redis.set(closed_marker_key(ranking_type, start), now.isoformat(), ex=CLOSED_MARKER_TTL)
        return {
            "type": ranking_type.value,
            "period_start": start.isoformat(),
            "buckets": {k or "*": len(v) for k, v in buckets.items()},
        }

    msg = f"Unknown command {args.command!r}"
    raise ValidationError(msg)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    redis_client = create_redis(settings.redis_url, max_connections=2)
    try:
        async with get_session_factory()() as db:
            result = await execute(args, db, redis_client)
    except ProgressionError as exc:
        print(json.dumps({"error": exc.code, "detail": str(exc)}), file=sys.stderr)
        return 1
    finally:
        await redis_client.aclose()
        await close_db()
    print(json.dumps(result, default=str))
    return 0


def main(argv: list[str] | None = None) -> None:
    sys.exit(asyncio.run(run(parse_args(argv))))


if __name__ == "__main__":
    main()
