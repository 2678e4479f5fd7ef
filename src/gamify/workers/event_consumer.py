"""Redis Stream consumer for scored activity events.

Reads ``progression:events`` with XREADGROUP and feeds every message to
the progression orchestrator. Messages carry their payload either in a
``data`` JSON field or as flat key/value pairs.

Import path for arq CLI: arq gamify.workers.event_consumer.WorkerSettings
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
from arq import create_pool
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gamify.config import get_settings
from gamify.database import close_db, get_session_factory, init_db
from gamify.errors import ProgressionError, ValidationError
from gamify.middleware.logging import setup_logging
from gamify.progression.orchestrator import ProgressionOrchestrator, ProgressionOutcome, ScoredEvent
from gamify.progression.seed import load_level_table
from gamify.rankings.ranking_worker import ArqRankingScheduler
from gamify.redis_client import create_redis

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_data(raw: dict[str, Any] | None) -> dict[str, Any]:
    """Payload from a ``data`` JSON field, or the flat message itself."""
    if not raw:
        # XREADGROUP reports entries deleted while pending without fields.
        msg = "Event message has no fields"
        raise ValidationError(msg)
    data = raw.get("data")
    if data is None:
        return dict(raw)
    if isinstance(data, str):
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as exc:
            msg = "Event data is not valid JSON"
            raise ValidationError(msg) from exc
        if not isinstance(parsed, dict):
            msg = "Event data must be a JSON object"
            raise ValidationError(msg)
        return parsed
    return dict(data)


def _as_int(data: dict[str, Any], key: str, *, required: bool = True) -> int | None:
    value = data.get(key)
    if value is None or value == "":
        if required:
            msg = f"Missing field {key!r}"
            raise ValidationError(msg)
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        msg = f"Field {key!r} must be an integer, got {value!r}"
        raise ValidationError(msg) from exc


def parse_scored_event(raw: dict[str, Any]) -> ScoredEvent:
    """Build a validated ScoredEvent from a stream message.

    Raises:
        ValidationError: The message cannot be turned into an event.
    """
    data = _parse_data(raw)

    timestamp_raw = data.get("timestamp")
    if not timestamp_raw:
        msg = "Missing field 'timestamp'"
        raise ValidationError(msg)
    try:
        timestamp = datetime.fromisoformat(str(timestamp_raw).replace("Z", "+00:00"))
    except ValueError as exc:
        msg = f"Invalid timestamp {timestamp_raw!r}"
        raise ValidationError(msg) from exc

    correction = data.get("correction", False)
    if isinstance(correction, str):
        correction = correction.lower() in _TRUE_VALUES

    return ScoredEvent(
        user_id=_as_int(data, "user_id"),  # type: ignore[arg-type]
        point_delta=_as_int(data, "point_delta"),  # type: ignore[arg-type]
        activity_type=str(data.get("activity_type") or ""),
        timestamp=timestamp,
        companion_experience=_as_int(data, "companion_experience", required=False),
        reason=str(data.get("reason") or "activity"),
        event_id=str(data["event_id"]) if data.get("event_id") else None,
        correction=bool(correction),
    )


class ProgressionEventConsumer:
    """Processes scored events from a Redis Stream."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        orchestrator: ProgressionOrchestrator,
        session_factory: async_sessionmaker[AsyncSession],
        stream: str = "progression:events",
        group: str = "progression-consumers",
        consumer_name: str = "progression-worker-1",
    ) -> None:
        self.redis = redis_client
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self.stream = stream
        self.group = group
        self.consumer_name = consumer_name
        self._running = False
        self._processed = 0
        self._dropped = 0
        self._errors = 0
        self._retry_pending = True

    async def setup_group(self) -> None:
        """Create the consumer group (idempotent)."""
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s for %s", self.group, self.stream)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def process_message(self, msg_id: str, raw: dict[str, Any]) -> ProgressionOutcome | None:
        """Handle one message and acknowledge it.

        Events rejected by the engine (bad payload, unknown user,
        out-of-order activity) are acknowledged and dropped; any other
        failure leaves the message pending for redelivery.
        """
        try:
            event = parse_scored_event(raw)
            async with self.session_factory() as db:
                outcome = await self.orchestrator.handle_event(db, event)
        except ProgressionError as exc:
            self._dropped += 1
            logger.warning("Dropping event %s from %s: %s (%s)", msg_id, self.stream, exc, exc.code)
            await self.redis.xack(self.stream, self.group, msg_id)
            return None

        await self.redis.xack(self.stream, self.group, msg_id)
        self._processed += 1
        if outcome.partial_failure:
            logger.warning("Event %s partially applied: %s", msg_id, outcome.failures)
        return outcome

    async def _read(self, stream_id: str, count: int, block_ms: int | None) -> list:
        try:
            return await self.redis.xreadgroup(
                groupname=self.group,
                consumername=self.consumer_name,
                streams={self.stream: stream_id},
                count=count,
                block=block_ms,
            ) or []
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            return []

    async def _handle_batch(self, events: list) -> tuple[int, int]:
        """Process every message of an XREADGROUP reply. Returns (handled, failed)."""
        handled = failed = 0
        for _stream_name, messages in events:
            for msg_id, raw in messages:
                try:
                    await self.process_message(msg_id, raw)
                    handled += 1
                except Exception:
                    failed += 1
                    self._errors += 1
                    self._retry_pending = True
                    logger.exception("Error handling %s message %s", self.stream, msg_id)
        return handled, failed

    async def consume(self, count: int = 100, block_ms: int = 5000) -> int:
        """Read and process one batch of new messages. Returns the number handled."""
        events = await self._read(">", count, block_ms)
        handled, _ = await self._handle_batch(events)
        return handled

    async def drain_pending(self, count: int = 100) -> int:
        """Retry messages delivered to this consumer but never acknowledged.

        Stops at the first batch with a failure; the failed message stays
        pending for the next pass. Returns the number handled.
        """
        self._retry_pending = False
        total = 0
        while True:
            events = await self._read("0", count, None)
            if not any(messages for _stream_name, messages in events):
                return total
            handled, failed = await self._handle_batch(events)
            total += handled
            if failed:
                return total

    async def run(self) -> None:
        """Main consumer loop: runs until stop() is called.

        Pending messages (left over from a crash or a failed attempt) are
        retried before new ones are read.
        """
        await self.setup_group()
        self._running = True
        logger.info("Progression event consumer started (consumer=%s)", self.consumer_name)

        while self._running:
            try:
                if self._retry_pending:
                    await self.drain_pending()
                await self.consume()
            except Exception:
                logger.exception("Consumer loop error")
                await asyncio.sleep(1)

    def stop(self) -> None:
        """Signal the consumer to stop."""
        self._running = False

    @property
    def stats(self) -> dict[str, int]:
        return {"processed": self._processed, "dropped": self._dropped, "errors": self._errors}


# --- Entry points ---


async def build_consumer(
    redis_client: aioredis.Redis,
    arq_pool: object | None = None,
) -> ProgressionEventConsumer:
    """Load the level table and wire an orchestrator-backed consumer."""
    settings = get_settings()
    session_factory = get_session_factory()
    async with session_factory() as db:
        levels = await load_level_table(db)

    orchestrator = ProgressionOrchestrator(
        levels,
        redis=redis_client,
        scheduler=(
            ArqRankingScheduler(arq_pool, settings.ranking_refresh_delay_seconds)
            if arq_pool is not None else None
        ),
        tz=settings.tz,
        notification_channel=settings.notification_channel,
        evolution_interval=settings.companion_evolution_interval,
        companion_default_type=settings.companion_default_type,
        companion_default_name=settings.companion_default_name,
    )
    consumer = ProgressionEventConsumer(
        redis_client,
        orchestrator,
        session_factory,
        stream=settings.event_stream,
        group=settings.event_consumer_group,
        consumer_name=settings.event_consumer_name,
    )
    await consumer.setup_group()
    return consumer


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB, Redis and the consumer on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)

    # arq's own pool doubles as the ranking refresh queue.
    arq_pool = ctx.get("redis")
    redis_client = create_redis()
    consumer = await build_consumer(redis_client, arq_pool)

    ctx["redis"] = redis_client
    ctx["consumer"] = consumer
    logger.info("Event consumer started (consumer=%s)", consumer.consumer_name)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    consumer: ProgressionEventConsumer | None = ctx.get("consumer")
    if consumer:
        consumer.stop()
        logger.info("Event consumer stats: %s", consumer.stats)

    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Event consumer shut down")


async def consume_events(ctx: dict) -> None:  # type: ignore[type-arg]
    """Main consumer task: runs continuously."""
    consumer: ProgressionEventConsumer = ctx["consumer"]
    await consumer.run()


class WorkerSettings:
    """arq worker settings for the event consumer."""

    functions = [consume_events]
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 2
    job_timeout = 86400 * 365  # consume_events runs until shutdown
    allow_abort_jobs = True


async def _run() -> None:
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    redis_client = create_redis()
    arq_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    consumer = await build_consumer(redis_client, arq_pool)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, consumer.stop)

    try:
        await consumer.run()
    finally:
        logger.info("Event consumer stats: %s", consumer.stats)
        await arq_pool.aclose()
        await redis_client.aclose()
        await close_db()


def main() -> None:
    """Run the consumer as a standalone process (stops on SIGINT/SIGTERM)."""
    asyncio.run(_run())


if __name__ == "__main__":
    main()
