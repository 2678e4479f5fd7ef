"""Celebratory notifications published over Redis pub/sub."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

LEVEL_UP = "level_up"
STREAK_MILESTONE = "streak_milestone"
COMPANION_EVOLUTION = "companion_evolution"


@dataclass(frozen=True)
class ProgressionNotification:
    kind: str
    user_id: int
    data: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {"event": self.kind, "user_id": self.user_id, "data": self.data}


async def publish_notifications(
    redis: object | None,
    channel: str,
    notifications: Iterable[ProgressionNotification],
) -> int:
    """Publish each notification to ``channel`` and to the user's own channel.

    Delivery is best-effort: failures are logged and never raised.
    Returns the number of notifications published.
    """
    if redis is None:
        return 0

    published = 0
    for notification in notifications:
        message = json.dumps(notification.to_payload(), default=str)
        try:
            await redis.publish(channel, message)  # type: ignore[union-attr]
            await redis.publish(f"{channel}:user:{notification.user_id}", message)  # type: ignore[union-attr]
            published += 1
        except Exception:
            logger.warning(
                "Failed to publish %s notification for user %s",
                notification.kind, notification.user_id,
                exc_info=True,
            )
    return published
