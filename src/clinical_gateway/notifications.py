"""
Fire-and-forget notifications about episode changes.

Publishing is a side channel: a failure is logged and never fails the operation
that triggered it.
"""

from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)

EPISODE_STARTED = "episode.started"
EPISODE_UPGRADED = "episode.upgraded"
EPISODE_ENDED = "episode.ended"
BREAK_GLASS_INVOKED = "break_glass.invoked"


class Publisher(Protocol):
    def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


class LoggingPublisher:
    """Publishes notifications as structured log events."""

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        logger.info("notification_published", topic=topic, **payload)


def publish_quietly(publisher: Publisher, topic: str, payload: dict[str, Any]) -> None:
    try:
        publisher.publish(topic, payload)
    except Exception:  # noqa: BLE001
        logger.warning("notification_publish_failed", topic=topic, exc_info=True)
