"""
User-facing notifications for console actions.

Every user-triggered action ends in exactly one notification: a success
with a count or an error with a reason. Notifiers are injected, never
global; a failed publish is logged and swallowed so that delivery trouble
can never turn a successful enrichment into a failed one.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()

LEVELS = ("success", "error", "info", "warning")


@dataclass
class Notification:
    level: str
    message: str
    account_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if self.level not in LEVELS:
            raise ValueError(f"Unknown notification level: {self.level}")

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload

    @classmethod
    def success(cls, message: str, **kwargs) -> "Notification":
        return cls(level="success", message=message, **kwargs)

    @classmethod
    def error(cls, message: str, **kwargs) -> "Notification":
        return cls(level="error", message=message, **kwargs)

    @classmethod
    def info(cls, message: str, **kwargs) -> "Notification":
        return cls(level="info", message=message, **kwargs)

    @classmethod
    def warning(cls, message: str, **kwargs) -> "Notification":
        return cls(level="warning", message=message, **kwargs)


class Notifier(Protocol):
    async def notify(self, notification: Notification) -> None: ...


class LogNotifier:
    """Writes notifications to the structured log."""

    async def notify(self, notification: Notification) -> None:
        log = logger.error if notification.level == "error" else logger.info
        log(
            "notification.sent",
            level=notification.level,
            message=notification.message,
            account_id=notification.account_id,
        )


class RedisNotifier:
    """
    Publishes notifications to ``{prefix}:{account_id}`` for real-time
    delivery (see alerts/websocket.py).
    """

    def __init__(self, redis_url: str, channel_prefix: str = "notifications"):
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix

    def channel_for(self, account_id: str | None) -> str:
        return f"{self.channel_prefix}:{account_id or 'global'}"

    async def notify(self, notification: Notification) -> None:
        channel = self.channel_for(notification.account_id)
        payload = json.dumps({"type": "notification", "payload": notification.to_payload()}, default=str)
        redis = aioredis.from_url(self.redis_url)
        try:
            await redis.publish(channel, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("notification.publish_failed", channel=channel, error=str(exc))
        finally:
            await redis.aclose()
