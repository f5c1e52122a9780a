from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Protocol

import httpx
import structlog

from burnwatch.models import Alert, AlertType, Urgency

logger = structlog.get_logger()

LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_CRITICAL = "critical"

_TITLES: "dict[AlertType, str]" = {
    AlertType.IMMINENT_LIMIT: "Rate limit imminent",
    AlertType.APPROACHING_LIMIT: "Rate limit approaching",
    AlertType.SWITCH_RECOMMENDED: "Rotation recommended",
    AlertType.ALL_PROFILES_LOW: "All profiles low",
}


@dataclass(frozen=True, slots=True)
class Notification:
    """
    Notification is the presentation form of an alert handed to
    notifiers.
    """

    level: "str"
    title: "str"
    message: "str"
    profile: "str"
    action: "str"
    timestamp: "datetime"

    def to_dict(self) -> "dict[str, str]":
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


def to_notification(alert: "Alert", now: "datetime | None" = None) -> "Notification":
    if alert.urgency == Urgency.HIGH:
        level = LEVEL_CRITICAL
    elif alert.urgency == Urgency.MEDIUM:
        level = LEVEL_WARNING
    else:
        level = LEVEL_INFO

    return Notification(
        level=level,
        title=_TITLES.get(alert.type, "Pre-rotation alert"),
        message=alert.message,
        profile=alert.profile,
        action=alert.suggested_action,
        timestamp=now or datetime.now(timezone.utc),
    )


class Notifier(Protocol):
    @property
    def name(self) -> "str": ...

    async def notify(self, notification: "Notification") -> "None": ...

    async def close(self) -> "None": ...


class LogNotifier:
    """
    LogNotifier writes notifications to the structured log.
    """

    @property
    def name(self) -> "str":
        return "log"

    async def notify(self, notification: "Notification") -> "None":
        if notification.level == LEVEL_CRITICAL:
            log = logger.error
        elif notification.level == LEVEL_WARNING:
            log = logger.warning
        else:
            log = logger.info

        log(
            "rotation_alert",
            title=notification.title,
            message=notification.message,
            profile=notification.profile,
            action=notification.action,
        )

    async def close(self) -> "None":
        pass


class WebhookNotifier:
    """
    WebhookNotifier POSTs each notification as JSON to a webhook
    URL. Delivery failures are logged and dropped.
    """

    def __init__(
        self,
        url: "str",
        client: "httpx.AsyncClient | None" = None,
    ) -> "None":
        self._url = url
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(timeout=10.0)

    @property
    def name(self) -> "str":
        return "webhook"

    async def notify(self, notification: "Notification") -> "None":
        try:
            resp = await self._client.post(self._url, json=notification.to_dict())
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "webhook_delivery_failed",
                url=self._url,
                title=notification.title,
                error=str(exc),
            )
            return

        logger.debug("webhook_delivered", title=notification.title)

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()
