"""Slack webhook notifier for enforcement failures and access changes."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx
from cachetools import TTLCache

from netcurfew.errors import (
    AuthFailureError,
    ControllerError,
    NotConfiguredError,
    PermissionDeniedError,
)
from netcurfew.models.devices import ActivityAction, ActivityLogEntry

logger = logging.getLogger(__name__)

# Errors that will not fix themselves on the next tick
FATAL_ERRORS = (AuthFailureError, PermissionDeniedError, NotConfiguredError)

ACTION_COLORS = {
    ActivityAction.BLOCKED: "#F44336",            # red
    ActivityAction.SCHEDULE_BLOCKED: "#FF9800",   # orange
    ActivityAction.TEMPORARY_BLOCK: "#FF9800",
    ActivityAction.UNBLOCKED: "#4CAF50",          # green
    ActivityAction.SCHEDULE_UNBLOCKED: "#4CAF50",
    ActivityAction.BONUS_TIME_ADDED: "#2196F3",   # blue
}


def is_fatal(error: ControllerError) -> bool:
    return isinstance(error, FATAL_ERRORS)


@dataclass
class SlackConfig:
    """Configuration for Slack notifier."""
    webhook_url: str
    enabled: bool = True
    notify_activity: bool = False
    dedup_window: float = 3600.0


class SlackNotifier:
    """Async Slack webhook notifier.

    Repeated failures of the same kind are reported once per ``dedup_window``
    seconds; the reconciler hits them on every tick until someone fixes the
    controller account.
    """

    def __init__(self, config: SlackConfig) -> None:
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None
        self._sent: TTLCache[str, bool] = TTLCache(
            maxsize=1000, ttl=config.dedup_window
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _format_error(self, error: ControllerError, device_name: Optional[str]) -> dict:
        fields = [
            {"title": "Error", "value": type(error).__name__, "short": True},
        ]
        if error.operation:
            fields.append({"title": "Operation", "value": error.operation, "short": True})
        if error.mac:
            device = f"{device_name} ({error.mac})" if device_name else error.mac
            fields.append({"title": "Device", "value": device, "short": True})

        attachment = {
            "color": "#9C27B0",
            "title": "[!!!] Access control is not being enforced",
            "text": str(error),
            "fields": fields,
            "footer": "netcurfew",
            "ts": int(datetime.now(timezone.utc).timestamp()),
        }
        return {"attachments": [attachment]}

    def _format_activity(self, entry: ActivityLogEntry, device_name: Optional[str]) -> dict:
        device = f"{device_name} ({entry.mac})" if device_name else entry.mac
        title = entry.action.value.replace("_", " ")

        fields = [{"title": "Device", "value": device, "short": True}]
        if entry.reason:
            fields.append({"title": "Reason", "value": entry.reason.value, "short": True})
        if entry.duration_minutes:
            fields.append({"title": "Duration", "value": f"{entry.duration_minutes} min", "short": True})

        attachment = {
            "color": ACTION_COLORS.get(entry.action, "#808080"),
            "title": f"{device}: {title}",
            "fields": fields,
            "footer": "netcurfew",
            "ts": int(entry.timestamp.timestamp()),
        }
        return {"attachments": [attachment]}

    async def notify_error(self, error: ControllerError, device_name: Optional[str] = None) -> bool:
        """Report a controller failure. Returns True if a message was sent."""
        if not self.config.enabled:
            return False

        key = f"{type(error).__name__}:{error.operation}:{error.mac}"
        if key in self._sent:
            logger.debug(f"Skipping duplicate Slack notification: {key}")
            return False

        sent = await self._post(self._format_error(error, device_name))
        if sent:
            self._sent[key] = True
        return sent

    async def notify_activity(self, entry: ActivityLogEntry, device_name: Optional[str] = None) -> bool:
        """Report a block/unblock/bonus change, if activity notifications are on."""
        if not self.config.enabled or not self.config.notify_activity:
            return False
        return await self._post(self._format_activity(entry, device_name))

    async def _post(self, payload: dict) -> bool:
        try:
            client = await self._get_client()
            resp = await client.post(self.config.webhook_url, json=payload)

            if resp.status_code == 200:
                logger.debug("Slack notification sent")
                return True
            else:
                logger.warning(f"Slack webhook failed: {resp.status_code} - {resp.text}")
                return False

        except httpx.TimeoutException:
            logger.warning("Slack webhook timeout")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"Slack webhook error: {e}")
            return False
