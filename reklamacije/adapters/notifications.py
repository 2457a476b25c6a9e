from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

ONESIGNAL_APP_ID = os.getenv("ONESIGNAL_APP_ID", "")
ONESIGNAL_REST_API_KEY = os.getenv("ONESIGNAL_REST_API_KEY", "")
ONESIGNAL_API_URL = os.getenv("ONESIGNAL_API_URL", "https://onesignal.com/api/v1/notifications")
NOTIFICATION_TIMEOUT_SEC = float(os.getenv("NOTIFICATION_TIMEOUT_SEC", "10"))
ANDROID_CHANNEL_ID = "reklamacije-alert"


class DeliveryError(Exception):
    pass


@dataclass
class NotificationResult:
    sent: int = 0
    failed: int = 0


class NotificationGateway(Protocol):
    def notify(
        self,
        recipient_ids: Sequence[str],
        title: str,
        body: str,
        task_id: str,
        priority: str,
    ) -> NotificationResult: ...


class LoggingGateway:
    """Used when no push provider is configured: records what would have been sent."""

    def notify(
        self,
        recipient_ids: Sequence[str],
        title: str,
        body: str,
        task_id: str,
        priority: str,
    ) -> NotificationResult:
        logger.info(
            "push provider not configured; skipped %d recipient(s) for task %s: %s",
            len(recipient_ids),
            task_id,
            title,
        )
        return NotificationResult(sent=0, failed=len(recipient_ids))


class OneSignalGateway:
    def __init__(
        self,
        *,
        app_id: str,
        api_key: str,
        api_url: str = ONESIGNAL_API_URL,
        timeout_seconds: float = NOTIFICATION_TIMEOUT_SEC,
        client: httpx.Client | None = None,
    ) -> None:
        self._app_id = app_id
        self._api_key = api_key
        self._api_url = api_url
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def _payload(self, recipient_id: str, title: str, body: str, task_id: str, priority: str) -> dict[str, Any]:
        return {
            "app_id": self._app_id,
            "headings": {"en": title},
            "contents": {"en": body},
            "include_aliases": {"external_id": [recipient_id]},
            "target_channel": "push",
            "android_channel_id": ANDROID_CHANNEL_ID,
            "priority": 10 if priority == "urgent" else 5,
            "data": {"taskId": task_id, "priority": priority, "type": "new_task"},
        }

    def _send_one(self, recipient_id: str, title: str, body: str, task_id: str, priority: str) -> None:
        try:
            response = self._client.post(
                self._api_url,
                json=self._payload(recipient_id, title, body, task_id, priority),
                headers={"Authorization": f"Basic {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"push request for {recipient_id} failed: {exc}") from exc
        if response.status_code >= 400:
            raise DeliveryError(f"push provider returned {response.status_code} for {recipient_id}")
        try:
            body_json = response.json() if response.content else {}
        except ValueError as exc:
            raise DeliveryError(f"push provider sent an unreadable reply for {recipient_id}") from exc
        if isinstance(body_json, dict) and body_json.get("errors"):
            raise DeliveryError(f"push provider rejected {recipient_id}: {body_json['errors']}")

    def notify(
        self,
        recipient_ids: Sequence[str],
        title: str,
        body: str,
        task_id: str,
        priority: str,
    ) -> NotificationResult:
        result = NotificationResult()
        for recipient_id in recipient_ids:
            if not recipient_id:
                result.failed += 1
                continue
            try:
                self._send_one(recipient_id, title, body, task_id, priority)
            except DeliveryError as exc:
                logger.warning("push delivery failed: %s", exc)
                result.failed += 1
                continue
            result.sent += 1
        return result


def build_gateway() -> NotificationGateway:
    if ONESIGNAL_APP_ID and ONESIGNAL_REST_API_KEY:
        return OneSignalGateway(app_id=ONESIGNAL_APP_ID, api_key=ONESIGNAL_REST_API_KEY)
    return LoggingGateway()
