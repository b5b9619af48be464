"""
Notification sinks — tell the requester how an automation ended.

  - StoreNotificationSink:     persists to the automation store (listed by the API)
  - WebhookNotificationSink:   POSTs JSON to an external URL, HMAC-signed when
                               a secret is configured, retried with tenacity
  - CompositeNotificationSink: fans out to several sinks; one failing sink
                               does not stop the others
"""
from __future__ import annotations

import abc
import hashlib
import hmac
import time
import structlog
from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import NotificationConfig
from database.store_base import BaseAutomationStore
from models.schemas import Notification

logger = structlog.get_logger()


class NotificationSink(abc.ABC):
    @abc.abstractmethod
    async def notify(self, notification: Notification) -> None:
        ...

    async def close(self) -> None:
        """Release network resources."""
        return None


class StoreNotificationSink(NotificationSink):
    def __init__(self, store: BaseAutomationStore):
        self.store = store

    async def notify(self, notification: Notification) -> None:
        await self.store.save_notification(notification)
        logger.info("notification_stored", notification_id=notification.id,
                    tenant_id=notification.tenant_id)


def sign_payload(payload: str, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over "{timestamp}.{payload}", formatted as "v1=<hex>"."""
    signed = f"{timestamp}.{payload}"
    return "v1=" + hmac.new(secret.encode(), signed.encode(), hashlib.sha256).hexdigest()


class WebhookNotificationSink(NotificationSink):
    """Delivers notifications to an HTTP endpoint."""

    def __init__(self, url: str, secret: str = "", client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.secret = secret
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=0.5, max=5),
        retry=retry_if_exception_type(httpx.HTTPError),
        reraise=True,
    )
    async def _post(self, body: str, headers: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        resp = await client.post(self.url, content=body, headers=headers)
        if resp.status_code >= 500:
            resp.raise_for_status()
        return resp

    async def notify(self, notification: Notification) -> None:
        body = notification.model_dump_json()
        headers = {
            "Content-Type": "application/json",
            "X-Notification-Id": notification.id,
            "X-Notification-Type": notification.type,
        }
        if self.secret:
            ts = int(time.time())
            headers["X-Signature"] = sign_payload(body, self.secret, ts)
            headers["X-Timestamp"] = str(ts)

        resp = await self._post(body, headers)
        if resp.status_code >= 400:
            logger.error("notification_webhook_rejected", url=self.url,
                         status=resp.status_code, body=resp.text[:300])
            resp.raise_for_status()
        logger.info("notification_webhook_delivered", notification_id=notification.id,
                    status=resp.status_code)

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class CompositeNotificationSink(NotificationSink):
    def __init__(self, sinks: list[NotificationSink]):
        self.sinks = list(sinks)

    async def notify(self, notification: Notification) -> None:
        for sink in self.sinks:
            try:
                await sink.notify(notification)
            except Exception as e:
                logger.error("notification_sink_failed", sink=type(sink).__name__,
                             notification_id=notification.id, error=str(e))

    async def close(self) -> None:
        for sink in self.sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.warning("notification_sink_close_failed",
                               sink=type(sink).__name__, error=str(e))


def build_notification_sink(
    store: BaseAutomationStore, config: NotificationConfig,
) -> NotificationSink:
    """Store sink always; webhook sink too when a URL is configured."""
    sinks: list[NotificationSink] = [StoreNotificationSink(store)]
    if config.webhook_url:
        sinks.append(WebhookNotificationSink(config.webhook_url, config.webhook_secret))
    return CompositeNotificationSink(sinks)
