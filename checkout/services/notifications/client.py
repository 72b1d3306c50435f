"""
Order notification client (httpx sync). Posts "order paid" events to the
admin notification endpoint. Content and templates belong to the receiver.
"""
import logging
from typing import Any

import httpx

from checkout.core.config import settings

logger = logging.getLogger(__name__)


class NotificationClient:
    def __init__(self, url: str | None = None, timeout: float | None = None) -> None:
        self._url = url if url is not None else settings.notification_webhook_url
        self._timeout = timeout or settings.notification_timeout_seconds
        self._client: httpx.Client | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)
        return self._client

    def send_order_paid(self, payload: dict[str, Any]) -> None:
        resp = self.client.post(self._url, json={"event": "order_paid", "order": payload})
        resp.raise_for_status()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
