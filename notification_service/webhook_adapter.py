"""Webhook delivery adapter for queue change events."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from backend.services.events import ChangeEvent

LOGGER = logging.getLogger(__name__)


class WebhookEventSink:
    """Posts batches of change events to an automation webhook (n8n, Zapier, ...)."""

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 5.0,
        secret: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.url = url
        self.secret = secret
        self._timeout = timeout_seconds
        self._transport = transport

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    def deliver(self, events: List[ChangeEvent]) -> None:
        """Send one POST per batch; raises on transport or HTTP failure.

        The caller (``ChangeNotifier``) decides what a failure means.
        """

        if not events:
            return

        payload = self._build_payload(events)
        LOGGER.debug("webhook delivery: url=%s events=%s", self.url, len(events))

        with self._http_client() as client:
            response = client.post(self.url, json=payload)
            response.raise_for_status()

        LOGGER.debug(
            "webhook delivery response: %s %s",
            response.status_code,
            response.text,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _http_client(self) -> httpx.Client:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret
        return httpx.Client(
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    @staticmethod
    def _build_payload(events: List[ChangeEvent]) -> Dict[str, Any]:
        return {
            "count": len(events),
            "events": [item.model_dump(mode="json") for item in events],
        }
