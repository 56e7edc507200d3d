"""
Push notification channel.

Posts one JSON message per batch of device tokens to the push gateway
configured in ``PUSH_GATEWAY_URL``. Without a gateway URL the message is only
logged.

Pass a custom ``session`` in tests to intercept HTTP calls without making real
network requests.

Usage:
    from propworks.services.push_service import PushService
    PushService().send(tokens=["abc"], title="Quote rejected", message="...")
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from flask import current_app

logger = logging.getLogger(__name__)


class PushService:
    """Thin client for the push gateway; no retry, the dispatcher is at-most-once."""

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session: requests.Session | None = session

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("PUSH_GATEWAY_URL"))

    def send(
        self,
        *,
        tokens: list[str],
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """
        Deliver one push message to every token.

        Returns:
            True if the gateway accepted it, False when there was nothing to
            send or the gateway is not configured.

        Raises:
            requests.RequestException on transport errors or non-2xx replies.
        """
        tokens = [t for t in tokens if t]
        if not tokens:
            return False

        if not self.is_configured():
            logger.info("Push (log-only): %d device(s) title='%s'", len(tokens), title)
            return False

        response = self.session.post(
            current_app.config["PUSH_GATEWAY_URL"],
            json={"tokens": tokens, "title": title, "body": message, "data": data or {}},
            timeout=current_app.config.get("PUSH_GATEWAY_TIMEOUT", 5),
        )
        response.raise_for_status()
        logger.info("Push sent: %d device(s) title='%s'", len(tokens), title)
        return True
