from __future__ import annotations

import logging
from typing import Any

import requests

from autopilot.config import NotificationsConfig

LOGGER = logging.getLogger(__name__)


class Notifier:
    """Fire-and-forget push to a generic webhook, Discord and Telegram. Never raises."""

    def __init__(self, config: NotificationsConfig):
        self.config = config

    def send(
        self,
        *,
        event: str,
        message: str,
        level: str = "info",
        context: dict[str, Any] | None = None,
    ) -> None:
        if not self.config.enabled:
            return
        details = f"[{level.upper()}] {event}: {message}"
        if context:
            details += " | " + " ".join(f"{k}={v}" for k, v in context.items())
        self._send_webhook(event, details, context or {})
        self._send_discord(details)
        self._send_telegram(details)

    def _post(self, channel: str, url: str, payload: dict[str, Any]) -> None:
        try:
            response = requests.post(url, json=payload, timeout=self.config.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("%s notification failed: %s", channel, exc)

    def _send_webhook(self, event: str, text: str, context: dict[str, Any]) -> None:
        url = (self.config.webhook_url or "").strip()
        if not url:
            return
        self._post("Webhook", url, {"event": event, "text": text, "context": context})

    def _send_discord(self, text: str) -> None:
        webhook = (self.config.discord_webhook or "").strip()
        if not webhook:
            return
        self._post("Discord", webhook, {"content": text})

    def _send_telegram(self, text: str) -> None:
        bot_token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not bot_token or not chat_id:
            return
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        self._post("Telegram", url, {"chat_id": chat_id, "text": text})
