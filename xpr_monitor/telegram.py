from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Callable

import httpx
import structlog

from xpr_monitor.errors import TransportError
from xpr_monitor.event_log import EventLog

logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_LEN = 3900


class Priority(str, enum.Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    SUCCESS = "SUCCESS"


PRIORITY_EMOJI = {
    Priority.CRITICAL: "🚨",
    Priority.WARNING: "⚠️",
    Priority.INFO: "ℹ️",
    Priority.SUCCESS: "✅",
}


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """Pack whole lines into chunks of at most ``max_len`` characters.

    A single line longer than ``max_len`` is hard-wrapped.
    """
    max_len = max(1, int(max_len))
    chunks: list[str] = []
    current = ""
    for line in (text or "").strip().splitlines():
        while len(line) > max_len:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:max_len])
            line = line[max_len:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > max_len:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current or not chunks:
        chunks.append(current)
    return chunks


def device_header(bp_name: str) -> str:
    return f"🖥️ *{bp_name} Monitor*"


class TelegramClient:
    """Thin Bot API client over a shared ``httpx.AsyncClient``.

    Errors surface as ``TransportError`` with the token redacted.
    """

    def __init__(self, client: httpx.AsyncClient, token: str, *, base_url: str = TELEGRAM_API_BASE) -> None:
        self._client = client
        self._token = token
        self._base_url = f"{base_url.rstrip('/')}/bot{token}"

    def _redact(self, text: str) -> str:
        if self._token:
            return text.replace(self._token, "<redacted>")
        return text

    async def _call(self, method: str, payload: dict[str, Any], *, timeout: float) -> Any:
        try:
            resp = await self._client.post(f"{self._base_url}/{method}", json=payload, timeout=timeout)
            data = resp.json()
        except httpx.HTTPError as e:
            raise TransportError(self._redact(f"{method}: {type(e).__name__}: {e}")) from None
        except ValueError as e:
            raise TransportError(f"{method}: response is not JSON ({e})") from None
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise TransportError(f"{method}: ok=false ({description or 'no description'})")
        return data.get("result")

    async def send_message(self, chat_id: str, text: str, *, parse_mode: str | None = "Markdown") -> None:
        for part in split_telegram_message(text):
            payload: dict[str, Any] = {
                "chat_id": chat_id,
                "text": part,
                "disable_web_page_preview": True,
            }
            if parse_mode:
                payload["parse_mode"] = parse_mode
            await self._call("sendMessage", payload, timeout=15.0)

    async def get_updates(self, *, offset: int, limit: int, timeout: int, request_timeout: float) -> Any:
        """Raw ``getUpdates`` body. A client-side timeout counts as an empty batch."""
        payload = {"offset": offset, "limit": limit, "timeout": timeout}
        try:
            resp = await self._client.post(
                f"{self._base_url}/getUpdates", json=payload, timeout=request_timeout
            )
        except httpx.TimeoutException:
            return {"ok": True, "result": []}
        except httpx.HTTPError as e:
            raise TransportError(self._redact(f"getUpdates: {type(e).__name__}: {e}")) from None
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(f"getUpdates: response is not JSON ({e})") from None


class Notifier:
    """Sends formatted alerts to the configured chat. Fire-and-forget."""

    def __init__(
        self,
        client: TelegramClient,
        *,
        chat_id: str,
        bp_name: str,
        event_log: EventLog | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._client = client
        self.chat_id = chat_id
        self.bp_name = bp_name
        self._event_log = event_log
        self._clock = clock

    def format(self, message: str, priority: Priority) -> str:
        emoji = PRIORITY_EMOJI.get(priority, "📊")
        stamp = self._clock().strftime("%Y-%m-%d %H:%M:%S")
        return f"{emoji} {device_header(self.bp_name)}\n\n{message}\n\n_{stamp}_"

    async def send(self, message: str, priority: Priority = Priority.INFO, *, silent: bool = False) -> bool:
        """Send a notification.

        Args:
            message: Markdown body
            priority: Presentation tag, and the silent-mode filter key
            silent: Drop everything except CRITICAL

        Returns:
            True if the message was delivered
        """
        if silent and priority is not Priority.CRITICAL:
            logger.debug("Notification suppressed by silent mode", priority=priority.value)
            return False

        try:
            await self._client.send_message(self.chat_id, self.format(message, priority))
        except TransportError as e:
            logger.error("Failed to send Telegram notification", priority=priority.value, error=str(e))
            if self._event_log is not None:
                self._event_log.write(f"Telegram notification failed ({priority.value}): {e}")
            return False

        logger.info("Telegram notification sent", priority=priority.value)
        if self._event_log is not None:
            self._event_log.write(f"Telegram notification sent ({priority.value}): {message}")
        return True
