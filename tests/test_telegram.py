from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from tests.support import FakeTelegram, fixed_clock
from xpr_monitor.errors import TransportError
from xpr_monitor.event_log import EventLog
from xpr_monitor.telegram import (
    TELEGRAM_MAX_MESSAGE_LEN,
    Notifier,
    Priority,
    TelegramClient,
    split_telegram_message,
)

TOKEN = "123456:very-secret"


def test_split_telegram_message_respects_max_len() -> None:
    text = ("line\n" * 2000).strip()
    parts = split_telegram_message(text, max_len=500)
    assert len(parts) > 1
    assert all(0 < len(p) <= 500 for p in parts)


def test_split_telegram_message_default_limit() -> None:
    text = "a" * (TELEGRAM_MAX_MESSAGE_LEN + 10)
    parts = split_telegram_message(text)
    assert len(parts) == 2
    assert len(parts[0]) <= TELEGRAM_MAX_MESSAGE_LEN
    assert len(parts[1]) <= TELEGRAM_MAX_MESSAGE_LEN


def _notifier(telegram: FakeTelegram, tmp_path: Path) -> Notifier:
    return Notifier(
        telegram,
        chat_id="42",
        bp_name="protonbp",
        event_log=EventLog(tmp_path / "monitor.log", tag="basic", clock=fixed_clock),
        clock=fixed_clock,
    )


@pytest.mark.asyncio
async def test_notifier_formats_header_tag_and_footer(tmp_path: Path) -> None:
    telegram = FakeTelegram()
    notifier = _notifier(telegram, tmp_path)

    assert await notifier.send("⚠️ *Node is 150 blocks behind* the network.", Priority.WARNING) is True

    assert telegram.sent == [
        (
            "42",
            "⚠️ 🖥️ *protonbp Monitor*\n\n⚠️ *Node is 150 blocks behind* the network.\n\n_2026-10-18 09:30:00_",
        )
    ]
    log = (tmp_path / "monitor.log").read_text(encoding="utf-8")
    assert "[basic] - Telegram notification sent (WARNING):" in log


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("priority", "delivered"),
    [
        (Priority.INFO, False),
        (Priority.WARNING, False),
        (Priority.SUCCESS, False),
        (Priority.CRITICAL, True),
    ],
)
async def test_silent_mode_only_lets_critical_through(tmp_path: Path, priority: Priority, delivered: bool) -> None:
    telegram = FakeTelegram()
    notifier = _notifier(telegram, tmp_path)

    assert await notifier.send("msg", priority, silent=True) is delivered
    assert len(telegram.sent) == (1 if delivered else 0)


@pytest.mark.asyncio
async def test_notifier_swallows_transport_errors(tmp_path: Path) -> None:
    notifier = _notifier(FakeTelegram(fail_send=True), tmp_path)

    assert await notifier.send("🚨 boom", Priority.CRITICAL) is False
    assert "Telegram notification failed (CRITICAL)" in (tmp_path / "monitor.log").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_client_posts_markdown_and_splits() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == f"/bot{TOKEN}/sendMessage"
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True, "result": {"message_id": len(seen)}})

    client = TelegramClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), TOKEN)
    await client.send_message("42", "x" * (TELEGRAM_MAX_MESSAGE_LEN + 1))

    assert len(seen) == 2
    assert all(p["parse_mode"] == "Markdown" and p["chat_id"] == "42" for p in seen)


@pytest.mark.asyncio
async def test_client_errors_are_redacted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"cannot reach {request.url}", request=request)

    client = TelegramClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), TOKEN)

    with pytest.raises(TransportError) as exc_info:
        await client.send_message("42", "hi")

    assert TOKEN not in str(exc_info.value)
    assert "<redacted>" in str(exc_info.value)


@pytest.mark.asyncio
async def test_client_ok_false_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"ok": False, "description": "Bad Request: can't parse entities"})

    client = TelegramClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), TOKEN)

    with pytest.raises(TransportError, match="can't parse entities"):
        await client.send_message("42", "*broken")


@pytest.mark.asyncio
async def test_get_updates_timeout_is_an_empty_batch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("long poll", request=request)

    client = TelegramClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), TOKEN)

    body = await client.get_updates(offset=5, limit=10, timeout=60, request_timeout=70)

    assert body == {"ok": True, "result": []}


def test_split_telegram_message_keeps_whole_lines() -> None:
    lines = [f"2026-10-18 08:{i:02d}:00 - [basic] - entry {i}" for i in range(60)]

    parts = split_telegram_message("\n".join(lines), max_len=300)

    assert len(parts) > 1
    assert "\n".join(parts).splitlines() == lines
