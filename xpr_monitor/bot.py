"""Interactive Telegram command bot (long polling)."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog
from pydantic import BaseModel, ValidationError

from xpr_monitor.config import MonitorConfig
from xpr_monitor.engine import CheckLevel, HealthCheckEngine
from xpr_monitor.errors import TransportError
from xpr_monitor.event_log import EventLog
from xpr_monitor.report import ReportGenerator
from xpr_monitor.telegram import device_header

logger = structlog.get_logger(__name__)

ACCESS_DENIED = "⛔️ *Access Denied*\n\nYou are not authorized to use this bot."

RESTART_INFO = (
    "🔄 *Restart Info*\n\n"
    "Automatic restart via bot is disabled for security.\n"
    "To restart the node, connect to the server and run:\n"
    "`sudo systemctl restart nodeos`"
)

HELP_TEXT = (
    "🤖 *XPR Monitor Bot Commands*\n\n"
    "*/status* - Runs a full, detailed system status check.\n"
    "*/health* - Runs a quick, basic health check.\n"
    "*/report* - Generates and sends the daily summary report.\n"
    "*/logs [keyword]* - Shows the last 15 log entries. Optionally, you can filter by a keyword "
    "(e.g., `/logs error`).\n"
    "*/restart_info* - Shows instructions for manually restarting the node.\n"
    "*/help* - Shows this help message."
)


class Chat(BaseModel):
    id: int


class Message(BaseModel):
    chat: Chat
    text: Optional[str] = None


class Update(BaseModel):
    update_id: int
    message: Optional[Message] = None
    edited_message: Optional[Message] = None

    @property
    def effective_message(self) -> Message | None:
        return self.message or self.edited_message


class UpdatesEnvelope(BaseModel):
    ok: bool
    result: list[dict[str, Any]] = []


class BotTransport(Protocol):
    async def get_updates(self, *, offset: int, limit: int, timeout: int, request_timeout: float) -> Any: ...

    async def send_message(self, chat_id: str, text: str, *, parse_mode: str | None = "Markdown") -> None: ...


def parse_updates(body: Any) -> list[Update] | None:
    """Validated updates sorted by ``update_id``; None when the batch is unusable.

    Entries that fail validation but still carry an integer ``update_id`` are kept
    as bare updates so the offset moves past them.
    """
    try:
        envelope = UpdatesEnvelope.model_validate(body)
    except ValidationError:
        return None
    if not envelope.ok:
        return None

    updates: list[Update] = []
    for raw in envelope.result:
        try:
            updates.append(Update.model_validate(raw))
        except ValidationError:
            update_id = raw.get("update_id")
            if isinstance(update_id, int) and not isinstance(update_id, bool):
                logger.warning("Skipping malformed update", update_id=update_id)
                updates.append(Update(update_id=update_id))
    return sorted(updates, key=lambda u: u.update_id)


class BotDispatcher:
    """Long-polls Telegram and runs commands for the single authorized chat.

    ``offset`` only lives in memory: within one process no update is handled
    twice, after a restart the update in flight may be delivered again. Every
    command is idempotent, so that is acceptable.
    """

    def __init__(
        self,
        *,
        config: MonitorConfig,
        transport: BotTransport,
        engine: HealthCheckEngine,
        reporter: ReportGenerator,
        event_log: EventLog,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.transport = transport
        self.engine = engine
        self.reporter = reporter
        self.event_log = event_log
        self.offset = 0
        self._sleep = sleep
        self._commands: dict[str, Callable[[str, str], Awaitable[None]]] = {
            "/status": self._cmd_status,
            "/start": self._cmd_status,
            "/health": self._cmd_health,
            "/report": self._cmd_report,
            "/logs": self._cmd_logs,
            "/restart_info": self._cmd_restart_info,
            "/help": self._cmd_help,
        }

    # --- loop --------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until ``stop`` is set. A pending long poll is abandoned on stop."""
        self.event_log.write("Telegram bot service started. Listening for commands...")
        logger.info("Bot started", chat_id=self.config.telegram.chat_id)
        while not stop.is_set():
            fetch = asyncio.ensure_future(self._fetch())
            stopper = asyncio.ensure_future(stop.wait())
            done, _pending = await asyncio.wait({fetch, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if fetch not in done:
                fetch.cancel()
                await asyncio.gather(fetch, return_exceptions=True)
                break
            stopper.cancel()
            await self._process_batch(fetch.result())
        self.event_log.write("Telegram bot service stopped.")
        logger.info("Bot stopped", offset=self.offset)

    async def poll_once(self) -> int:
        """One fetch-and-process cycle. Returns the number of updates handled."""
        return await self._process_batch(await self._fetch())

    async def _fetch(self) -> list[Update] | None:
        tg = self.config.telegram
        try:
            body = await self.transport.get_updates(
                offset=self.offset,
                limit=tg.poll_limit,
                timeout=tg.poll_timeout,
                request_timeout=tg.request_timeout,
            )
        except TransportError as e:
            logger.warning("getUpdates failed", error=str(e))
            return None
        updates = parse_updates(body)
        if updates is None:
            logger.warning("Malformed getUpdates response", offset=self.offset)
        return updates

    async def _process_batch(self, updates: list[Update] | None) -> int:
        if not updates:
            await self._sleep(self.config.telegram.retry_delay)
            return 0

        handled = 0
        for update in updates:
            if update.update_id < self.offset:
                continue
            try:
                await self.handle_update(update)
            except Exception as e:
                logger.exception("Update handler failed", update_id=update.update_id)
                self.event_log.write(f"ERROR: Failed to handle update {update.update_id}: {type(e).__name__}: {e}")
            self.offset = update.update_id + 1
            handled += 1
        return handled

    # --- commands ----------------------------------------------------------

    async def handle_update(self, update: Update) -> None:
        message = update.effective_message
        if message is None or not (message.text or "").strip():
            return
        await self.process_command(message.text, str(message.chat.id))

    async def process_command(self, text: str, chat_id: str) -> None:
        if not text.strip():
            return
        command, *rest = text.split(maxsplit=1)
        # "/status@my_bot" in group chats
        command = command.split("@", 1)[0]
        args = rest[0].strip() if rest else ""

        if chat_id != self.config.telegram.chat_id:
            self.event_log.write(f"Received command '{command}' from chat ID {chat_id}")
            self.event_log.write(f"Unauthorized access attempt from chat ID {chat_id}. Ignoring.")
            logger.warning("Unauthorized chat", chat_id=chat_id, command=command)
            await self.reply(chat_id, ACCESS_DENIED)
            return

        handler = self._commands.get(command)
        if handler is None:
            await self.reply(
                chat_id,
                f"❓ *Unknown Command*\n\nI don't recognize the command '{command}'. "
                "Use /help to see available options.",
            )
            return
        await handler(chat_id, args)
        # Written after the handler so /logs never reports its own request.
        self.event_log.write(f"Processed command '{command}' with args '{args}' from chat ID {chat_id}")

    async def reply(self, chat_id: str, text: str) -> None:
        try:
            await self.transport.send_message(chat_id, f"{device_header(self.config.bp_name)}\n\n{text}")
        except TransportError as e:
            logger.error("Failed to send bot reply", chat_id=chat_id, error=str(e))

    async def _cmd_status(self, chat_id: str, args: str) -> None:
        await self.reply(
            chat_id,
            "⏳ *Running Full Status Check...*\n\nThis may take a moment. The report will be sent by the monitor.",
        )
        await self.engine.run(CheckLevel.DETAILED, silent=False)

    async def _cmd_health(self, chat_id: str, args: str) -> None:
        await self.engine.run(CheckLevel.BASIC, silent=False)

    async def _cmd_report(self, chat_id: str, args: str) -> None:
        await self.reply(chat_id, "⏳ *Generating Daily Report...*")
        await self.reporter.send()

    async def _cmd_logs(self, chat_id: str, args: str) -> None:
        lines = self.config.telegram.logs_lines
        keyword = "" if args.lower() in ("", "all") else args
        entries = self.event_log.tail(lines, keyword or None)
        body = "\n".join(entries)

        if not keyword:
            await self.reply(chat_id, f"📋 *Last {lines} Log Entries:*\n\n```\n{body}\n```")
        elif entries:
            await self.reply(chat_id, f"📋 *Last {lines} Log Entries matching '{keyword}':*\n\n```\n{body}\n```")
        else:
            await self.reply(chat_id, f"ℹ️ No log entries found matching '*{keyword}*'.")

    async def _cmd_restart_info(self, chat_id: str, args: str) -> None:
        await self.reply(chat_id, RESTART_INFO)

    async def _cmd_help(self, chat_id: str, args: str) -> None:
        await self.reply(chat_id, HELP_TEXT)
