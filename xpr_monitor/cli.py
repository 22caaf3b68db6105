from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass

import httpx
import structlog

from xpr_monitor.bot import BotDispatcher
from xpr_monitor.config import MonitorConfig, load_config
from xpr_monitor.engine import CheckLevel, HealthCheckEngine
from xpr_monitor.errors import ConfigurationError
from xpr_monitor.event_log import EventLog
from xpr_monitor.probes import ApiProbe, ProcessProbe, ResourceProbe
from xpr_monitor.report import ReportGenerator
from xpr_monitor.restart import FileRestartStateStore, RestartController, ScriptNodeController
from xpr_monitor.telegram import Notifier, Priority, TelegramClient

CHECK_TYPES = ("basic", "detailed", "daily", "test")
TEST_MESSAGE = "🧪 This is a test notification from the XPR Monitoring script."

logger = structlog.get_logger(__name__)


def configure_logging(level: str) -> None:
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    # Avoid leaking secrets (Telegram token is embedded in the Telegram API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@dataclass
class Components:
    notifier: Notifier
    telegram: TelegramClient
    engine: HealthCheckEngine
    reporter: ReportGenerator


def build_components(config: MonitorConfig, client: httpx.AsyncClient, event_log: EventLog) -> Components:
    telegram = TelegramClient(client, config.telegram.token)
    notifier = Notifier(
        telegram,
        chat_id=config.telegram.chat_id,
        bp_name=config.bp_name,
        event_log=event_log,
    )
    process_probe = ProcessProbe(config.process_name)
    api_probe = ApiProbe(client)
    resource_probe = ResourceProbe(disk_path=config.disk_path)
    restart = RestartController(
        store=FileRestartStateStore(config.restart_state_file),
        node=ScriptNodeController(
            config.nodeos_dir,
            stop_script=config.stop_script,
            start_script=config.start_script,
            timeout=config.restart_command_timeout,
        ),
        process_probe=process_probe,
        notifier=notifier,
        event_log=event_log,
        max_attempts=config.max_restart_attempts,
        enabled=config.auto_restart_nodeos,
        settle_delay=config.restart_settle_seconds,
        grace_period=config.restart_grace_seconds,
    )
    engine = HealthCheckEngine(
        config=config,
        process_probe=process_probe,
        api_probe=api_probe,
        resource_probe=resource_probe,
        restart=restart,
        notifier=notifier,
        event_log=event_log,
    )
    reporter = ReportGenerator(
        config=config,
        process_probe=process_probe,
        api_probe=api_probe,
        resource_probe=resource_probe,
        notifier=notifier,
        event_log=event_log,
    )
    return Components(notifier=notifier, telegram=telegram, engine=engine, reporter=reporter)


def _load_config_or_exit(path: str | None) -> MonitorConfig | None:
    try:
        return load_config(path)
    except ConfigurationError as e:
        print(f"CRITICAL: {e}. Exiting.", file=sys.stderr)
        return None


async def run_check(config: MonitorConfig, check_type: str, *, silent: bool) -> int:
    event_log = EventLog(config.log_file, tag=check_type)
    async with httpx.AsyncClient() as client:
        components = build_components(config, client, event_log)
        if check_type in ("basic", "detailed"):
            await components.engine.run(CheckLevel(check_type), silent=silent)
        elif check_type == "daily":
            await components.reporter.send(silent=silent)
        else:
            await components.notifier.send(TEST_MESSAGE, Priority.INFO, silent=silent)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="xpr-monitor",
        description="XPR Network node monitor",
        usage="%(prog)s [--silent] [basic|detailed|daily|test]",
    )
    parser.add_argument("--silent", action="store_true", help="Only send CRITICAL notifications")
    parser.add_argument("check_type", nargs="?", default="basic", help="basic, detailed, daily or test")
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    args = parser.parse_args(argv)

    if args.check_type not in CHECK_TYPES:
        print(f"Usage: {parser.prog} [--silent] [{'|'.join(CHECK_TYPES)}]", file=sys.stderr)
        return 1

    config = _load_config_or_exit(args.config)
    if config is None:
        return 1
    configure_logging(args.log_level or config.log_level)

    return asyncio.run(run_check(config, args.check_type, silent=bool(args.silent)))


async def run_bot(config: MonitorConfig) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    event_log = EventLog(config.log_file, tag="BOT")
    async with httpx.AsyncClient() as client:
        components = build_components(config, client, event_log)
        dispatcher = BotDispatcher(
            config=config,
            transport=components.telegram,
            engine=components.engine,
            reporter=components.reporter,
            event_log=event_log,
        )
        await dispatcher.run(stop)
    return 0


def bot_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="xpr-monitor-bot", description="XPR Network monitor Telegram bot")
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    args = parser.parse_args(argv)

    config = _load_config_or_exit(args.config)
    if config is None:
        return 1
    configure_logging(args.log_level or config.log_level)

    if not config.telegram.enable_bot:
        logger.info("Telegram bot is disabled in the configuration. Exiting.")
        return 0
    return asyncio.run(run_bot(config))


if __name__ == "__main__":
    raise SystemExit(main())
