from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from xpr_monitor.config import MonitorConfig, TelegramSettings
from xpr_monitor.engine import HealthCheckEngine
from xpr_monitor.errors import RestartError, TransportError
from xpr_monitor.event_log import EventLog
from xpr_monitor.probes import ApiProbe, ResourceSample
from xpr_monitor.report import ReportGenerator
from xpr_monitor.restart import MemoryRestartStateStore, RestartController
from xpr_monitor.telegram import Notifier

FIXED_NOW = datetime(2026, 10, 18, 9, 30, 0)
AUTHORIZED_CHAT = "42"


def fixed_clock() -> datetime:
    return FIXED_NOW


def make_config(tmp_path: Path, **overrides: Any) -> MonitorConfig:
    data: dict[str, Any] = {
        "bp_name": "TestNode",
        "local_api": "http://local.test:8888",
        "api_url": "https://public.test",
        "restart_state_file": str(tmp_path / "restart.state"),
        "log_file": str(tmp_path / "monitor.log"),
        "restart_settle_seconds": 10,
        "restart_grace_seconds": 45,
        "telegram": TelegramSettings(token="123:secret", chat_id=AUTHORIZED_CHAT, retry_delay=0),
    }
    data.update(overrides)
    return MonitorConfig(**data)


def chain_client(requests: list[httpx.Request] | None = None, **heights: Any) -> httpx.AsyncClient:
    """Mock chain API keyed by the first label of the host (``local``/``public``).

    A value may be an int (served as head_block_num), an ``httpx.Response``, an
    exception instance to raise, or missing (connection refused).
    """

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        value = heights.get(request.url.host.split(".")[0])
        if value is None:
            raise httpx.ConnectError("connection refused", request=request)
        if isinstance(value, Exception):
            raise value
        if isinstance(value, httpx.Response):
            return value
        return httpx.Response(200, json={"head_block_num": value, "chain_id": "384da888"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class FakeTelegram:
    """Stands in for TelegramClient on both the send and the poll side."""

    def __init__(self, batches: list[Any] | None = None, *, fail_send: bool = False) -> None:
        self.sent: list[tuple[str, str]] = []
        self.batches = list(batches or [])
        self.offsets: list[int] = []
        self.fail_send = fail_send
        self.stop: asyncio.Event | None = None

    async def send_message(self, chat_id: str, text: str, *, parse_mode: str | None = "Markdown") -> None:
        if self.fail_send:
            raise TransportError("sendMessage: ConnectError: boom")
        self.sent.append((chat_id, text))

    async def get_updates(self, *, offset: int, limit: int, timeout: int, request_timeout: float) -> Any:
        self.offsets.append(offset)
        if self.batches:
            item = self.batches.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self.stop is not None:
            self.stop.set()
        return {"ok": True, "result": []}

    def texts(self) -> list[str]:
        return [text for _chat, text in self.sent]


class FakeProcessProbe:
    def __init__(self, running: bool = True, pid: int = 4242) -> None:
        self.running = running
        self.pid = pid

    def is_running(self) -> bool:
        return self.running

    def find_pid(self) -> int | None:
        return self.pid if self.running else None


class FakeNode:
    """Records stop/start calls; ``revive`` decides liveness after start."""

    def __init__(self, probe: FakeProcessProbe, *, revive: bool = True, fail: bool = False) -> None:
        self.probe = probe
        self.revive = revive
        self.fail = fail
        self.calls: list[str] = []

    async def stop(self) -> None:
        self.calls.append("stop")
        if self.fail:
            raise RestartError("stop.sh not found")

    async def start(self) -> None:
        self.calls.append("start")
        self.probe.running = self.revive

    @property
    def restarts(self) -> int:
        return self.calls.count("start")


class FakeResourceProbe:
    def __init__(self, cpu: float = 10.0, mem: float = 20.0, disk: float = 30.0) -> None:
        self.sample_value = ResourceSample(cpu_percent=cpu, mem_percent=mem, disk_percent=disk)
        self.samples = 0

    async def sample(self) -> ResourceSample:
        self.samples += 1
        return self.sample_value

    def load_average(self) -> str:
        return "0.10, 0.20, 0.30"

    def uptime(self) -> str:
        return "up 3 days, 2 hours"


@dataclass
class Stack:
    config: MonitorConfig
    telegram: FakeTelegram
    notifier: Notifier
    process: FakeProcessProbe
    node: FakeNode
    store: MemoryRestartStateStore
    resources: FakeResourceProbe
    event_log: EventLog
    restart: RestartController
    engine: HealthCheckEngine
    reporter: ReportGenerator
    requests: list[httpx.Request] = field(default_factory=list)
    sleeps: list[float] = field(default_factory=list)

    def notifications(self) -> list[str]:
        return self.telegram.texts()


def make_stack(
    tmp_path: Path,
    *,
    running: bool = True,
    revive: bool = True,
    node_fails: bool = False,
    heights: dict[str, Any] | None = None,
    resources: FakeResourceProbe | None = None,
    attempts: int | None = None,
    telegram: FakeTelegram | None = None,
    **config_overrides: Any,
) -> Stack:
    config = make_config(tmp_path, **config_overrides)
    requests: list[httpx.Request] = []
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    tg = telegram or FakeTelegram()
    event_log = EventLog(config.log_file, tag="test", clock=fixed_clock)
    notifier = Notifier(tg, chat_id=config.telegram.chat_id, bp_name=config.bp_name, event_log=event_log, clock=fixed_clock)
    process = FakeProcessProbe(running=running)
    node = FakeNode(process, revive=revive, fail=node_fails)
    store = MemoryRestartStateStore(attempts)
    res = resources or FakeResourceProbe()
    api = ApiProbe(chain_client(requests, **(heights if heights is not None else {"local": 1000, "public": 1010})))
    restart = RestartController(
        store=store,
        node=node,
        process_probe=process,
        notifier=notifier,
        event_log=event_log,
        max_attempts=config.max_restart_attempts,
        enabled=config.auto_restart_nodeos,
        settle_delay=config.restart_settle_seconds,
        grace_period=config.restart_grace_seconds,
        sleep=fake_sleep,
    )
    engine = HealthCheckEngine(
        config=config,
        process_probe=process,
        api_probe=api,
        resource_probe=res,
        restart=restart,
        notifier=notifier,
        event_log=event_log,
    )
    reporter = ReportGenerator(
        config=config,
        process_probe=process,
        api_probe=api,
        resource_probe=res,
        notifier=notifier,
        event_log=event_log,
    )
    return Stack(
        config=config,
        telegram=tg,
        notifier=notifier,
        process=process,
        node=node,
        store=store,
        resources=res,
        event_log=event_log,
        restart=restart,
        engine=engine,
        reporter=reporter,
        requests=requests,
        sleeps=sleeps,
    )
