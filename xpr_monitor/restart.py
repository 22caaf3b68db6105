"""Bounded auto-restart of the node.

The attempt counter survives between scheduled invocations through a
``RestartStateStore``. Attempts are bounded across invocations, not within one:
each failing check makes at most one attempt, and once ``max_attempts`` is
reached the controller stays idle until a healthy check (or an operator)
clears the counter.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Awaitable, Callable, Protocol

import structlog

from xpr_monitor.errors import RestartError
from xpr_monitor.event_log import EventLog
from xpr_monitor.probes import ProcessProbe
from xpr_monitor.telegram import Notifier, Priority

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
RETRYING = "retrying"
EXHAUSTED = "exhausted"

RESTARTED = "restarted"
STILL_FAILING = "still_failing"
DISABLED = "disabled"


class RestartStateStore(Protocol):
    def load(self) -> int: ...

    def save(self, attempts: int) -> None: ...

    def clear(self) -> None: ...


class FileRestartStateStore:
    """Counter persisted as a single integer in a small file. Absent file means 0."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> int:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return 0
        try:
            return max(0, int(raw))
        except ValueError:
            logger.warning("Ignoring unreadable restart state", path=str(self.path), content=raw[:50])
            return 0

    def save(self, attempts: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        tmp.write_text(f"{int(attempts)}\n", encoding="utf-8")
        tmp.replace(self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class MemoryRestartStateStore:
    def __init__(self, attempts: int | None = None) -> None:
        self.attempts = attempts

    def load(self) -> int:
        return self.attempts or 0

    def save(self, attempts: int) -> None:
        self.attempts = int(attempts)

    def clear(self) -> None:
        self.attempts = None


class NodeController(Protocol):
    async def stop(self) -> None: ...

    async def start(self) -> None: ...


class ScriptNodeController:
    """Runs ``stop.sh`` / ``start.sh`` from the node directory."""

    def __init__(
        self,
        node_dir: str | Path,
        *,
        stop_script: str = "stop.sh",
        start_script: str = "start.sh",
        timeout: float = 120.0,
    ) -> None:
        self.node_dir = Path(node_dir)
        self.stop_script = stop_script
        self.start_script = start_script
        self.timeout = timeout

    async def _run(self, script: str) -> None:
        path = self.node_dir / script
        if not path.is_file():
            raise RestartError(f"{path} not found")
        if not os.access(path, os.X_OK):
            raise RestartError(f"{path} is not executable")

        try:
            proc = await asyncio.create_subprocess_exec(
                str(path),
                cwd=str(self.node_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise RestartError(f"{script}: {e}") from e

        try:
            returncode = await asyncio.wait_for(proc.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RestartError(f"{script} timed out after {self.timeout:.0f}s") from None
        if returncode != 0:
            raise RestartError(f"{script} exited with code {returncode}")

    async def stop(self) -> None:
        await self._run(self.stop_script)

    async def start(self) -> None:
        await self._run(self.start_script)


class RestartController:
    def __init__(
        self,
        *,
        store: RestartStateStore,
        node: NodeController,
        process_probe: ProcessProbe,
        notifier: Notifier,
        event_log: EventLog,
        max_attempts: int = 3,
        enabled: bool = True,
        settle_delay: float = 10.0,
        grace_period: float = 45.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.node = node
        self.process_probe = process_probe
        self.notifier = notifier
        self.event_log = event_log
        self.max_attempts = max(0, int(max_attempts))
        self.enabled = enabled
        self.settle_delay = settle_delay
        self.grace_period = grace_period
        self._sleep = sleep

    def state(self) -> tuple[str, int]:
        attempts = self.store.load()
        if attempts <= 0:
            return HEALTHY, 0
        if attempts >= self.max_attempts:
            return EXHAUSTED, attempts
        return RETRYING, attempts

    def reset(self) -> bool:
        """Clear a persisted counter. Returns True if there was one to clear."""
        attempts = self.store.load()
        if attempts <= 0:
            return False
        self.store.clear()
        logger.info("Restart attempt counter reset", previous_attempts=attempts)
        return True

    async def _restart_node(self) -> None:
        await self.node.stop()
        await self._sleep(self.settle_delay)
        await self.node.start()

    async def handle_failure(self, *, silent: bool = False) -> str:
        """Run the failure path once: at most one restart attempt per call."""
        if not self.enabled:
            self.event_log.write("Auto-restart is disabled. Manual intervention required.")
            logger.warning("Auto-restart disabled, not restarting node")
            return DISABLED

        attempts = self.store.load()
        if attempts >= self.max_attempts:
            self.event_log.write(
                f"CRITICAL: Maximum restart attempts ({self.max_attempts}) reached. "
                "Auto-restart aborted. Manual intervention required."
            )
            await self.notifier.send(
                "🚨 Maximum restart attempts reached. *Manual intervention required*.",
                Priority.CRITICAL,
                silent=silent,
            )
            return EXHAUSTED

        attempts += 1
        self.store.save(attempts)
        self.event_log.write(f"Attempting to restart nodeos (Attempt {attempts} of {self.max_attempts})...")
        await self.notifier.send(
            f"🔄 Attempting to restart nodeos (Attempt *{attempts}* of {self.max_attempts})...",
            Priority.WARNING,
            silent=silent,
        )

        try:
            await self._restart_node()
        except RestartError as e:
            logger.error("Restart command failed", attempt=attempts, error=str(e))
            self.event_log.write(f"CRITICAL: Restart command failed: {e}")
        else:
            self.event_log.write("Restart command issued. Waiting to check status...")
            await self._sleep(self.grace_period)
            if self.process_probe.is_running():
                self.store.clear()
                self.event_log.write("SUCCESS: Nodeos restarted successfully.")
                await self.notifier.send("✅ Nodeos restarted *successfully*.", Priority.SUCCESS, silent=silent)
                return RESTARTED

        self.event_log.write("CRITICAL: Nodeos failed to restart.")
        remaining = self.max_attempts - attempts
        await self.notifier.send(
            f"🚨 Nodeos *failed to restart*. Automatic attempts left: {remaining}.",
            Priority.CRITICAL,
            silent=silent,
        )
        return STILL_FAILING
