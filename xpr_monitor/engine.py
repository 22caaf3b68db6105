from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field

import structlog

from xpr_monitor.config import MonitorConfig
from xpr_monitor.errors import ProbeError
from xpr_monitor.event_log import EventLog
from xpr_monitor.probes import (
    ApiProbe,
    ProcessProbe,
    ResourceProbe,
    ResourceSample,
    SyncStatus,
    compute_sync_status,
)
from xpr_monitor.restart import RestartController
from xpr_monitor.telegram import Notifier, Priority

logger = structlog.get_logger(__name__)


class CheckLevel(str, enum.Enum):
    BASIC = "basic"
    DETAILED = "detailed"
    DAILY = "daily"


@dataclass
class CheckOutcome:
    level: CheckLevel
    healthy: bool
    reason: str = "ok"
    restart_result: str | None = None
    sync: SyncStatus | None = None
    resources: ResourceSample | None = None
    resource_violations: list[str] = field(default_factory=list)


def collect_resource_violations(sample: ResourceSample, config: MonitorConfig) -> list[tuple[str, float]]:
    """(label, value) for every metric strictly above its threshold, checked independently."""
    checks = (
        ("CPU", sample.cpu_percent, config.cpu_critical_threshold),
        ("Memory", sample.mem_percent, config.memory_critical_threshold),
        ("Disk", sample.disk_percent, config.disk_critical_threshold),
    )
    return [(label, value) for label, value, limit in checks if value > limit]


class HealthCheckEngine:
    """Runs one check at a given level and turns the result into notifications.

    Probe failures never escape ``run``: they become alerts and, for the node
    itself, a pass through the restart controller. Concurrent ``run`` calls in
    one process are serialized.
    """

    def __init__(
        self,
        *,
        config: MonitorConfig,
        process_probe: ProcessProbe,
        api_probe: ApiProbe,
        resource_probe: ResourceProbe,
        restart: RestartController,
        notifier: Notifier,
        event_log: EventLog,
    ) -> None:
        self.config = config
        self.process_probe = process_probe
        self.api_probe = api_probe
        self.resource_probe = resource_probe
        self.restart = restart
        self.notifier = notifier
        self.event_log = event_log
        self._lock = asyncio.Lock()

    async def run(self, level: CheckLevel, *, silent: bool = False) -> CheckOutcome:
        async with self._lock:
            log = logger.bind(level=level.value, silent=silent)
            return await self._run(level, silent, log)

    async def _run(self, level: CheckLevel, silent: bool, log) -> CheckOutcome:
        tag = level.value
        self.event_log.write(f"Starting '{tag}' check...", tag=tag)

        if not self.process_probe.is_running():
            self.event_log.write(f"CRITICAL: {self.config.process_name} process is not running.", tag=tag)
            log.error("Node process not running", process=self.config.process_name)
            await self.notifier.send(
                f"🚨 CRITICAL: *{self.config.process_name} process is STOPPED*.", Priority.CRITICAL, silent=silent
            )
            result = await self.restart.handle_failure(silent=silent)
            return CheckOutcome(level, healthy=False, reason="process_stopped", restart_result=result)

        try:
            local_height = await self.api_probe.get_height(self.config.local_api, self.config.api_timeout)
        except ProbeError as e:
            self.event_log.write(f"CRITICAL: Local API is not responding ({e.kind}).", tag=tag)
            log.error("Local API probe failed", kind=e.kind, detail=e.detail)
            await self.notifier.send("🚨 CRITICAL: *Local API is not responding*.", Priority.CRITICAL, silent=silent)
            result = await self.restart.handle_failure(silent=silent)
            return CheckOutcome(level, healthy=False, reason=f"local_api_{e.kind}", restart_result=result)

        if self.restart.reset():
            self.event_log.write("System is healthy. Resetting restart attempt counter.", tag=tag)

        outcome = CheckOutcome(level, healthy=True)
        if level in (CheckLevel.DETAILED, CheckLevel.DAILY):
            outcome.sync = await self.check_sync(local_height, silent=silent, tag=tag)
            outcome.resources, outcome.resource_violations = await self.check_resources(silent=silent, tag=tag)

        self.event_log.write(f"'{tag}' check completed successfully.", tag=tag)
        log.info("Check completed", local_height=local_height)

        if not silent:
            if level is CheckLevel.BASIC:
                message = "✅ *Health Check: OK*\n\nAll basic systems are running correctly."
            else:
                message = "✅ *Status Check: OK*\n\nAll systems are nominal."
            await self.notifier.send(message, Priority.SUCCESS, silent=silent)
        return outcome

    async def check_sync(self, local_height: int | None, *, silent: bool, tag: str) -> SyncStatus:
        public_height: int | None = None
        try:
            public_height = await self.api_probe.get_height(self.config.api_url, self.config.api_timeout)
        except ProbeError as e:
            logger.warning("Public API probe failed", kind=e.kind, detail=e.detail)

        status = compute_sync_status(local_height, public_height, self.config.max_blocks_behind)
        if status.diff is None:
            self.event_log.write("ERROR: Could not determine sync status. One or both APIs failed.", tag=tag)
            await self.notifier.send(
                "⚠️ Could not determine sync status. API check failed.", Priority.WARNING, silent=silent
            )
        elif not status.is_synced:
            self.event_log.write(
                f"WARNING: Node is {status.diff} blocks behind (Threshold: {self.config.max_blocks_behind}).",
                tag=tag,
            )
            await self.notifier.send(
                f"⚠️ *Node is {status.diff} blocks behind* the network.", Priority.WARNING, silent=silent
            )
        return status

    async def check_resources(self, *, silent: bool, tag: str) -> tuple[ResourceSample, list[str]]:
        sample = await self.resource_probe.sample()
        labels: list[str] = []
        for label, value in collect_resource_violations(sample, self.config):
            labels.append(label)
            self.event_log.write(f"CRITICAL: High {label} usage at {value:.1f}%.", tag=tag)
            await self.notifier.send(
                f"🚨 High {label} usage detected: *{value:.1f}%*.", Priority.CRITICAL, silent=silent
            )
        return sample, labels
