"""Daily status digest."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from xpr_monitor.config import MonitorConfig
from xpr_monitor.errors import ProbeError
from xpr_monitor.event_log import EventLog
from xpr_monitor.probes import ApiProbe, ProcessProbe, ResourceProbe, compute_sync_status
from xpr_monitor.telegram import Notifier, Priority

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Report:
    node_status: str
    api_status: str
    sync_status: str
    resources: str
    issues_detected: int
    load_average: str
    uptime: str

    def render(self) -> str:
        lines = [
            "*📊 Daily Status Report*",
            "",
            "*🔧 Current Status:*",
            f" • Nodeos: `{self.node_status}`",
            f" • Public API: `{self.api_status}`",
            f" • Sync: `{self.sync_status}`",
            f" • Resources: `{self.resources}`",
            "",
            "*📈 24h Summary:*",
            f" • Issues Detected: `{self.issues_detected}`",
            f" • Load Average: `{self.load_average}`",
            "",
            "*ℹ️ System Info:*",
            f" • Uptime: `{self.uptime}`",
        ]
        return "\n".join(lines)


class ReportGenerator:
    """Builds the digest from live probe snapshots. Read-only with respect to restart state."""

    def __init__(
        self,
        *,
        config: MonitorConfig,
        process_probe: ProcessProbe,
        api_probe: ApiProbe,
        resource_probe: ResourceProbe,
        notifier: Notifier,
        event_log: EventLog,
    ) -> None:
        self.config = config
        self.process_probe = process_probe
        self.api_probe = api_probe
        self.resource_probe = resource_probe
        self.notifier = notifier
        self.event_log = event_log

    async def _height(self, endpoint: str) -> int | None:
        try:
            return await self.api_probe.get_height(endpoint, self.config.api_timeout)
        except ProbeError as e:
            logger.warning("API probe failed during report", endpoint=endpoint, kind=e.kind)
            return None

    async def generate(self) -> Report:
        pid = self.process_probe.find_pid()
        public_height = await self._height(self.config.api_url)
        local_height = await self._height(self.config.local_api)
        sync = compute_sync_status(local_height, public_height, self.config.max_blocks_behind)
        sample = await self.resource_probe.sample()

        return Report(
            node_status=f"RUNNING:{pid}" if pid is not None else "STOPPED",
            api_status=f"OK:{public_height}" if public_height is not None else "FAILED",
            sync_status=sync.label(),
            resources=sample.label(),
            issues_detected=self.event_log.count_issues(),
            load_average=self.resource_probe.load_average(),
            uptime=self.resource_probe.uptime(),
        )

    async def send(self, *, silent: bool = False) -> Report:
        report = await self.generate()
        self.event_log.write("Daily report generated.", tag="daily")
        await self.notifier.send(report.render(), Priority.INFO, silent=silent)
        return report
