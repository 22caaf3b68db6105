from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from xpr_monitor.errors import ProbeError

logger = structlog.get_logger(__name__)

GET_INFO_PATH = "/v1/chain/get_info"


# --- Process ---------------------------------------------------------------


class ProcessProbe:
    """Exact-name lookup in the process table (``pgrep -x`` semantics)."""

    def __init__(self, process_name: str, *, proc_root: str | Path = "/proc") -> None:
        self.process_name = process_name
        self.proc_root = Path(proc_root)

    def find_pid(self) -> int | None:
        # /proc/<pid>/comm is truncated to 15 characters by the kernel.
        wanted = self.process_name[:15]
        try:
            entries = list(self.proc_root.iterdir())
        except OSError:
            return None

        pids: list[int] = []
        for entry in entries:
            if not entry.name.isdigit():
                continue
            try:
                comm = (entry / "comm").read_text(encoding="utf-8", errors="replace").strip()
            except OSError:
                # Process exited between listing and reading.
                continue
            if comm == wanted:
                pids.append(int(entry.name))
        return min(pids) if pids else None

    def is_running(self) -> bool:
        return self.find_pid() is not None


# --- Chain API -------------------------------------------------------------


class ChainInfo(BaseModel):
    """The subset of ``get_info`` the monitor relies on."""

    head_block_num: int = Field(ge=0, strict=True)


class ApiProbe:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def get_height(self, endpoint: str, timeout: float) -> int:
        """Return ``head_block_num`` from ``{endpoint}/v1/chain/get_info``.

        Single attempt; the scheduler provides the retry cadence.

        Raises:
            ProbeError: with kind timeout, network, http_status, malformed_body or missing_field.
        """
        url = f"{endpoint.rstrip('/')}{GET_INFO_PATH}"
        try:
            resp = await self._client.get(url, timeout=timeout)
        except httpx.TimeoutException as e:
            raise ProbeError("timeout", endpoint, type(e).__name__) from None
        except httpx.HTTPError as e:
            raise ProbeError("network", endpoint, f"{type(e).__name__}: {e}") from None
        except Exception as e:
            # Bad URLs and socket-level errors (e.g. an out-of-range port) bypass httpx.HTTPError.
            raise ProbeError("network", endpoint, f"{type(e).__name__}: {e}") from None

        if not resp.is_success:
            raise ProbeError("http_status", endpoint, f"HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            raise ProbeError("malformed_body", endpoint, "response is not JSON") from None
        if not isinstance(data, dict):
            raise ProbeError("malformed_body", endpoint, "response is not a JSON object")
        if "head_block_num" not in data:
            raise ProbeError("missing_field", endpoint, "head_block_num")

        try:
            info = ChainInfo.model_validate(data)
        except ValidationError as e:
            raise ProbeError("malformed_body", endpoint, f"head_block_num invalid: {e.errors()[0]['msg']}") from None
        return info.head_block_num


SYNCED = "SYNCED"
BEHIND = "BEHIND"
UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class SyncStatus:
    state: str
    diff: int | None = None

    @property
    def is_synced(self) -> bool:
        return self.state == SYNCED

    def label(self) -> str:
        if self.diff is None:
            return "N/A"
        return f"{self.state}:{self.diff}"


def compute_sync_status(local_height: int | None, public_height: int | None, max_blocks_behind: int) -> SyncStatus:
    if local_height is None or public_height is None:
        return SyncStatus(UNKNOWN)
    diff = int(public_height) - int(local_height)
    if diff < int(max_blocks_behind):
        return SyncStatus(SYNCED, diff)
    return SyncStatus(BEHIND, diff)


# --- Host resources --------------------------------------------------------


@dataclass(frozen=True)
class ResourceSample:
    cpu_percent: float
    mem_percent: float
    disk_percent: float

    def label(self) -> str:
        return f"CPU:{self.cpu_percent:.1f}% MEM:{self.mem_percent:.1f}% DISK:{self.disk_percent:.1f}%"


def compute_cpu_used_percent(
    *, prev_total: int, prev_idle: int, cur_total: int, cur_idle: int
) -> float | None:
    delta_total = int(cur_total) - int(prev_total)
    delta_idle = int(cur_idle) - int(prev_idle)
    if delta_total <= 0:
        return None
    used = max(0.0, min(100.0, (1.0 - (delta_idle / float(delta_total))) * 100.0))
    return round(used, 1)


def format_uptime(seconds: float) -> str:
    """Render like ``uptime -p``."""
    minutes_total = int(seconds // 60)
    days, rem = divmod(minutes_total, 24 * 60)
    hours, minutes = divmod(rem, 60)
    parts = []
    for value, unit in ((days, "day"), (hours, "hour"), (minutes, "minute")):
        if value:
            parts.append(f"{value} {unit}{'' if value == 1 else 's'}")
    return "up " + (", ".join(parts) if parts else "0 minutes")


class ResourceProbe:
    """Best-effort host metrics. Never raises; unreadable metrics report 0.0."""

    def __init__(
        self,
        *,
        disk_path: str = "/",
        proc_root: str | Path = "/proc",
        cpu_interval: float = 0.5,
    ) -> None:
        self.disk_path = disk_path
        self.proc_root = Path(proc_root)
        self.cpu_interval = cpu_interval

    def _read_meminfo_kb(self) -> dict[str, int]:
        raw = (self.proc_root / "meminfo").read_text(encoding="utf-8")
        values: dict[str, int] = {}
        for line in raw.splitlines():
            if ":" not in line:
                continue
            key, rest = line.split(":", 1)
            parts = rest.strip().split()
            if parts and parts[0].isdigit():
                values[key.strip()] = int(parts[0])
        return values

    def _read_cpu_total_idle(self) -> tuple[int, int]:
        raw = (self.proc_root / "stat").read_text(encoding="utf-8")
        for line in raw.splitlines():
            if not line.startswith("cpu "):
                continue
            # cpu user nice system idle iowait irq softirq steal guest guest_nice
            nums = [int(p) if p.isdigit() else 0 for p in line.split()[1:]]
            if len(nums) < 4:
                break
            return sum(nums), nums[3] + (nums[4] if len(nums) > 4 else 0)
        raise ValueError("no aggregate cpu line in stat")

    async def cpu_percent(self) -> float:
        try:
            prev_total, prev_idle = self._read_cpu_total_idle()
            await asyncio.sleep(self.cpu_interval)
            cur_total, cur_idle = self._read_cpu_total_idle()
        except (OSError, ValueError) as e:
            logger.warning("CPU usage unavailable", error=str(e))
            return 0.0
        used = compute_cpu_used_percent(
            prev_total=prev_total, prev_idle=prev_idle, cur_total=cur_total, cur_idle=cur_idle
        )
        return used if used is not None else 0.0

    def mem_percent(self) -> float:
        try:
            info = self._read_meminfo_kb()
        except OSError as e:
            logger.warning("Memory usage unavailable", error=str(e))
            return 0.0
        total = info.get("MemTotal")
        avail = info.get("MemAvailable")
        if not total or avail is None:
            logger.warning("Memory usage unavailable", error="MemTotal/MemAvailable missing")
            return 0.0
        return round((1.0 - (avail / float(total))) * 100.0, 1)

    def disk_percent(self) -> float:
        try:
            total, used, _free = shutil.disk_usage(self.disk_path)
        except OSError as e:
            logger.warning("Disk usage unavailable", path=self.disk_path, error=str(e))
            return 0.0
        if total <= 0:
            return 0.0
        return round((used / float(total)) * 100.0, 1)

    async def sample(self) -> ResourceSample:
        return ResourceSample(
            cpu_percent=await self.cpu_percent(),
            mem_percent=self.mem_percent(),
            disk_percent=self.disk_percent(),
        )

    def uptime(self) -> str:
        try:
            seconds = float((self.proc_root / "uptime").read_text(encoding="utf-8").split()[0])
        except (OSError, ValueError, IndexError) as e:
            logger.warning("Uptime unavailable", error=str(e))
            return "n/a"
        return format_uptime(seconds)

    def load_average(self) -> str:
        try:
            load1, load5, load15 = os.getloadavg()
        except OSError:
            return "n/a"
        return f"{load1:.2f}, {load5:.2f}, {load15:.2f}"
