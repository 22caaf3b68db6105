from __future__ import annotations

import re
from collections import deque
from datetime import date, datetime
from pathlib import Path
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
ISSUE_PATTERN = re.compile(r"CRITICAL|WARNING|ERROR|failed|stopped")


class EventLog:
    """Append-only, line-per-event log shared by the checks and the bot.

    Line format: ``YYYY-MM-DD HH:MM:SS - [<tag>] - <message>``.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        tag: str = "monitor",
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.path = Path(path)
        self.tag = tag
        self._clock = clock

    def write(self, message: str, *, tag: str | None = None) -> None:
        # Multi-line messages would break the one-event-per-line contract.
        flat = " ".join(str(message).split())
        line = f"{self._clock().strftime(TIMESTAMP_FORMAT)} - [{tag or self.tag}] - {flat}\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.warning("Failed to append to event log", path=str(self.path), error=str(e))

    def _lines(self) -> list[str]:
        try:
            raw = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Failed to read event log", path=str(self.path), error=str(e))
            return []
        return [line for line in raw.splitlines() if line.strip()]

    def tail(self, lines: int, keyword: str | None = None) -> list[str]:
        """Last ``lines`` entries, oldest first, optionally filtered by a case-insensitive keyword."""
        needle = (keyword or "").strip().lower()
        window: deque[str] = deque(maxlen=max(1, int(lines)))
        for line in self._lines():
            if needle and needle not in line.lower():
                continue
            window.append(line)
        return list(window)

    def count_issues(self, day: date | None = None) -> int:
        prefix = (day or self._clock().date()).strftime("%Y-%m-%d")
        return sum(1 for line in self._lines() if prefix in line and ISSUE_PATTERN.search(line))
