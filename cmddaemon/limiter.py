"""Restart limiter with exponential back-off."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional


def _shanghai() -> tzinfo:
    try:
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
    except ImportError:  # pragma: no cover
        return timezone(timedelta(hours=8))
    try:
        return ZoneInfo("Asia/Shanghai")
    except ZoneInfoNotFoundError:
        return timezone(timedelta(hours=8))


@dataclass
class Limiter:
    """Counts restarts up to a limit; the wait doubles with every restart."""

    count: int = 0
    limit: int = 5
    interval: timedelta = timedelta(seconds=1)
    last: Optional[datetime] = None
    tz: tzinfo = field(default_factory=_shanghai)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def inc(self) -> bool:
        return self._add(1)

    def dec(self) -> bool:
        return self._add(-1)

    def _add(self, n: int) -> bool:
        with self._lock:
            if self.last is not None and not self.last < self.next_time():
                return False
            if not 0 <= self.count + n <= self.limit:
                return False
            self.count += n
            self.last = datetime.now(self.tz)
            return True

    def reset(self) -> None:
        with self._lock:
            self.count = 0
            self.last = None

    def next_time(self) -> datetime:
        """When the command may next be started."""
        if self.last is None:
            return datetime.now(self.tz)
        return self.last + int(2.0 ** self.count) * self.interval