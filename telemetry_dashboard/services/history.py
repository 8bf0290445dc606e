from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional


def time_label(moment: datetime) -> str:
    """Short 12-hour clock label, e.g. ``3:07``."""

    hour = moment.hour % 12 or 12
    return f"{hour}:{moment.minute:02d}"


class HistoryLedger:
    """Bounded per-key sample log owned by a single point."""

    def __init__(self, limit: int) -> None:
        if int(limit) < 1:
            raise ValueError("history limit must be at least 1")
        self.limit = int(limit)
        self._samples: Dict[str, Deque[Dict[str, Any]]] = {}

    def append(self, key: str, value: Any, *, now: Optional[datetime] = None) -> None:
        buf = self._samples.get(key)
        if buf is None:
            buf = deque()
            self._samples[key] = buf
        if len(buf) >= self.limit:
            buf.popleft()
        buf.append({"time": time_label(now or datetime.now()), "data": value})

    def samples(self, key: str) -> List[Dict[str, Any]]:
        return [dict(sample) for sample in self._samples.get(key, ())]

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return {key: [dict(sample) for sample in buf] for key, buf in self._samples.items()}
