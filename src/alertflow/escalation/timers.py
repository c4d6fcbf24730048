"""Keyed min-heap of delayed tasks, driven by an explicit clock.

Entries are ``(fire_at, seq)``-ordered and indexed by key (an alert id),
so cancelling every pending entry for a key costs O(entries for that key).
Cancelled entries stay in the heap and are skipped when popped.
"""

from __future__ import annotations

import heapq
import itertools
import threading
from dataclasses import dataclass, field
from typing import Any


@dataclass(order=True)
class TimerEntry:
    fire_at: float
    seq: int
    key: str = field(compare=False)
    payload: Any = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class TimerQueue:
    """Pending delayed tasks. Thread-safe via a single lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._heap: list[TimerEntry] = []
        self._by_key: dict[str, list[TimerEntry]] = {}
        self._seq = itertools.count()

    def schedule(self, key: str, fire_at: float, payload: Any) -> TimerEntry:
        entry = TimerEntry(fire_at=fire_at, seq=next(self._seq), key=key, payload=payload)
        with self._lock:
            heapq.heappush(self._heap, entry)
            self._by_key.setdefault(key, []).append(entry)
        return entry

    def cancel(self, key: str) -> int:
        """Cancel every pending entry for *key*. Returns how many were pending."""
        with self._lock:
            entries = self._by_key.pop(key, [])
            for entry in entries:
                entry.cancelled = True
        return len(entries)

    def pop_due(self, now: float) -> TimerEntry | None:
        """Remove and return the earliest live entry due at *now*, if any."""
        with self._lock:
            while self._heap:
                head = self._heap[0]
                if head.cancelled:
                    heapq.heappop(self._heap)
                    continue
                if head.fire_at > now:
                    return None
                heapq.heappop(self._heap)
                siblings = self._by_key.get(head.key, [])
                if head in siblings:
                    siblings.remove(head)
                if not siblings:
                    self._by_key.pop(head.key, None)
                return head
        return None

    def next_fire_at(self) -> float | None:
        with self._lock:
            live = [e.fire_at for e in self._heap if not e.cancelled]
        return min(live) if live else None

    def pending(self, key: str | None = None) -> int:
        with self._lock:
            if key is not None:
                return len(self._by_key.get(key, []))
            return sum(len(v) for v in self._by_key.values())

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._by_key)
