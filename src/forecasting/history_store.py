"""
Per-user diary history.

Entries live in a single append-only arena; each user owns a list of
arena indices kept in date order.  Nothing is ever removed or replaced:
a second entry for an already-seen date is stored after the first one,
and readers that need one value per night take the last write.
"""

from __future__ import annotations

import bisect
import logging
import threading
from datetime import date
from typing import Dict, List, Optional, Tuple

from forecasting.models import HistoryEntry

log = logging.getLogger("history_store")


class HistoryStore:

    def __init__(self):
        self._arena: List[HistoryEntry] = []
        self._index: Dict[str, List[int]] = {}
        self._dates: Dict[str, List[date]] = {}
        self._lock = threading.Lock()

    def add(self, entry: HistoryEntry) -> int:
        """Append *entry*; returns its position in the user's date-ordered list."""
        with self._lock:
            self._arena.append(entry)
            slot = len(self._arena) - 1
            idx = self._index.setdefault(entry.user_id, [])
            dates = self._dates.setdefault(entry.user_id, [])
            # bisect_right keeps equal dates in insertion order
            pos = bisect.bisect_right(dates, entry.date)
            idx.insert(pos, slot)
            dates.insert(pos, entry.date)
        if pos < len(dates) - 1:
            log.debug("Out-of-order entry for %s on %s placed at %d", entry.user_id, entry.date, pos)
        return pos

    def get(self, user_id: str) -> List[HistoryEntry]:
        with self._lock:
            return [self._arena[i] for i in self._index.get(user_id, [])]

    def count(self, user_id: str) -> int:
        with self._lock:
            return len(self._index.get(user_id, []))

    def nights(self, user_id: str) -> List[HistoryEntry]:
        """One entry per date (last write wins), date ordered."""
        by_date: Dict[date, HistoryEntry] = {}
        for e in self.get(user_id):
            by_date[e.date] = e
        return [by_date[d] for d in sorted(by_date)]

    def neighbours(self, entry: HistoryEntry) -> Tuple[Optional[HistoryEntry], Optional[HistoryEntry]]:
        """Nearest nights strictly before and after *entry.date*."""
        nights = self.nights(entry.user_id)
        prev_e: Optional[HistoryEntry] = None
        next_e: Optional[HistoryEntry] = None
        for e in nights:
            if e.date < entry.date:
                prev_e = e
            elif e.date > entry.date:
                next_e = e
                break
        return prev_e, next_e

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "users_tracked": len(self._index),
                "total_entries": len(self._arena),
            }
