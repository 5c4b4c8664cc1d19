"""Bounded in-memory store of run records."""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Union

from .run_record import DEFAULT_OUTPUT_LIMIT, RunRecord, RunStatus

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps from query strings are treated as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _newest_first(records: Iterable[RunRecord]) -> List[RunRecord]:
    # Reverse insertion order first so the stable sort keeps later runs ahead on equal timestamps.
    return sorted(reversed(list(records)), key=lambda r: r.started_at, reverse=True)


class RunRegistry:
    """Owns every run created during the process lifetime, keeping only the newest ``limit``."""

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT, output_limit: int = DEFAULT_OUTPUT_LIMIT) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.output_limit = output_limit
        self._records: "OrderedDict[str, RunRecord]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._records

    def create(
        self,
        subject_name: str,
        command: str,
        args: Sequence[str] = (),
        context: Optional[str] = None,
    ) -> RunRecord:
        record = RunRecord(
            subject_name=subject_name,
            command=command,
            args=list(args),
            context=context,
            output_limit=self.output_limit,
        )
        self._records[record.id] = record
        while len(self._records) > self.limit:
            evicted_id, evicted = self._records.popitem(last=False)
            logger.debug("Evicted run %s (%s) from history", evicted_id, evicted.status.value)
        return record

    def get(self, run_id: str) -> Optional[RunRecord]:
        return self._records.get(run_id)

    def list_all(self) -> List[RunRecord]:
        """All retained runs, oldest first."""
        return list(self._records.values())

    def list_active(self) -> List[RunRecord]:
        return [r for r in self._records.values() if r.status is RunStatus.RUNNING]

    def history(self, limit: int = 50) -> List[RunRecord]:
        """The ``limit`` most recently created runs, newest first."""
        if limit <= 0:
            return []
        return list(reversed(list(self._records.values())[-limit:]))

    def search(
        self,
        query: Optional[str] = None,
        *,
        status: Union[RunStatus, str, None] = None,
        subject_name: Optional[str] = None,
        started_after: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
    ) -> List[RunRecord]:
        """Filter runs by text and attributes; all filters are ANDed, newest first.

        ``query`` is matched case-insensitively against the command, the subject name, and
        every structured log message. ``status`` accepts a RunStatus or its string value and
        raises ValueError for anything else. Time bounds are inclusive.
        """
        wanted_status = RunStatus(status) if status is not None else None
        after = _as_utc(started_after) if started_after is not None else None
        before = _as_utc(started_before) if started_before is not None else None

        results = []
        for record in self._records.values():
            if query and not record.matches_text(query):
                continue
            if wanted_status is not None and record.status is not wanted_status:
                continue
            if subject_name is not None and record.subject_name != subject_name:
                continue
            if after is not None and record.started_at < after:
                continue
            if before is not None and record.started_at > before:
                continue
            results.append(record)
        return _newest_first(results)

    def remove(self, run_id: str) -> bool:
        return self._records.pop(run_id, None) is not None

    def clear(self) -> int:
        count = len(self._records)
        self._records.clear()
        return count

    def clear_older_than(self, timestamp: datetime) -> int:
        cutoff = _as_utc(timestamp)
        stale = [run_id for run_id, r in self._records.items() if r.started_at < cutoff]
        for run_id in stale:
            del self._records[run_id]
        return len(stale)
