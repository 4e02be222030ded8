"""
Collection issue ledger and shared run context.

Every collection step reports problems here instead of raising past the
orchestrator. The ledger is append-only and internally synchronized so the
local probe track (which runs WinRM calls in worker threads) and the remote
Graph track can record concurrently.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from ._types import IssueSeverity, now_utc

logger = logging.getLogger(__name__)


LogSink = Callable[[IssueSeverity, str, str], None]

_LOG_LEVELS = {
    IssueSeverity.INFO: logging.INFO,
    IssueSeverity.WARNING: logging.WARNING,
    IssueSeverity.ERROR: logging.ERROR,
}


def logging_sink(severity: IssueSeverity, phase: str, message: str) -> None:
    """Default sink: forward ledger entries to the standard logger."""
    logger.log(_LOG_LEVELS[severity], f"[{phase}] {message}")


@dataclass(frozen=True)
class IssueRecord:
    """A single warning or error raised during collection."""
    severity: IssueSeverity
    phase: str
    message: str
    timestamp: datetime = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the report's collectionIssues shape."""
        return {
            "severity": self.severity.value,
            "phase": self.phase,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class IssueLedger:
    """
    Append-only record of collection issues.

    There is no removal or update API; snapshot() returns a copy.
    """

    def __init__(self, sink: Optional[LogSink] = logging_sink):
        self._records: List[IssueRecord] = []
        self._lock = threading.Lock()
        self._sink = sink

    def record(self, severity: IssueSeverity, phase: str, message: str) -> IssueRecord:
        """
        Append an issue.

        Args:
            severity: Info, Warning or Error
            phase: Collection stage that produced the issue
            message: Human-readable description

        Returns:
            The stored IssueRecord
        """
        entry = IssueRecord(severity=IssueSeverity(severity), phase=phase, message=message)
        with self._lock:
            self._records.append(entry)
        if self._sink is not None:
            self._sink(entry.severity, phase, message)
        return entry

    def info(self, phase: str, message: str) -> IssueRecord:
        return self.record(IssueSeverity.INFO, phase, message)

    def warning(self, phase: str, message: str) -> IssueRecord:
        return self.record(IssueSeverity.WARNING, phase, message)

    def error(self, phase: str, message: str) -> IssueRecord:
        return self.record(IssueSeverity.ERROR, phase, message)

    def snapshot(self) -> List[IssueRecord]:
        """Return all records in append order."""
        with self._lock:
            return list(self._records)

    def counts(self) -> Dict[str, int]:
        """Number of records per severity."""
        totals = {severity.value: 0 for severity in IssueSeverity}
        for entry in self.snapshot():
            totals[entry.severity.value] += 1
        return totals

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class NameCache:
    """
    Memoizes identifier -> display name lookups across collection tracks.

    Insert-if-absent: the first resolver for a key wins and concurrent
    callers for the same key await that single lookup.
    """

    def __init__(self):
        self._values: Dict[str, str] = {}
        self._pending: Dict[str, "asyncio.Future[str]"] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def put_if_absent(self, key: str, value: str) -> str:
        """Store value unless the key is already known; return the stored value."""
        with self._lock:
            return self._values.setdefault(key, value)

    async def get_or_resolve(
        self,
        key: str,
        resolver: Callable[[str], Awaitable[str]],
    ) -> str:
        """
        Return the cached name for key, resolving it at most once.

        Args:
            key: Identifier (e.g. a group object id)
            resolver: Coroutine function producing the display name

        Returns:
            Display name
        """
        with self._lock:
            if key in self._values:
                return self._values[key]
            future = self._pending.get(key)
            owner = future is None
            if owner:
                future = asyncio.get_running_loop().create_future()
                self._pending[key] = future

        if not owner:
            return await future

        try:
            value = await resolver(key)
        except Exception as e:
            with self._lock:
                self._pending.pop(key, None)
            future.set_exception(e)
            # Mark retrieved; waiters (if any) still receive it.
            future.exception()
            raise
        except asyncio.CancelledError:
            with self._lock:
                self._pending.pop(key, None)
            future.cancel()
            raise

        stored = self.put_if_absent(key, value)
        with self._lock:
            self._pending.pop(key, None)
        future.set_result(stored)
        return stored

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)


@dataclass
class CollectionContext:
    """
    Explicit run context handed to every collection function.

    Replaces process-wide state: the ledger, the name cache and the skip
    list travel with the call instead of living in globals.
    """
    ledger: IssueLedger = field(default_factory=IssueLedger)
    names: NameCache = field(default_factory=NameCache)
    skip: FrozenSet[str] = field(default_factory=frozenset)

    def is_skipped(self, category: Any) -> bool:
        value = getattr(category, "value", category)
        return value in self.skip
