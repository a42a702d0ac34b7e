"""Append-only event log observed by external consumers.

Events never carry record values: only principals, ids and aggregate
counts. Subscribers are notified after the event has been appended.
"""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Submitted:
    submitter: str
    record_id: int


@dataclass(frozen=True)
class AnalysisCompleted:
    """``published`` is False for in-protocol aggregation, True once revealed."""

    total_records_considered: int
    published: bool


@dataclass(frozen=True)
class AggregationProgress:
    folded: int
    remaining: int


@dataclass(frozen=True)
class RevealRequested:
    request_id: int


@dataclass(frozen=True)
class CategoryInsightRequested:
    request_id: int
    category: int


@dataclass(frozen=True)
class CategoryInsightRevealed:
    request_id: int
    category: int
    threshold_met: bool


@dataclass(frozen=True)
class AnalysisReset:
    operator: str


@dataclass(frozen=True)
class AnomalyFlagged:
    record_id: int
    submitter: str


E = TypeVar("E")
Subscriber = Callable[[int, Any], None]


class EventLog:
    """Thread-safe, append-only sequence of events."""

    def __init__(self) -> None:
        self._entries: List[Tuple[int, Any]] = []
        self._sequence = itertools.count(1)
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def append(self, event: Any) -> int:
        """Append *event* and return its sequence number."""
        with self._lock:
            seq = next(self._sequence)
            self._entries.append((seq, event))
            subscribers = list(self._subscribers)
        logger.info(type(event).__name__, extra={"sequence": seq, **asdict(event)})
        for subscriber in subscribers:
            try:
                subscriber(seq, event)
            except Exception:  # pragma: no cover – a bad subscriber must not break the log
                logger.exception("Event subscriber failed for sequence %d", seq)
        return seq

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def events(self, kind: Optional[Type[E]] = None) -> List[Any]:
        """Return a copy of all events, optionally only those of type *kind*."""
        with self._lock:
            entries = list(self._entries)
        return [ev for _, ev in entries if kind is None or isinstance(ev, kind)]

    def last(self, kind: Optional[Type[E]] = None) -> Optional[Any]:
        matching = self.events(kind)
        return matching[-1] if matching else None

    def to_dicts(self) -> List[Dict[str, Any]]:
        """Return the log as plain dicts (``event`` holds the type name)."""
        with self._lock:
            entries = list(self._entries)
        return [
            {"sequence": seq, "event": type(ev).__name__, **asdict(ev)}
            for seq, ev in entries
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
