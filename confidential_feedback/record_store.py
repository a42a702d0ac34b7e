"""Encrypted feedback records and per-category running totals."""
from __future__ import annotations

import datetime
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, DefaultDict, Dict, List, Mapping, Optional

from confidential_feedback.exceptions import CapacityExceededError, InvalidInputError
from confidential_feedback.fhe.acl import SYSTEM_PRINCIPAL
from confidential_feedback.fhe.capability import Coprocessor
from confidential_feedback.fhe.types import (
    COUNTER_BITS,
    RATING_BITS,
    TIMESTAMP_BITS,
    Ciphertext,
)

logger = logging.getLogger(__name__)

SATISFACTION_RANGE = (1, 5)
CATEGORY_RANGE = (1, 10)
SENTIMENT_RANGE = (1, 10)
CATEGORIES = tuple(range(CATEGORY_RANGE[0], CATEGORY_RANGE[1] + 1))

MAX_RECORD_ID = 2**32 - 1

Clock = Callable[[], datetime.datetime]


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _check_range(name: str, value: object, bounds: tuple) -> None:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{name} must be an integer, got {value!r}")
    if not low <= value <= high:
        raise InvalidInputError(f"{name} must be between {low} and {high}, got {value}")


def validate_submission(satisfaction: int, category: int, sentiment: int) -> None:
    """Raise :class:`InvalidInputError` unless every field is in range."""
    _check_range("satisfaction", satisfaction, SATISFACTION_RANGE)
    _check_range("category", category, CATEGORY_RANGE)
    _check_range("sentiment", sentiment, SENTIMENT_RANGE)


@dataclass
class FeedbackRecord:
    """A stored submission. Only ``analyzed`` ever changes after creation."""

    record_id: int
    submitter: str
    satisfaction: Ciphertext
    category: Ciphertext
    sentiment: Ciphertext
    submitted_at: Ciphertext
    analyzed: bool = False

    def mark_analyzed(self) -> None:
        if self.analyzed:
            raise RuntimeError(f"Record {self.record_id} was already folded into the analysis.")
        self.analyzed = True

    def __repr__(self) -> str:
        return (
            f"FeedbackRecord(record_id={self.record_id}, submitter='{self.submitter}', "
            f"analyzed={self.analyzed})"
        )


class RecordStore:
    """Keyed table of encrypted records plus encrypted category counters.

    Record ids start at 1 and are dense. Category totals hold, for every
    category, the encrypted number of submissions in it since the last
    :meth:`reset_category_totals`.
    """

    def __init__(
        self,
        coprocessor: Coprocessor,
        *,
        system_principal: str = SYSTEM_PRINCIPAL,
        clock: Optional[Clock] = None,
        timestamp_granularity_seconds: int = 3600,
    ) -> None:
        if timestamp_granularity_seconds <= 0:
            raise ValueError("timestamp_granularity_seconds must be positive")
        self._fhe = coprocessor
        self._system = system_principal
        self._clock = clock or _utc_now
        self._granularity = timestamp_granularity_seconds
        self._records: Dict[int, FeedbackRecord] = {}
        self._by_user: DefaultDict[str, List[int]] = defaultdict(list)
        self._counter = 0
        self._category_totals: Dict[int, Ciphertext] = {}
        self._lock = threading.RLock()
        self.reset_category_totals()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def add(self, submitter: str, satisfaction: int, category: int, sentiment: int) -> FeedbackRecord:
        """Encrypt and store a submission, returning the new record.

        Raises
        ------
        InvalidInputError
            If a field is out of range; nothing is encrypted in that case.
        CapacityExceededError
            If the 32-bit id space is exhausted.
        """
        validate_submission(satisfaction, category, sentiment)
        if not submitter:
            raise InvalidInputError("submitter must be a non-empty principal")

        with self._lock:
            if self._counter >= MAX_RECORD_ID:
                raise CapacityExceededError("Record id space exhausted.")

            fhe = self._fhe
            enc_satisfaction = fhe.encrypt(satisfaction, RATING_BITS)
            enc_category = fhe.encrypt(category, RATING_BITS)
            enc_sentiment = fhe.encrypt(sentiment, RATING_BITS)
            enc_timestamp = fhe.encrypt(self._coarse_timestamp(), TIMESTAMP_BITS)
            new_total = fhe.add(
                self._category_totals[category], fhe.encrypt(1, COUNTER_BITS)
            )

            # Self-service transparency for the submitter; system needs all four.
            fhe.grant(enc_satisfaction, submitter, self._system)
            fhe.grant(enc_category, submitter, self._system)
            fhe.grant(enc_sentiment, self._system)
            fhe.grant(enc_timestamp, self._system)
            fhe.grant(new_total, self._system)

            record = FeedbackRecord(
                record_id=self._counter + 1,
                submitter=submitter,
                satisfaction=enc_satisfaction,
                category=enc_category,
                sentiment=enc_sentiment,
                submitted_at=enc_timestamp,
            )
            self._counter = record.record_id
            self._records[record.record_id] = record
            self._by_user[submitter].append(record.record_id)
            self._category_totals[category] = new_total

        logger.debug("record_stored", extra={"record_id": record.record_id})
        return record

    def mark_analyzed(self, record_id: int) -> None:
        with self._lock:
            self.require(record_id).mark_analyzed()

    def reset_category_totals(self) -> None:
        """Set every category counter back to encrypted zero."""
        with self._lock:
            for category in CATEGORIES:
                zero = self._fhe.encrypt(0, COUNTER_BITS)
                self._category_totals[category] = self._fhe.grant(zero, self._system)

    def add_to_category_totals(self, increments: Mapping[int, Ciphertext]) -> None:
        """Add encrypted *increments* to the matching category counters."""
        with self._lock:
            updated = {}
            for category, increment in increments.items():
                _check_range("category", category, CATEGORY_RANGE)
                total = self._fhe.add(self._category_totals[category], increment)
                updated[category] = self._fhe.grant(total, self._system)
            self._category_totals.update(updated)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, record_id: int) -> Optional[FeedbackRecord]:
        with self._lock:
            return self._records.get(record_id)

    def require(self, record_id: int) -> FeedbackRecord:
        record = self.get(record_id)
        if record is None:
            raise InvalidInputError(f"Record {record_id} does not exist.")
        return record

    def unanalyzed_ids(self) -> List[int]:
        """Plaintext scan for records not yet folded, in id order."""
        with self._lock:
            return [rid for rid in range(1, self._counter + 1) if not self._records[rid].analyzed]

    def user_record_ids(self, principal: str) -> List[int]:
        with self._lock:
            return list(self._by_user.get(principal, ()))

    def user_record_count(self, principal: str) -> int:
        with self._lock:
            return len(self._by_user.get(principal, ()))

    def has_submitted(self, principal: str) -> bool:
        return self.user_record_count(principal) > 0

    def category_total(self, category: int) -> Ciphertext:
        _check_range("category", category, CATEGORY_RANGE)
        with self._lock:
            return self._category_totals[category]

    def category_totals(self) -> Dict[int, Ciphertext]:
        """Return a copy of the category → encrypted count mapping."""
        with self._lock:
            return dict(self._category_totals)

    def count(self) -> int:
        with self._lock:
            return self._counter

    __len__ = count

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _coarse_timestamp(self) -> int:
        seconds = int(self._clock().timestamp())
        return seconds - seconds % self._granularity
