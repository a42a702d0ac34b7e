"""The published analysis result and the state machine derived from it."""
from __future__ import annotations

import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from confidential_feedback.fhe.capability import Coprocessor
from confidential_feedback.fhe.types import COUNTER_BITS, RATING_BITS, Ciphertext


class AnalysisState(str, Enum):
    """Lifecycle of the analysis singleton."""

    EMPTY = "empty"  # no records
    UNREADY = "unready"  # records exist but no complete pass covers them
    READY = "ready"  # a pass completed and nothing is left to fold
    PUBLISHED = "published"  # the current result has been revealed


@dataclass(frozen=True)
class AnalysisResult:
    """Encrypted aggregates produced by one complete aggregation pass.

    Replaced wholesale on each publication; ``generation`` increases by one
    every time so a reveal can be tied to the result it decrypted.
    """

    total_submissions: Ciphertext
    average_satisfaction: Ciphertext
    dominant_category: Ciphertext
    overall_sentiment: Ciphertext
    ready: bool = False
    generation: int = 0
    records_considered: int = 0
    completed_at: Optional[datetime.datetime] = None

    def ciphertexts(self) -> Tuple[Ciphertext, Ciphertext, Ciphertext, Ciphertext]:
        """Return the four handles in reveal order."""
        return (
            self.total_submissions,
            self.average_satisfaction,
            self.dominant_category,
            self.overall_sentiment,
        )

    @classmethod
    def zeroed(cls, fhe: Coprocessor, system_principal: str, *, generation: int = 0) -> "AnalysisResult":
        """Encrypted-zero result with ``ready=False``."""
        return cls(
            total_submissions=fhe.grant(fhe.encrypt(0, COUNTER_BITS), system_principal),
            average_satisfaction=fhe.grant(fhe.encrypt(0, RATING_BITS), system_principal),
            dominant_category=fhe.grant(fhe.encrypt(0, RATING_BITS), system_principal),
            overall_sentiment=fhe.grant(fhe.encrypt(0, RATING_BITS), system_principal),
            ready=False,
            generation=generation,
        )


def derive_state(
    *,
    record_count: int,
    unanalyzed_count: int,
    result: AnalysisResult,
    revealed_generation: Optional[int],
) -> AnalysisState:
    """Map plaintext bookkeeping onto an :class:`AnalysisState`."""
    if record_count == 0:
        return AnalysisState.EMPTY
    if not result.ready or unanalyzed_count > 0:
        return AnalysisState.UNREADY
    if revealed_generation == result.generation:
        return AnalysisState.PUBLISHED
    return AnalysisState.READY
