"""Pending-request table correlating reveal requests with oracle callbacks.

A request and its callback are two independent operations. The callback is
accepted only if it names a pending request of the right kind and carries a
proof that verifies against the oracle key; otherwise the request stays
pending and the oracle is expected to resend.

Two kinds of request share the table: the four aggregates of an
:class:`AnalysisResult`, and a per-category insight (a threshold flag plus a
count that is masked to zero below the threshold).
"""
from __future__ import annotations

import datetime
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from confidential_feedback.analysis.result import AnalysisResult
from confidential_feedback.exceptions import UnknownRequestError
from confidential_feedback.fhe.types import Ciphertext
from confidential_feedback.reveal.proof import verify_proof

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingReveal:
    request_id: int
    generation: int
    handles: Tuple[Ciphertext, ...]
    requested_at: datetime.datetime
    # Set only for category insight requests
    category: Optional[int] = None
    threshold: Optional[int] = None

    @property
    def is_category_insight(self) -> bool:
        return self.category is not None


@dataclass(frozen=True)
class RevealedStats:
    """Plaintext aggregates published by an oracle callback."""

    request_id: int
    generation: int
    total_submissions: int
    average_satisfaction: int
    dominant_category: int
    overall_sentiment: int
    revealed_at: datetime.datetime

    def values(self) -> Tuple[int, int, int, int]:
        return (
            self.total_submissions,
            self.average_satisfaction,
            self.dominant_category,
            self.overall_sentiment,
        )


@dataclass(frozen=True)
class CategoryInsight:
    """Revealed status of one category.

    ``total`` is only known when ``threshold_met``; below the threshold the
    oracle saw a masked zero.
    """

    request_id: int
    category: int
    threshold: int
    threshold_met: bool
    total: Optional[int]
    revealed_at: datetime.datetime


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class RevealCoordinator:
    """Tracks outstanding reveal requests and validates their callbacks."""

    def __init__(
        self,
        oracle_public_key: Ed25519PublicKey,
        *,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        self._oracle_key = oracle_public_key
        self._clock = clock or _utc_now
        self._pending: Dict[int, PendingReveal] = {}
        self._request_ids = itertools.count(1)
        self._lock = threading.Lock()
        self.latest: Optional[RevealedStats] = None
        self._insights: Dict[int, CategoryInsight] = {}

    # ------------------------------------------------------------------
    # Opening requests
    # ------------------------------------------------------------------
    def open_request(self, result: AnalysisResult) -> PendingReveal:
        """Register a request for *result*'s four ciphertexts."""
        return self._open(result.generation, result.ciphertexts())

    def open_category_request(
        self,
        category: int,
        threshold: int,
        handles: Sequence[Ciphertext],
        *,
        generation: int,
    ) -> PendingReveal:
        """Register a request for a category's ``(threshold_met, masked_total)``."""
        return self._open(generation, tuple(handles), category=category, threshold=threshold)

    def _open(self, generation: int, handles: Tuple[Ciphertext, ...], **extra) -> PendingReveal:
        with self._lock:
            pending = PendingReveal(
                request_id=next(self._request_ids),
                generation=generation,
                handles=handles,
                requested_at=self._clock(),
                **extra,
            )
            self._pending[pending.request_id] = pending
        logger.info(
            "reveal_requested",
            extra={
                "request_id": pending.request_id,
                "generation": pending.generation,
                "category": pending.category,
            },
        )
        return pending

    # ------------------------------------------------------------------
    # Settling callbacks
    # ------------------------------------------------------------------
    def settle(
        self,
        request_id: int,
        total_submissions: int,
        average_satisfaction: int,
        dominant_category: int,
        overall_sentiment: int,
        proof: Optional[bytes],
    ) -> RevealedStats:
        """Verify an aggregate callback and close its request.

        ``latest`` only moves forward: a callback for an older generation
        settles its request but does not replace newer revealed stats.

        Raises
        ------
        UnknownRequestError
            If *request_id* is not a pending aggregate request.
        MissingProofError, InvalidProofError
            If the proof is absent or does not verify; the request stays open.
        """
        values = (total_submissions, average_satisfaction, dominant_category, overall_sentiment)
        with self._lock:
            pending = self._take_verified(request_id, values, proof, category_insight=False)
            stats = RevealedStats(
                request_id=request_id,
                generation=pending.generation,
                total_submissions=total_submissions,
                average_satisfaction=average_satisfaction,
                dominant_category=dominant_category,
                overall_sentiment=overall_sentiment,
                revealed_at=self._clock(),
            )
            if self.latest is None or stats.generation >= self.latest.generation:
                self.latest = stats
            else:
                logger.warning(
                    "reveal_superseded",
                    extra={"request_id": request_id, "generation": stats.generation},
                )
        logger.info(
            "reveal_settled",
            extra={"request_id": request_id, "generation": stats.generation},
        )
        return stats

    def settle_category(
        self,
        request_id: int,
        threshold_met: int,
        masked_total: int,
        proof: Optional[bytes],
    ) -> CategoryInsight:
        """Verify a category insight callback and record the insight.

        A newer request for the same category is never overwritten by an
        older one arriving late.
        """
        with self._lock:
            pending = self._take_verified(
                request_id, (threshold_met, masked_total), proof, category_insight=True
            )
            met = bool(threshold_met)
            insight = CategoryInsight(
                request_id=request_id,
                category=pending.category,
                threshold=pending.threshold,
                threshold_met=met,
                total=masked_total if met else None,
                revealed_at=self._clock(),
            )
            current = self._insights.get(insight.category)
            if current is None or current.request_id < request_id:
                self._insights[insight.category] = insight
        logger.info(
            "category_insight_settled",
            extra={"request_id": request_id, "category": insight.category, "threshold_met": met},
        )
        return insight

    def _take_verified(
        self,
        request_id: int,
        values: Sequence[int],
        proof: Optional[bytes],
        *,
        category_insight: bool,
    ) -> PendingReveal:
        # caller holds self._lock
        pending = self._pending.get(request_id)
        if pending is None or pending.is_category_insight != category_insight:
            raise UnknownRequestError(f"No pending reveal request {request_id} of this kind.")
        verify_proof(self._oracle_key, request_id, values, proof)
        del self._pending[request_id]
        return pending

    # ------------------------------------------------------------------
    # Housekeeping and reads
    # ------------------------------------------------------------------
    def discard(self, request_id: int) -> None:
        """Forget *request_id* without settling it (oracle never received it)."""
        with self._lock:
            self._pending.pop(request_id, None)

    def cancel_all(self) -> List[int]:
        """Drop every pending request and revealed insight; return the request ids."""
        with self._lock:
            ids = sorted(self._pending)
            self._pending.clear()
            self._insights.clear()
        if ids:
            logger.info("reveal_requests_cancelled", extra={"request_ids": ids})
        return ids

    def pending_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._pending)

    def get_pending(self, request_id: int) -> Optional[PendingReveal]:
        with self._lock:
            return self._pending.get(request_id)

    def insight(self, category: int) -> Optional[CategoryInsight]:
        with self._lock:
            return self._insights.get(category)

    def insights(self) -> List[CategoryInsight]:
        """Revealed category insights in category order."""
        with self._lock:
            return [self._insights[c] for c in sorted(self._insights)]
