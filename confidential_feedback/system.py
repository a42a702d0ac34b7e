"""The feedback system: every externally callable operation lives here.

All state-mutating calls run under one re-entrant lock, which gives them
the serialized, all-or-nothing ordering a ledger transaction would.
Preconditions are checked before anything is mutated, so a failing call
changes no state and emits no event.
"""
from __future__ import annotations

import datetime
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from confidential_feedback.analysis.aggregation import AggregationEngine, AggregationOutcome
from confidential_feedback.analysis.result import AnalysisResult, AnalysisState, derive_state
from confidential_feedback.config import Settings
from confidential_feedback.events import (
    AggregationProgress,
    AnalysisCompleted,
    AnalysisReset,
    AnomalyFlagged,
    CategoryInsightRequested,
    CategoryInsightRevealed,
    EventLog,
    RevealRequested,
    Submitted,
)
from confidential_feedback.exceptions import (
    CapacityExceededError,
    InvalidInputError,
    NotAuthorizedError,
    NotReadyError,
)
from confidential_feedback.fhe.acl import SYSTEM_PRINCIPAL
from confidential_feedback.fhe.capability import Coprocessor
from confidential_feedback.fhe.types import COUNTER_BITS, Ciphertext
from confidential_feedback.record_store import MAX_RECORD_ID, RecordStore, validate_submission
from confidential_feedback.reveal.protocol import CategoryInsight, RevealCoordinator, RevealedStats
from confidential_feedback.reveal.relayer import DecryptionOracle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublicStats:
    total_records: int
    analysis_ready: bool
    created_at: datetime.datetime


@dataclass(frozen=True)
class AnalysisOverview:
    passes_completed: int
    last_analysis_at: Optional[datetime.datetime]
    report_ready: bool


class FeedbackSystem:
    """Collects encrypted feedback and reveals only aggregates.

    Args:
        coprocessor: Encrypted-integer capability provider.
        oracle: Decryption oracle answering :meth:`request_reveal`; its
            ``principal`` is the only caller accepted by :meth:`on_revealed`
            and its ``public_key`` verifies callback proofs.
        settings: Operator principal, limits and granularity.
        events: Event sink; a fresh :class:`EventLog` when omitted.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        coprocessor: Coprocessor,
        oracle: DecryptionOracle,
        *,
        settings: Optional[Settings] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
        system_principal: str = SYSTEM_PRINCIPAL,
    ) -> None:
        self.settings = settings or Settings()
        self._clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self._fhe = coprocessor
        self._oracle = oracle
        self._system = system_principal
        self._lock = threading.RLock()
        self.events = events if events is not None else EventLog()
        self.created_at = self._clock()
        self.store = RecordStore(
            coprocessor,
            system_principal=system_principal,
            clock=self._clock,
            timestamp_granularity_seconds=self.settings.timestamp_granularity_seconds,
        )
        self.engine = AggregationEngine(
            coprocessor,
            self.store,
            system_principal=system_principal,
            min_records=self.settings.min_records_for_analysis,
            clock=self._clock,
        )
        self.reveals = RevealCoordinator(oracle.public_key, clock=self._clock)

    @property
    def operator(self) -> str:
        return self.settings.operator

    def _require_operator(self, caller: str) -> None:
        if caller != self.settings.operator:
            logger.warning("operator_call_rejected", extra={"caller": caller})
            raise NotAuthorizedError(f"{caller} is not the operator.")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(self, caller: str, satisfaction: int, category: int, sentiment: int) -> int:
        """Store an encrypted submission from *caller* and return its id."""
        with self._lock:
            record = self.store.add(caller, satisfaction, category, sentiment)
            self.events.append(Submitted(submitter=caller, record_id=record.record_id))
            return record.record_id

    def submit_batch(self, caller: str, rows: Iterable[Sequence[int]]) -> List[int]:
        """Store several ``(satisfaction, category, sentiment)`` rows at once.

        Every row is validated before the first one is encrypted, so an
        invalid row rejects the whole batch.
        """
        batch: List[Tuple[int, int, int]] = []
        for index, row in enumerate(rows):
            if len(row) != 3:
                raise InvalidInputError(f"Row {index} must hold exactly three values, got {len(row)}.")
            validate_submission(*row)
            batch.append(tuple(row))
        if not batch:
            raise InvalidInputError("A batch needs at least one row.")
        with self._lock:
            if self.store.count() + len(batch) > MAX_RECORD_ID:
                raise CapacityExceededError("Batch would exhaust the record id space.")
            return [self.submit(caller, *row) for row in batch]

    def get_user_record_count(self, principal: str) -> int:
        return self.store.user_record_count(principal)

    def has_submitted(self, principal: str) -> bool:
        return self.store.has_submitted(principal)

    def get_user_record_ids(self, principal: str) -> List[int]:
        return self.store.user_record_ids(principal)

    def view_own_feedback(self, caller: str, record_id: int) -> Dict[str, int]:
        """Decrypt *caller*'s own satisfaction and category for *record_id*.

        Raises
        ------
        NotAuthorizedError
            If *caller* holds no grant on the record's ciphertexts.
        """
        record = self.store.require(record_id)
        return {
            "satisfaction": int(self._fhe.decrypt(record.satisfaction, caller)),
            "category": int(self._fhe.decrypt(record.category, caller)),
        }

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------
    def run_aggregation(self, caller: str, max_records: Optional[int] = None) -> AggregationOutcome:
        """Fold unanalyzed records; publishes a result once none remain.

        *max_records* caps how many records this call folds (defaults to the
        configured batch limit). Raises :class:`NothingToAnalyzeError` when
        there is nothing new to fold.
        """
        self._require_operator(caller)
        if max_records is None:
            max_records = self.settings.aggregation_batch_limit
        with self._lock:
            outcome = self.engine.run(max_records)
            if outcome.completed:
                self.events.append(
                    AnalysisCompleted(
                        total_records_considered=outcome.result.records_considered,
                        published=False,
                    )
                )
            else:
                self.events.append(
                    AggregationProgress(folded=outcome.folded, remaining=outcome.remaining)
                )
            return outcome

    def request_reveal(self, caller: str) -> int:
        """Ask the oracle to decrypt the current result; returns the request id.

        Returns immediately; the plaintext arrives later via :meth:`on_revealed`.
        """
        self._require_operator(caller)
        with self._lock:
            result = self.engine.result
            if not result.ready:
                raise NotReadyError("No completed aggregation pass since the last reset.")
            pending = self.reveals.open_request(result)
            try:
                self._oracle.submit(
                    pending.request_id,
                    pending.handles,
                    requester=self._system,
                    callback=self.on_revealed,
                )
            except Exception:
                self.reveals.discard(pending.request_id)
                raise
            self.events.append(RevealRequested(request_id=pending.request_id))
            return pending.request_id

    def on_revealed(
        self,
        caller: str,
        request_id: int,
        total_submissions: int,
        average_satisfaction: int,
        dominant_category: int,
        overall_sentiment: int,
        proof: Optional[bytes],
    ) -> RevealedStats:
        """Oracle callback publishing the plaintext aggregates.

        A callback for an older generation than the one already revealed
        settles its request without publishing.
        """
        with self._lock:
            self._require_oracle(caller, request_id)
            stats = self.reveals.settle(
                request_id,
                total_submissions,
                average_satisfaction,
                dominant_category,
                overall_sentiment,
                proof,
            )
            if self.reveals.latest is stats:
                self.events.append(
                    AnalysisCompleted(total_records_considered=total_submissions, published=True)
                )
            return stats

    def request_category_insight(self, caller: str, category: int) -> int:
        """Ask the oracle whether *category* reached the insight threshold.

        The count handed to the oracle is ``select(total >= threshold, total,
        0)``, so categories below the threshold reveal nothing but that fact.
        Returns the request id; the answer arrives via
        :meth:`on_category_revealed`.
        """
        self._require_operator(caller)
        threshold = self.settings.category_insight_threshold
        with self._lock:
            total = self.store.category_total(category)
            fhe = self._fhe
            met = fhe.gt(total, fhe.encrypt(threshold - 1, COUNTER_BITS))
            masked = fhe.select(met, total, fhe.encrypt(0, COUNTER_BITS))
            fhe.grant_many((met, masked), self._system)
            pending = self.reveals.open_category_request(
                category, threshold, (met, masked), generation=self.engine.result.generation
            )
            try:
                self._oracle.submit(
                    pending.request_id,
                    pending.handles,
                    requester=self._system,
                    callback=self.on_category_revealed,
                )
            except Exception:
                self.reveals.discard(pending.request_id)
                raise
            self.events.append(
                CategoryInsightRequested(request_id=pending.request_id, category=category)
            )
            return pending.request_id

    def on_category_revealed(
        self,
        caller: str,
        request_id: int,
        threshold_met: int,
        masked_total: int,
        proof: Optional[bytes],
    ) -> CategoryInsight:
        """Oracle callback for :meth:`request_category_insight`."""
        with self._lock:
            self._require_oracle(caller, request_id)
            insight = self.reveals.settle_category(request_id, threshold_met, masked_total, proof)
            self.events.append(
                CategoryInsightRevealed(
                    request_id=request_id,
                    category=insight.category,
                    threshold_met=insight.threshold_met,
                )
            )
            return insight

    def _require_oracle(self, caller: str, request_id: int) -> None:
        if caller != self._oracle.principal:
            logger.warning("callback_rejected", extra={"caller": caller, "request_id": request_id})
            raise NotAuthorizedError(f"{caller} is not the decryption oracle.")

    def reset_analysis(self, caller: str) -> None:
        """Zero the result and running sums and rebuild the category totals.

        Per-record ``analyzed`` flags are left untouched. Records still
        waiting from a budget-limited pass keep their category contribution;
        everything already folded is dropped from the totals. Pending reveal
        and insight requests are cancelled, at the oracle too where it
        supports that.
        """
        self._require_operator(caller)
        with self._lock:
            self.engine.reset()
            for request_id in self.reveals.cancel_all():
                self._oracle.cancel(request_id)
            self.events.append(AnalysisReset(operator=caller))

    def flag_anomaly(self, caller: str, record_id: int) -> None:
        """Emit an audit event naming the submitter of *record_id*."""
        self._require_operator(caller)
        with self._lock:
            record = self.store.require(record_id)
            logger.warning("anomaly_flagged", extra={"record_id": record_id})
            self.events.append(AnomalyFlagged(record_id=record_id, submitter=record.submitter))

    # ------------------------------------------------------------------
    # Public reads
    # ------------------------------------------------------------------
    def get_public_stats(self) -> PublicStats:
        with self._lock:
            return PublicStats(
                total_records=self.store.count(),
                analysis_ready=self.engine.result.ready,
                created_at=self.created_at,
            )

    def get_analysis_overview(self) -> AnalysisOverview:
        with self._lock:
            return AnalysisOverview(
                passes_completed=self.engine.passes_completed,
                last_analysis_at=self.engine.last_analysis_at,
                report_ready=self.engine.result.ready,
            )

    def analysis_state(self) -> AnalysisState:
        with self._lock:
            latest = self.reveals.latest
            return derive_state(
                record_count=self.store.count(),
                unanalyzed_count=len(self.store.unanalyzed_ids()),
                result=self.engine.result,
                revealed_generation=latest.generation if latest else None,
            )

    @property
    def analysis_result(self) -> AnalysisResult:
        with self._lock:
            return self.engine.result

    def category_totals(self) -> Dict[int, Ciphertext]:
        return self.store.category_totals()

    def get_revealed_stats(self) -> Optional[RevealedStats]:
        return self.reveals.latest

    def pending_reveal_requests(self) -> List[int]:
        return self.reveals.pending_ids()

    def get_category_insight(self, category: int) -> Optional[CategoryInsight]:
        """Last revealed insight for *category*, or *None* if never revealed."""
        return self.reveals.insight(category)

    def get_category_insights(self) -> List[CategoryInsight]:
        return self.reveals.insights()
