"""Homomorphic aggregation of unanalyzed feedback records.

A run is split in two steps:

* :meth:`AggregationEngine.plan` – a plaintext scan that returns the ids of
  records still waiting to be folded (optionally capped by a budget).
* :meth:`AggregationEngine.execute` – folds each planned record's encrypted
  satisfaction and sentiment into the running sums and flags the record.

Running sums survive between runs, so a budget-limited run can be continued
by calling :meth:`AggregationEngine.run` again. Once the last unanalyzed
record is folded the pass completes and a new :class:`AnalysisResult` is
published.
"""
from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from confidential_feedback.analysis.oblivious import oblivious_argmax, oblivious_one_hot
from confidential_feedback.analysis.result import AnalysisResult
from confidential_feedback.exceptions import InvalidInputError, NothingToAnalyzeError
from confidential_feedback.fhe.acl import SYSTEM_PRINCIPAL
from confidential_feedback.fhe.capability import Coprocessor
from confidential_feedback.fhe.types import COUNTER_BITS, RATING_BITS, Ciphertext
from confidential_feedback.record_store import CATEGORIES, RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregationOutcome:
    """What a single :meth:`AggregationEngine.run` call achieved."""

    folded: int
    remaining: int
    result: Optional[AnalysisResult] = None

    @property
    def completed(self) -> bool:
        return self.result is not None


class AggregationEngine:
    """Owns the running encrypted sums and the analysis result singleton."""

    def __init__(
        self,
        coprocessor: Coprocessor,
        store: RecordStore,
        *,
        system_principal: str = SYSTEM_PRINCIPAL,
        min_records: int = 1,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        self._fhe = coprocessor
        self._store = store
        self._system = system_principal
        self._min_records = max(1, min_records)
        self._clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self.passes_completed = 0
        self.last_analysis_at: Optional[datetime.datetime] = None
        self.result = AnalysisResult.zeroed(coprocessor, system_principal)
        self._zero_running_sums()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def folded_count(self) -> int:
        """Number of records folded since creation or the last reset."""
        return self._folded_count

    def plan(self, max_records: Optional[int] = None) -> List[int]:
        """Return the ids to fold next, in id order.

        Raises
        ------
        NothingToAnalyzeError
            If too few records exist or every record is already analyzed.
        InvalidInputError
            If *max_records* is not a positive integer.
        """
        if max_records is not None and (
            isinstance(max_records, bool) or not isinstance(max_records, int) or max_records <= 0
        ):
            raise InvalidInputError(f"max_records must be a positive integer, got {max_records!r}")
        total = self._store.count()
        if total == 0 or total < self._min_records:
            raise NothingToAnalyzeError(
                f"{total} record(s) stored; at least {self._min_records} required for analysis."
            )
        pending = self._store.unanalyzed_ids()
        if not pending:
            raise NothingToAnalyzeError("Every stored record has already been analyzed.")
        return pending if max_records is None else pending[:max_records]

    def execute(self, work_list: List[int]) -> int:
        """Fold every record in *work_list*; returns how many were folded.

        Each record's contribution and its ``analyzed`` flag are committed
        together, so an exception part-way leaves only fully folded records
        flagged.
        """
        fhe = self._fhe
        folded = 0
        for record_id in work_list:
            record = self._store.require(record_id)
            if record.analyzed:
                raise RuntimeError(f"Record {record_id} was planned but is already analyzed.")
            satisfaction_sum = fhe.grant(
                fhe.add(self._satisfaction_sum, fhe.cast(record.satisfaction, COUNTER_BITS)),
                self._system,
            )
            sentiment_sum = fhe.grant(
                fhe.add(self._sentiment_sum, fhe.cast(record.sentiment, COUNTER_BITS)),
                self._system,
            )
            # commit point for this record
            self._store.mark_analyzed(record_id)
            self._satisfaction_sum = satisfaction_sum
            self._sentiment_sum = sentiment_sum
            self._folded_count += 1
            folded += 1
        return folded

    def run(self, max_records: Optional[int] = None) -> AggregationOutcome:
        """Plan, execute and – if nothing is left – publish a new result."""
        work_list = self.plan(max_records)
        folded = self.execute(work_list)
        remaining = len(self._store.unanalyzed_ids())
        logger.info(
            "aggregation_fold",
            extra={"folded": folded, "remaining": remaining},
        )
        if remaining:
            return AggregationOutcome(folded=folded, remaining=remaining)
        return AggregationOutcome(folded=folded, remaining=0, result=self._publish())

    def reset(self) -> AnalysisResult:
        """Zero the running sums and replace the result with an unready one.

        Category totals are rebuilt from the records that are still waiting
        to be folded, so a pass interrupted by a budget limit keeps its
        dominant category consistent with the averages it will publish.
        Every encrypted step runs before the totals are replaced.
        """
        pending = self._store.unanalyzed_ids()
        carried = self._pending_category_counts(pending)
        self._store.reset_category_totals()
        if carried:
            self._store.add_to_category_totals(carried)
        self._zero_running_sums()
        self.result = AnalysisResult.zeroed(
            self._fhe, self._system, generation=self.result.generation
        )
        logger.info(
            "analysis_reset",
            extra={"generation": self.result.generation, "carried_records": len(pending)},
        )
        return self.result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _zero_running_sums(self) -> None:
        fhe = self._fhe
        self._satisfaction_sum: Ciphertext = fhe.grant(fhe.encrypt(0, COUNTER_BITS), self._system)
        self._sentiment_sum: Ciphertext = fhe.grant(fhe.encrypt(0, COUNTER_BITS), self._system)
        self._folded_count = 0

    def _pending_category_counts(self, record_ids: List[int]) -> Dict[int, Ciphertext]:
        fhe = self._fhe
        counts: Dict[int, Ciphertext] = {}
        for record_id in record_ids:
            record = self._store.require(record_id)
            for category, hit in oblivious_one_hot(fhe, record.category, CATEGORIES).items():
                counts[category] = fhe.add(counts[category], hit) if category in counts else hit
        return counts

    def _average(self, running_sum: Ciphertext) -> Ciphertext:
        return self._fhe.cast(self._fhe.div(running_sum, self._folded_count), RATING_BITS)

    def _publish(self) -> AnalysisResult:
        fhe = self._fhe
        dominant_id, _ = oblivious_argmax(fhe, self._store.category_totals())
        now = self._clock()
        result = AnalysisResult(
            total_submissions=fhe.encrypt(self._folded_count, COUNTER_BITS),
            average_satisfaction=self._average(self._satisfaction_sum),
            dominant_category=dominant_id,
            overall_sentiment=self._average(self._sentiment_sum),
            ready=True,
            generation=self.result.generation + 1,
            records_considered=self._folded_count,
            completed_at=now,
        )
        fhe.grant_many(result.ciphertexts(), self._system)

        self.result = result
        self.passes_completed += 1
        self.last_analysis_at = now
        logger.info(
            "aggregation_pass_completed",
            extra={
                "generation": result.generation,
                "records_considered": result.records_considered,
            },
        )
        return result
