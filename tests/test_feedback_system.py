"""End-to-end behaviour of FeedbackSystem with a hand-driven oracle."""
from __future__ import annotations

import pytest

from confidential_feedback.analysis.result import AnalysisState
from confidential_feedback.config import Settings
from confidential_feedback.events import (
    AggregationProgress,
    AnalysisCompleted,
    AnalysisReset,
    AnomalyFlagged,
    CategoryInsightRequested,
    CategoryInsightRevealed,
    RevealRequested,
    Submitted,
)
from confidential_feedback.exceptions import (
    CapacityExceededError,
    InvalidInputError,
    InvalidProofError,
    MissingProofError,
    NotAuthorizedError,
    NothingToAnalyzeError,
    NotReadyError,
    UnknownRequestError,
)
from confidential_feedback.record_store import MAX_RECORD_ID
from confidential_feedback.reveal.proof import sign_values
from confidential_feedback.system import FeedbackSystem

OPERATOR = "operator"


def _submit_many(system, rows, principal="alice"):
    return [system.submit(principal, *row) for row in rows]


# ---------------------------------------------------------------------------
# Submission surface
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("n", [1, 3, 7])
def test_user_record_count_matches_submissions(system, n):
    _submit_many(system, [(3, 2, 5)] * n)
    assert system.get_user_record_count("alice") == n
    assert system.has_submitted("alice")
    assert system.get_user_record_count("bob") == 0
    assert not system.has_submitted("bob")


def test_submit_emits_event_without_values(system):
    record_id = system.submit("alice", 5, 9, 10)
    event = system.events.last(Submitted)
    assert event == Submitted(submitter="alice", record_id=record_id)
    assert set(system.events.to_dicts()[0]) == {"sequence", "event", "submitter", "record_id"}


def test_invalid_submission_changes_nothing(system):
    with pytest.raises(InvalidInputError):
        system.submit("alice", 6, 1, 1)
    assert system.get_public_stats().total_records == 0
    assert len(system.events) == 0


def test_category_totals_match_plaintext_counts(system, reveal_as_system):
    categories = [2, 2, 5, 9, 2, 5]
    _submit_many(system, [(3, c, 5) for c in categories])
    for cat, ct in system.category_totals().items():
        assert reveal_as_system(ct) == categories.count(cat)


def test_view_own_feedback(system):
    record_id = system.submit("alice", 4, 6, 3)
    assert system.view_own_feedback("alice", record_id) == {"satisfaction": 4, "category": 6}
    with pytest.raises(NotAuthorizedError):
        system.view_own_feedback("bob", record_id)


# ---------------------------------------------------------------------------
# Aggregation and state machine
# ---------------------------------------------------------------------------


def test_state_machine_walk(system, oracle):
    assert system.analysis_state() is AnalysisState.EMPTY
    system.submit("alice", 5, 1, 8)
    assert system.analysis_state() is AnalysisState.UNREADY

    system.run_aggregation(OPERATOR)
    assert system.analysis_state() is AnalysisState.READY

    request_id = system.request_reveal(OPERATOR)
    assert system.analysis_state() is AnalysisState.READY
    oracle.deliver(request_id)
    assert system.analysis_state() is AnalysisState.PUBLISHED

    system.submit("bob", 1, 2, 1)
    assert system.analysis_state() is AnalysisState.UNREADY


def test_run_aggregation_twice_is_rejected(system):
    _submit_many(system, [(5, 1, 9), (4, 2, 8)])
    outcome = system.run_aggregation(OPERATOR)
    assert outcome.completed
    assert system.get_public_stats().analysis_ready is True
    result_before = system.analysis_result
    events_before = len(system.events)

    with pytest.raises(NothingToAnalyzeError):
        system.run_aggregation(OPERATOR)
    assert system.analysis_result is result_before
    assert len(system.events) == events_before


def test_aggregation_completed_event_is_unpublished(system):
    _submit_many(system, [(5, 4, 3), (4, 4, 3)])
    system.run_aggregation(OPERATOR)
    assert system.events.last(AnalysisCompleted) == AnalysisCompleted(
        total_records_considered=2, published=False
    )


def test_batch_limit_from_settings(fhe, oracle):
    system = FeedbackSystem(
        fhe, oracle, settings=Settings(operator=OPERATOR, aggregation_batch_limit=2)
    )
    _submit_many(system, [(3, 1, 3)] * 3)
    first = system.run_aggregation(OPERATOR)
    assert not first.completed
    assert system.events.last(AggregationProgress) == AggregationProgress(folded=2, remaining=1)
    assert system.run_aggregation(OPERATOR).completed


def test_reset_semantics(system, reveal_as_system):
    _submit_many(system, [(5, 3, 9), (3, 3, 7)])
    system.run_aggregation(OPERATOR)

    system.reset_analysis(OPERATOR)
    assert system.get_public_stats().analysis_ready is False
    assert all(reveal_as_system(ct) == 0 for ct in system.category_totals().values())
    assert system.events.last(AnalysisReset) == AnalysisReset(operator=OPERATOR)
    with pytest.raises(NothingToAnalyzeError):
        system.run_aggregation(OPERATOR)

    system.submit("bob", 2, 8, 4)
    outcome = system.run_aggregation(OPERATOR)
    assert outcome.completed
    assert [reveal_as_system(ct) for ct in outcome.result.ciphertexts()] == [1, 2, 8, 4]
    assert all(system.store.require(i).analyzed for i in (1, 2, 3))


def test_overview_counts_passes(system):
    assert system.get_analysis_overview().passes_completed == 0
    system.submit("alice", 1, 1, 1)
    system.run_aggregation(OPERATOR)
    overview = system.get_analysis_overview()
    assert overview.passes_completed == 1
    assert overview.report_ready is True
    assert overview.last_analysis_at is not None


# ---------------------------------------------------------------------------
# Operator authorization
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "operation,args",
    [
        ("run_aggregation", ()),
        ("request_reveal", ()),
        ("reset_analysis", ()),
        ("flag_anomaly", (1,)),
        ("request_category_insight", (2,)),
    ],
)
def test_operator_only_operations(system, reveal_as_system, operation, args):
    system.submit("alice", 4, 2, 6)
    system.run_aggregation(OPERATOR)
    events_before = len(system.events)
    result_before = system.analysis_result
    totals_before = system.category_totals()

    with pytest.raises(NotAuthorizedError):
        getattr(system, operation)("mallory", *args)

    assert len(system.events) == events_before
    assert system.analysis_result is result_before
    assert system.category_totals() == totals_before
    assert system.pending_reveal_requests() == []


# ---------------------------------------------------------------------------
# Reveal protocol
# ---------------------------------------------------------------------------


def test_reveal_requires_ready_result(system):
    with pytest.raises(NotReadyError):
        system.request_reveal(OPERATOR)
    system.submit("alice", 4, 2, 6)
    with pytest.raises(NotReadyError):
        system.request_reveal(OPERATOR)


def test_reveal_round_trip(system, oracle):
    _submit_many(system, [(5, 3, 9), (4, 3, 8), (3, 3, 7), (4, 1, 6), (5, 2, 10)])
    system.run_aggregation(OPERATOR)

    request_id = system.request_reveal(OPERATOR)
    assert system.pending_reveal_requests() == [request_id]
    assert system.events.last(RevealRequested) == RevealRequested(request_id=request_id)
    assert system.get_revealed_stats() is None

    stats = oracle.deliver(request_id)
    assert stats.values() == (5, 4, 3, 8)
    assert system.get_revealed_stats() == stats
    assert system.pending_reveal_requests() == []
    assert system.events.last(AnalysisCompleted) == AnalysisCompleted(
        total_records_considered=5, published=True
    )


def test_callback_without_proof_keeps_request_pending(system, oracle):
    system.submit("alice", 4, 2, 6)
    system.run_aggregation(OPERATOR)
    request_id = system.request_reveal(OPERATOR)
    values = oracle.decrypt_request(request_id)

    with pytest.raises(MissingProofError):
        system.on_revealed(oracle.principal, request_id, *values, b"")
    assert system.pending_reveal_requests() == [request_id]
    assert system.get_revealed_stats() is None

    # the oracle resends with a proof
    oracle.deliver(request_id)
    assert system.get_revealed_stats().request_id == request_id


def test_callback_with_forged_values_is_rejected(system, oracle):
    system.submit("alice", 4, 2, 6)
    system.run_aggregation(OPERATOR)
    request_id = system.request_reveal(OPERATOR)

    proof = sign_values(oracle.key, request_id, [1, 4, 2, 6])
    with pytest.raises(InvalidProofError):
        system.on_revealed(oracle.principal, request_id, 1, 5, 2, 6, proof)
    assert system.pending_reveal_requests() == [request_id]


def test_callback_from_wrong_principal(system, oracle):
    system.submit("alice", 4, 2, 6)
    system.run_aggregation(OPERATOR)
    request_id = system.request_reveal(OPERATOR)
    events_before = len(system.events)
    with pytest.raises(NotAuthorizedError):
        system.on_revealed(OPERATOR, request_id, 1, 4, 2, 6, b"sig")
    assert len(system.events) == events_before


def test_unknown_or_settled_request(system, oracle):
    system.submit("alice", 4, 2, 6)
    system.run_aggregation(OPERATOR)
    request_id = system.request_reveal(OPERATOR)
    oracle.deliver(request_id)
    with pytest.raises(UnknownRequestError):
        oracle.deliver(request_id)
    with pytest.raises(UnknownRequestError):
        system.on_revealed(oracle.principal, 999, 1, 1, 1, 1, b"sig")


def test_reset_cancels_pending_requests(system, oracle):
    system.submit("alice", 4, 2, 6)
    system.run_aggregation(OPERATOR)
    request_id = system.request_reveal(OPERATOR)
    system.reset_analysis(OPERATOR)
    assert system.pending_reveal_requests() == []
    with pytest.raises(UnknownRequestError):
        oracle.deliver(request_id)


def test_oracle_failure_leaves_no_pending_request(system, oracle, monkeypatch):
    system.submit("alice", 4, 2, 6)
    system.run_aggregation(OPERATOR)

    def _boom(*args, **kwargs):
        raise ConnectionError("relayer offline")

    monkeypatch.setattr(oracle, "submit", _boom)
    with pytest.raises(ConnectionError):
        system.request_reveal(OPERATOR)
    assert system.pending_reveal_requests() == []
    assert system.events.last(RevealRequested) is None


# ---------------------------------------------------------------------------
# Audit surface
# ---------------------------------------------------------------------------


def test_flag_anomaly_names_submitter(system):
    system.submit("alice", 1, 1, 1)
    record_id = system.submit("bob", 1, 1, 1)
    system.flag_anomaly(OPERATOR, record_id)
    assert system.events.last(AnomalyFlagged) == AnomalyFlagged(record_id=record_id, submitter="bob")
    with pytest.raises(InvalidInputError):
        system.flag_anomaly(OPERATOR, 42)


def test_public_stats(system):
    system.submit("alice", 1, 1, 1)
    stats = system.get_public_stats()
    assert stats.total_records == 1
    assert stats.analysis_ready is False
    assert stats.created_at.year == 2024


def test_reveal_timestamps_follow_the_system_clock(system, oracle):
    system.submit("alice", 4, 2, 6)
    system.run_aggregation(OPERATOR)
    request_id = system.request_reveal(OPERATOR)
    assert system.reveals.get_pending(request_id).requested_at == system.created_at
    assert oracle.deliver(request_id).revealed_at == system.created_at


def test_late_callback_for_older_generation_does_not_replace_newer(system, oracle):
    system.submit("alice", 4, 2, 6)
    system.run_aggregation(OPERATOR)
    first = system.request_reveal(OPERATOR)

    _submit_many(system, [(2, 3, 4), (3, 3, 5)])
    system.run_aggregation(OPERATOR)
    second = system.request_reveal(OPERATOR)

    newer = oracle.deliver(second)
    published_before = len(system.events.events(AnalysisCompleted))
    older = oracle.deliver(first)

    assert older.generation == 1 and newer.generation == 2
    assert system.get_revealed_stats() == newer
    assert system.get_revealed_stats().total_submissions == 3
    assert system.analysis_state() is AnalysisState.PUBLISHED
    assert system.pending_reveal_requests() == []
    assert len(system.events.events(AnalysisCompleted)) == published_before


def test_reset_after_partial_pass_keeps_result_consistent(fhe, oracle, reveal_as_system):
    system = FeedbackSystem(
        fhe, oracle, settings=Settings(operator=OPERATOR, aggregation_batch_limit=2)
    )
    _submit_many(system, [(5, 3, 9), (5, 3, 9), (2, 4, 5), (4, 4, 7)])
    assert not system.run_aggregation(OPERATOR).completed

    system.reset_analysis(OPERATOR)
    outcome = system.run_aggregation(OPERATOR)

    assert outcome.completed
    assert [reveal_as_system(ct) for ct in outcome.result.ciphertexts()] == [2, 3, 4, 6]


def test_reset_withdraws_pending_requests_at_the_oracle(system, oracle):
    system.submit("alice", 4, 2, 6)
    system.run_aggregation(OPERATOR)
    request_id = system.request_reveal(OPERATOR)
    system.reset_analysis(OPERATOR)
    assert oracle.cancelled == [request_id]


# ---------------------------------------------------------------------------
# Batch submission
# ---------------------------------------------------------------------------


def test_submit_batch_stores_every_row(system, reveal_as_system):
    ids = system.submit_batch("kiosk", [(5, 1, 9), (4, 1, 8), (3, 2, 7)])
    assert ids == [1, 2, 3]
    assert system.get_user_record_ids("kiosk") == ids
    assert [e.record_id for e in system.events.events(Submitted)] == ids
    assert reveal_as_system(system.category_totals()[1]) == 2


@pytest.mark.parametrize(
    "rows",
    [
        [(5, 1, 9), (6, 1, 9)],
        [(5, 1, 9), (5, 1)],
        [],
    ],
)
def test_invalid_batch_stores_nothing(system, rows):
    with pytest.raises(InvalidInputError):
        system.submit_batch("kiosk", rows)
    assert system.get_public_stats().total_records == 0
    assert len(system.events) == 0


def test_batch_respects_record_id_space(system, monkeypatch):
    system.submit("alice", 1, 1, 1)
    monkeypatch.setattr(system.store, "count", lambda: MAX_RECORD_ID - 1)
    with pytest.raises(CapacityExceededError):
        system.submit_batch("kiosk", [(1, 1, 1), (1, 1, 1)])
    assert system.get_user_record_count("kiosk") == 0


# ---------------------------------------------------------------------------
# Category insights
# ---------------------------------------------------------------------------


def test_category_insight_reveals_count_once_threshold_is_met(fhe, oracle):
    system = FeedbackSystem(
        fhe, oracle, settings=Settings(operator=OPERATOR, category_insight_threshold=3)
    )
    system.submit_batch("kiosk", [(4, 7, 8)] * 3 + [(2, 1, 3)])

    request_id = system.request_category_insight(OPERATOR, 7)
    assert system.events.last(CategoryInsightRequested) == CategoryInsightRequested(
        request_id=request_id, category=7
    )
    assert system.get_category_insight(7) is None

    insight = oracle.deliver(request_id)
    assert insight.threshold_met is True
    assert insight.total == 3
    assert system.get_category_insight(7) == insight
    assert system.events.last(CategoryInsightRevealed) == CategoryInsightRevealed(
        request_id=request_id, category=7, threshold_met=True
    )


def test_category_insight_below_threshold_reveals_no_count(fhe, oracle):
    system = FeedbackSystem(
        fhe, oracle, settings=Settings(operator=OPERATOR, category_insight_threshold=3)
    )
    system.submit_batch("kiosk", [(4, 7, 8)] * 2)
    request_id = system.request_category_insight(OPERATOR, 7)

    assert oracle.decrypt_request(request_id) == [0, 0]
    insight = oracle.deliver(request_id)
    assert insight.threshold_met is False
    assert insight.total is None


def test_category_insight_validation(system, oracle):
    with pytest.raises(InvalidInputError):
        system.request_category_insight(OPERATOR, 11)
    assert system.pending_reveal_requests() == []

    system.submit("alice", 4, 2, 6)
    insight_id = system.request_category_insight(OPERATOR, 2)
    # an aggregate-shaped callback cannot settle an insight request
    with pytest.raises(UnknownRequestError):
        system.on_revealed(oracle.principal, insight_id, 1, 4, 2, 6, b"sig")
    assert system.pending_reveal_requests() == [insight_id]


def test_reset_clears_category_insights(system, oracle):
    system.submit_batch("kiosk", [(4, 2, 8)] * 5)
    oracle.deliver(system.request_category_insight(OPERATOR, 2))
    assert system.get_category_insights() != []

    system.reset_analysis(OPERATOR)
    assert system.get_category_insights() == []
    assert system.get_category_insight(2) is None
