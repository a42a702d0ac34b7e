"""Context dataclass for rendering published-aggregate reports.

`ReportContext` holds every value the Jinja2 template in
`reporting/templates/report.md.j2` expects. Only plaintext that the oracle
has already revealed ends up here.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from confidential_feedback.reveal.protocol import CategoryInsight, RevealedStats
from confidential_feedback.system import AnalysisOverview, PublicStats

__all__ = ["ReportContext", "build_report_context"]


@dataclass(slots=True)
class ReportContext:
    """Container with all fields used by the report template."""

    # Header & meta
    generation: int
    request_id: int
    revealed_at: str  # ISO-8601 timestamp (UTC)

    # Revealed aggregates
    total_submissions: int
    average_satisfaction: int
    satisfaction_bar: str
    dominant_category: int
    dominant_category_label: str
    overall_sentiment: int
    sentiment_bar: str

    # Public, non-sensitive counters
    total_records: int
    passes_completed: int
    deployed_at: str

    # Per-category insights revealed so far
    category_insights: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:  # noqa: D401 – simple helper
        """Return a *plain* ``dict`` for Jinja rendering."""
        return asdict(self)


def _score_bar(value: int, scale: int) -> str:
    """Return e.g. ``★★★★☆`` for *value* out of *scale*."""
    filled = max(0, min(scale, value))
    return "★" * filled + "☆" * (scale - filled)


def _category_label(category: int, labels: Optional[Mapping[int, str]]) -> str:
    if category == 0:
        return "none"
    if labels and category in labels:
        return labels[category]
    return f"Category {category}"


def _insight_row(insight: CategoryInsight, labels: Optional[Mapping[int, str]]) -> Dict[str, Any]:
    return {
        "label": _category_label(insight.category, labels),
        "threshold": insight.threshold,
        "threshold_met": insight.threshold_met,
        "total": insight.total,
    }


def build_report_context(
    stats: RevealedStats,
    public: PublicStats,
    overview: AnalysisOverview,
    *,
    category_labels: Optional[Mapping[int, str]] = None,
    insights: Sequence[CategoryInsight] = (),
) -> ReportContext:
    """Combine revealed aggregates with public counters into a context."""
    return ReportContext(
        generation=stats.generation,
        request_id=stats.request_id,
        revealed_at=stats.revealed_at.isoformat(timespec="seconds"),
        total_submissions=stats.total_submissions,
        average_satisfaction=stats.average_satisfaction,
        satisfaction_bar=_score_bar(stats.average_satisfaction, 5),
        dominant_category=stats.dominant_category,
        dominant_category_label=_category_label(stats.dominant_category, category_labels),
        overall_sentiment=stats.overall_sentiment,
        sentiment_bar=_score_bar(stats.overall_sentiment, 10),
        total_records=public.total_records,
        passes_completed=overview.passes_completed,
        deployed_at=public.created_at.isoformat(timespec="seconds"),
        category_insights=[_insight_row(i, category_labels) for i in insights],
    )
