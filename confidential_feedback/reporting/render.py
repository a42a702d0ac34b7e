"""Render published aggregates using Jinja2 templates."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

from jinja2 import Environment, FileSystemLoader

from confidential_feedback.reporting.context import build_report_context
from confidential_feedback.system import FeedbackSystem

logger = logging.getLogger(__name__)

_TEMPLATE_DIR = Path(__file__).parent / "templates"

# Markdown output: HTML escaping would mangle labels.
_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_DIR)),
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
)


def render_report(
    system: FeedbackSystem,
    *,
    category_labels: Optional[Mapping[int, str]] = None,
) -> Optional[str]:
    """Return a markdown report of the last revealed aggregates.

    Returns *None* when nothing has been revealed yet.
    """
    stats = system.get_revealed_stats()
    if stats is None:
        logger.debug("Report requested before any reveal; nothing to render.")
        return None

    context = build_report_context(
        stats,
        system.get_public_stats(),
        system.get_analysis_overview(),
        category_labels=category_labels,
        insights=system.get_category_insights(),
    )
    template = _env.get_template("report.md.j2")
    report = template.render(**context.to_dict())
    logger.debug("Report rendered for generation=%d len=%d", stats.generation, len(report))
    return report
