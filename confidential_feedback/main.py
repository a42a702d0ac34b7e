"""Interactive demonstration of the confidential feedback flow.

Runs a full cycle against an in-process system: a few principals submit
ratings (one of them as a batch), the operator aggregates, requests a
reveal and two category insights, and the report is printed once the
relayer has called back.

    python -m confidential_feedback.main
"""
from __future__ import annotations

import logging
import sys
from typing import List

from confidential_feedback.app import create_app
from confidential_feedback.config import load_settings
from confidential_feedback.exceptions import FeedbackSystemError
from confidential_feedback.reporting.render import render_report

_SAMPLE_SUBMISSIONS = [
    # principal, satisfaction, category, sentiment
    ("alice", 4, 1, 7),
    ("bob", 5, 2, 8),
    ("carol", 3, 3, 6),
    ("dave", 4, 4, 7),
    ("erin", 5, 5, 9),
    ("alice", 3, 1, 6),
    ("bob", 4, 2, 7),
    ("carol", 5, 3, 8),
]

# Rows collected offline and uploaded in one go
_KIOSK_BATCH = [(4, 2, 7), (5, 2, 9), (3, 2, 6), (4, 2, 8)]


def main() -> int:  # pragma: no cover
    settings = load_settings()
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level,
    )
    logger = logging.getLogger("confidential_feedback")

    with create_app(settings) as app:
        system = app.system
        trail: List[str] = []
        system.events.subscribe(lambda seq, event: trail.append(f"{seq:>3} {type(event).__name__}"))
        try:
            for principal, satisfaction, category, sentiment in _SAMPLE_SUBMISSIONS:
                record_id = system.submit(principal, satisfaction, category, sentiment)
                logger.info("Submitted record %d for %s", record_id, principal)
            ids = system.submit_batch("kiosk", _KIOSK_BATCH)
            logger.info("Kiosk batch stored as records %s", ids)

            outcome = system.run_aggregation(settings.operator)
            while not outcome.completed:
                logger.info("Folded %d record(s), %d remaining", outcome.folded, outcome.remaining)
                outcome = system.run_aggregation(settings.operator)

            request_id = system.request_reveal(settings.operator)
            logger.info("Reveal %d requested; waiting for the relayer…", request_id)
            if not app.relayer.wait_for(request_id, timeout=10):
                logger.error("Relayer did not answer request %d in time.", request_id)
                return 1

            for category in (1, 2):
                insight_id = system.request_category_insight(settings.operator, category)
                if not app.relayer.wait_for(insight_id, timeout=10):
                    logger.error("Relayer did not answer insight request %d in time.", insight_id)
                    return 1
        except FeedbackSystemError as exc:
            logger.error("Demo failed: %s", exc)
            return 1

        report = render_report(system)
        if report is None:
            logger.error("Request %d was not settled; see relayer log.", request_id)
            return 1
        print(report)
        print(f"Your records, alice: {system.view_own_feedback('alice', 1)}")
        print("Event log:")
        print("\n".join(trail))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
