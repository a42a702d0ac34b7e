"""Wiring of the feedback system with its coprocessor and relayer.

Keeping construction here (instead of in ``main.py``) lets tests build a
fully connected system without touching the process environment.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import suppress
from dataclasses import dataclass
from typing import Optional

from confidential_feedback.config import Settings
from confidential_feedback.events import EventLog
from confidential_feedback.fhe.mock import MockCoprocessor
from confidential_feedback.reveal.relayer import Relayer
from confidential_feedback.reveal.scheduler import CallbackScheduler
from confidential_feedback.system import FeedbackSystem

logger = logging.getLogger(__name__)


@dataclass
class App:
    """A running system plus the background machinery its relayer uses."""

    system: FeedbackSystem
    relayer: Relayer
    scheduler: CallbackScheduler
    executor: ThreadPoolExecutor

    def shutdown(self) -> None:
        """Stop the scheduler first so nothing is submitted to a closed executor."""
        logger.info("Shutting down callback scheduler and executor...")
        try:
            self.scheduler.shutdown()
        except Exception:  # pragma: no cover – ensure shutdown continues
            logger.exception("Error shutting down callback scheduler")
        with suppress(Exception):
            self.executor.shutdown(wait=True)
        logger.info("Callback scheduler and executor shut down gracefully.")

    def __enter__(self) -> "App":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()


def create_app(settings: Optional[Settings] = None, *, max_workers: int = 4) -> App:
    """Build a :class:`FeedbackSystem` backed by the mock coprocessor."""
    settings = settings or Settings()
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="relayer")
    scheduler = CallbackScheduler(executor)
    coprocessor = MockCoprocessor()
    relayer = Relayer(
        coprocessor,
        scheduler,
        principal=settings.oracle_principal,
        delay_seconds=settings.relayer_delay_seconds,
    )
    system = FeedbackSystem(coprocessor, relayer, settings=settings, events=EventLog())
    logger.info(
        "Feedback system ready (operator=%s, oracle=%s)",
        settings.operator,
        settings.oracle_principal,
    )
    return App(system=system, relayer=relayer, scheduler=scheduler, executor=executor)
