"""Runtime configuration for the feedback system.

Values come from the environment (optionally populated from a ``.env`` file
via *python-dotenv*). :func:`load_settings` is called by the entry point;
library code receives a :class:`Settings` instance and never reads the
environment itself, so tests can build settings directly.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_OPERATOR = "operator"
DEFAULT_ORACLE_PRINCIPAL = "decryption-oracle"


@dataclass(frozen=True)
class Settings:
    """Tunable knobs of a :class:`~confidential_feedback.system.FeedbackSystem`."""

    operator: str = DEFAULT_OPERATOR
    oracle_principal: str = DEFAULT_ORACLE_PRINCIPAL
    # Minimum number of stored records before aggregation may run
    min_records_for_analysis: int = 1
    # Upper bound of records folded per aggregation call; None == unlimited
    aggregation_batch_limit: Optional[int] = None
    # A category count is revealed only once it reaches this many submissions
    category_insight_threshold: int = 5
    timestamp_granularity_seconds: int = 3600
    relayer_delay_seconds: float = 0.05
    log_level: str = "INFO"


def _positive_int_from_env(name: str) -> Optional[int]:  # noqa: WPS430 – tiny helper
    raw_val = os.getenv(name)
    if not raw_val:
        return None
    try:
        parsed = int(raw_val)
    except ValueError:
        logger.warning("Invalid %s value '%s'; must be integer.", name, raw_val)
        return None
    if parsed <= 0:
        logger.warning("Ignoring %s=%s (must be positive int)", name, raw_val)
        return None
    return parsed


def _non_negative_float_from_env(name: str, default: float) -> float:
    raw_val = os.getenv(name)
    if not raw_val:
        return default
    try:
        parsed = float(raw_val)
    except ValueError:
        logger.warning("Invalid %s value '%s'; must be a number.", name, raw_val)
        return default
    if parsed < 0:
        logger.warning("Ignoring %s=%s (must be non-negative)", name, raw_val)
        return default
    return parsed


def load_settings(*, dotenv: bool = True) -> Settings:
    """Build :class:`Settings` from the process environment.

    Args:
        dotenv: When *True* (default) a ``.env`` file in the working
            directory is loaded first. Existing variables are not overridden.
    """
    if dotenv:
        load_dotenv(find_dotenv(usecwd=True))

    defaults = Settings()
    return Settings(
        operator=os.getenv("FEEDBACK_OPERATOR", defaults.operator),
        oracle_principal=os.getenv(
            "FEEDBACK_ORACLE_PRINCIPAL", defaults.oracle_principal
        ),
        min_records_for_analysis=_positive_int_from_env("MIN_RECORDS_FOR_ANALYSIS")
        or defaults.min_records_for_analysis,
        aggregation_batch_limit=_positive_int_from_env("AGGREGATION_BATCH_LIMIT"),
        category_insight_threshold=_positive_int_from_env("CATEGORY_INSIGHT_THRESHOLD")
        or defaults.category_insight_threshold,
        timestamp_granularity_seconds=_positive_int_from_env(
            "TIMESTAMP_GRANULARITY_SECONDS"
        )
        or defaults.timestamp_granularity_seconds,
        relayer_delay_seconds=_non_negative_float_from_env(
            "RELAYER_DELAY_SECONDS", defaults.relayer_delay_seconds
        ),
        log_level=os.getenv("FEEDBACK_LOG_LEVEL", defaults.log_level).upper(),
    )
