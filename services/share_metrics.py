"""Prometheus counters for share link access and management."""

from __future__ import annotations

from typing import Sequence

from prometheus_client import REGISTRY, Counter

from core.logging import get_logger

logger = get_logger(__name__)


def _build_counter(name: str, documentation: str, labelnames: Sequence[str] = ()) -> Counter:
    """Create a Counter, reusing an existing registration on module reloads."""
    try:
        return Counter(name, documentation, tuple(labelnames))
    except ValueError:
        existing = getattr(REGISTRY, "_names_to_collectors", {}).get(name)
        if existing is None:
            raise
        logger.debug("Counter %s already registered; reusing collector.", name)
        return existing


_ACCESS_OUTCOMES = _build_counter(
    "share_access_outcomes",
    "Share gate decisions grouped by operation and outcome.",
    ("operation", "outcome"),
)
_ACCESS_LOG_FAILURES = _build_counter(
    "share_access_log_failures",
    "Access log appends that failed and were skipped.",
)
_LINK_MUTATIONS = _build_counter(
    "share_link_mutations",
    "Owner-side share link mutations grouped by action.",
    ("action",),
)


def observe_access_outcome(operation: str, outcome: str) -> None:
    _ACCESS_OUTCOMES.labels(operation=operation or "unknown", outcome=outcome or "unknown").inc()


def observe_access_log_failure() -> None:
    _ACCESS_LOG_FAILURES.inc()


def observe_link_mutation(action: str) -> None:
    _LINK_MUTATIONS.labels(action=action or "unknown").inc()


__all__ = ["observe_access_log_failure", "observe_access_outcome", "observe_link_mutation"]
