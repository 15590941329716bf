"""Commit retry policy.

Commits against a backend that evaluates requirements authoritatively are
retried on ``CommitConflictError`` with exponential backoff. Backends without
authoritative evaluation get exactly one attempt.

Example:
    >>> policy = CommitRetryPolicy.for_table(CatalogConfig(), {"commit.retry.num-retries": "2"})
    >>> retrying = create_commit_retrying(policy, authoritative=True)
    >>> retrying(attempt_commit)
"""

from __future__ import annotations

from collections.abc import Mapping

import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from strata_catalog.config import CatalogConfig, TableProperties, property_as_int
from strata_catalog.errors import CommitConflictError

logger = structlog.get_logger(__name__)

# Only a moved pointer is worth another attempt
RETRYABLE_EXCEPTIONS = (CommitConflictError,)


class CommitRetryPolicy(BaseModel):
    """Resolved retry settings for one table.

    Attributes:
        max_retries: Retries after the first attempt.
        min_wait_ms: Wait before the first retry.
        max_wait_ms: Upper bound on any wait.
        multiplier: Growth factor between consecutive waits.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int = Field(default=4, ge=0)
    min_wait_ms: int = Field(default=100, ge=0)
    max_wait_ms: int = Field(default=60_000, ge=0)
    multiplier: float = Field(default=2.0, gt=0)

    @classmethod
    def for_table(cls, config: CatalogConfig, properties: Mapping[str, str]) -> CommitRetryPolicy:
        """Catalog defaults overridden by the table's ``commit.retry.*`` properties."""
        return cls(
            max_retries=property_as_int(
                properties, TableProperties.COMMIT_NUM_RETRIES, config.max_commit_retries
            ),
            min_wait_ms=property_as_int(
                properties, TableProperties.COMMIT_MIN_RETRY_WAIT_MS, config.retry_min_wait_ms
            ),
            max_wait_ms=property_as_int(
                properties, TableProperties.COMMIT_MAX_RETRY_WAIT_MS, config.retry_max_wait_ms
            ),
            multiplier=config.retry_multiplier,
        )


def _before_retry(retry_state: RetryCallState) -> None:
    """Warn about the conflict that is about to be retried."""
    conflict = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "commit_retry",
        attempt=retry_state.attempt_number,
        error=str(conflict) if conflict else None,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else 0,
    )


def create_commit_retrying(policy: CommitRetryPolicy, authoritative: bool) -> Retrying:
    """Build the tenacity controller for one logical commit.

    Args:
        policy: Retry settings for the table.
        authoritative: Whether the backend evaluates requirements itself.
            Without it a stale write is never retried.

    Returns:
        A Retrying instance; call it with the attempt function.
    """
    # stop_after_attempt counts total attempts, not retries
    attempts = policy.max_retries + 1 if authoritative else 1
    return Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(
            multiplier=policy.min_wait_ms / 1000,
            exp_base=policy.multiplier,
            min=policy.min_wait_ms / 1000,
            max=policy.max_wait_ms / 1000,
        ),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        before_sleep=_before_retry,
        reraise=True,
    )


__all__ = ["RETRYABLE_EXCEPTIONS", "CommitRetryPolicy", "create_commit_retrying"]
