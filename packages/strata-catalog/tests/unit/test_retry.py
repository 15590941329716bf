"""Unit tests for the commit retry policy."""

from __future__ import annotations

import pytest

from strata_catalog.config import CatalogConfig
from strata_catalog.errors import CommitConflictError, RequirementFailedError
from strata_catalog.retry import CommitRetryPolicy, create_commit_retrying

_NO_WAIT = CommitRetryPolicy(max_retries=2, min_wait_ms=0, max_wait_ms=0)


class _Attempts:
    """Callable failing with ``error`` for the first ``failures`` calls."""

    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "committed"


class TestCommitRetryPolicy:
    """Tests for CommitRetryPolicy.for_table."""

    def test_catalog_defaults(self) -> None:
        """Test catalog settings apply when the table sets nothing."""
        policy = CommitRetryPolicy.for_table(CatalogConfig(), {})
        assert policy == CommitRetryPolicy(
            max_retries=4, min_wait_ms=100, max_wait_ms=60_000, multiplier=2.0
        )

    def test_table_overrides(self) -> None:
        """Test table properties override the catalog settings."""
        policy = CommitRetryPolicy.for_table(
            CatalogConfig(),
            {
                "commit.retry.num-retries": "1",
                "commit.retry.min-wait-ms": "5",
                "commit.retry.max-wait-ms": "50",
            },
        )
        assert (policy.max_retries, policy.min_wait_ms, policy.max_wait_ms) == (1, 5, 50)


class TestCreateCommitRetrying:
    """Tests for the tenacity controller."""

    def test_conflict_retried_until_success(self) -> None:
        """Test a conflict is retried against an authoritative backend."""
        attempt = _Attempts(failures=2, error=CommitConflictError("moved"))
        assert create_commit_retrying(_NO_WAIT, authoritative=True)(attempt) == "committed"
        assert attempt.calls == 3

    def test_gives_up_after_max_retries(self) -> None:
        """Test the last conflict is re-raised once attempts run out."""
        attempt = _Attempts(failures=10, error=CommitConflictError("moved"))
        with pytest.raises(CommitConflictError, match="moved"):
            create_commit_retrying(_NO_WAIT, authoritative=True)(attempt)
        assert attempt.calls == 3

    def test_single_attempt_without_authority(self) -> None:
        """Test a pointer-only backend gets one attempt."""
        attempt = _Attempts(failures=1, error=CommitConflictError("moved"))
        with pytest.raises(CommitConflictError):
            create_commit_retrying(_NO_WAIT, authoritative=False)(attempt)
        assert attempt.calls == 1

    def test_requirement_failure_not_retried(self) -> None:
        """Test a failed requirement is final."""
        attempt = _Attempts(failures=1, error=RequirementFailedError("Requirement failed: x"))
        with pytest.raises(RequirementFailedError):
            create_commit_retrying(_NO_WAIT, authoritative=True)(attempt)
        assert attempt.calls == 1
