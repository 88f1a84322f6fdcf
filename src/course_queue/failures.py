"""Deterministic Analyzer failure classification for the worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from course_queue.queue.models import FailureClass

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "bad credentials",
    "authentication failed",
    "authentication required",
    "could not read username",
    "repository not found",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "try again later",
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    retryable: bool
    reason_code: str
    matched_pattern: str | None = None


def classify_execution_failure(
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
    timed_out: bool = False,
) -> FailureClassification:
    """Classify a finished-but-unsuccessful Analyzer run.

    Every Analyzer exit is retryable; the class only records why it failed.
    Access and auth markers are matched against stderr alone, so chapter text
    on stdout cannot change the reason code.
    """

    if timed_out:
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            retryable=True,
            reason_code="analyzer_timeout",
        )

    pattern = _first_match(stderr.lower(), _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.AUTH,
            retryable=True,
            reason_code="analyzer_access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(f"{stderr}\n{stdout}".lower(), _TRANSIENT_PATTERNS)
    return FailureClassification(
        failure_class=FailureClass.NONZERO_EXIT,
        retryable=True,
        reason_code="analyzer_transient" if pattern is not None else f"analyzer_exit_{exit_code}",
        matched_pattern=pattern,
    )


def summarize_failure(
    *,
    exit_code: int | None,
    stdout: str,
    stderr: str,
    tail_lines: int = 20,
) -> str:
    """Short human-readable error: exit code plus the tail of stderr (or stdout)."""

    source = stderr.strip() or stdout.strip()
    tail = "\n".join(source.splitlines()[-tail_lines:])
    header = f"Analyzer exited with code {exit_code}" if exit_code is not None else "Analyzer failed"
    if not tail:
        return header
    return f"{header}:\n{tail}"


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
