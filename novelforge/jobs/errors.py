"""
Error taxonomy for pipeline stages.

The worker only needs one bit from a failure: may it be retried? Stage
handlers raise `StageError` subclasses to answer that explicitly; any other
exception (network timeouts, model errors) is treated as
transient and retried up to the configured attempt cap. Rate limits are
the exception: they pause the queue instead of spending an attempt.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import anthropic


class PipelineError(Exception):
    """Base class for NovelForge pipeline errors."""
    pass


class StageError(PipelineError):
    """A stage handler failed."""

    retryable: bool = True


class RetryableStageError(StageError):
    """Transient failure; the job goes back to pending while attempts remain."""

    retryable = True


class PermanentStageError(StageError):
    """Failure that retrying cannot fix; the job fails immediately."""

    retryable = False


class TargetNotFoundError(PermanentStageError):
    """The chapter or book a job points at no longer exists."""

    def __init__(self, target_id: str, kind: str = "Chapter"):
        self.target_id = target_id
        self.kind = kind
        super().__init__(f"{kind} not found: {target_id}")


class MissingInputError(PermanentStageError):
    """A stage's required input (e.g. chapter content) is absent."""
    pass


class UnknownJobTypeError(PermanentStageError):
    """No handler is registered for the job's type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type}")


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failed attempt should be retried."""
    if isinstance(error, StageError):
        return error.retryable
    return True


class RateLimitError(RetryableStageError):
    """The model provider throttled us; the queue pauses until `reset_at`."""

    def __init__(self, message: str = "Rate limit exceeded", reset_at: Optional[datetime] = None):
        self.reset_at = reset_at
        super().__init__(message)


# Reset timestamps the Anthropic API sends with a 429.
RATE_LIMIT_RESET_HEADERS = (
    "anthropic-ratelimit-requests-reset",
    "anthropic-ratelimit-tokens-reset",
    "anthropic-ratelimit-input-tokens-reset",
    "anthropic-ratelimit-output-tokens-reset",
)


def is_rate_limit_error(error: Optional[BaseException]) -> bool:
    """
    True for provider throttling: our RateLimitError, the Anthropic SDK's
    RateLimitError, anything carrying status 429 or a `rate_limit_error`
    body, or a message that says "rate limit".
    """
    if error is None:
        return False
    if isinstance(error, (RateLimitError, anthropic.RateLimitError)):
        return True
    if 429 in (getattr(error, "status_code", None), getattr(error, "status", None)):
        return True

    body = getattr(error, "body", None)
    if isinstance(body, dict):
        detail = body.get("error", body)
        if isinstance(detail, dict) and detail.get("type") == "rate_limit_error":
            return True

    message = str(error).lower()
    return "rate limit" in message or "rate_limit_error" in message


def _parse_reset(value: str) -> Optional[datetime]:
    try:
        reset_at = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if reset_at.tzinfo is None:
        reset_at = reset_at.replace(tzinfo=timezone.utc)
    return reset_at


def rate_limit_reset(error: BaseException, now: datetime) -> Optional[datetime]:
    """
    When the limit behind `error` lifts, if the error says so.

    Reads RateLimitError.reset_at, then the `retry-after` header (seconds),
    then the latest of the anthropic-ratelimit-*-reset timestamps.
    """
    if isinstance(error, RateLimitError):
        return error.reset_at

    headers = getattr(getattr(error, "response", None), "headers", None)
    if not headers:
        return None

    retry_after = headers.get("retry-after")
    if retry_after:
        try:
            return now + timedelta(seconds=float(retry_after))
        except ValueError:
            pass

    resets = [
        reset_at
        for reset_at in (_parse_reset(headers[name]) for name in RATE_LIMIT_RESET_HEADERS if headers.get(name))
        if reset_at is not None
    ]
    return max(resets) if resets else None
