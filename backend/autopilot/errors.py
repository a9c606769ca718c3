"""
Error taxonomy for the orchestration core.

Every error carries a `retryable` flag that the worker layer uses to decide
between a queue-level retry and recording a final failure:

- ValidationError / NotFoundError / InvalidStateError / EmptySourceError /
  UniquenessError: deterministic, never retried
- ProviderError / RateLimitError / QuotaError: transient, retried with backoff
- PublisherConnectionError / AuthError: destination misconfiguration,
  surfaced immediately
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for all orchestration errors."""
    retryable: bool = False


class ValidationError(PipelineError):
    """Bad input (settings, ids)."""
    pass


class NotFoundError(PipelineError):
    """Missing or expired job, content item or site."""
    pass


class InvalidStateError(PipelineError):
    """Operation not allowed in the record's current state."""
    pass


class EmptySourceError(PipelineError):
    """Research job finished without any crawled sources."""
    pass


class UniquenessError(PipelineError):
    """Generated text overlaps its sources more than the threshold allows."""

    def __init__(self, score: float, threshold: float):
        self.score = score
        self.threshold = threshold
        super().__init__(f"Generated content not unique enough: {score:.3f} < {threshold:.3f}")


class TransientError(PipelineError):
    """Temporary failure of an external capability."""
    retryable = True


class ProviderError(TransientError):
    pass


class RateLimitError(TransientError):
    pass


class QuotaError(TransientError):
    pass


class PublisherConnectionError(PipelineError, ConnectionError):
    """Publishing destination unreachable."""
    pass


class AuthError(PipelineError):
    """Publishing destination rejected the credentials."""
    pass


class JobCancelled(PipelineError):
    """A generation result arrived after its job was cancelled."""
    pass
