"""
Exception types raised by the enhancement pipeline.

Per-chunk generation failures are not exceptions: the generation client
returns a classified GenerationResult and the scheduler decides what to do.
The exceptions below cover conditions the caller has to handle.
"""


class EnhancerError(Exception):
    """Base class for all pipeline errors."""


class NoCredentialsError(EnhancerError):
    """No usable API credential is configured; raised before any chunk runs."""


class CredentialsExhaustedError(EnhancerError):
    """Failover advanced past the last credential in the pool."""


class SegmentationError(EnhancerError):
    """Splitting produced no chunk for non-empty input."""


class SessionConsumedError(EnhancerError):
    """A ProcessingSession was passed to resume() a second time."""


class JobStateError(EnhancerError):
    """Operation not valid for the job's current state (e.g. resuming a running job)."""


class SettingsError(EnhancerError):
    """The settings file exists but cannot be parsed or has invalid values."""
