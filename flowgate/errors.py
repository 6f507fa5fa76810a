"""Exception hierarchy for flowgate."""

from __future__ import annotations

from typing import Any, Optional


class FlowgateError(Exception):
    """Base class for all flowgate errors."""


class ConfigurationError(FlowgateError):
    """A required setting is missing or invalid."""


class TriggerError(FlowgateError):
    """The build system did not accept a job trigger."""

    def __init__(self, job_path: str, message: str, status_code: Optional[int] = None):
        self.job_path = job_path
        self.status_code = status_code
        super().__init__(f"Failed to trigger {job_path}: {message}")


class QueueCancelledError(FlowgateError):
    """The queued request was cancelled before a build started."""

    def __init__(self, queue_url: str, reason: Optional[str] = None):
        self.queue_url = queue_url
        self.reason = reason
        detail = f" ({reason})" if reason else ""
        super().__init__(f"Queue item {queue_url} was cancelled{detail}")


class PollTimeoutError(FlowgateError, TimeoutError):
    """A bounded poll ran past its deadline.

    ``last_value`` holds whatever the probe last returned, for diagnostics.
    """

    def __init__(
        self, description: str, timeout: float, elapsed: float, last_value: Any = None
    ):
        self.description = description
        self.timeout = timeout
        self.elapsed = elapsed
        self.last_value = last_value
        super().__init__(
            f"Timed out after {elapsed:.1f}s waiting for {description} (limit {timeout:.1f}s)"
        )


class PollCancelledError(FlowgateError):
    """A bounded poll was cancelled by its caller."""

    def __init__(self, description: str, last_value: Any = None):
        self.description = description
        self.last_value = last_value
        super().__init__(f"Polling for {description} was cancelled")


class UpstreamParseError(FlowgateError):
    """A build system response matched none of the known shapes."""


class PersistenceError(FlowgateError):
    """The history ledger could not be read or written."""


class BuildUrlNotAllowedError(FlowgateError):
    """A build URL points outside the configured build system."""
