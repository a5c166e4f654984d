"""
Application errors for clean pipeline and API error handling.

Stage-local failures (LLMError, MalformedOutputError, TaskTimeoutError) are
recorded on the workflow state and degrade that stage's output. RoutingError is
the only pipeline error that aborts a request. ServiceUnavailableError maps to
HTTP 503 in the API layer.
"""


class ServiceUnavailableError(Exception):
    """Raised when a required service (e.g. document store, LLM) is unavailable or misconfigured."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class LLMError(Exception):
    """Upstream failure: the completion service errored, timed out, or returned nothing."""


class MalformedOutputError(Exception):
    """Structured model output did not parse against the expected shape."""

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)


class TaskTimeoutError(TimeoutError):
    """A parallel task exceeded its per-task time bound."""

    def __init__(self, name: str, timeout_ms: int) -> None:
        self.name = name
        self.timeout_ms = timeout_ms
        super().__init__(f"Operation '{name}' timed out after {timeout_ms}ms")


class DocumentStoreError(Exception):
    """The backing document repository failed to list or fetch documents."""


class CheckpointError(Exception):
    """A checkpoint could not be written or read."""


class RoutingError(RuntimeError):
    """The workflow reached a state the routing table does not cover. Fatal for the request."""


def error_kind(exc: BaseException) -> str:
    """Classify an exception into the kind recorded on the workflow state."""
    if isinstance(exc, MalformedOutputError):
        return "malformed_output"
    if isinstance(exc, TimeoutError):
        return "timeout"
    if isinstance(exc, (LLMError, DocumentStoreError, ServiceUnavailableError)):
        return "upstream"
    return "internal"
