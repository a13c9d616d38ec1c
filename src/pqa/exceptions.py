"""PQA-specific exception hierarchy.

Two families live here.  ``PageAutomationError`` subclasses are raised inside
the page agent and never cross the message boundary: the agent converts them
into failed outcomes carrying ``kind`` as ``error_kind``.  The remaining
errors are raised synchronously by the queue controller's public operations.
"""

from __future__ import annotations


class PQAError(Exception):
    """Base exception for all PQA-specific errors."""


# ---------------------------------------------------------------------------
# Page agent errors (reported as failed outcomes)
# ---------------------------------------------------------------------------


class PageAutomationError(PQAError):
    """Base for errors raised while executing a prompt inside the page."""

    kind: str = "page_error"


class ElementNotFoundError(PageAutomationError):
    """Raised when no locator rule or fallback produced a usable element.

    Attributes:
        target_kind: The locator kind that failed (``input``, ``submit``, ``response``).
    """

    kind = "element_not_found"

    def __init__(self, target_kind: str) -> None:
        self.target_kind = target_kind
        super().__init__(f"{target_kind} element not found")


class SubmissionFailedError(PageAutomationError):
    """Raised when the prompt could not be inserted or the submit had no effect."""

    kind = "submission_failed"


class ResponseTimeoutError(PageAutomationError):
    """Raised when no stable response was observed before the deadline.

    Attributes:
        elapsed_s: Seconds spent waiting before giving up.
    """

    kind = "response_timeout"

    def __init__(self, elapsed_s: float) -> None:
        self.elapsed_s = elapsed_s
        super().__init__(f"AI response timeout after {elapsed_s:.1f}s")


class TargetInvalidatedError(PageAutomationError):
    """Raised when the target page was closed or navigated away from the chat host."""

    kind = "target_invalidated"

    def __init__(self, reason: str = "target page is no longer available") -> None:
        self.reason = reason
        super().__init__(reason)


# ---------------------------------------------------------------------------
# Controller errors (raised to the caller)
# ---------------------------------------------------------------------------


class AlreadyRunningError(PQAError):
    """Raised by ``start`` when a run is already active for the target."""

    def __init__(self, target_id: str) -> None:
        self.target_id = target_id
        super().__init__(f"Automation already running for target {target_id!r}")


class NotRunningError(PQAError):
    """Raised when a control operation needs an active run and there is none."""

    def __init__(self, target_id: str) -> None:
        self.target_id = target_id
        super().__init__(f"No automation running for target {target_id!r}")


class NotPausedError(PQAError):
    """Raised by ``resume`` when the run is not paused."""

    def __init__(self, target_id: str) -> None:
        self.target_id = target_id
        super().__init__(f"Automation for target {target_id!r} is not paused")


class EmptyQueueError(PQAError):
    """Raised by ``start`` when the prompt queue is empty."""

    def __init__(self) -> None:
        super().__init__("No prompts to process")


class InvalidTargetError(PQAError):
    """Raised when the target page cannot be validated as an automatable surface."""

    def __init__(self, target_id: str, reason: str = "") -> None:
        self.target_id = target_id
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Invalid automation target {target_id!r}{detail}")


class AgentUnavailableError(PQAError):
    """Raised when a message cannot be delivered because the agent link is closed."""

    def __init__(self, detail: str = "connection to page agent lost") -> None:
        super().__init__(detail)


class NavigationError(PQAError):
    """Raised when the browser could not load the target URL."""

    def __init__(self, url: str, detail: str) -> None:
        self.url = url
        super().__init__(f"Navigation to {url} failed: {detail}")
