"""Retry classification for failed prompt outcomes.

The controller decides retry-versus-give-up from the failure message alone,
so agents only need to produce readable errors.
"""

from __future__ import annotations

# Message substrings that mark a failure as transient.
RETRYABLE_KEYWORDS: tuple[str, ...] = (
    "timeout",
    "network",
    "connection",
    "element not found",
    "rate limit",
    "temporary",
    "transient",
    "loading",
)

DISPATCH_TIMEOUT_MESSAGE = "Timeout - prompt execution exceeded time limit"


def is_retryable_error(message: str | None) -> bool:
    """Return True if *message* looks like a transient failure worth retrying."""
    if not message:
        return False
    lowered = message.lower()
    return any(keyword in lowered for keyword in RETRYABLE_KEYWORDS)
