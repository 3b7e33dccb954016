"""User-facing failures surfaced through ``on_error``.

Cancellation is deliberately absent: a user stop always resolves through
``on_complete`` with whatever text had arrived.
"""

from typing import Optional

QUOTA_MESSAGE = "You've reached today's message limit."
LOCAL_QUOTA_MESSAGE = "You've reached today's limit of {limit} messages. Come back tomorrow."
NETWORK_MESSAGE = "No internet connection. Please check your network and try again."
GENERIC_MESSAGE = "Something went wrong. Please try again."
INTERRUPTED_MESSAGE = "Connection interrupted. Please try again."


class ChatError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class QuotaExceeded(ChatError):
    """Local pre-empt or a 429 from the proxy."""


class NetworkFailure(ChatError):
    """No response arrived at all."""


class ProxyError(ChatError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StreamInterrupted(ChatError):
    """Transport failed after the response had started."""
