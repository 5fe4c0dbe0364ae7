"""Exception types for open-channel."""

from __future__ import annotations

import enum
from typing import Any


class ErrorType(enum.Enum):
    """Classification of every failure a channel call can surface."""

    CONFIG_ERROR = "CONFIG_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    API_ERROR = "API_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    CANCELLED_ERROR = "CANCELLED_ERROR"


class ChannelToolkitError(Exception):
    """Base exception class for the open_channel package."""

    pass


class ChannelError(ChannelToolkitError):
    """A classified failure raised by the dispatcher, transport or formatters.

    ``details`` carries whatever helps diagnose the failure: the decoded
    response body for ``API_ERROR``, the offending chunk for ``PARSE_ERROR``,
    or the underlying exception for ``NETWORK_ERROR``.
    """

    def __init__(
        self,
        error_type: ErrorType,
        message: str,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.type = error_type
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"ChannelError({self.type.value}, {self.message!r})"


def cancelled_error() -> ChannelError:
    return ChannelError(ErrorType.CANCELLED_ERROR, "Request cancelled")
