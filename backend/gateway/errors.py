"""Exceptions raised at the access-control gateway boundary."""

from typing import Optional


class GatewayError(Exception):
    """Base class for gateway failures."""


class TransportError(GatewayError):
    """
    The access-control system could not be reached or refused the call.

    Covers unreachable hosts, timeouts, non-zero exit codes, non-2xx proxy
    answers and output that cannot be parsed.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation

    def __str__(self) -> str:
        message = super().__str__()
        if self.operation:
            return f"{self.operation}: {message}"
        return message


class UnknownPropertyError(GatewayError, ValueError):
    """An account property outside the managed set was passed to the gateway."""
