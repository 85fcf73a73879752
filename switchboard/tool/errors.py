"""Error taxonomy for the connection and invocation manager.

Every failure a caller can observe derives from ToolManagerError. Raw SDK or
transport exceptions never escape: the protocol adapter wraps them into
TransportFailure (keeping the original as ``__cause__``).
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional


class ToolManagerError(Exception):
    """Base class for all switchboard errors."""

    def __init__(self, message: str, *, server_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.server_id = server_id


class UnknownServer(ToolManagerError):
    def __init__(self, server_id: str) -> None:
        super().__init__(f"Unknown server '{server_id}'", server_id=server_id)


class ServerDisabled(ToolManagerError):
    def __init__(self, server_id: str) -> None:
        super().__init__(f"Server '{server_id}' is disabled", server_id=server_id)


class InvalidDescriptor(ToolManagerError):
    pass


class UnsupportedTransport(ToolManagerError):
    def __init__(self, transport_type: str, *, server_id: Optional[str] = None) -> None:
        super().__init__(
            f"{transport_type} transport not yet implemented", server_id=server_id
        )
        self.transport_type = transport_type


class ConnectTimeout(ToolManagerError):
    def __init__(self, server_id: str, timeout: float) -> None:
        super().__init__(
            f"Connection to '{server_id}' timed out after {timeout:g}s",
            server_id=server_id,
        )
        self.timeout = timeout


class ConnectExhausted(ToolManagerError):
    """All connection attempts failed. ``last_error`` holds the root cause."""

    def __init__(self, server_id: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Failed to connect to '{server_id}' after {attempts} attempt(s): {last_error}",
            server_id=server_id,
        )
        self.attempts = attempts
        self.last_error = last_error


class OperationCancelled(ToolManagerError):
    pass


class UnknownTool(ToolManagerError):
    def __init__(
        self,
        name: str,
        suggestions: Optional[List[str]] = None,
        *,
        server_id: Optional[str] = None,
    ) -> None:
        self.name = name
        self.suggestions = list(suggestions or [])
        if self.suggestions:
            message = (
                f"Unknown tool '{name}'. Did you mean: {', '.join(self.suggestions)}? "
                "(Tool names are case-sensitive)"
            )
        else:
            message = (
                f"Unknown tool '{name}'. Tool names are case-sensitive. "
                f"Use 'list {server_id}' to see available tools."
            )
        super().__init__(message, server_id=server_id)


class ProtocolErrorKind(str, Enum):
    TOOL_NOT_FOUND = "tool_not_found"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"


class ProtocolError(ToolManagerError):
    """Failure reported by the protocol boundary, tagged with a typed kind."""

    def __init__(
        self,
        kind: ProtocolErrorKind,
        message: str,
        *,
        server_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, server_id=server_id)
        self.kind = kind


class TransportFailure(ProtocolError):
    def __init__(self, message: str, *, server_id: Optional[str] = None) -> None:
        super().__init__(ProtocolErrorKind.TRANSPORT, message, server_id=server_id)
