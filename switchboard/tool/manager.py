from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from .connection import Connection, ConnectionManager, ConnectionState
from .errors import OperationCancelled, ProtocolError, ProtocolErrorKind, UnknownTool
from .retry import run_cancellable
from .suggestions import find_similar_tool_names
from .types import InvocationResult, ServerDescriptor, ToolDescriptor

logger = logging.getLogger(__name__)


class ToolManager:
    """Routes tool listing and invocation to the right live connection.

    Connections are opened lazily on first use and shared afterwards. Tool
    lists are always fetched from the server, never cached.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        *,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.connections = connections
        self._logger = log or logger

    @classmethod
    def from_descriptors(
        cls,
        descriptors: Iterable[ServerDescriptor],
        *,
        log: Optional[logging.Logger] = None,
        **kwargs: Any,
    ) -> "ToolManager":
        return cls(ConnectionManager(descriptors, log=log, **kwargs), log=log)

    async def connect(self, server_id: str, cancel: Optional[asyncio.Event] = None) -> Connection:
        return await self.connections.connect(server_id, cancel=cancel)

    async def disconnect(
        self, server_id: str, cancel: Optional[asyncio.Event] = None
    ) -> None:
        await self.connections.disconnect(server_id, cancel=cancel)

    async def disconnect_all(self, cancel: Optional[asyncio.Event] = None) -> None:
        await self.connections.disconnect_all(cancel=cancel)

    async def connect_many(
        self,
        server_ids: Optional[Iterable[str]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Dict[str, Optional[Exception]]:
        return await self.connections.connect_many(server_ids, cancel=cancel)

    def connected_servers(self) -> List[str]:
        return self.connections.connected_servers()

    def state(self, server_id: str) -> ConnectionState:
        return self.connections.state(server_id)

    async def list_tools(
        self, server_id: str, cancel: Optional[asyncio.Event] = None
    ) -> List[ToolDescriptor]:
        connection = await self.connections.connect(server_id, cancel=cancel)
        try:
            self._logger.debug("Listing tools for server %s", server_id)
            tools = await run_cancellable(connection.list_tools(), cancel)
        except OperationCancelled:
            raise
        except Exception:
            self._logger.exception(
                "Failed to list tools for server %s",
                server_id,
                extra={"server_id": server_id},
            )
            raise
        self._logger.info(
            "Found %d tools for server %s",
            len(tools),
            server_id,
            extra={"server_id": server_id},
        )
        return tools

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> InvocationResult:
        arguments = arguments or {}
        connection = await self.connections.connect(server_id, cancel=cancel)
        extra = {"server_id": server_id, "tool_name": tool_name}

        self._logger.info(
            "Calling tool %s on server %s with parameters: %s",
            tool_name,
            server_id,
            json.dumps(arguments, default=str),
            extra=extra,
        )
        try:
            result = await run_cancellable(
                connection.call_tool(tool_name, arguments), cancel
            )
        except ProtocolError as e:
            self._logger.error(
                "Failed to call tool %s on server %s: %s",
                tool_name,
                server_id,
                e,
                extra=extra,
            )
            if e.kind is ProtocolErrorKind.TOOL_NOT_FOUND:
                raise await self._unknown_tool(connection, tool_name, cancel) from e
            raise
        except OperationCancelled:
            raise
        except Exception:
            self._logger.exception(
                "Failed to call tool %s on server %s", tool_name, server_id, extra=extra
            )
            raise

        self._logger.info(
            "Tool %s executed successfully on server %s", tool_name, server_id, extra=extra
        )
        return result

    async def _unknown_tool(
        self,
        connection: Connection,
        tool_name: str,
        cancel: Optional[asyncio.Event],
    ) -> UnknownTool:
        server_id = connection.server_id
        try:
            tools = await run_cancellable(connection.list_tools(), cancel)
        except OperationCancelled:
            raise
        except Exception as e:
            self._logger.warning(
                "Could not generate tool suggestions for %s: %s",
                tool_name,
                e,
                extra={"server_id": server_id, "tool_name": tool_name},
            )
            return UnknownTool(tool_name, server_id=server_id)

        suggestions = find_similar_tool_names(tool_name, [t.name for t in tools])
        return UnknownTool(tool_name, suggestions, server_id=server_id)

    async def __aenter__(self) -> "ToolManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect_all()
