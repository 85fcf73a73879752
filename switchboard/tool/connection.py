"""
Connection table and connection manager.

Per server the lifecycle is ABSENT -> CONNECTING -> CONNECTED -> ABSENT, or
ABSENT -> CONNECTING -> ABSENT when every attempt fails. One asyncio.Lock
guards the whole table; it covers membership checks, in-flight registration,
inserts and removals, and is never held across a handshake. Concurrent
connects to the same server share one in-flight future, so the table never
holds two connections for one id and never exposes a half-built one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
)

from mcp import StdioServerParameters

from .errors import (
    ConnectExhausted,
    ConnectTimeout,
    InvalidDescriptor,
    OperationCancelled,
    ServerDisabled,
    UnknownServer,
    UnsupportedTransport,
)
from .retry import RetryPolicy, run_cancellable
from .session import McpSession
from .transport import create_transport
from .types import InvocationResult, ServerDescriptor, ToolDescriptor

logger = logging.getLogger(__name__)


class SessionHandle(Protocol):
    """What the manager needs from an established protocol session."""

    @property
    def is_alive(self) -> bool: ...

    async def list_tools(self) -> List[ToolDescriptor]: ...

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> InvocationResult: ...

    async def close(self) -> None: ...


SessionFactory = Callable[[ServerDescriptor, Any], Awaitable[SessionHandle]]
TransportFactory = Callable[[ServerDescriptor], Any]


async def open_mcp_session(
    descriptor: ServerDescriptor, params: StdioServerParameters
) -> SessionHandle:
    return await McpSession.open(descriptor.id, params)


class ConnectionState(str, Enum):
    ABSENT = "absent"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Connection:
    """A live session with one server. Owned by the ConnectionTable."""

    def __init__(self, server_id: str, session: SessionHandle) -> None:
        self.server_id = server_id
        self.session = session
        self.connected_at = time.time()

    @property
    def is_alive(self) -> bool:
        return self.session.is_alive

    async def list_tools(self) -> List[ToolDescriptor]:
        return await self.session.list_tools()

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> InvocationResult:
        return await self.session.call_tool(name, arguments)

    async def close(self) -> None:
        await self.session.close()

    def __repr__(self) -> str:
        return f"Connection(server_id={self.server_id!r}, alive={self.is_alive})"


class ConnectionTable:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.connections: Dict[str, Connection] = {}
        self.pending: Dict[str, asyncio.Future] = {}

    def __contains__(self, server_id: str) -> bool:
        return server_id in self.connections

    def __len__(self) -> int:
        return len(self.connections)

    def state(self, server_id: str) -> ConnectionState:
        if server_id in self.connections:
            return ConnectionState.CONNECTED
        if server_id in self.pending:
            return ConnectionState.CONNECTING
        return ConnectionState.ABSENT


def _consume_exception(future: asyncio.Future) -> None:
    # Nobody may be waiting on a failed in-flight connect
    if not future.cancelled():
        future.exception()


class ConnectionManager:
    def __init__(
        self,
        descriptors: Iterable[ServerDescriptor],
        *,
        retry_policy: Optional[RetryPolicy] = None,
        transport_factory: TransportFactory = create_transport,
        session_factory: SessionFactory = open_mcp_session,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._logger = log or logger
        self.descriptors: Dict[str, ServerDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in self.descriptors:
                raise InvalidDescriptor(
                    f"Duplicate server id '{descriptor.id}'", server_id=descriptor.id
                )
            self.descriptors[descriptor.id] = descriptor
        self.table = ConnectionTable()
        self._retry = retry_policy or RetryPolicy(log=self._logger)
        self._transport_factory = transport_factory
        self._session_factory = session_factory
        self._logger.info(
            "ConnectionManager initialized with servers: %s", list(self.descriptors)
        )

    def _descriptor(self, server_id: str) -> ServerDescriptor:
        descriptor = self.descriptors.get(server_id)
        if descriptor is None:
            self._logger.error(
                "Server configuration not found for ID: %s",
                server_id,
                extra={"server_id": server_id},
            )
            raise UnknownServer(server_id)
        if not descriptor.enabled:
            self._logger.warning(
                "Server %s is disabled", server_id, extra={"server_id": server_id}
            )
            raise ServerDisabled(server_id)
        return descriptor

    def state(self, server_id: str) -> ConnectionState:
        return self.table.state(server_id)

    def connected_servers(self) -> List[str]:
        return sorted(self.table.connections)

    async def connect(
        self, server_id: str, cancel: Optional[asyncio.Event] = None
    ) -> Connection:
        """Return the live connection for ``server_id``, connecting if needed."""
        descriptor = self._descriptor(server_id)

        stale: Optional[Connection] = None
        async with self.table.lock:
            existing = self.table.connections.get(server_id)
            if existing is not None and existing.is_alive:
                self._logger.debug("Client for server %s already exists", server_id)
                return existing
            if existing is not None:
                stale = self.table.connections.pop(server_id)

            pending = self.table.pending.get(server_id)
            owner = pending is None
            if owner:
                pending = asyncio.get_running_loop().create_future()
                pending.add_done_callback(_consume_exception)
                self.table.pending[server_id] = pending

        if not owner:
            self._logger.debug("Waiting for in-flight connect to %s", server_id)
            try:
                return await run_cancellable(asyncio.shield(pending), cancel)
            except OperationCancelled:
                # The owner's cancellation is not ours: take over the connect
                if (cancel is not None and cancel.is_set()) or not pending.done():
                    raise
                return await self.connect(server_id, cancel)

        try:
            if stale is not None:
                self._logger.info("Dropping dead connection to %s", server_id)
                await self._close_connection(stale)
            self._logger.info(
                "Connecting to MCP server %s (%s)",
                descriptor.name,
                server_id,
                extra={"server_id": server_id},
            )
            connection = await self._connect_with_retry(descriptor, cancel)
        except BaseException as e:
            async with self.table.lock:
                self.table.pending.pop(server_id, None)
            if isinstance(e, Exception):
                pending.set_exception(e)
            else:
                pending.set_exception(
                    OperationCancelled(f"Connect to '{server_id}' was cancelled")
                )
            raise

        async with self.table.lock:
            self.table.pending.pop(server_id, None)
            self.table.connections[server_id] = connection
        pending.set_result(connection)
        self._logger.info(
            "Successfully connected to MCP server %s",
            descriptor.name,
            extra={"server_id": server_id},
        )
        return connection

    async def _connect_with_retry(
        self, descriptor: ServerDescriptor, cancel: Optional[asyncio.Event]
    ) -> Connection:
        attempts = 0

        async def attempt(index: int) -> Connection:
            nonlocal attempts
            attempts = index + 1
            self._logger.debug(
                "Attempting to connect to %s (attempt %d/%d)",
                descriptor.name,
                index + 1,
                descriptor.max_retries + 1,
                extra={"server_id": descriptor.id, "attempt": index + 1},
            )
            params = self._transport_factory(descriptor)
            return await self._open_connection(descriptor, params)

        try:
            return await self._retry.run(
                attempt,
                descriptor.max_retries,
                cancel=cancel,
                label=f"connect {descriptor.id}",
            )
        except (OperationCancelled, InvalidDescriptor, UnsupportedTransport):
            raise
        except Exception as e:
            self._logger.error(
                "All connection attempts failed for %s",
                descriptor.name,
                extra={"server_id": descriptor.id, "attempt": attempts},
            )
            raise ConnectExhausted(descriptor.id, attempts, e) from e

    async def _open_connection(self, descriptor: ServerDescriptor, params: Any) -> Connection:
        async def handshake() -> SessionHandle:
            session = await self._session_factory(descriptor, params)
            try:
                # Liveness check
                await session.list_tools()
            except BaseException:
                await self._close_quietly(descriptor.id, session)
                raise
            return session

        try:
            session = await asyncio.wait_for(handshake(), descriptor.connection_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectTimeout(descriptor.id, descriptor.connection_timeout) from e
        return Connection(descriptor.id, session)

    async def _close_quietly(self, server_id: str, session: SessionHandle) -> None:
        try:
            await session.close()
        except Exception as e:
            self._logger.warning(
                "Error releasing half-open session for %s: %s",
                server_id,
                e,
                extra={"server_id": server_id},
            )

    async def _close_connection(
        self, connection: Connection, cancel: Optional[asyncio.Event] = None
    ) -> None:
        if cancel is None:
            closing = connection.close()
        else:
            # Release runs to completion even when the caller stops waiting
            task = asyncio.ensure_future(connection.close())
            task.add_done_callback(lambda t: self._log_late_close(connection.server_id, t))
            closing = asyncio.shield(task)
        try:
            await run_cancellable(closing, cancel)
        except OperationCancelled:
            self._logger.info(
                "Stopped waiting for %s to close",
                connection.server_id,
                extra={"server_id": connection.server_id},
            )
        except Exception:
            self._logger.exception(
                "Error disconnecting from server %s",
                connection.server_id,
                extra={"server_id": connection.server_id},
            )

    def _log_late_close(self, server_id: str, task: asyncio.Future) -> None:
        if task.cancelled() or task.exception() is None:
            return
        self._logger.debug(
            "Close of %s finished with error: %s",
            server_id,
            task.exception(),
            extra={"server_id": server_id},
        )

    async def disconnect(
        self, server_id: str, cancel: Optional[asyncio.Event] = None
    ) -> None:
        """Best-effort: close and forget ``server_id``. Never raises."""
        async with self.table.lock:
            connection = self.table.connections.pop(server_id, None)
        if connection is None:
            return
        self._logger.info(
            "Disconnecting from server %s", server_id, extra={"server_id": server_id}
        )
        await self._close_connection(connection, cancel)

    async def disconnect_all(self, cancel: Optional[asyncio.Event] = None) -> None:
        async with self.table.lock:
            connections = list(self.table.connections.values())
            self.table.connections.clear()
        if not connections:
            return
        self._logger.info("Disconnecting from %d server(s)", len(connections))
        await asyncio.gather(
            *(self._close_connection(c, cancel) for c in connections), return_exceptions=True
        )

    async def connect_many(
        self,
        server_ids: Optional[Iterable[str]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Dict[str, Optional[Exception]]:
        """Connect to several servers in parallel.

        Defaults to every enabled descriptor. Returns ``{server_id: None}`` on
        success or the exception that server failed with; one failure never
        affects the others.
        """
        if server_ids is None:
            ids = [sid for sid, d in self.descriptors.items() if d.enabled]
        else:
            ids = list(server_ids)

        async def connect_one(server_id: str) -> Optional[Exception]:
            try:
                await self.connect(server_id, cancel=cancel)
            except Exception as e:
                self._logger.error(
                    "Error connecting to %s: %s",
                    server_id,
                    e,
                    extra={"server_id": server_id},
                )
                return e
            return None

        results = await asyncio.gather(*(connect_one(sid) for sid in ids))
        connected = sum(1 for r in results if r is None)
        self._logger.info("Connected to %d out of %d servers", connected, len(ids))
        return dict(zip(ids, results))

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect_all()
