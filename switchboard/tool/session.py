"""
Protocol boundary over the ``mcp`` SDK.

McpSession keeps one ClientSession open for as long as the connection lives.
The stdio client and the session are entered and exited by a single runner
task, so the subprocess and its pipes are always released by the task that
acquired them, whichever task asks for the close.

This is also the only place that looks at SDK error codes and messages: every
failure leaves here as a ProtocolError carrying a typed ProtocolErrorKind.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED, CallToolResult

from .errors import ProtocolError, ProtocolErrorKind, TransportFailure
from .types import (
    BinaryBlock,
    ContentBlock,
    InvocationResult,
    OtherBlock,
    TextBlock,
    ToolDescriptor,
)

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT_SECONDS = 5.0

_UNKNOWN_TOOL_MARKERS = ("unknown tool", "tool not found")


def _mentions_unknown_tool(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _UNKNOWN_TOOL_MARKERS)


def classify_mcp_error(
    error: McpError, server_id: Optional[str] = None, *, tool_call: bool = False
) -> ProtocolError:
    # The SDK has no dedicated error code for a missing tool; servers report it
    # as "Unknown tool: <name>".
    data = error.error
    if data.code == CONNECTION_CLOSED:
        return TransportFailure(data.message, server_id=server_id)
    if tool_call and _mentions_unknown_tool(data.message):
        kind = ProtocolErrorKind.TOOL_NOT_FOUND
    else:
        kind = ProtocolErrorKind.PROTOCOL
    return ProtocolError(kind, data.message, server_id=server_id)


def to_content_block(block: Any) -> ContentBlock:
    block_type = getattr(block, "type", None)
    if block_type == "text":
        return TextBlock(text=block.text)
    if block_type in ("image", "audio"):
        return BinaryBlock(data=block.data, mime_type=block.mimeType)
    raw = block.model_dump() if hasattr(block, "model_dump") else {"value": repr(block)}
    return OtherBlock(raw=raw)


def to_invocation_result(result: CallToolResult) -> InvocationResult:
    return InvocationResult(
        content=[to_content_block(block) for block in result.content],
        is_error=bool(result.isError),
        structured=result.structuredContent,
    )


class McpSession:
    """A live MCP session over stdio, owned by a dedicated runner task."""

    def __init__(self, server_id: str, params: StdioServerParameters) -> None:
        self.server_id = server_id
        self._params = params
        self._session: Optional[ClientSession] = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._error: Optional[BaseException] = None
        self._dead = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    async def open(cls, server_id: str, params: StdioServerParameters) -> "McpSession":
        """Spawn the server, run the MCP handshake and return the session."""
        instance = cls(server_id, params)
        instance._task = asyncio.create_task(
            instance._run(), name=f"mcp-session-{server_id}"
        )
        ready = asyncio.ensure_future(instance._ready.wait())
        try:
            await asyncio.wait(
                {ready, instance._task}, return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            ready.cancel()
            await instance._abort()
            raise
        ready.cancel()

        if instance._session is None:
            error = instance._error
            await instance._abort()
            raise TransportFailure(
                f"Handshake with '{server_id}' failed: {error}", server_id=server_id
            ) from error
        return instance

    async def _run(self) -> None:
        try:
            async with stdio_client(self._params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set()
                    await self._closing.wait()
        except Exception as e:
            self._error = e
            if self._ready.is_set():
                logger.warning("Session for %s ended with error: %s", self.server_id, e)
        finally:
            self._session = None
            self._ready.set()

    async def _abort(self) -> None:
        if self._task is None:
            return
        self._closing.set()
        if not self._task.done():
            self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task

    @property
    def is_alive(self) -> bool:
        return (
            not self._dead
            and self._session is not None
            and self._task is not None
            and not self._task.done()
        )

    def _mark_dead(self) -> None:
        if not self._dead:
            logger.warning("Lost connection to %s", self.server_id)
        self._dead = True
        # Lets the runner leave the SDK contexts and reap the subprocess
        self._closing.set()

    def _fail(self, error: ProtocolError) -> ProtocolError:
        if error.kind is ProtocolErrorKind.TRANSPORT:
            self._mark_dead()
        return error

    def _require_session(self) -> ClientSession:
        if not self.is_alive:
            raise TransportFailure(
                f"Session for '{self.server_id}' is not running", server_id=self.server_id
            )
        return self._session

    async def list_tools(self) -> List[ToolDescriptor]:
        session = self._require_session()
        try:
            response = await session.list_tools()
        except McpError as e:
            raise self._fail(classify_mcp_error(e, self.server_id)) from e
        except Exception as e:
            raise self._fail(
                TransportFailure(
                    f"Listing tools on '{self.server_id}' failed: {e!r}",
                    server_id=self.server_id,
                )
            ) from e
        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description or "",
                input_schema=tool.inputSchema or {},
            )
            for tool in response.tools
        ]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> InvocationResult:
        session = self._require_session()
        try:
            result = await session.call_tool(name, arguments=arguments)
        except McpError as e:
            raise self._fail(
                classify_mcp_error(e, self.server_id, tool_call=True)
            ) from e
        except Exception as e:
            raise self._fail(
                TransportFailure(
                    f"Calling {name} on '{self.server_id}' failed: {e!r}",
                    server_id=self.server_id,
                )
            ) from e

        invocation = to_invocation_result(result)
        if invocation.is_error and _mentions_unknown_tool(invocation.first_text() or ""):
            raise ProtocolError(
                ProtocolErrorKind.TOOL_NOT_FOUND,
                invocation.first_text() or f"Unknown tool: {name}",
                server_id=self.server_id,
            )
        return invocation

    async def close(self) -> None:
        """Leave the session and stop the subprocess.

        Raises TransportFailure when the session ended with an error, so the
        caller can log it.
        """
        if self._task is None:
            return
        self._closing.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), CLOSE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(
                "Session for %s did not stop within %.0fs, cancelling",
                self.server_id,
                CLOSE_TIMEOUT_SECONDS,
            )
            await self._abort()
        if self._error is not None:
            raise TransportFailure(
                f"Session for '{self.server_id}' closed with error: {self._error}",
                server_id=self.server_id,
            ) from self._error
