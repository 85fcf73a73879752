import asyncio
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from switchboard.tool.connection import ConnectionManager
from switchboard.tool.errors import ProtocolError, ProtocolErrorKind
from switchboard.tool.manager import ToolManager
from switchboard.tool.retry import RetryPolicy
from switchboard.tool.types import (
    InvocationResult,
    ServerDescriptor,
    TextBlock,
    ToolDescriptor,
)


def make_descriptor(server_id: str, **overrides: Any) -> ServerDescriptor:
    fields = {
        "id": server_id,
        "name": f"{server_id} server",
        "command": "python",
        "args": ["-m", f"servers.{server_id}"],
        "connection_timeout": 1.0,
        "max_retries": 2,
    }
    fields.update(overrides)
    return ServerDescriptor(**fields)


class FakeSession:
    """In-memory stand-in for an MCP session."""

    def __init__(self, server_id: str, tools: Optional[List[str]] = None) -> None:
        self.server_id = server_id
        self.tools = list(tools if tools is not None else ["echo"])
        self.calls: List[tuple] = []
        self.closed = False
        self.dead = False
        self.list_error: Optional[Exception] = None
        self.call_error: Optional[Exception] = None
        self.close_error: Optional[Exception] = None
        self.call_delay = 0.0
        self.close_delay = 0.0

    @property
    def is_alive(self) -> bool:
        return not self.closed and not self.dead

    async def list_tools(self) -> List[ToolDescriptor]:
        if self.list_error is not None:
            raise self.list_error
        return [ToolDescriptor(name=name, description=f"{name} tool") for name in self.tools]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> InvocationResult:
        self.calls.append((name, arguments))
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        if self.call_error is not None:
            raise self.call_error
        if name not in self.tools:
            raise ProtocolError(
                ProtocolErrorKind.TOOL_NOT_FOUND,
                f"Unknown tool: {name}",
                server_id=self.server_id,
            )
        return InvocationResult(
            content=[TextBlock(text=f"{name}:{json.dumps(arguments, sort_keys=True)}")]
        )

    async def close(self) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeServerFarm:
    """Session factory handing out FakeSessions.

    ``fail[server_id]`` is the number of attempts that should fail before one
    succeeds (``None`` means always fail). ``hang`` makes the handshake block.
    """

    def __init__(self) -> None:
        self.tools: Dict[str, List[str]] = {}
        self.fail: Dict[str, Optional[int]] = {}
        self.hang: set = set()
        self.delay = 0.0
        self.attempts: Dict[str, int] = defaultdict(int)
        self.sessions: Dict[str, List[FakeSession]] = defaultdict(list)
        self.released: List[str] = []

    async def __call__(self, descriptor: ServerDescriptor, params: Any) -> FakeSession:
        server_id = descriptor.id
        self.attempts[server_id] += 1
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if server_id in self.hang:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.released.append(server_id)
            raise

        if server_id in self.fail:
            remaining = self.fail[server_id]
            if remaining is None:
                raise ConnectionRefusedError(f"{server_id} refused the connection")
            if remaining > 0:
                self.fail[server_id] = remaining - 1
                raise ConnectionRefusedError(f"{server_id} refused the connection")

        session = FakeSession(server_id, self.tools.get(server_id))
        self.sessions[server_id].append(session)
        return session


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class BlockingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []
        self.started = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.started.set()
        await asyncio.Event().wait()


@pytest.fixture
def farm():
    return FakeServerFarm()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def make_manager(farm, sleep):
    def _make(*descriptors: ServerDescriptor, sleeper=None) -> ConnectionManager:
        return ConnectionManager(
            descriptors,
            retry_policy=RetryPolicy(sleep=sleeper or sleep),
            session_factory=farm,
        )

    return _make


@pytest.fixture
def make_tool_manager(make_manager):
    def _make(*descriptors: ServerDescriptor, **kwargs: Any) -> ToolManager:
        return ToolManager(make_manager(*descriptors, **kwargs))

    return _make
