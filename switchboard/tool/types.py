from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

import pydantic
from pydantic import Field

from switchboard.constants import DEFAULT_CONNECTION_TIMEOUT, DEFAULT_MAX_RETRIES

from .errors import InvalidDescriptor


class TransportType(str, Enum):
    STDIO = "stdio"
    HTTP = "http"
    SSE = "sse"


class ServerDescriptor(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    id: str
    name: str
    transport_type: TransportType = TransportType.STDIO
    command: str = ""
    args: List[str] = Field(default_factory=list)
    working_directory: str = ""
    env: Dict[str, str] = Field(default_factory=dict)
    location: str = ""
    connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    enabled: bool = True

    def validate_for_transport(self) -> "ServerDescriptor":
        if not self.id.strip():
            raise InvalidDescriptor("MCP server ID must be configured")
        if not self.name.strip():
            raise InvalidDescriptor(
                f"MCP server name must be configured for '{self.id}'",
                server_id=self.id,
            )

        if self.transport_type is TransportType.STDIO:
            if not self.command.strip():
                raise InvalidDescriptor(
                    f"Command is required for stdio transport ('{self.id}')",
                    server_id=self.id,
                )
        else:
            if not self.location.strip():
                raise InvalidDescriptor(
                    f"Location is required for {self.transport_type.value} transport ('{self.id}')",
                    server_id=self.id,
                )
            parsed = urlparse(self.location)
            if not parsed.scheme or not parsed.netloc:
                raise InvalidDescriptor(
                    f"Location must be an absolute URI ('{self.id}')",
                    server_id=self.id,
                )

        if self.connection_timeout <= 0:
            raise InvalidDescriptor(
                f"connection_timeout must be positive ('{self.id}')", server_id=self.id
            )
        if self.max_retries < 0:
            raise InvalidDescriptor(
                f"max_retries must be non-negative ('{self.id}')", server_id=self.id
            )
        return self


class ToolDescriptor(pydantic.BaseModel):
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class TextBlock(pydantic.BaseModel):
    kind: Literal["text"] = "text"
    text: str


class BinaryBlock(pydantic.BaseModel):
    kind: Literal["binary"] = "binary"
    data: str
    mime_type: Optional[str] = None


class OtherBlock(pydantic.BaseModel):
    kind: Literal["other"] = "other"
    raw: Dict[str, Any] = Field(default_factory=dict)


ContentBlock = Annotated[
    Union[TextBlock, BinaryBlock, OtherBlock], Field(discriminator="kind")
]


class InvocationResult(pydantic.BaseModel):
    content: List[ContentBlock] = Field(default_factory=list)
    is_error: bool = False
    structured: Optional[Dict[str, Any]] = None

    def first_text(self) -> Optional[str]:
        for block in self.content:
            if isinstance(block, TextBlock):
                return block.text
        return None
