"""
Transport factory: turns a ServerDescriptor into something the protocol
library can open.

Currently implements:
  - stdio: StdioServerParameters for a subprocess speaking MCP over its pipes

Future:
  - http / sse: remote servers (rejected with UnsupportedTransport for now)
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from mcp import StdioServerParameters

from switchboard.constants import ROOT_MARKER_GLOBS, ROOT_MARKERS

from .errors import UnsupportedTransport
from .types import ServerDescriptor, TransportType

logger = logging.getLogger(__name__)

_RELATIVE_PREFIXES = ("./", "../", ".\\", "..\\")


def find_repository_root(start: Optional[Path] = None) -> Path:
    """Walk upward from ``start`` until a repository marker is found.

    Falls back to the current working directory when no marker exists.
    """
    current = (start or Path(__file__)).resolve()
    if current.is_file():
        current = current.parent

    for directory in (current, *current.parents):
        if any((directory / marker).exists() for marker in ROOT_MARKERS):
            return directory
        if any(next(directory.glob(pattern), None) for pattern in ROOT_MARKER_GLOBS):
            return directory

    return Path.cwd()


def _is_relative_path(arg: str) -> bool:
    return arg.startswith(_RELATIVE_PREFIXES)


def resolve_arguments(args: List[str], root: Path, base: Optional[Path] = None) -> List[str]:
    """Rewrite relative-path arguments so they are relative to ``root``.

    A relative argument is first anchored at ``base`` (the directory the
    running code lives in), then re-expressed relative to the root, which is
    also the subprocess working directory.
    """
    base = base or Path(__file__).resolve().parent
    resolved: List[str] = []
    for arg in args:
        if _is_relative_path(arg):
            absolute = (base / arg.replace("\\", "/")).resolve()
            resolved.append(os.path.relpath(absolute, root))
        else:
            resolved.append(arg)
    return resolved


def _resolve_command(command: str) -> str:
    # Child MCP processes run inside the same interpreter/venv as we do
    if command in ("python", "python3"):
        return sys.executable
    return command


def create_transport(
    descriptor: ServerDescriptor, root: Optional[Path] = None
) -> StdioServerParameters:
    """Build (but do not start) the transport for ``descriptor``."""
    descriptor.validate_for_transport()

    if descriptor.transport_type is not TransportType.STDIO:
        raise UnsupportedTransport(
            descriptor.transport_type.value, server_id=descriptor.id
        )

    root = root or find_repository_root()
    cwd = root
    if descriptor.working_directory:
        cwd = Path(descriptor.working_directory)
        if not cwd.is_absolute():
            cwd = (root / cwd).resolve()

    # Per-server values override the inherited environment
    merged_env = dict(os.environ)
    merged_env.update(descriptor.env)

    params = StdioServerParameters(
        command=_resolve_command(descriptor.command),
        args=resolve_arguments(descriptor.args, root),
        env=merged_env,
        cwd=str(cwd),
    )
    logger.debug(
        "Built stdio transport for %s: %s %s (cwd=%s)",
        descriptor.id,
        params.command,
        " ".join(params.args),
        params.cwd,
    )
    return params
