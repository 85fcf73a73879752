"""
Interactive shell over the ToolManager.

    python -m switchboard [config.yaml]

Connects to every enabled server, shows what each one offers, runs the echo
demonstration and then reads commands:

    servers                               list connected servers
    list <serverId>                       list tools for a server
    call <serverId> <toolName> [params]   call a tool (JSON object or key=value)
    exit                                  quit
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence

from switchboard.services.logging_service import (
    configure_logging,
    install_exception_hooks,
)
from switchboard.tool.config_loader import load_config
from switchboard.tool.errors import UnknownTool
from switchboard.tool.manager import ToolManager
from switchboard.tool.types import InvocationResult

logger = logging.getLogger(__name__)

ECHO_ARGUMENTS = {"name": "switchboard"}

HELP_TEXT = """Available commands:
  list <serverId> - List tools for a server
  call <serverId> <toolName> <parameters> - Call a tool
  servers - List connected servers
  exit - Quit the application"""


def _parse_simple_parameters(parts: Sequence[str], parameters: Dict[str, Any]) -> None:
    for part in parts:
        if "=" in part:
            key, value = part.split("=", 1)
            parameters[key] = value
        else:
            parameters["input"] = part


def parse_parameters(parts: Sequence[str]) -> Dict[str, Any]:
    """Turn the trailing words of a ``call`` command into tool arguments.

    A JSON object is used as-is; otherwise ``key=value`` pairs are collected
    and a bare word becomes ``input``.
    """
    parameters: Dict[str, Any] = {}
    if not parts:
        return parameters

    joined = " ".join(parts).strip()
    if joined.startswith("{") and joined.endswith("}"):
        try:
            parsed = json.loads(joined)
        except json.JSONDecodeError:
            print("Warning: Invalid JSON format, falling back to simple parameter parsing")
        else:
            if isinstance(parsed, dict):
                return parsed
    _parse_simple_parameters(parts, parameters)
    return parameters


def format_result(result: InvocationResult) -> str:
    text = result.first_text()
    if text is None:
        return "No text content in result"
    prefix = "Error" if result.is_error else "Result"
    return f"{prefix}: {text}"


class InteractiveShell:
    def __init__(self, tool_manager: ToolManager) -> None:
        self.tool_manager = tool_manager

    async def demonstrate_tool_listing(self, server_ids: List[str]) -> None:
        logger.info("=== Demonstrating Tool Listing ===")
        for server_id in server_ids:
            try:
                tools = await self.tool_manager.list_tools(server_id)
            except Exception as e:
                logger.error("Failed to list tools for server %s: %s", server_id, e)
                continue
            logger.info("Server %s has %d tools:", server_id, len(tools))
            for tool in tools:
                logger.info("  - %s: %s", tool.name, tool.description)

    async def demonstrate_tool_execution(self, server_ids: List[str]) -> None:
        logger.info("=== Demonstrating Tool Execution ===")
        for server_id in server_ids:
            try:
                tools = await self.tool_manager.list_tools(server_id)
                echo_tool = next((t for t in tools if "echo" in t.name.lower()), None)
                if echo_tool is None:
                    logger.info("No echo tool found on server %s", server_id)
                    continue
                logger.info("Executing echo tool on server %s", server_id)
                result = await self.tool_manager.call_tool(
                    server_id, echo_tool.name, dict(ECHO_ARGUMENTS)
                )
                logger.info("Echo result: %s", result.first_text())
            except Exception as e:
                logger.error("Failed to execute tool on server %s: %s", server_id, e)

    async def handle(self, line: str) -> bool:
        """Run one command line. Returns False when the shell should stop."""
        parts = line.split()
        if not parts or parts[0].lower() == "exit":
            return False

        command = parts[0].lower()
        try:
            if command == "servers":
                print(f"Connected servers: {', '.join(self.tool_manager.connected_servers())}")
            elif command == "help":
                print(HELP_TEXT)
            elif command == "list":
                if len(parts) > 1:
                    await self.list_tools_command(parts[1])
                else:
                    print("Usage: list <serverId>")
            elif command == "call":
                if len(parts) >= 3:
                    await self.call_tool_command(parts[1], parts[2], parts[3:])
                else:
                    print("Usage: call <serverId> <toolName> [parameters...]")
            else:
                print(f"Unknown command: {command}")
        except UnknownTool as e:
            print(f"Error: {e}")
            for suggestion in e.suggestions:
                print(f"  - {suggestion}")
        except Exception as e:
            logger.error("Error executing command: %s", command, exc_info=True)
            print(f"Error: {e}")
        return True

    async def list_tools_command(self, server_id: str) -> None:
        tools = await self.tool_manager.list_tools(server_id)
        print(f"Tools for server {server_id}:")
        for tool in tools:
            print(f"  {tool.name}: {tool.description}")

    async def call_tool_command(
        self, server_id: str, tool_name: str, parameter_parts: Sequence[str]
    ) -> None:
        parameters = parse_parameters(parameter_parts)
        result = await self.tool_manager.call_tool(server_id, tool_name, parameters)
        print(format_result(result))

    async def run(self) -> None:
        logger.info("=== Interactive Demo ===")
        print(HELP_TEXT)
        while True:
            try:
                line = await asyncio.to_thread(input, "\n> ")
            except EOFError:
                break
            if not await self.handle(line):
                break


async def main(config_path: Optional[str] = None) -> int:
    config = load_config(config_path)
    print(f"Configuration loaded for environment: {config.environment}")

    app_logger = configure_logging(config.logging)
    install_exception_hooks(app_logger, asyncio.get_running_loop())
    app_logger.info("Starting switchboard")
    app_logger.info("Configured MCP servers: %d", len(config.servers))

    tool_manager = ToolManager.from_descriptors(config.servers.values())
    try:
        results = await tool_manager.connect_many()
        connected = [sid for sid, error in results.items() if error is None]
        if not connected:
            app_logger.error("No MCP servers could be connected. Exiting.")
            return 1

        shell = InteractiveShell(tool_manager)
        await shell.demonstrate_tool_listing(connected)
        await shell.demonstrate_tool_execution(connected)
        await shell.run()
        return 0
    except Exception:
        app_logger.critical("Application terminated unexpectedly", exc_info=True)
        return 1
    finally:
        await tool_manager.disconnect_all()
        app_logger.info("Application shutdown complete")


def run(argv: Optional[Sequence[str]] = None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)
    config_path = argv[0] if argv else None
    try:
        exit_code = asyncio.run(main(config_path))
    except KeyboardInterrupt:
        print("\n[SWITCHBOARD] Shutting down...")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
