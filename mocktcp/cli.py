"""
Command line runner for JSON script files

Script file format:
    {
        "host": "127.0.0.1",
        "port": 0,
        "timeout": 2,
        "connections": [
            [["recv", "HELLO", "wait for hello"], ["packsend", "42 59 45", "send bye"]]
        ]
    }
"""
import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from mocktcp.config import settings
from mocktcp.exceptions import MockServerError, ScriptError
from mocktcp.logging import setup_logging
from mocktcp.models import ActionKind, parse_action
from mocktcp.server import MockServer

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_CHECKS_FAILED = 1
EXIT_FATAL = 2

_FILE_KEYS = {"connections", "host", "port", "timeout"}


def load_script_file(path: Path) -> Dict[str, Any]:
    """
    Read server options from a JSON script file.

    Callbacks cannot be expressed in a file, so "code" entries are rejected.

    Raises:
        ScriptError: If the file is unreadable or malformed
    """
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, ValueError) as e:
        raise ScriptError(f"Cannot read script file {path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("connections"), list):
        raise ScriptError(f"Script file {path} needs a top-level 'connections' list")
    unknown = set(data) - _FILE_KEYS
    if unknown:
        raise ScriptError(f"Unknown keys in script file {path}: {sorted(unknown)}")

    connections: List[List[Any]] = []
    for script in data["connections"]:
        if not isinstance(script, list):
            raise ScriptError("Each connection must be a list of action entries")
        actions = [parse_action(entry) for entry in script]
        if any(action.kind == ActionKind.CODE for action in actions):
            raise ScriptError("'code' actions are not supported in script files")
        connections.append(actions)

    options = {key: value for key, value in data.items() if key != "connections"}
    options["connections"] = connections
    return options


async def serve(options: Dict[str, Any], wait_timeout: Optional[float] = None) -> int:
    """Serve one script file to completion and return the process exit code."""
    server = MockServer(**options)
    try:
        await server.start()
        print(server.connect_string(), flush=True)
        await server.wait_finished(wait_timeout)
    except (MockServerError, asyncio.TimeoutError) as e:
        logger.error("mock_server_run_failed", error=str(e), error_type=type(e).__name__)
        return EXIT_FATAL
    finally:
        await server.close()

    checks = server.checks
    failures = server.failures
    print(f"{len(checks) - len(failures)}/{len(checks)} checks passed", flush=True)
    for check in failures:
        print(f"FAILED {check.label}: got {check.actual!r}, expected {check.expected!r}", flush=True)
    return EXIT_CHECKS_FAILED if failures else EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Scriptable mock TCP server")
    parser.add_argument("script", type=Path, help="JSON script file")
    parser.add_argument("--host", help=f"Host to bind to (default {settings.host})")
    parser.add_argument("--port", type=int, help="Port to bind to (default: ephemeral)")
    parser.add_argument("--timeout", type=float, help="Per-connection idle timeout in seconds")
    parser.add_argument(
        "--wait-timeout",
        type=float,
        default=None,
        help="Give up if the scripts have not finished after this many seconds",
    )
    parser.add_argument("--debug", action="store_true", help="Log every executed action")

    args = parser.parse_args(argv)

    setup_logging("mocktcp", logging.DEBUG if args.debug else None)

    try:
        options = load_script_file(args.script)
    except ScriptError as e:
        logger.error("script_file_invalid", path=str(args.script), error=e.message)
        return EXIT_FATAL

    for key in ("host", "port", "timeout"):
        value = getattr(args, key)
        if value is not None:
            options[key] = value
    if args.debug:
        options["debug"] = True

    try:
        return asyncio.run(serve(options, args.wait_timeout))
    except MockServerError as e:
        logger.error("mock_server_config_invalid", error=e.message)
        return EXIT_FATAL
