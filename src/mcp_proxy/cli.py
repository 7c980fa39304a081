"""
Command-line interface for MCP Profile Proxy.

Usage:
    mcp-profile-proxy --profile developer
    mcp-profile-proxy --profile developer --mode sse --port 8080
    mcp-profile-proxy --help
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from mcp_proxy.config import ProxyConfig
from mcp_proxy.errors import ConfigLoadError
from mcp_proxy.server import ProxyServer
from mcp_proxy.version import __version__


def setup_logging(level: str) -> None:
    """Configure logging for the application.

    Logs always go to stderr; in stdio mode stdout carries the protocol.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [mcp-server-proxy] [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="mcp-profile-proxy",
        description="MCP Server Proxy that can connect to multiple MCP servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the 'default' profile over stdio
  mcp-profile-proxy

  # Serve the 'developer' profile over SSE
  mcp-profile-proxy --profile developer --mode sse --port 8080

Profile file format (config.<profile>.json in --config-dir):
  {
    "mcpServers": {
      "kubernetes": {"command": "npx", "args": ["-y", "mcp-server-kubernetes"]},
      "docs": {"url": "http://localhost:8000/sse"}
    }
  }
""",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-p",
        "--profile",
        type=str,
        default="default",
        help="Profile to use (default: default)",
    )

    parser.add_argument(
        "-m",
        "--mode",
        type=str,
        choices=["stdio", "sse"],
        default="stdio",
        help="Server mode (default: stdio)",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=3000,
        help="Port for SSE mode (default: 3000)",
    )

    parser.add_argument(
        "--host",
        type=str,
        default="localhost",
        help="Host for SSE mode (default: localhost)",
    )

    parser.add_argument(
        "-c",
        "--config-dir",
        type=Path,
        default=None,
        help="Directory holding config.<profile>.json files (default: current directory)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ProxyConfig:
    """Turn parsed arguments into a validated config."""
    settings = {
        "profile": args.profile,
        "mode": args.mode,
        "host": args.host,
        "port": args.port,
        "log_level": args.log_level,
    }
    if args.config_dir is not None:
        settings["config_dir"] = args.config_dir
    return ProxyConfig(**settings)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = build_config(args)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    setup_logging(config.log_level)

    if not config.config_dir.is_dir():
        print(f"Error: Config directory not found: {config.config_dir}", file=sys.stderr)
        return 1

    server = ProxyServer(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    task = loop.create_task(server.run())

    def signal_handler(_sig: int, _frame: object) -> None:
        print("\nShutting down...", file=sys.stderr)
        loop.call_soon_threadsafe(task.cancel)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        loop.run_until_complete(task)
    except asyncio.CancelledError:
        pass
    except ConfigLoadError as e:
        print(f"Fatal error running server: {e}", file=sys.stderr)
        return 1
    finally:
        loop.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
