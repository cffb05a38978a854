"""Command-line interface for Harbormaster."""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from harbormaster import __version__
from harbormaster.config import get_settings


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the Harbormaster CLI.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="harbormaster",
        description="Harbormaster - Multi-container project orchestration"
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands"
    )

    # API server command
    api_parser = subparsers.add_parser(
        "api",
        help="Run the API server"
    )
    api_parser.add_argument(
        "--host",
        default=settings.api_host,
        help=f"Host to bind to (default: {settings.api_host})"
    )
    api_parser.add_argument(
        "--port",
        type=int,
        default=settings.api_port,
        help=f"Port to bind to (default: {settings.api_port})"
    )

    # Version command
    subparsers.add_parser(
        "version",
        help="Show version information"
    )

    args = parser.parse_args(argv)

    if args.command == "api":
        from harbormaster.api import run_server

        run_server(host=args.host, port=args.port)
        return 0

    elif args.command == "version":
        print(f"Harbormaster version {__version__}")
        return 0

    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
