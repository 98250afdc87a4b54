#!/usr/bin/env python3
"""
Command-line interface for the notification engine.

Usage:
    uv run python cli.py [command] [options]

Commands:
    demo        Run demo scenarios
    sync        Sync a store's categories into notification categories
    cleanup     Delete notification history older than the retention period
    test        Run the test suite
    serve       Start the API server

Examples:
    uv run python cli.py demo price-drop
    uv run python cli.py demo all
    uv run python cli.py sync store-001
    uv run python cli.py cleanup --days 7
    uv run python cli.py serve
"""

import argparse
import asyncio
import subprocess
from typing import Optional

from dispatch.demo import SCENARIOS, run_demo
from dispatch.engine import build_engine
from shared.config import get_settings
from shared.errors import ConfigurationError
from shared.logging_config import configure_logging


def run_sync(store_id: str) -> None:
    """Sync one store's categories and print the report."""
    async def sync():
        engine = build_engine()
        report = await engine.categories.sync_store_categories_to_notifications(store_id)
        print(f"Created: {report.created}")
        print(f"Skipped: {report.skipped}")
        print(f"Failed:  {report.failed}")

    asyncio.run(sync())


def run_cleanup(days: Optional[int]) -> None:
    """Run the history retention sweep once."""
    async def cleanup():
        engine = build_engine()
        removed = await engine.history.cleanup_old_notifications(days)
        print(f"Removed {removed} notification(s)")

    asyncio.run(cleanup())


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = ["uv", "run", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = ["uv", "run", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Notification Engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s demo new-product
  %(prog)s demo all
  %(prog)s sync store-001
  %(prog)s cleanup --days 7
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run demo scenarios")
    demo_parser.add_argument(
        "scenario",
        choices=list(SCENARIOS) + ["all"],
        help="Which scenario to run",
    )

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Sync store categories")
    sync_parser.add_argument("store_id", help="Store whose categories to sync")

    # Cleanup command
    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old notification history")
    cleanup_parser.add_argument("--days", type=int, default=None, help="Retention in days")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.command in ("sync", "cleanup"):
        configure_logging(get_settings().log_level)

    try:
        if args.command == "demo":
            run_demo(args.scenario)
        elif args.command == "sync":
            run_sync(args.store_id)
        elif args.command == "cleanup":
            run_cleanup(args.days)
        elif args.command == "test":
            run_tests(args.pytest_args)
        elif args.command == "serve":
            run_server(args.host, args.port, args.reload)
        else:
            parser.print_help()
    except ConfigurationError as e:
        parser.exit(2, f"Configuration error: {e}\n")


if __name__ == "__main__":
    main()
