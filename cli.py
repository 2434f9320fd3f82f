#!/usr/bin/env python3
"""
Command-line interface for the notification outbox pipeline.

Usage:
    uv run python cli.py [command] [options]

Commands:
    worker      Run dispatcher workers against the configured outbox
    inspect     List recent outbox entries
    stats       Count outbox entries per status
    demo        Run the demo scenario
    test        Run the test suite
    serve       Start the inspection API server

Configuration comes from OUTBOX_* environment variables (or .env).

Examples:
    uv run python cli.py worker --workers 4
    uv run python cli.py inspect --limit 20 --status dead
    uv run python cli.py stats
"""

import argparse
import json
import logging
import signal
import subprocess
import sys
import threading
from typing import Optional

from shared.config import get_settings
from shared.models import OutboxStatus
from shared.outbox_store import OutboxStore

logger = logging.getLogger("cli")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
    )


def open_store() -> OutboxStore:
    settings = get_settings()
    store = OutboxStore(settings.database_url, max_attempts=settings.max_attempts)
    store.create_schema()
    return store


def run_inspect(limit: int, status: Optional[str]) -> None:
    """Print the most recent entries as JSON lines, newest first."""
    store = open_store()
    for entry in store.list_recent(limit=limit, status=OutboxStatus(status) if status else None):
        print(entry.model_dump_json())


def run_stats() -> None:
    """Print entry counts per status."""
    store = open_store()
    print(json.dumps(store.count_by_status(), indent=2))


def run_worker(workers: Optional[int], once: bool) -> None:
    """Run dispatcher workers until interrupted."""
    from outbox_pipeline.pipeline import NotificationPipeline

    settings = get_settings()
    if workers is not None:
        settings = settings.model_copy(update={"worker_count": workers})

    pipeline = NotificationPipeline(settings)
    if once:
        pipeline.start(run_workers=False)
        try:
            processed = pipeline.run_once()
        finally:
            pipeline.stop()
        print(f"Processed {processed} entr{'y' if processed == 1 else 'ies'}")
        return

    shutdown = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    pipeline.start()
    try:
        shutdown.wait()
    finally:
        pipeline.stop(timeout=settings.send_timeout * 2)


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = ["uv", "run", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the inspection API server."""
    cmd = ["uv", "run", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Notification Outbox CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s worker --workers 4
  %(prog)s worker --once
  %(prog)s inspect --limit 20 --status dead
  %(prog)s stats
  %(prog)s demo
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Worker command
    worker_parser = subparsers.add_parser("worker", help="Run dispatcher workers")
    worker_parser.add_argument("--workers", type=int, default=None, help="Number of worker loops")
    worker_parser.add_argument("--once", action="store_true", help="Process one batch per worker and exit")

    # Inspect command
    inspect_parser = subparsers.add_parser("inspect", help="List recent outbox entries")
    inspect_parser.add_argument("--limit", type=int, default=10, help="Number of entries to show")
    inspect_parser.add_argument(
        "--status",
        choices=[s.value for s in OutboxStatus],
        default=None,
        help="Only show entries in this status",
    )

    # Stats command
    subparsers.add_parser("stats", help="Count entries per status")

    # Demo command
    subparsers.add_parser("demo", help="Run the appointment-confirmed demo")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the inspection API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()
    configure_logging(args.verbose)

    if args.command == "worker":
        run_worker(args.workers, args.once)
    elif args.command == "inspect":
        run_inspect(args.limit, args.status)
    elif args.command == "stats":
        run_stats()
    elif args.command == "demo":
        from outbox_pipeline.demo import run_appointment_confirmed_demo
        run_appointment_confirmed_demo()
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
