"""Strata entry point.

This module provides the command line surface with:
- The serving loop: opens the store, starts the background worker and
  runs until SIGINT/SIGTERM
- The capture command: records one tool event read as JSON from stdin,
  for use from assistant hooks
- Logging to stderr only (stdout belongs to the hook protocol)

Usage:
    strata [serve] [options]
    strata capture < event.json

    Options:
        --db PATH               SQLite database (default: ~/.strata/strata.db)
        --project DIR           Project directory to partition by (default: cwd)
        --embedding-backend     'ollama' or 'none' (default: ollama)
        --interval SECONDS      Background tick interval (default: 5.0)
        --log-level LEVEL       Logging level (default: INFO)
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from functools import partial
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

# Load .env file - must be done before any config access
load_dotenv()

logger = logging.getLogger(__name__)

MAX_CAPTURE_CHARS = 2000


def setup_logging(log_level: str) -> None:
    """Configure logging to stderr.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info(f"Logging initialized at {log_level.upper()} level")


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments. Defaults come from STRATA_* settings."""
    from strata.config import StrataSettings

    settings = StrataSettings()

    parser = argparse.ArgumentParser(
        prog="strata",
        description="Local knowledge store for an AI assistant's memory layer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "capture"],
        help="serve (default) or capture one event from stdin",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=settings.get_sqlite_path(),
        help="SQLite database path (from STRATA_SQLITE_PATH)",
    )
    parser.add_argument(
        "--project",
        type=Path,
        default=Path.cwd(),
        help="Project directory used as the partition key",
    )
    parser.add_argument(
        "--embedding-backend",
        type=str,
        default=settings.embedding_backend,
        choices=["ollama", "none"],
        help="Embedding backend (from STRATA_EMBEDDING_BACKEND)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.worker_interval_seconds,
        help="Background tick interval in seconds (from STRATA_WORKER_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=settings.log_level.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (from STRATA_LOG_LEVEL)",
    )
    return parser.parse_args(argv)


# =============================================================================
# Capture
# =============================================================================


def event_content(event: dict[str, Any]) -> str:
    """Observation text for a hook event.

    Uses an explicit 'content' field when present (non-string values are
    serialized as JSON), otherwise the tool name and its input, truncated.
    """
    content = event.get("content")
    if not content:
        tool_input = event.get("tool_input") or {}
        content = f"{event.get('tool_name', 'unknown')}: {json.dumps(tool_input, sort_keys=True)}"
    elif not isinstance(content, str):
        content = json.dumps(content, sort_keys=True, default=str)
    return content[:MAX_CAPTURE_CHARS]


def run_capture(args: argparse.Namespace, stream=None) -> int:
    """Record one tool event read as JSON.

    Always returns 0: a failed capture must not fail the assistant's tool
    call, so errors are logged instead.
    """
    from strata.capture import capture_tool_event
    from strata.config import StrataSettings, get_project_hash
    from strata.storage.errors import StorageError

    stream = stream or sys.stdin
    try:
        event = json.load(stream)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid capture payload: {e}")
        return 0
    tool_name = event.get("tool_name") if isinstance(event, dict) else None
    if not isinstance(tool_name, str) or not tool_name:
        logger.error("Capture payload has no tool_name")
        return 0

    project = Path(event.get("cwd") or args.project)
    try:
        capture_tool_event(
            args.db,
            get_project_hash(project),
            tool_name=tool_name,
            content=event_content(event),
            session_id=event.get("session_id"),
            title=event.get("title"),
            success=bool(event.get("success", True)),
            busy_timeout_ms=StrataSettings().busy_timeout_ms,
        )
    except (StorageError, ValueError) as e:
        logger.error(f"Capture failed: {e}")
    return 0


# =============================================================================
# Serve
# =============================================================================


def setup_signals(stop_event: asyncio.Event) -> None:
    """Set up signal handlers for graceful shutdown."""
    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, shutting down...")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, partial(handle_signal, sig))


async def serve(args: argparse.Namespace) -> None:
    """Open the store, run the background worker until signalled, close."""
    from strata.config import StrataSettings, TopicDetectionSettings, get_project_hash
    from strata.daemon import BackgroundWorker
    from strata.embedding import create_embedding_provider
    from strata.storage import open_database

    settings = StrataSettings(worker_interval_seconds=args.interval)
    project_hash = get_project_hash(args.project)

    logger.info(f"Opening store at {args.db} (project={project_hash})")
    db = open_database(args.db, settings.busy_timeout_ms)
    provider = create_embedding_provider(
        args.embedding_backend,
        host=settings.ollama_host,
        model=settings.ollama_model,
        timeout=settings.ollama_timeout,
    )
    if provider is not None and not provider.health_check():
        logger.warning(f"Embedding provider {provider.name} not ready, vectors will lag")

    worker = BackgroundWorker(
        db,
        project_hash,
        provider,
        settings=settings,
        topic_settings=TopicDetectionSettings(),
    )
    stop_event = asyncio.Event()
    setup_signals(stop_event)
    worker.start()
    try:
        await stop_event.wait()
    finally:
        await worker.stop()
        logger.info(f"Worker stats: {worker.stats()}")
        if provider is not None:
            provider.close()
        db.close()


def main() -> None:
    """Main entry point with CLI handling."""
    args = parse_arguments()
    setup_logging(args.log_level)

    if args.command == "capture":
        sys.exit(run_capture(args))

    from strata.storage.errors import StorageError

    try:
        asyncio.run(serve(args))
    except StorageError as e:
        logger.error(f"Failed to start: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
