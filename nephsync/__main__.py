"""CLI entry point for nephsync."""

import argparse
import asyncio
import json
import logging
import os
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .errors import StoreError
from .store import FallbackQueue, LocalRecordStore, StateFile
from .sync import Credentials, SyncCoordinator, SyncSession


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _open_session(config: Config, credentials: Credentials | None = None) -> SyncSession:
    """Open the local store and state file named in the config."""
    state = StateFile(config.store.state_path)
    fallback = FallbackQueue(state, max_entries=config.store.fallback_max_entries)
    store = LocalRecordStore(config.store.db_path, fallback)
    store.connect()
    return SyncSession(store, state, credentials)


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the replication endpoint."""
    config = load_config(args.config)

    import uvicorn

    from .server import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    try:
        app = create_app(config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Set server.jwt_secret or NEPHSYNC_SERVER_JWT_SECRET", file=sys.stderr)
        return 1

    print("Starting nephsync replication endpoint")
    print(f"Database: {config.server.db_path}")
    print(f"URL: http://{host}:{port}")

    verbose = getattr(args, "verbose", False)
    config_uvicorn = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info" if verbose else "warning",
    )
    server = uvicorn.Server(config_uvicorn)
    await server.serve()
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync cycle against the configured server."""
    config = load_config(args.config)

    credentials = Credentials(
        auth_token=args.token or os.environ.get("NEPHSYNC_AUTH_TOKEN"),
        passphrase=args.passphrase or os.environ.get("NEPHSYNC_PASSPHRASE"),
        user_id=args.user,
    )
    if not credentials.complete:
        print("Error: an auth token and a passphrase are required", file=sys.stderr)
        print("Pass --token/--passphrase or set NEPHSYNC_AUTH_TOKEN/NEPHSYNC_PASSPHRASE", file=sys.stderr)
        return 1

    if not config.sync.server_url:
        print("Error: sync.server_url is not configured", file=sys.stderr)
        return 1

    session = _open_session(config, credentials)
    coordinator = SyncCoordinator.from_config(config, session)
    # A manual run ignores the enabled flag
    coordinator.resume()

    try:
        status = await coordinator.sync_now()
    finally:
        session.store.close()

    if status is None:
        print("Sync skipped")
        return 1

    print(f"Pushed: {status.pushed}  Pulled: {status.pulled}  "
          f"Skipped: {status.skipped}  Pending: {status.pending}")
    for error in status.errors:
        print(f"  error: {error}")
    return 1 if status.errors else 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show local store and last sync status."""
    config = load_config(args.config)
    session = _open_session(config)

    try:
        stats = session.store.get_stats()
    finally:
        session.store.close()

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "device": {"name": config.device.name},
        "server_url": config.sync.server_url or None,
        "store": stats,
        "sync": session.load_status(),
        "cursors": {
            key.split(":", 1)[1]: session.state.get(key)
            for key in session.state.keys()
            if key.startswith("syncCursor:")
        },
    }

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("nephsync Status")
    print("===============")
    print(f"Device: {config.device.name}")
    print(f"Server: {config.sync.server_url or 'not configured'}")
    print()

    print("Local store:")
    print(f"  Durable: {'available' if stats['durable_available'] else 'unavailable'}")
    print(f"  Queued in fallback: {stats['fallback_queued']}")
    for entity, count in stats["records_by_type"].items():
        print(f"    - {entity}: {count}")
    print(f"  Tombstones: {stats['tombstones']}")
    print(f"  Unsynced: {stats['unsynced']}")
    print()

    print("Last sync:")
    sync_status = status_data["sync"]
    if not sync_status:
        print("  Never run")
    else:
        for key in ("last_run_at", "last_success_at", "pushed", "pulled", "skipped", "pending"):
            print(f"  {key}: {sync_status.get(key)}")
        if sync_status.get("last_error"):
            print(f"  last_error: {sync_status['last_error']}")
    for user_id, cursor in status_data["cursors"].items():
        print(f"  cursor[{user_id}]: {cursor}")

    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    """Clear local records, fallback queue, cursors and status."""
    if not args.yes:
        print("Refusing to reset without --yes", file=sys.stderr)
        return 1

    config = load_config(args.config)
    session = _open_session(config)
    try:
        session.reset_local_state()
    except StoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        session.store.close()

    print("Local data reset; the next sync pulls everything again")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="nephsync",
        description="Offline-first, end-to-end encrypted record replication",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the replication endpoint")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: server.port)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run one sync cycle now")
    sync_parser.add_argument("--token", type=str, default=None, help="Bearer token")
    sync_parser.add_argument("--passphrase", type=str, default=None, help="Encryption passphrase")
    sync_parser.add_argument("--user", type=str, default="default", help="User id for the pull cursor")
    sync_parser.set_defaults(func=cmd_sync)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show local store and sync status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Reset command
    reset_parser = subparsers.add_parser("reset", help="Delete local data and sync state")
    reset_parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm the reset",
    )
    reset_parser.set_defaults(func=cmd_reset)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, getattr(args, "json", False))

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
