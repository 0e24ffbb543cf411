#!/usr/bin/env python
"""Command line entry point for Marlin Sync."""
import argparse
import json
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from marlin_sync import __version__
from marlin_sync.config import config
from marlin_sync.exceptions import MarlinError
from marlin_sync.models.db_models import init_db
from marlin_sync.observability import configure_logging, metrics
from marlin_sync.remote.base import RemoteStore
from marlin_sync.remote.github import GitHubRemoteStore
from marlin_sync.services.network_monitor import NetworkMonitor
from marlin_sync.services.note_service import NoteService
from marlin_sync.services.scheduler import AutoSyncScheduler
from marlin_sync.services.space_service import SpaceService
from marlin_sync.services.sync_engine import SyncEngine
from marlin_sync.state import StatusBoard
from marlin_sync.storage.local_store import LocalStore
from marlin_sync.storage.tag_index import TagIndex

logger = logging.getLogger(__name__)


@dataclass
class MarlinApp:
    """The wired set of components sharing one store and one status board."""

    store: LocalStore
    remote: RemoteStore
    status: StatusBoard
    monitor: NetworkMonitor
    engine: SyncEngine
    scheduler: AutoSyncScheduler
    tag_index: TagIndex
    notes: NoteService
    spaces: SpaceService

    def close(self) -> None:
        self.scheduler.stop()
        self.monitor.stop()
        self.tag_index.close()
        self.remote.close()


def build_app(
    remote: Optional[RemoteStore] = None,
    db_url: Optional[str] = None,
) -> MarlinApp:
    """Wire the components. Quota headers seen by the adapter feed the monitor."""
    status = StatusBoard()
    store = LocalStore(engine=init_db(db_url))
    monitor_ref = {}

    def on_rate_limit(info):
        monitor = monitor_ref.get("monitor")
        if monitor is not None:
            monitor.observe_rate_limit(info)

    if remote is None:
        remote = GitHubRemoteStore(on_rate_limit=on_rate_limit)
    monitor = NetworkMonitor(remote, status=status)
    monitor_ref["monitor"] = monitor
    engine = SyncEngine(store, remote, status=status, monitor=monitor)
    scheduler = AutoSyncScheduler(engine, monitor=monitor)
    tag_index = TagIndex(store)
    return MarlinApp(
        store=store,
        remote=remote,
        status=status,
        monitor=monitor,
        engine=engine,
        scheduler=scheduler,
        tag_index=tag_index,
        notes=NoteService(store, tag_index=tag_index, scheduler=scheduler),
        spaces=SpaceService(store, remote),
    )


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="marlin-sync", description="Local-first note sync with GitHub"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("MARLIN_DATABASE_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("MARLIN_LOG_LEVEL", "INFO"),
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Run one sync pass")
    sync.add_argument("space", nargs="?", help="Space to sync (default: all)")

    sub.add_parser("status", help="Show network, quota and unsynced counts")

    create = sub.add_parser("create-space", help="Create a space and its repository")
    create.add_argument("name")
    create.add_argument("--description", default=None)
    create.add_argument("--public", action="store_true", help="Create a public repository")

    spaces = sub.add_parser("spaces", help="List spaces")
    spaces.add_argument("--refresh", action="store_true", help="Discover remote spaces first")

    watch = sub.add_parser("watch", help="Sync in the background until interrupted")
    watch.add_argument("space", nargs="?", help="Space in focus (default: all)")

    return parser.parse_args(argv)


def update_config(args) -> None:
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def run_command(app: MarlinApp, args) -> int:
    """Execute a parsed sub-command against a wired app. Returns the exit code."""
    if args.command == "sync":
        app.monitor.probe()
        if args.space:
            results = {args.space: app.engine.trigger_sync(args.space)}
        else:
            results = app.engine.sync_all()
        _print({name: result.to_dict() for name, result in results.items()})
        return 1 if any(r.errors for r in results.values()) else 0

    if args.command == "status":
        app.monitor.probe()
        snapshot = app.status.snapshot()
        snapshot["unsynced"] = {
            space.name: app.store.count_unsynced(space.name)
            for space in app.store.list_spaces()
        }
        snapshot["metrics"] = metrics.get_summary()
        _print(snapshot)
        return 0

    if args.command == "create-space":
        space = app.spaces.create_space(
            args.name, description=args.description, private=not args.public
        )
        _print(space.model_dump(mode="json"))
        return 0

    if args.command == "spaces":
        spaces = app.spaces.refresh_spaces() if args.refresh else app.spaces.list_spaces()
        _print([space.model_dump(mode="json") for space in spaces])
        return 0

    if args.command == "watch":
        stop = threading.Event()
        signal.signal(signal.SIGINT, lambda *_: stop.set())
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        app.monitor.start()
        if args.space:
            app.scheduler.set_active_space(args.space)
        if config.auto_sync:
            app.scheduler.start()
        logger.info("Watching for changes; press Ctrl+C to stop")
        stop.wait()
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv=None) -> int:
    """Run the Marlin Sync CLI."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(level=log_level, console=True)
        logger.debug("Persistent logging enabled: %s", log_dir)
    except OSError as e:
        # Fall back to console logging if the log directory is unwritable
        logging.basicConfig(level=log_level)
        logger.warning("Failed to configure file logging: %s", e)

    try:
        app = build_app()
    except MarlinError as e:
        logger.error("Failed to initialize: %s", e)
        return 1

    try:
        return run_command(app, args)
    except MarlinError as e:
        logger.error("%s", e)
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
