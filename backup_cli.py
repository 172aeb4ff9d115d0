"""CLI entry-point for DataVault backup, restore, and retention."""
from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import uvicorn
from fastapi import FastAPI

from backup.api import BackupService, config_from_settings
from backup.tree import format_size
from backup.types import BackupConfig
from core.logging_utils import configure_json_logging
from core.paths import ensure_working_dir_structure, resolve_working_dir
from core.settings import load_settings, validate_settings

__version__ = "1.0.0"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 27183


def _resolve_bind_host(candidate: Optional[str]) -> str:
    host = (candidate or DEFAULT_HOST).strip()
    if not host:
        host = DEFAULT_HOST
    norm = host.lower()
    if norm in {"localhost", "::1"}:
        return "127.0.0.1"
    if norm.startswith("127."):
        return host
    raise ValueError(f"Refusing to bind backup API to non-loopback host '{candidate}'.")


def _bounded_int(minimum: int):
    def parse(value: str) -> int:
        try:
            number = int(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from None
        if number < minimum:
            raise argparse.ArgumentTypeError(f"must be at least {minimum}")
        return number

    return parse


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create, list, restore, and prune DataVault backups.")
    parser.add_argument("--data-dir", dest="data_dir", default=None, help="Directory to protect (default from settings.json)")
    parser.add_argument("--backups-dir", dest="backups_dir", default=None, help="Archive repository (default from settings.json)")
    parser.add_argument("--debug", action="store_true", help="Log detailed diagnostics for failures.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("full", help="Create a full backup.")
    incremental = sub.add_parser("incremental", help="Archive files changed since the last backup.")
    incremental.add_argument(
        "--since",
        default=None,
        help="ISO timestamp to use as the change threshold instead of the newest archive.",
    )
    sub.add_parser("list", help="List archives, newest first.")
    restore = sub.add_parser("restore", help="Restore the data directory from an archive.")
    restore.add_argument("name", help="Archive file name inside the repository.")
    cleanup = sub.add_parser("cleanup", help="Delete archives outside the retention policy.")
    cleanup.add_argument("--max-backups", dest="max_backups", type=_bounded_int(0), default=None)
    cleanup.add_argument("--days-to-keep", dest="days_to_keep", type=_bounded_int(1), default=None)
    stats = sub.add_parser("stats", help="Show size and layout of the data directory.")
    stats.add_argument("--tree", action="store_true", help="Print the directory tree.")
    stats.add_argument("--ext", default=None, help="List files with this extension.")
    serve = sub.add_parser("serve", help="Serve the backup HTTP API on localhost.")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, working_dir: Path, settings: Dict[str, Any]) -> BackupConfig:
    config = config_from_settings(working_dir, settings)
    return BackupConfig(
        data_dir=Path(args.data_dir).expanduser() if args.data_dir else config.data_dir,
        backups_dir=Path(args.backups_dir).expanduser() if args.backups_dir else config.backups_dir,
        max_backups=config.max_backups,
        days_to_keep=config.days_to_keep,
        debug=config.debug or bool(args.debug),
        logs_dir=config.logs_dir,
    )


def create_app(service: BackupService) -> FastAPI:
    app = FastAPI(title="DataVault Backup API", version=__version__)
    app.include_router(service.router())
    return app


def _print_listing(service: BackupService) -> int:
    records = service.list_backups()
    if not records:
        print("No backups found.")
        return 0
    for record in records:
        created = record.created_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        print(f"{record.file_name:<45} {record.kind.value:<12} {format_size(record.size_bytes):>10}  {created}")
    return 0


def _print_stats(service: BackupService, args: argparse.Namespace) -> int:
    report = service.tree_report(extension=args.ext, include_tree=args.tree)
    if not report.exists:
        print(f"Data directory {report.root} does not exist.")
        return 1
    print(f"Data directory: {report.root}")
    print(f"Total size:     {format_size(report.size_bytes)}")
    print(f"Files:          {report.file_count}")
    print(f"Max depth:      {report.max_depth}")
    if args.ext:
        print(f"Files with .{args.ext.lstrip('.')}: {len(report.matches)}")
        for match in report.matches:
            print(f"  {match}")
    if args.tree:
        print(report.tree, end="")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="[%(levelname)s] %(message)s",
    )
    working_dir = resolve_working_dir()
    ensure_working_dir_structure(working_dir)
    settings = load_settings(working_dir)
    for problem in validate_settings(settings):
        logging.warning("%s", problem)
    config = build_config(args, working_dir, settings)
    configure_json_logging(working_dir, debug=config.debug)
    service = BackupService(config)

    if args.command == "list":
        return _print_listing(service)
    if args.command == "stats":
        return _print_stats(service, args)
    if args.command == "serve":
        server_settings = settings.get("server") if isinstance(settings.get("server"), dict) else {}
        try:
            host = _resolve_bind_host(args.host or server_settings.get("host"))
        except ValueError as exc:
            logging.error("%s", exc)
            return 2
        port = int(args.port or server_settings.get("port") or DEFAULT_PORT)
        print(f"Backup API listening on http://{host}:{port}", flush=True)
        server = uvicorn.Server(uvicorn.Config(create_app(service), host=host, port=port, log_level="info"))
        server.run()
        return 0

    if args.command == "full":
        result = service.create_full_backup()
    elif args.command == "incremental":
        since = None
        if args.since:
            try:
                since = datetime.fromisoformat(args.since)
            except ValueError:
                logging.error("Invalid --since timestamp: %s", args.since)
                return 2
        result = service.create_incremental_backup(since=since)
    elif args.command == "restore":
        result = service.restore_backup(args.name)
    else:
        result = service.cleanup_old_backups(args.max_backups, args.days_to_keep)

    print(result.message)
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
