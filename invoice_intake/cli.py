"""Command-line interface for running and operating the intake worker.

Provides subcommands to run a worker mode, inspect the tenant prefix map
and the queue, create the database tables, and clean truncated uploads
out of the tenant inboxes.
"""

import argparse
import json
import sys
from pathlib import Path

from invoice_intake.db.queue_repository import IngestQueue
from invoice_intake.db.session import build_engine, build_session_factory, init_db
from invoice_intake.exceptions import ConfigInvalid, ConfigMissing
from invoice_intake.main import run
from invoice_intake.storage.object_store import ObjectStore, build_s3_client
from invoice_intake.tenants.resolver import TenantResolver
from invoice_intake.utils.config import WORKER_MODES, AppConfig, load_config
from invoice_intake.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def cleanup_inbox(
    store: ObjectStore,
    resolver: TenantResolver,
    inbox_prefix: str,
    min_bytes: int = 1000,
    dry_run: bool = False,
) -> dict[str, int]:
    """Delete inbox objects too small to be a valid PDF.

    Truncated uploads would otherwise be sent to OCR on every cycle.

    Args:
        store: Object store client.
        resolver: Tenant resolver listing the buckets to check.
        inbox_prefix: Inbox key prefix.
        min_bytes: Objects smaller than this are deleted.
        dry_run: Report without deleting.

    Returns:
        Counters: ``checked``, ``deleted`` and ``errors``.
    """
    stats = {"checked": 0, "deleted": 0, "errors": 0}
    buckets = sorted({tenant.bucket for tenant in resolver.tenants() if tenant.bucket})
    for bucket in buckets:
        try:
            objects = store.list_keys(bucket, inbox_prefix)
        except Exception as exc:
            logger.error("Error checking bucket %s: %s", bucket, exc)
            stats["errors"] += 1
            continue

        print(f"{bucket}: {len(objects)} file(s) in {inbox_prefix}")
        for obj in objects:
            stats["checked"] += 1
            if obj.size >= min_bytes:
                continue
            action = "would delete" if dry_run else "deleting"
            print(f"  {action} {obj.key} ({obj.size} bytes)")
            if dry_run:
                continue
            try:
                store.delete(bucket, obj.key)
                stats["deleted"] += 1
            except Exception as exc:
                logger.error("Delete failed for %s/%s: %s", bucket, obj.key, exc)
                stats["errors"] += 1
    return stats


def _print_tenants(resolver: TenantResolver) -> None:
    tenants = resolver.tenants()
    print(f"{len(tenants)} tenant(s) in {resolver.path}")
    for tenant in tenants:
        prefix = tenant.storage_key_prefix or "(none)"
        print(f"  {tenant.prefix:<16} {tenant.tenant_id:<38} {tenant.bucket:<24} {prefix}")


def _print_status(config: AppConfig) -> None:
    engine = build_engine(config.database)
    try:
        counts = IngestQueue(build_session_factory(engine)).counts_by_status()
    finally:
        engine.dispose()
    print(json.dumps(counts, indent=2, sort_keys=True))


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        prog="invoice-intake",
        description="Scanned invoice intake worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=None, help="YAML config file"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run a worker mode until stopped")
    run_parser.add_argument(
        "-m",
        "--mode",
        choices=list(WORKER_MODES),
        default=None,
        help="Worker mode (default: WORKER_MODE or the config file)",
    )

    subparsers.add_parser("tenants", help="Print the tenant prefix map")
    subparsers.add_parser("init-db", help="Create missing database tables")
    subparsers.add_parser("status", help="Print ingest queue counts by status")

    cleanup_parser = subparsers.add_parser(
        "cleanup-inbox", help="Delete truncated files from tenant inboxes"
    )
    cleanup_parser.add_argument(
        "--min-bytes",
        type=int,
        default=1000,
        help="Delete objects smaller than this (default: 1000)",
    )
    cleanup_parser.add_argument(
        "--dry-run", action="store_true", help="List files without deleting"
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "run":
        sys.exit(run(args.mode, args.config))

    try:
        config = load_config(args.config)
    except ConfigInvalid as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    setup_logging(config.log_level)

    try:
        if args.command == "tenants":
            _print_tenants(TenantResolver(config.prefix_map_path))
        elif args.command == "init-db":
            engine = build_engine(config.database)
            init_db(engine)
            engine.dispose()
            print("Database tables created")
        elif args.command == "status":
            _print_status(config)
        elif args.command == "cleanup-inbox":
            store = ObjectStore(build_s3_client(config.storage), auto_create_bucket=False)
            stats = cleanup_inbox(
                store,
                TenantResolver(config.prefix_map_path),
                config.storage.inbox_prefix,
                args.min_bytes,
                args.dry_run,
            )
            print(
                f"Checked {stats['checked']}, deleted {stats['deleted']}, "
                f"errors {stats['errors']}"
            )
    except (ConfigMissing, ConfigInvalid) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
