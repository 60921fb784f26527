#!/usr/bin/env python3
"""
Run catalog syncs from the command line.

    python scripts/run_sync.py full
    python scripts/run_sync.py incremental
    python scripts/run_sync.py status
    python scripts/run_sync.py webcomics [--provider mangapill] [--query m] [--full]

Runs in the current process (no Celery) and exits non-zero on failure or
when another run already holds the row.
"""
import argparse
import json
import sys

from dotenv import load_dotenv


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync the local catalog index.")
    parser.add_argument(
        "command",
        choices=("full", "incremental", "status", "webcomics"),
        help="full/incremental canonical sync, webcomic index crawl, or print status."
    )
    parser.add_argument("--provider", default=None, help="Webcomics: crawl only this provider.")
    parser.add_argument("--query", default=None, help="Webcomics: start from this alphabet query.")
    parser.add_argument("--full", action="store_true", help="Webcomics: ignore the resume checkpoint.")
    return parser.parse_args(argv)


def print_progress(progress) -> None:
    if progress.total_to_process > 0:
        pct = 100.0 * progress.total_processed / progress.total_to_process
        print(f"  ... {progress.total_processed}/{progress.total_to_process} ({pct:.1f}%)", flush=True)
    else:
        print(f"  ... {progress.total_processed} processed", flush=True)


def main(argv=None) -> int:
    load_dotenv()
    args = parse_args(argv)

    from sources import get_provider_registry
    from sources.base import set_log_callback
    from sources.errors import ConcurrentSyncConflict
    from mangascope_app.database import init_database
    from mangascope_app.log import log
    from mangascope_app.sync import SyncSupervisor

    set_log_callback(log)
    init_database()
    supervisor = SyncSupervisor(get_provider_registry(), use_celery=False, on_progress=print_progress)

    if args.command == "status":
        print(json.dumps(supervisor.get_status(), indent=2, default=str))
        return 0

    if args.command == "webcomics":
        kind = "aggregator"
        sync_type = "full" if args.full else "incremental"
        options = {"provider": args.provider, "query": args.query}
    else:
        kind = "canonical"
        sync_type = args.command
        options = {}

    print(f"🚀 {kind} {sync_type} sync")
    try:
        report = supervisor.run_inline(kind, sync_type, **options)
    except ConcurrentSyncConflict as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return 2

    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(main())
