#!/usr/bin/env python
"""
Run a school data sync from the command line (manual runs or system cron).
Run with: cd backend; python scripts/sync_schools.py --node-ids N1,N2 [options]
Requires DATABASE_URL and ENCRYPTION_KEY in .env.

Exactly one scope is required: --node-ids, --all, or --mb-config-ids/--nex-config-ids.
"""

import argparse
import asyncio
import os
import sys
import time

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from schoolsync.config import settings
from schoolsync.constants.sync_status import RunStatus
from schoolsync.database import SessionLocal
from schoolsync.exceptions import ScopeError
from schoolsync.logging_config import setup_logging
from schoolsync.services.endpoints import default_academic_year
from schoolsync.services.orchestrator import RunRequest, SyncOrchestrator
from schoolsync.services.run_ledger import RunLedger
from schoolsync.services.scope_resolver import ScopeRequest, ScopeResolver, parse_config_ids


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync ManageBac and Nexquare schools into the central store")
    parser.add_argument("--node-ids", help="Comma-separated node ids whose schools are synced")
    parser.add_argument("--all", action="store_true", help="Sync every active ManageBac and Nexquare config")
    parser.add_argument("--academic-year", default=default_academic_year(), help="Academic year (default: current year)")
    parser.add_argument("--mb-config-ids", help="Comma-separated ManageBac config ids")
    parser.add_argument("--nex-config-ids", help="Comma-separated Nexquare config ids")
    parser.add_argument("--include-descendants", action="store_true", help="Include child nodes of --node-ids")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be synced, do not run")
    return parser.parse_args(argv)


def build_scope(args: argparse.Namespace) -> ScopeRequest:
    node_ids = [n.strip() for n in (args.node_ids or "").split(",") if n.strip()]
    scope = ScopeRequest(
        node_ids=node_ids,
        all=args.all,
        config_ids_mb=parse_config_ids(args.mb_config_ids),
        config_ids_nex=parse_config_ids(args.nex_config_ids),
        include_descendants=args.include_descendants,
    )
    return scope.check_mode()


def check_database() -> bool:
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        print(f"Database connection failed: {e}")
        return False


async def run(args: argparse.Namespace) -> int:
    try:
        scope = build_scope(args)
    except ScopeError as e:
        print(f"{e}. Provide --node-ids, --all, or --mb-config-ids/--nex-config-ids.")
        return 1

    if not check_database():
        return 1
    print("Database OK")

    resolver = ScopeResolver(SessionLocal)
    resolved = resolver.resolve(scope)
    if resolved.total == 0:
        print("No schools in scope. Exiting.")
        return 0
    print(f"\nScope: {len(resolved.mb)} MB + {len(resolved.nex)} NEX = {resolved.total} school(s)")

    if args.dry_run:
        print("\n[DRY RUN] Would sync:")
        for system in resolved.mb:
            print(f"  MB  {system.school_id}  {system.school_name}")
        for system in resolved.nex:
            print(f"  NEX {system.school_id}  {system.school_name}")
        print("\nRun without --dry-run to execute.")
        return 0

    print(f"\nStarting sync (AY: {args.academic_year})...\n")
    orchestrator = SyncOrchestrator(RunLedger(SessionLocal), resolver)
    started = time.monotonic()
    result = await orchestrator.run(RunRequest(scope=scope, academic_year=args.academic_year, triggered_by="cli"))
    elapsed = time.monotonic() - started

    print("\n" + "-" * 50)
    print(f"Run {result.run_id} {result.status} in {elapsed:.1f}s")
    print(f"  Succeeded: {result.schools_succeeded}")
    print(f"  Failed: {result.schools_failed}")
    if result.error_summary:
        print(f"  Error: {result.error_summary}")
    print("-" * 50)
    return 1 if result.status == RunStatus.FAILED.value else 0


def main(argv=None) -> int:
    setup_logging(settings.log_level)
    return asyncio.run(run(parse_args(argv)))


if __name__ == '__main__':
    sys.exit(main())
