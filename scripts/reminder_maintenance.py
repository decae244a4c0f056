#!/usr/bin/env python
"""
Reminder Maintenance
Periodic jobs for the reminder engine: reconciliation, history pruning,
auto-expiry, due notification dispatch and drift detection.

Usage:
    python scripts/reminder_maintenance.py reconcile [--medication-id ID]
    python scripts/reminder_maintenance.py prune [--retention-days N]
    python scripts/reminder_maintenance.py expire [--after-minutes N]
    python scripts/reminder_maintenance.py dispatch
    python scripts/reminder_maintenance.py drift [--repair]
"""

import sys
import os
import argparse
import asyncio
import json
import logging
from typing import Optional

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings
from database import get_db_context, init_db
from services.reconciliation_service import ReconciliationCoordinator, reconciliation_coordinator
from tools.notification_gateway import DatabaseNotificationGateway


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format=settings.LOG_FORMAT
)
logger = logging.getLogger(__name__)


async def run_reconcile(coordinator: ReconciliationCoordinator, medication_id: Optional[int] = None) -> int:
    with get_db_context() as db:
        if medication_id is not None:
            reports = [await coordinator.reconcile_medication(medication_id, db=db)]
        else:
            reports = await coordinator.reconcile_all(db=db)

    for report in reports:
        print(report.summary())
    unavailable = sum(1 for r in reports if r.reminders_unavailable)
    print(f"\nReconciled {len(reports)} medications ({unavailable} with reminders unavailable)")
    return 0


async def run_prune(coordinator: ReconciliationCoordinator, retention_days: Optional[int] = None) -> int:
    removed = await coordinator.prune_history(retention_days)
    print(f"Removed {removed} occurrences")
    return 0


async def run_expire(coordinator: ReconciliationCoordinator, after_minutes: Optional[int] = None) -> int:
    if after_minutes is None and settings.AUTO_EXPIRE_PENDING_AFTER_MINUTES is None:
        print("Auto-expiry is disabled (set AUTO_EXPIRE_PENDING_AFTER_MINUTES or pass --after-minutes)")
        return 0

    expired = await coordinator.expire_overdue(after_minutes)
    print(f"Marked {expired} overdue occurrences as skipped")
    return 0


async def run_dispatch(coordinator: ReconciliationCoordinator) -> int:
    gateway = coordinator.gateway
    if not isinstance(gateway, DatabaseNotificationGateway):
        print(f"Dispatch needs the database notification backend (current: {settings.NOTIFICATION_BACKEND})")
        return 1

    counts = await gateway.dispatch_due()
    print(f"Sent {counts['sent']}, failed {counts['failed']}")
    return 0


async def run_drift(coordinator: ReconciliationCoordinator, repair: bool = False) -> int:
    report = await coordinator.detect_drift(repair=repair)
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.in_sync or repair else 2


async def run_job(coordinator: ReconciliationCoordinator, job) -> int:
    try:
        return await job
    finally:
        await coordinator.aclose()


def main():
    parser = argparse.ArgumentParser(
        description="Reminder engine maintenance jobs"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    reconcile = subparsers.add_parser("reconcile", help="Reconcile one or all medications")
    reconcile.add_argument("--medication-id", type=int, help="Only this medication")

    prune = subparsers.add_parser("prune", help="Delete occurrences older than the retention horizon")
    prune.add_argument(
        "--retention-days",
        type=int,
        help=f"Days of history to keep (default: {settings.HISTORY_RETENTION_DAYS})"
    )

    expire = subparsers.add_parser("expire", help="Mark long-overdue pending doses as skipped")
    expire.add_argument("--after-minutes", type=int, help="Overdue threshold in minutes")

    subparsers.add_parser("dispatch", help="Deliver due notifications (database backend)")

    drift = subparsers.add_parser("drift", help="Compare recorded handles with the scheduler")
    drift.add_argument("--repair", action="store_true", help="Fix the differences found")

    args = parser.parse_args()

    init_db()
    coordinator = reconciliation_coordinator

    if args.command == "reconcile":
        code = asyncio.run(run_job(coordinator, run_reconcile(coordinator, args.medication_id)))
    elif args.command == "prune":
        code = asyncio.run(run_job(coordinator, run_prune(coordinator, args.retention_days)))
    elif args.command == "expire":
        code = asyncio.run(run_job(coordinator, run_expire(coordinator, args.after_minutes)))
    elif args.command == "dispatch":
        code = asyncio.run(run_job(coordinator, run_dispatch(coordinator)))
    else:
        code = asyncio.run(run_job(coordinator, run_drift(coordinator, args.repair)))

    sys.exit(code)


if __name__ == "__main__":
    main()
