"""
Cron entry point for the SLA scheduler.

    python -m hrflow.jobs.sla_sweep                # timeout sweep
    python -m hrflow.jobs.sla_sweep --warnings     # approaching-deadline warnings only
    python -m hrflow.jobs.sla_sweep --all --now 2026-01-05T09:00:00
"""
import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from hrflow.core.config import SLA_WARNING_HOURS
from hrflow.core.database import SessionLocal
from hrflow.core.logging import configure_logging
from hrflow.services import notifications as notify
from hrflow.services.scheduler import run_sla_warnings, run_sweep

log = logging.getLogger("hrflow.jobs")


def _parse_now(value):
    if not value:
        return None
    dt = datetime.fromisoformat(value[:-1] + "+00:00" if value.endswith("Z") else value)
    return dt.astimezone(timezone.utc).replace(tzinfo=None) if dt.tzinfo else dt


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the workflow SLA sweep")
    parser.add_argument("--warnings", action="store_true", help="send SLA warnings instead of sweeping")
    parser.add_argument("--all", action="store_true", help="sweep, then send warnings")
    parser.add_argument("--hours", type=float, default=SLA_WARNING_HOURS, help="warning horizon in hours")
    parser.add_argument("--now", default=None, help="ISO timestamp (UTC) to use as the clock")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    now = _parse_now(args.now)
    out = {}
    db = SessionLocal()
    try:
        if args.all or not args.warnings:
            out["sweep"] = run_sweep(db, now=now).as_dict()
        if args.all or args.warnings:
            out["warnings"] = run_sla_warnings(db, now=now, hours=args.hours).as_dict()
    finally:
        db.close()
        # a short-lived process must not exit before queued notifications go out
        notify.get_dispatcher().shutdown(wait=True)

    print(json.dumps(out, default=str))
    errors = len(out.get("sweep", {}).get("errors", []))
    if errors:
        log.warning("[sla] sweep finished with %d error(s)", errors)
    return 1 if errors else 0


if __name__ == "__main__":
    sys.exit(main())
