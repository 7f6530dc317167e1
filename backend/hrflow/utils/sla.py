from __future__ import annotations
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from hrflow.core.database import utcnow

# remaining-hours thresholds for status bands
CRITICAL_HOURS = 4
WARNING_HOURS = 24


def due_date(start: datetime, sla_days: int | None = None, sla_hours: int | None = None) -> Optional[datetime]:
    """Wall-clock deadline for a stage entered at ``start``; None when no SLA is configured."""
    if not sla_days and not sla_hours:
        return None
    return start + timedelta(days=sla_days or 0, hours=sla_hours or 0)


def stage_due_date(stage, start: datetime | None = None) -> Optional[datetime]:
    return due_date(start or utcnow(), stage.sla_days, stage.sla_hours)


def is_breached(due: datetime | None, now: datetime | None = None) -> bool:
    if due is None:
        return False
    return (now or utcnow()) > due


def remaining(due: datetime | None, now: datetime | None = None) -> Optional[Dict[str, Any]]:
    if due is None:
        return None
    secs = int((due - (now or utcnow())).total_seconds())
    if secs <= 0:
        return {"expired": True, "days": 0, "hours": 0, "minutes": 0, "total_hours": 0}
    return {
        "expired": False,
        "days": secs // 86400,
        "hours": (secs % 86400) // 3600,
        "minutes": (secs % 3600) // 60,
        "total_hours": secs // 3600,
    }


def sla_status(due: datetime | None, now: datetime | None = None) -> Dict[str, Any]:
    """Band a deadline into no_sla / breached / critical / warning / normal."""
    rem = remaining(due, now)
    if rem is None:
        return {"status": "no_sla"}
    if rem["expired"]:
        status = "breached"
    elif rem["total_hours"] < CRITICAL_HOURS:
        status = "critical"
    elif rem["total_hours"] < WARNING_HOURS:
        status = "warning"
    else:
        status = "normal"
    return {"status": status, **rem}
