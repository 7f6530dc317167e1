# hrflow/utils/catalog.py
from __future__ import annotations
import copy
import logging
from typing import Any, Dict, List, Optional

import yaml
from sqlalchemy.orm import Session

from hrflow.core.config import WORKFLOW_CATALOG_PATH
from hrflow.models.workflow import WorkflowType, WorkflowTypeCode

log = logging.getLogger("hrflow.catalog")

# cache in memory
_CATALOG: Optional[dict] = None


# -------------------------- loading --------------------------

def _load_catalog_from_file() -> dict:
    if WORKFLOW_CATALOG_PATH.exists():
        with open(WORKFLOW_CATALOG_PATH, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                return {}
            return data
    log.warning("[catalog] %s not found; using built-in type list", WORKFLOW_CATALOG_PATH)
    return {}

def get_catalog() -> dict:
    global _CATALOG
    if _CATALOG is None:
        _CATALOG = _load_catalog_from_file()
    return _CATALOG

def reload_catalog() -> dict:
    global _CATALOG
    _CATALOG = _load_catalog_from_file()
    return _CATALOG


# -------------------------- helpers --------------------------

def workflow_type_entries() -> List[Dict[str, Any]]:
    """Catalog entries for known codes; codes missing from the file get a bare entry."""
    listed = {
        str(e.get("code", "")).upper(): e
        for e in (get_catalog().get("workflow_types") or [])
        if isinstance(e, dict)
    }
    out = []
    for i, code in enumerate(WorkflowTypeCode, start=1):
        entry = listed.get(code.value) or {}
        out.append({
            "code": code.value,
            "name": entry.get("name") or code.value.replace("_", " ").title(),
            "description": entry.get("description"),
            "display_order": int(entry.get("display_order", i)),
            "is_active": bool(entry.get("is_active", True)),
        })
    unknown = set(listed) - {c.value for c in WorkflowTypeCode}
    if unknown:
        log.warning("[catalog] ignoring unknown workflow codes: %s", sorted(unknown))
    return out

def default_template(code: str) -> Dict[str, Any]:
    defaults = get_catalog().get("defaults") or {}
    tpl = defaults.get(code) or defaults.get("_fallback") or {
        "stages": [{"name": "Manager Approval", "stage_order": 1, "approvers": [{"approver_type": "RM"}]}],
        "applicability": [{"dimension": "company"}],
    }
    return copy.deepcopy(tpl)

def sync_workflow_types(db: Session) -> Dict[str, int]:
    """Upsert the enumerated workflow types; returns code -> id."""
    existing = {t.code: t for t in db.query(WorkflowType).all()}
    for entry in workflow_type_entries():
        row = existing.get(entry["code"])
        if row is None:
            row = WorkflowType(code=entry["code"])
            db.add(row)
            existing[entry["code"]] = row
        row.name = entry["name"]
        row.description = entry["description"]
        row.display_order = entry["display_order"]
        row.is_active = entry["is_active"]
    db.commit()
    return {code: t.id for code, t in existing.items()}
