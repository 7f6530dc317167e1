import os
import tempfile
from datetime import datetime
from types import SimpleNamespace

# must be set before hrflow is imported: config is read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["SCHEDULER_ENABLED"] = "0"
os.environ["NOTIFY_ASYNC"] = "0"
os.environ.setdefault("AUDIT_DIR", tempfile.mkdtemp(prefix="hrflow-audit-"))

import pytest
from sqlalchemy.orm import sessionmaker

import hrflow.models  # noqa: F401
from hrflow.core.database import Base, make_engine
from hrflow.crud.definition import create_definition
from hrflow.models.employee import Employee, LeaveBalance
from hrflow.services import notifications as notify
from hrflow.services.engine import WorkflowEngine
from hrflow.utils.catalog import sync_workflow_types

T0 = datetime(2026, 1, 5, 9, 0, 0)


class RecordingGateway(notify.NotificationGateway):
    def __init__(self):
        self.sent = []

    def notify(self, request_id, event_type, recipients=None, payload=None):
        self.sent.append(SimpleNamespace(request_id=request_id, event_type=event_type,
                                         recipients=list(recipients or []), payload=payload or {}))

    def of(self, event_type):
        return [e for e in self.sent if e.event_type == event_type]


@pytest.fixture
def sql_engine():
    eng = make_engine("sqlite://")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=sql_engine)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    sync_workflow_types(s)
    yield s
    s.close()


@pytest.fixture
def gateway():
    g = RecordingGateway()
    previous = notify.set_dispatcher(notify.NotificationDispatcher(g, run_async=False))
    yield g
    notify.set_dispatcher(previous)


@pytest.fixture
def wf(db, gateway):
    return WorkflowEngine(db)


def _emp(db, **kw):
    kw.setdefault("company_id", 1)
    kw.setdefault("first_name", f"user{kw.get('user_id')}")
    e = Employee(**kw)
    db.add(e)
    db.flush()
    return e


def build_org(db):
    """
    company 1, department 10:
        gm (700) <- mgr (600) <- emp (100), emp2 (101, department 20)
        sec (650) is emp's secondary manager; hod (800) heads department 10;
        fh (810) is the functional head; hr (900) and sub (950) are admins;
        peer (610) is a plain colleague used for delegation.
    """
    gm = _emp(db, user_id=700, department_id=10)
    mgr = _emp(db, user_id=600, department_id=10, reporting_manager_id=gm.id)
    sec = _emp(db, user_id=650, department_id=10)
    hod = _emp(db, user_id=800, department_id=10, is_hod=True)
    fh = _emp(db, user_id=810, department_id=10, is_functional_head=True)
    hr = _emp(db, user_id=900, is_hr_admin=True)
    sub = _emp(db, user_id=950, is_sub_admin=True)
    peer = _emp(db, user_id=610, department_id=10)
    emp = _emp(
        db, user_id=100, entity_id=1, department_id=10, sub_department_id=11, designation_id=5,
        level_id=3, grade_id=2, location_id=4, employee_type_id=1, branch_id=1, region_id=1,
        reporting_manager_id=mgr.id, secondary_reporting_manager_id=sec.id,
        first_name="Asha", last_name="Rao", email="asha@example.com",
    )
    emp2 = _emp(db, user_id=101, department_id=20, reporting_manager_id=mgr.id)
    db.add(LeaveBalance(employee_id=emp.id, leave_type_id=1, available_balance=4.0))
    db.commit()
    return SimpleNamespace(gm=gm, mgr=mgr, sec=sec, hod=hod, fh=fh, hr=hr, sub=sub, peer=peer,
                           emp=emp, emp2=emp2)


@pytest.fixture
def org(db):
    return build_org(db)


def stage(order, *approvers, **kw):
    """Stage document for create_definition; approvers are tokens or dicts."""
    doc = {"name": kw.pop("name", f"Stage {order}"), "stage_order": order}
    doc["approvers"] = [a if isinstance(a, dict) else {"approver_type": a} for a in approvers]
    doc.update(kw)
    return doc


def rule(source, name, op, value=None, field_type="string", **kw):
    doc = {"field_source": source, "field_name": name, "operator": op,
           "compare_value": value, "field_type": field_type}
    doc.update(kw)
    return doc


@pytest.fixture
def make_definition(db):
    def _make(*stages, workflow_code="LEAVE", conditions=(), applicability=({"dimension": "company"},),
              company_id=1, name=None, **flags):
        data = {
            "workflow_code": workflow_code,
            "name": name or f"{workflow_code} flow",
            "stages": list(stages),
            "conditions": list(conditions),
            "applicability": list(applicability),
            **flags,
        }
        return create_definition(db, company_id, data)
    return _make
