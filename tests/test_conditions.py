from datetime import datetime

import pytest

from hrflow.core.exceptions import InvalidConfiguration
from hrflow.models.workflow import Condition, ConditionRule
from hrflow.services.conditions import (
    compile_condition, dynamic_value, evaluate, extract, preview_condition,
)

NOW = datetime(2026, 3, 10, 14, 30)

CTX = {
    "employee": {"id": 9, "department_id": 10, "grade": "G2", "tags": ["remote", "senior"],
                 "joined": "2021-06-01", "manager": {"level": 4}},
    "request": {"duration": 3, "from_date": "2026-03-12", "reason": "Family Event",
                "half_day": "false", "days": 2, "custom_fields": {"project": "apollo"}},
    "leave_balance": {"available_balance": 4.5},
    "custom": None,
}


def _rule(source, name, op, value=None, field_type="string", **kw):
    kw.setdefault("is_active", True)
    return ConditionRule(field_source=source, field_name=name, operator=op,
                         compare_value=value, field_type=field_type, **kw)


def _cond(*rules, action="auto_reject", else_action="continue", logic="AND", priority=1, name="c", **kw):
    return Condition(name=name, action_type=action, else_action_type=else_action,
                     logic_operator=logic, priority=priority, rules=list(rules), is_active=True, **kw)


def _fires(*rules, logic="AND"):
    return evaluate([_cond(*rules, logic=logic)], CTX, NOW).matched


@pytest.mark.parametrize("op,value,expected", [
    ("=", "3", True), ("!=", "3", False), (">", "2.5", True),
    ("<", "3", False), (">=", "3", True), ("<=", "2", False),
])
def test_number_comparisons(op, value, expected):
    assert _fires(_rule("request", "duration", op, value, field_type="number")) is expected


def test_string_and_contains_are_case_aware_where_expected():
    assert _fires(_rule("employee", "grade", "=", "G2"))
    assert not _fires(_rule("employee", "grade", "=", "g2"))
    assert _fires(_rule("request", "reason", "CONTAINS", "family"))
    assert _fires(_rule("request", "reason", "NOT CONTAINS", "medical"))


def test_in_and_not_in():
    assert _fires(_rule("employee", "department_id", "IN", "[10, 20]", field_type="number"))
    assert _fires(_rule("employee", "department_id", "NOT IN", "30,40", field_type="number"))
    assert not _fires(_rule("employee", "grade", "IN", "G3,G4"))


def test_array_field():
    assert _fires(_rule("employee", "tags", "CONTAINS", "Remote", field_type="array"))
    assert _fires(_rule("employee", "tags", "IN", '["senior", "lead"]', field_type="array"))
    assert not _fires(_rule("employee", "tags", "NOT CONTAINS", "senior", field_type="array"))


def test_null_checks_and_missing_fields():
    assert _fires(_rule("request", "to_date", "IS NULL"))
    assert _fires(_rule("request", "reason", "IS NOT NULL"))
    # a missing field never satisfies a comparison, even a negative one
    assert not _fires(_rule("request", "to_date", "!=", "x"))


def test_boolean_and_dotted_path():
    assert _fires(_rule("request", "half_day", "=", "no", field_type="boolean"))
    assert _fires(_rule("employee", "manager.level", ">=", "4", field_type="number"))


def test_custom_source_falls_back_to_request_custom_fields():
    assert extract(CTX, "custom", "project") == "apollo"
    assert _fires(_rule("custom", "project", "=", "apollo"))


def test_dynamic_dates():
    assert dynamic_value("today", NOW) == datetime(2026, 3, 10)
    assert dynamic_value("today+3", NOW) == datetime(2026, 3, 13)
    assert dynamic_value("today - 1", NOW) == datetime(2026, 3, 9)
    assert dynamic_value("current_year", NOW) == 2026
    # from_date is two days out
    assert _fires(_rule("request", "from_date", "<", "today+3", field_type="date", compare_value_type="dynamic"))
    assert not _fires(_rule("request", "from_date", "<", "today+2", field_type="date",
                            compare_value_type="dynamic"))


def test_field_reference():
    assert _fires(_rule("leave_balance", "available_balance", ">=", None, field_type="number",
                        compare_value_type="field_reference",
                        compare_field_source="request", compare_field_name="days"))
    assert not _fires(_rule("leave_balance", "available_balance", ">=", None, field_type="number",
                            compare_value_type="field_reference",
                            compare_field_source="request", compare_field_name="nope"))


def test_and_or_logic():
    yes = _rule("request", "duration", ">", "1", field_type="number")
    no = _rule("employee", "grade", "=", "G9")
    assert not _fires(yes, no)
    assert _fires(yes, no, logic="OR")


def test_condition_without_rules_never_fires():
    assert not evaluate([_cond(else_action="auto_approve")], CTX, NOW).matched


def test_priority_order_and_else_branch():
    late = _cond(_rule("request", "duration", ">", "1", field_type="number"),
                 action="auto_approve", priority=5, name="late")
    early = _cond(_rule("request", "duration", ">", "10", field_type="number"),
                  action="auto_reject", else_action="notify", priority=1, name="early")

    verdict = evaluate([late, early], CTX, NOW)

    assert verdict.action == "notify"
    assert verdict.via_else is True
    assert verdict.condition_name == "early"


def test_no_match_continues():
    verdict = evaluate([_cond(_rule("request", "duration", ">", "10", field_type="number"))], CTX, NOW)
    assert verdict.matched is False
    assert verdict.is_continue


@pytest.mark.parametrize("bad", [
    dict(op="LIKE"),
    dict(field_type="money"),
    dict(source="payroll"),
    dict(op=">", value="abc", field_type="number"),
    dict(op="=", value=None),
    dict(op=">", value="yesterday", field_type="date", compare_value_type="dynamic"),
    dict(op=">", value=None, compare_value_type="field_reference"),
])
def test_compile_rejects_bad_rules(bad):
    args = {"source": "request", "name": "duration", "op": "=", "value": "1", "field_type": "string"}
    args.update(bad)
    rule = _rule(args.pop("source"), args.pop("name"), args.pop("op"), args.pop("value"),
                 field_type=args.pop("field_type"), **args)
    with pytest.raises(InvalidConfiguration):
        compile_condition(_cond(rule))


def test_compile_rejects_bad_actions():
    rule = _rule("request", "duration", "=", "1")
    with pytest.raises(InvalidConfiguration):
        compile_condition(_cond(rule, action="explode"))
    with pytest.raises(InvalidConfiguration):
        compile_condition(_cond(rule, else_action="assign_approver"))
    with pytest.raises(InvalidConfiguration):
        compile_condition(_cond(rule, logic="XOR"))


def test_preview_reports_each_rule():
    cond = _cond(
        _rule("request", "duration", ">", "1", field_type="number"),
        _rule("employee", "grade", "=", "G9"),
        action="auto_approve", logic="OR", name="preview",
    )

    out = preview_condition(cond, CTX, NOW)

    assert out["matched"] is True
    assert out["action"] == "auto_approve"
    assert [r["result"] for r in out["rules"]] == [True, False]
    assert out["rules"][0]["field"] == "request.duration"
