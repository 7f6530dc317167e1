import pytest

from conftest import stage
from hrflow.core.exceptions import NoApplicableDefinition, NoDefinitionConfigured
from hrflow.crud.definition import update_definition
from hrflow.services import applicability


def _make(make_definition, name, *rules, **flags):
    return make_definition(stage(1, "RM"), name=name, applicability=rules, **flags)


def test_narrower_dimension_wins(db, org, make_definition):
    company = _make(make_definition, "company", {"dimension": "company"})
    dept = _make(make_definition, "dept", {"dimension": "department", "target_values": [10]})
    sub = _make(make_definition, "sub", {"dimension": "sub_department", "target_values": "11"})

    assert applicability.resolve(db, org.emp, "LEAVE").id == sub.id
    assert applicability.resolve(db, org.peer, "LEAVE").id == dept.id
    assert applicability.resolve(db, org.emp2, "LEAVE").id == company.id


def test_employee_rule_beats_everything(db, org, make_definition):
    _make(make_definition, "dept", {"dimension": "department", "target_values": [10]})
    mine = _make(make_definition, "mine", {"dimension": "employee", "target_values": [org.emp.id]})

    assert applicability.resolve(db, org.emp, "LEAVE").id == mine.id


def test_newest_rule_wins_on_equal_priority(db, org, make_definition):
    _make(make_definition, "older", {"dimension": "company"})
    newer = _make(make_definition, "newer", {"dimension": "company"})

    assert applicability.resolve(db, org.emp, "LEAVE").id == newer.id


def test_explicit_priority_overrides_builtin(db, org, make_definition):
    _make(make_definition, "dept", {"dimension": "department", "target_values": [10]})
    pinned = _make(make_definition, "pinned", {"dimension": "company", "priority": 1})

    assert applicability.resolve(db, org.emp, "LEAVE").id == pinned.id


def test_excluded_employee_vetoes_definition(db, org, make_definition):
    company = _make(make_definition, "company", {"dimension": "company"})
    dept = _make(
        make_definition, "dept",
        {"dimension": "department", "target_values": [10]},
        {"dimension": "employee", "target_values": [org.emp.id], "is_excluded": True},
    )

    assert applicability.resolve(db, org.emp, "LEAVE").id == company.id
    assert applicability.resolve(db, org.peer, "LEAVE").id == dept.id


def test_advanced_dimension_narrows_rule(db, org, make_definition):
    company = _make(make_definition, "company", {"dimension": "company"})
    _make(make_definition, "contractors",
          {"dimension": "department", "target_values": [10],
           "advanced_dimension": "employee_type", "advanced_values": [2]})
    branch = _make(make_definition, "branch one",
                   {"dimension": "department", "target_values": [10],
                    "advanced_dimension": "branch", "advanced_values": [1]})

    assert applicability.resolve(db, org.emp, "LEAVE").id == branch.id
    # peer has no branch, so only the company rule is left
    assert applicability.resolve(db, org.peer, "LEAVE").id == company.id


def test_default_definition_is_the_fallback(db, org, make_definition):
    _make(make_definition, "other dept", {"dimension": "department", "target_values": [30]})
    fallback = _make(make_definition, "fallback", is_default=True)

    assert applicability.resolve(db, org.emp, "LEAVE").id == fallback.id


def test_no_definition_for_type(db, org, make_definition):
    _make(make_definition, "company", {"dimension": "company"})

    with pytest.raises(NoDefinitionConfigured):
        applicability.resolve(db, org.emp, "WFH")


def test_nothing_applicable(db, org, make_definition):
    _make(make_definition, "other dept", {"dimension": "department", "target_values": [30]})
    # not flagged default, so a definition without rules never applies
    _make(make_definition, "unscoped")

    with pytest.raises(NoApplicableDefinition):
        applicability.resolve(db, org.emp, "LEAVE")


def test_inactive_definition_ignored(db, org, make_definition):
    company = _make(make_definition, "company", {"dimension": "company"})
    dept = _make(make_definition, "dept", {"dimension": "department", "target_values": [10]})
    update_definition(db, dept.id, {"is_active": False})

    assert applicability.resolve(db, org.emp, "LEAVE").id == company.id


def test_exclusion_rule_never_nominates_its_definition(db, org, make_definition):
    standard = _make(
        make_definition, "standard",
        {"dimension": "company"},
        {"dimension": "employee", "target_values": [org.emp2.id], "is_excluded": True},
    )
    dept = _make(make_definition, "dept10", {"dimension": "department", "target_values": [10]})

    assert applicability.resolve(db, org.emp, "LEAVE").id == dept.id
    assert applicability.resolve(db, org.peer, "LEAVE").id == dept.id
    with pytest.raises(NoApplicableDefinition):
        applicability.resolve(db, org.emp2, "LEAVE")
    assert org.emp.id in applicability.applicable_employee_ids(db, standard)


def test_exclusion_only_definition_applies_to_nobody(db, org, make_definition):
    d = _make(make_definition, "not dept 20",
              {"dimension": "department", "target_values": [20], "is_excluded": True},
              is_default=True)

    assert applicability.applicable_employee_ids(db, d) == []
    with pytest.raises(NoApplicableDefinition):
        applicability.resolve(db, org.emp, "LEAVE")


def test_parse_ids_tolerates_noise():
    assert applicability.parse_ids(" 3, 4,,x, -1 ") == {3, 4, -1}
    assert applicability.parse_ids(None) == set()
