import pytest

from conftest import stage
from hrflow.core.exceptions import ApproverLookupFailed, InvalidConfiguration, NoApproversResolved
from hrflow.services.approvers import resolve_one, resolve_stage_approvers
from hrflow.services.directory import SqlEmployeeDirectory


@pytest.fixture
def directory(db):
    return SqlEmployeeDirectory(db)


@pytest.mark.parametrize("token,user_id", [
    ("RM", 600), ("RM_OF_RM", 700), ("HOD", 800), ("FUNCTIONAL_HEAD", 810),
    ("HR_ADMIN", 900), ("SUB_ADMIN", 950), ("SECONDARY_RM", 650), ("SELF", 100),
])
def test_each_token_resolves(directory, org, token, user_id):
    r = resolve_one(directory, org.emp, token)
    assert r.user_id == user_id
    assert r.approver_type == token


def test_custom_user_and_auto(directory, org):
    assert resolve_one(directory, org.emp, "CUSTOM_USER", custom_user_id=610).user_id == 610
    auto = resolve_one(directory, org.emp, "AUTO_APPROVE")
    assert auto.user_id is None and auto.is_auto


def test_lookup_failures(directory, org):
    with pytest.raises(ApproverLookupFailed):
        resolve_one(directory, org.emp2, "SECONDARY_RM")
    with pytest.raises(ApproverLookupFailed):
        resolve_one(directory, org.mgr, "RM_OF_RM")
    with pytest.raises(ApproverLookupFailed):
        resolve_one(directory, org.emp, "CUSTOM_USER")
    with pytest.raises(InvalidConfiguration):
        resolve_one(directory, org.emp, "DELEGATE")


def _stage(make_definition, *approvers, **flags):
    return make_definition(stage(1, *approvers), **flags).stages[0]


def test_duplicates_collapse_to_first_entry(directory, org, make_definition):
    s = _stage(make_definition, "RM", {"approver_type": "CUSTOM_USER", "custom_user_id": 600}, "HR_ADMIN")

    out = resolve_stage_approvers(directory, s, org.emp, {})

    assert [(r.user_id, r.approver_type) for r in out] == [(600, "RM"), (900, "HR_ADMIN")]


def test_failed_lookup_is_dropped(directory, org, make_definition):
    s = _stage(make_definition, "SECONDARY_RM", "RM")

    assert [r.user_id for r in resolve_stage_approvers(directory, s, org.emp2, {})] == [600]


def test_nobody_left_raises(directory, org, make_definition):
    s = _stage(make_definition, "SECONDARY_RM", "HOD")

    # emp2's department 20 has no head either
    with pytest.raises(NoApproversResolved):
        resolve_stage_approvers(directory, s, org.emp2, {})


def test_self_approval_flag(directory, org, make_definition):
    s = _stage(make_definition, {"approver_type": "CUSTOM_USER", "custom_user_id": 100}, "RM")

    blocked = resolve_stage_approvers(directory, s, org.emp, {})
    allowed = resolve_stage_approvers(directory, s, org.emp, {}, allow_self_approval=True)

    assert [r.user_id for r in blocked] == [600]
    assert [r.user_id for r in allowed] == [100, 600]


def test_extra_approver_goes_last(directory, org, make_definition):
    s = _stage(make_definition, "RM")
    extra = resolve_one(directory, org.emp, "HOD", order=2)

    out = resolve_stage_approvers(directory, s, org.emp, {}, extra=extra)

    assert [r.user_id for r in out] == [600, 800]


def test_delegation_flag_carried(directory, org, make_definition):
    s = _stage(make_definition, {"approver_type": "RM", "allow_delegation": True})

    assert resolve_stage_approvers(directory, s, org.emp, {})[0].allow_delegation is True
