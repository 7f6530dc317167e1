"""
Declarative IF / ELSE rules attached to a workflow definition or one stage.

A condition is a prioritized group of rules joined by AND / OR. Rules are
compiled once when loaded: the compare value is parsed into a typed Python
value and the coercion for the declared field type is bound, so evaluation
is a pure function over an already-typed rule set.

Context shape::

    {
        "employee": {...employee snapshot...},
        "request": {...request payload...},
        "leave_balance": {"available_balance": 4.5, ...} | None,
        "custom": {...} | None,
    }
"""
from __future__ import annotations
import enum
import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session, selectinload

from hrflow.core.database import utcnow
from hrflow.core.exceptions import InvalidConfiguration
from hrflow.models.workflow import Condition, ConditionRule

log = logging.getLogger("hrflow.conditions")


class ConditionAction(str, enum.Enum):
    CONTINUE = "continue"
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    MOVE_TO_STAGE = "move_to_stage"
    SKIP_STAGE = "skip_stage"
    ASSIGN_APPROVER = "assign_approver"
    NOTIFY = "notify"


ACTIONS = {a.value for a in ConditionAction}
ELSE_ACTIONS = ACTIONS - {ConditionAction.ASSIGN_APPROVER.value}
FIELD_SOURCES = {"employee", "request", "leave_balance", "custom"}
FIELD_TYPES = {"string", "number", "boolean", "date", "array"}
OPERATORS = {
    "=", "!=", ">", "<", ">=", "<=",
    "IN", "NOT IN", "CONTAINS", "NOT CONTAINS", "IS NULL", "IS NOT NULL",
}
LIST_OPERATORS = {"IN", "NOT IN"}
NULL_OPERATORS = {"IS NULL", "IS NOT NULL"}

_DYNAMIC_OFFSET = re.compile(r"^today\s*([+-])\s*(\d+)$")
_MISSING = object()


# ---------------------------------------------------------------------------
# coercion
# ---------------------------------------------------------------------------

def _to_number(v: Any) -> float:
    if isinstance(v, bool):
        return float(v)
    if isinstance(v, (int, float)):
        return float(v)
    return float(str(v).strip())


def _to_bool(v: Any) -> bool:
    if isinstance(v, str):
        s = v.strip().lower()
        if s in ("true", "1", "yes", "y"):
            return True
        if s in ("false", "0", "no", "n", ""):
            return False
        raise ValueError(f"not a boolean: {v!r}")
    return bool(v)


def _to_datetime(v: Any) -> datetime:
    if isinstance(v, datetime):
        return v.replace(tzinfo=None) if v.tzinfo else v
    if isinstance(v, date):
        return datetime.combine(v, time())
    s = str(v).strip()
    if s.endswith("Z"):
        s = s[:-1]
    parsed = datetime.fromisoformat(s)
    return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed


def _to_string(v: Any) -> str:
    return v if isinstance(v, str) else str(v)


def _to_array(v: Any) -> Tuple[Any, ...]:
    if isinstance(v, (list, tuple, set)):
        return tuple(v)
    if isinstance(v, str):
        s = v.strip()
        if s.startswith("["):
            return tuple(json.loads(s))
        return tuple(p.strip() for p in s.split(",") if p.strip())
    return (v,)


COERCE: Dict[str, Callable[[Any], Any]] = {
    "string": _to_string,
    "number": _to_number,
    "boolean": _to_bool,
    "date": _to_datetime,
    "array": _to_array,
}


def _element(field_type: str) -> Callable[[Any], Any]:
    """Coercion for one member of an IN list; array fields compare members as strings."""
    return _to_string if field_type == "array" else COERCE[field_type]


# ---------------------------------------------------------------------------
# context access
# ---------------------------------------------------------------------------

def extract(context: Dict[str, Any], source: str, name: str) -> Any:
    """Walk a dotted path under one context source; missing keys yield None."""
    if source == "custom":
        root = context.get("custom")
        if root is None:
            root = (context.get("request") or {}).get("custom_fields")
    else:
        root = context.get(source)
    cur: Any = root
    for part in (name or "").split("."):
        if cur is None:
            return None
        if isinstance(cur, dict):
            cur = cur.get(part)
        else:
            cur = getattr(cur, part, None)
    return cur


def dynamic_value(token: str, now: datetime | None = None) -> Any:
    now = now or utcnow()
    t = (token or "").strip().lower()
    today = datetime.combine(now.date(), time())
    if t == "today":
        return today
    if t == "now":
        return now
    if t == "current_year":
        return now.year
    m = _DYNAMIC_OFFSET.match(t)
    if m:
        days = int(m.group(2))
        return today + timedelta(days=days if m.group(1) == "+" else -days)
    raise ValueError(f"unknown dynamic value: {token!r}")


# ---------------------------------------------------------------------------
# compiled form
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompiledRule:
    id: Optional[int]
    field_source: str
    field_name: str
    field_type: str
    operator: str
    compare_kind: str                      # static | dynamic | field_reference
    static_value: Any = None               # typed; tuple for IN / NOT IN
    dynamic_token: Optional[str] = None
    ref_source: Optional[str] = None
    ref_name: Optional[str] = None

    def compare_value(self, context: Dict[str, Any], now: datetime | None = None) -> Any:
        if self.compare_kind == "dynamic":
            raw = dynamic_value(self.dynamic_token or "", now)
            return COERCE[self.field_type](raw)
        if self.compare_kind == "field_reference":
            raw = extract(context, self.ref_source or "", self.ref_name or "")
            if raw is None:
                return _MISSING
            if self.operator in LIST_OPERATORS:
                return tuple(_element(self.field_type)(x) for x in _to_array(raw))
            return COERCE[self.field_type](raw)
        return self.static_value

    def test(self, context: Dict[str, Any], now: datetime | None = None) -> bool:
        raw = extract(context, self.field_source, self.field_name)
        if self.operator == "IS NULL":
            return raw is None or raw == ""
        if self.operator == "IS NOT NULL":
            return raw is not None and raw != ""
        if raw is None:
            return False
        try:
            left = COERCE[self.field_type](raw)
            right = self.compare_value(context, now)
            if right is _MISSING:
                return False
            return _apply(self.operator, left, right, self.field_type)
        except (TypeError, ValueError) as exc:
            log.debug("[conditions] rule %s on %s.%s evaluated false: %s",
                      self.id, self.field_source, self.field_name, exc)
            return False


@dataclass(frozen=True)
class CompiledCondition:
    id: Optional[int]
    name: str
    priority: int
    logic_operator: str
    action_type: str
    else_action_type: str
    rules: Tuple[CompiledRule, ...] = ()
    action_stage_id: Optional[int] = None
    action_approver_type: Optional[str] = None
    action_custom_user_id: Optional[int] = None
    else_stage_id: Optional[int] = None

    def rules_match(self, context: Dict[str, Any], now: datetime | None = None) -> bool:
        if not self.rules:
            return False
        results = (r.test(context, now) for r in self.rules)
        return all(results) if self.logic_operator == "AND" else any(results)


@dataclass
class Verdict:
    matched: bool
    action: str = ConditionAction.CONTINUE.value
    condition_id: Optional[int] = None
    condition_name: Optional[str] = None
    target_stage_id: Optional[int] = None
    approver_type: Optional[str] = None
    custom_user_id: Optional[int] = None
    via_else: bool = False
    message: str = ""

    @property
    def is_continue(self) -> bool:
        return self.action == ConditionAction.CONTINUE.value

    def as_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "action": self.action,
            "condition_id": self.condition_id,
            "condition_name": self.condition_name,
            "target_stage_id": self.target_stage_id,
            "approver_type": self.approver_type,
            "custom_user_id": self.custom_user_id,
            "via_else": self.via_else,
            "message": self.message,
        }


def _apply(op: str, left: Any, right: Any, field_type: str) -> bool:
    if op in LIST_OPERATORS:
        members = right if isinstance(right, tuple) else _to_array(right)
        if field_type == "array":
            hit = any(_to_string(x) in members for x in left)
        else:
            hit = left in members
        return hit if op == "IN" else not hit
    if op in ("CONTAINS", "NOT CONTAINS"):
        if field_type == "array":
            hit = any(str(x).lower() == str(right).lower() for x in left)
        else:
            hit = str(right).lower() in str(left).lower()
        return hit if op == "CONTAINS" else not hit
    if op == "=":
        return left == right
    if op == "!=":
        return left != right
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    if op == "<=":
        return left <= right
    return False


def _parse_static(rule_id, field_type: str, operator: str, raw: Optional[str]) -> Any:
    if operator in NULL_OPERATORS:
        return None
    if raw is None:
        raise InvalidConfiguration(f"Rule {rule_id}: compare_value is required for '{operator}'")
    coerce = COERCE[field_type]
    try:
        if operator in LIST_OPERATORS:
            return tuple(_element(field_type)(x) for x in _to_array(raw))
        if field_type == "array":
            # CONTAINS against an array field compares one element
            return raw
        return coerce(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidConfiguration(
            f"Rule {rule_id}: cannot read {raw!r} as {field_type}: {exc}"
        ) from exc


def compile_rule(rule: ConditionRule) -> CompiledRule:
    op = (rule.operator or "").strip().upper()
    ftype = (rule.field_type or "string").strip().lower()
    source = (rule.field_source or "").strip().lower()
    kind = (rule.compare_value_type or "static").strip().lower()

    if op not in OPERATORS:
        raise InvalidConfiguration(f"Rule {rule.id}: unknown operator '{rule.operator}'")
    if ftype not in FIELD_TYPES:
        raise InvalidConfiguration(f"Rule {rule.id}: unknown field type '{rule.field_type}'")
    if source not in FIELD_SOURCES:
        raise InvalidConfiguration(f"Rule {rule.id}: unknown field source '{rule.field_source}'")

    if kind == "dynamic":
        try:
            dynamic_value(rule.compare_value or "")
        except ValueError as exc:
            raise InvalidConfiguration(f"Rule {rule.id}: {exc}") from exc
        return CompiledRule(rule.id, source, rule.field_name, ftype, op, kind,
                            dynamic_token=rule.compare_value)
    if kind == "field_reference":
        if not rule.compare_field_source or not rule.compare_field_name:
            raise InvalidConfiguration(f"Rule {rule.id}: field_reference needs compare_field_source/name")
        return CompiledRule(rule.id, source, rule.field_name, ftype, op, kind,
                            ref_source=rule.compare_field_source.strip().lower(),
                            ref_name=rule.compare_field_name)
    if kind != "static":
        raise InvalidConfiguration(f"Rule {rule.id}: unknown compare value type '{rule.compare_value_type}'")
    return CompiledRule(rule.id, source, rule.field_name, ftype, op, kind,
                        static_value=_parse_static(rule.id, ftype, op, rule.compare_value))


def compile_condition(condition: Condition) -> CompiledCondition:
    action = condition.action_type
    else_action = condition.else_action_type or ConditionAction.CONTINUE.value
    if action not in ACTIONS:
        raise InvalidConfiguration(f"Condition {condition.id}: unknown action '{action}'")
    if else_action not in ELSE_ACTIONS:
        raise InvalidConfiguration(f"Condition {condition.id}: unknown else action '{else_action}'")
    logic = (condition.logic_operator or "AND").strip().upper()
    if logic not in ("AND", "OR"):
        raise InvalidConfiguration(f"Condition {condition.id}: logic must be AND or OR")

    rules = tuple(compile_rule(r) for r in condition.rules if r.is_active)
    return CompiledCondition(
        id=condition.id,
        name=condition.name or "",
        priority=condition.priority if condition.priority is not None else 0,
        logic_operator=logic,
        action_type=action,
        else_action_type=else_action,
        rules=rules,
        action_stage_id=condition.action_stage_id,
        action_approver_type=condition.action_approver_type,
        action_custom_user_id=condition.action_custom_user_id,
        else_stage_id=condition.else_stage_id,
    )


def evaluate_condition(cond: CompiledCondition, context: Dict[str, Any], now: datetime | None = None) -> Verdict:
    if cond.rules_match(context, now):
        return Verdict(
            matched=True,
            action=cond.action_type,
            condition_id=cond.id,
            condition_name=cond.name,
            target_stage_id=cond.action_stage_id,
            approver_type=cond.action_approver_type,
            custom_user_id=cond.action_custom_user_id,
            message=f"Condition matched: {cond.name}",
        )
    if cond.rules and cond.else_action_type != ConditionAction.CONTINUE.value:
        return Verdict(
            matched=True,
            action=cond.else_action_type,
            condition_id=cond.id,
            condition_name=cond.name,
            target_stage_id=cond.else_stage_id,
            via_else=True,
            message=f"Condition not matched, else action: {cond.else_action_type}",
        )
    return Verdict(matched=False, condition_id=cond.id, condition_name=cond.name)


def _ordered(conditions: Iterable[CompiledCondition]) -> List[CompiledCondition]:
    return sorted(conditions, key=lambda c: (c.priority, c.id or 0))


def evaluate(conditions: Sequence[CompiledCondition | Condition], context: Dict[str, Any],
             now: datetime | None = None) -> Verdict:
    """First condition (by priority) whose verdict fires wins; otherwise continue."""
    compiled = [c if isinstance(c, CompiledCondition) else compile_condition(c) for c in conditions]
    for cond in _ordered(compiled):
        verdict = evaluate_condition(cond, context, now)
        if verdict.matched:
            log.debug("[conditions] %s -> %s", cond.name or cond.id, verdict.action)
            return verdict
    return Verdict(matched=False, message="No conditions matched")


def load_conditions(db: Session, definition_id: int, stage_id: Optional[int] = None) -> List[CompiledCondition]:
    """Active conditions for a definition; ``stage_id=None`` selects the global ones."""
    q = (
        db.query(Condition)
        .options(selectinload(Condition.rules))
        .filter(
            Condition.definition_id == definition_id,
            Condition.is_active.is_(True),
            Condition.is_guard.is_(False),
        )
    )
    q = q.filter(Condition.stage_id.is_(None)) if stage_id is None else q.filter(Condition.stage_id == stage_id)
    return [compile_condition(c) for c in q.order_by(Condition.priority, Condition.id).all()]


def preview_condition(condition: Condition, sample_context: Dict[str, Any], now: datetime | None = None) -> Dict[str, Any]:
    """Preview what a condition would do against a hand-written context."""
    compiled = compile_condition(condition)
    verdict = evaluate_condition(compiled, sample_context, now)
    out = verdict.as_dict()
    out["rules"] = [
        {"id": r.id, "field": f"{r.field_source}.{r.field_name}", "operator": r.operator,
         "result": r.test(sample_context, now)}
        for r in compiled.rules
    ]
    return out
