"""
Authorization rules.

A Rule pairs a kind with a typed parameter payload for that kind. Raw
parameter mappings (as stored or as typed by an administrator) are parsed
once by ``parse_rule_params``; a mapping that does not fit its kind becomes
``MalformedParams`` when loaded from storage so that evaluation can degrade
the rule to "did not match" instead of failing the authorization path.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Union

from .errors import RuleConfigError
from .money import to_decimal


_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


class RuleKind(str, Enum):
    BUDGET = "budget"
    TRANSACTION_SIZE = "transaction"
    MERCHANT = "merchant"
    CATEGORY = "category"
    TIME_WINDOW = "time"
    AGENT_IDENTITY = "agent"
    PURPOSE = "purpose"
    COMPOSITE = "composite"


class TransactionClass(str, Enum):
    AGENT_TO_MERCHANT = "agent-to-merchant"
    AGENT_TO_AGENT = "agent-to-agent"


ALL_CLASSES = frozenset(TransactionClass)


class FallbackAction(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    FLAG_REVIEW = "flag_review"
    REQUIRE_APPROVAL = "require_approval"


class Period(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    IN_LIST = "in_list"


@dataclass(frozen=True)
class BudgetParams:
    max_amount: Decimal
    period: Period


@dataclass(frozen=True)
class TransactionSizeParams:
    max_transaction_amount: Decimal


@dataclass(frozen=True)
class ListParams:
    """Allow/block lists for merchant and category rules, with an optional cap."""

    allow: tuple[str, ...] = ()
    block: tuple[str, ...] = ()
    max_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class TimeRange:
    start: str
    end: str

    def contains(self, hhmm: str) -> bool:
        start, end, at = clock_minutes(self.start), clock_minutes(self.end), clock_minutes(hhmm)
        if start <= end:
            return start <= at <= end
        # Range wraps past midnight, e.g. 22:00-06:00.
        return at >= start or at <= end


def clock_minutes(value: str) -> int:
    """Minutes since midnight for an ``H:MM`` or ``HH:MM`` clock time."""
    match = _CLOCK_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    return hours * 60 + minutes


def normalize_clock(value: str) -> str:
    """Zero-pad a clock time, so ``9:30`` becomes ``09:30``."""
    minutes = clock_minutes(value)
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class TimeWindowParams:
    ranges: tuple[TimeRange, ...] = ()
    days_of_week: tuple[int, ...] = ()


@dataclass(frozen=True)
class AgentIdentityParams:
    allowed_names: tuple[str, ...] = ()
    blocked_names: tuple[str, ...] = ()
    allowed_types: tuple[str, ...] = ()
    blocked_types: tuple[str, ...] = ()
    allowed_counterparty_agents: tuple[str, ...] = ()
    blocked_counterparty_agents: tuple[str, ...] = ()


@dataclass(frozen=True)
class PurposeParams:
    allow: tuple[str, ...] = ()
    block: tuple[str, ...] = ()


@dataclass(frozen=True)
class Clause:
    field: str
    operator: Operator
    value: Any


@dataclass(frozen=True)
class CompositeParams:
    clauses: tuple[Clause, ...]


@dataclass(frozen=True)
class MalformedParams:
    """Stored parameters that could not be parsed for the rule's kind."""

    raw: Any
    error: str


RuleParams = Union[
    BudgetParams,
    TransactionSizeParams,
    ListParams,
    TimeWindowParams,
    AgentIdentityParams,
    PurposeParams,
    CompositeParams,
    MalformedParams,
]


@dataclass(frozen=True)
class Rule:
    """One authorization condition. Read-only to the engine."""

    rule_id: str
    name: str
    kind: RuleKind
    params: RuleParams
    priority: int = 0
    enabled: bool = True
    scope: frozenset[TransactionClass] = ALL_CLASSES
    fallback_action: FallbackAction = FallbackAction.DENY

    def applies_to(self, transaction_class: TransactionClass) -> bool:
        return transaction_class in self.scope

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "kind": self.kind.value,
            "params": params_to_dict(self.params),
            "priority": self.priority,
            "enabled": self.enabled,
            "scope": scope_to_list(self.scope),
            "fallback_action": self.fallback_action.value,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], strict: bool = True) -> "Rule":
        """Build a rule from its dict form.

        With ``strict=False`` malformed parameters are kept as
        ``MalformedParams`` rather than raising.
        """
        rule_id = str(d["rule_id"])
        kind = _parse_enum(RuleKind, d["kind"], rule_id, "kind")
        raw_params = d.get("params") or {}
        try:
            params: RuleParams = parse_rule_params(kind, raw_params, rule_id)
        except RuleConfigError as exc:
            if strict:
                raise
            params = MalformedParams(raw=raw_params, error=exc.detail)
        return cls(
            rule_id=rule_id,
            name=str(d.get("name") or rule_id),
            kind=kind,
            params=params,
            priority=int(d.get("priority", 0)),
            enabled=bool(d.get("enabled", True)),
            scope=parse_scope(d.get("scope", "all"), rule_id),
            fallback_action=_parse_enum(
                FallbackAction, d.get("fallback_action", FallbackAction.DENY.value), rule_id, "fallback_action"
            ),
        )


def parse_scope(value: Any, rule_id: str = "?") -> frozenset[TransactionClass]:
    if value is None or value == "all":
        return ALL_CLASSES
    items = [value] if isinstance(value, str) else list(value)
    if "all" in items:
        return ALL_CLASSES
    scope = frozenset(_parse_enum(TransactionClass, item, rule_id, "scope") for item in items)
    if not scope:
        raise RuleConfigError(rule_id, "scope cannot be empty")
    return scope


def scope_to_list(scope: frozenset[TransactionClass]) -> list[str]:
    if scope == ALL_CLASSES:
        return ["all"]
    return sorted(c.value for c in scope)


def parse_rule_params(kind: RuleKind, raw: Mapping[str, Any], rule_id: str = "?") -> RuleParams:
    """Parse a raw parameter mapping into the typed payload for ``kind``."""
    if not isinstance(raw, Mapping):
        raise RuleConfigError(rule_id, "params must be a mapping")

    if kind is RuleKind.BUDGET:
        return BudgetParams(
            max_amount=_amount(raw, "max_amount", rule_id),
            period=_parse_enum(Period, raw.get("period"), rule_id, "period"),
        )
    if kind is RuleKind.TRANSACTION_SIZE:
        return TransactionSizeParams(
            max_transaction_amount=_amount(raw, "max_transaction_amount", rule_id),
        )
    if kind in (RuleKind.MERCHANT, RuleKind.CATEGORY):
        params = ListParams(
            allow=_strings(raw, "allow", rule_id),
            block=_strings(raw, "block", rule_id),
            max_amount=_amount(raw, "max_amount", rule_id) if raw.get("max_amount") is not None else None,
        )
        if not params.allow and not params.block and params.max_amount is None:
            raise RuleConfigError(rule_id, "list rule needs allow, block or max_amount")
        return params
    if kind is RuleKind.TIME_WINDOW:
        ranges = []
        for item in _list(raw, "ranges", rule_id):
            if not isinstance(item, Mapping):
                raise RuleConfigError(rule_id, "time ranges must be {start, end} mappings")
            start, end = str(item.get("start", "")), str(item.get("end", ""))
            if not _TIME_RE.match(start) or not _TIME_RE.match(end):
                raise RuleConfigError(rule_id, f"invalid time range {start!r}-{end!r} (expected HH:MM)")
            ranges.append(TimeRange(start=start, end=end))
        days = []
        for day in _list(raw, "days_of_week", rule_id):
            if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
                raise RuleConfigError(rule_id, f"invalid day of week {day!r} (expected 0-6, Sunday = 0)")
            days.append(day)
        if not ranges and not days:
            raise RuleConfigError(rule_id, "time rule needs ranges or days_of_week")
        return TimeWindowParams(ranges=tuple(ranges), days_of_week=tuple(days))
    if kind is RuleKind.AGENT_IDENTITY:
        params = AgentIdentityParams(
            allowed_names=_strings(raw, "allowed_names", rule_id),
            blocked_names=_strings(raw, "blocked_names", rule_id),
            allowed_types=_strings(raw, "allowed_types", rule_id),
            blocked_types=_strings(raw, "blocked_types", rule_id),
            allowed_counterparty_agents=_strings(raw, "allowed_counterparty_agents", rule_id),
            blocked_counterparty_agents=_strings(raw, "blocked_counterparty_agents", rule_id),
        )
        if params == AgentIdentityParams():
            raise RuleConfigError(rule_id, "agent rule needs at least one allow or block list")
        return params
    if kind is RuleKind.PURPOSE:
        params = PurposeParams(allow=_strings(raw, "allow", rule_id), block=_strings(raw, "block", rule_id))
        if not params.allow and not params.block:
            raise RuleConfigError(rule_id, "purpose rule needs allow or block")
        return params
    if kind is RuleKind.COMPOSITE:
        clauses = []
        for item in _list(raw, "clauses", rule_id):
            if not isinstance(item, Mapping) or "field" not in item or "value" not in item:
                raise RuleConfigError(rule_id, "clauses must be {field, operator, value} mappings")
            operator = _parse_enum(Operator, item.get("operator"), rule_id, "operator")
            value = item["value"]
            if operator is Operator.IN_LIST and not isinstance(value, (list, tuple)):
                raise RuleConfigError(rule_id, "in_list clause needs a list value")
            if isinstance(value, list):
                value = tuple(value)
            clauses.append(Clause(field=str(item["field"]), operator=operator, value=value))
        if not clauses:
            raise RuleConfigError(rule_id, "composite rule needs at least one clause")
        return CompositeParams(clauses=tuple(clauses))

    raise RuleConfigError(rule_id, f"unsupported rule kind {kind}")


def params_to_dict(params: RuleParams) -> Any:
    if isinstance(params, MalformedParams):
        return params.raw
    if isinstance(params, BudgetParams):
        return {"max_amount": str(params.max_amount), "period": params.period.value}
    if isinstance(params, TransactionSizeParams):
        return {"max_transaction_amount": str(params.max_transaction_amount)}
    if isinstance(params, ListParams):
        d: dict[str, Any] = {"allow": list(params.allow), "block": list(params.block)}
        if params.max_amount is not None:
            d["max_amount"] = str(params.max_amount)
        return d
    if isinstance(params, TimeWindowParams):
        return {
            "ranges": [{"start": r.start, "end": r.end} for r in params.ranges],
            "days_of_week": list(params.days_of_week),
        }
    if isinstance(params, AgentIdentityParams):
        return {
            "allowed_names": list(params.allowed_names),
            "blocked_names": list(params.blocked_names),
            "allowed_types": list(params.allowed_types),
            "blocked_types": list(params.blocked_types),
            "allowed_counterparty_agents": list(params.allowed_counterparty_agents),
            "blocked_counterparty_agents": list(params.blocked_counterparty_agents),
        }
    if isinstance(params, PurposeParams):
        return {"allow": list(params.allow), "block": list(params.block)}
    if isinstance(params, CompositeParams):
        return {
            "clauses": [
                {
                    "field": c.field,
                    "operator": c.operator.value,
                    "value": list(c.value) if isinstance(c.value, tuple) else c.value,
                }
                for c in params.clauses
            ]
        }
    raise TypeError(f"Unknown rule params type: {type(params).__name__}")


def _parse_enum(enum_cls, value: Any, rule_id: str, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise RuleConfigError(rule_id, f"invalid {field_name} {value!r} (expected one of: {allowed})") from None


def _amount(raw: Mapping[str, Any], key: str, rule_id: str) -> Decimal:
    value = raw.get(key)
    if value is None or isinstance(value, bool):
        raise RuleConfigError(rule_id, f"{key} is required")
    try:
        amount = to_decimal(value)
    except ValueError:
        raise RuleConfigError(rule_id, f"{key} must be a number, got {value!r}") from None
    if amount < 0:
        raise RuleConfigError(rule_id, f"{key} cannot be negative")
    return amount


def _list(raw: Mapping[str, Any], key: str, rule_id: str) -> list:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise RuleConfigError(rule_id, f"{key} must be a list")
    return list(value)


def _strings(raw: Mapping[str, Any], key: str, rule_id: str) -> tuple[str, ...]:
    values = _list(raw, key, rule_id)
    if not all(isinstance(v, str) and v.strip() for v in values):
        raise RuleConfigError(rule_id, f"{key} must contain non-empty strings")
    return tuple(v.strip() for v in values)
