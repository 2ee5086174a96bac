"""
Rule evaluation.

``evaluate_rule`` is a pure function of one rule, one transaction request and
the spend totals the engine looked up beforehand. It performs no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional

from .errors import RuleConfigError
from .money import amount_to_micros, format_micros, limit_to_micros, to_decimal
from .rules import (
    AgentIdentityParams,
    BudgetParams,
    Clause,
    CompositeParams,
    FallbackAction,
    ListParams,
    MalformedParams,
    Operator,
    Period,
    PurposeParams,
    Rule,
    RuleKind,
    TimeWindowParams,
    TransactionClass,
    TransactionSizeParams,
    normalize_clock,
)


@dataclass(frozen=True)
class TransactionRequest:
    """The thing being authorized. Ephemeral; built per call."""

    user_id: str
    counterparty: str
    amount: Decimal
    currency: str = "USD"
    category: Optional[str] = None
    transaction_class: TransactionClass = TransactionClass.AGENT_TO_MERCHANT
    agent_name: Optional[str] = None
    agent_type: Optional[str] = None
    counterparty_agent: Optional[str] = None
    purpose: Optional[str] = None
    time_of_day: Optional[str] = None  # HH:MM
    day_of_week: Optional[int] = None  # 0-6, Sunday = 0

    def __post_init__(self):
        amount = to_decimal(self.amount)
        if amount < 0:
            raise ValueError("Amount cannot be negative")
        object.__setattr__(self, "amount", amount)
        object.__setattr__(self, "transaction_class", TransactionClass(self.transaction_class))
        if not self.user_id:
            raise ValueError("user_id is required")
        if not self.counterparty:
            raise ValueError("counterparty is required")
        if self.time_of_day is not None:
            object.__setattr__(self, "time_of_day", normalize_clock(self.time_of_day))
        if self.day_of_week is not None and not 0 <= self.day_of_week <= 6:
            raise ValueError("day_of_week must be 0-6 (Sunday = 0)")

    @property
    def amount_micros(self) -> int:
        return amount_to_micros(self.amount)

    def field_value(self, name: str) -> Any:
        """Resolve a composite-clause field name to this request's value."""
        key = _FIELD_ALIASES.get(name, name)
        if key not in _CLAUSE_FIELDS:
            return None
        value = getattr(self, key)
        if isinstance(value, TransactionClass):
            return value.value
        return value


_CLAUSE_FIELDS = frozenset({
    "amount", "counterparty", "currency", "category", "transaction_class",
    "agent_name", "agent_type", "counterparty_agent", "purpose",
    "time_of_day", "day_of_week",
})

_FIELD_ALIASES = {
    "merchant": "counterparty",
    "price": "amount",
    "recipient_agent": "counterparty_agent",
    "transaction_type": "transaction_class",
}


@dataclass(frozen=True)
class EvaluationContext:
    """Lookups performed by the engine before evaluation."""

    spent_micros: Mapping[Period, int] = field(default_factory=dict)

    def spent(self, period: Period) -> int:
        return self.spent_micros.get(period, 0)


@dataclass(frozen=True)
class RuleOutcome:
    matched: bool
    passed: bool
    reason: Optional[str] = None
    requires_approval: bool = False
    flagged_for_review: bool = False

    @property
    def hard_fail(self) -> bool:
        return self.matched and not self.passed and not self.requires_approval

    @classmethod
    def no_match(cls) -> "RuleOutcome":
        return cls(matched=False, passed=True)

    @classmethod
    def ok(cls) -> "RuleOutcome":
        return cls(matched=True, passed=True)

    @classmethod
    def fail(cls, reason: str) -> "RuleOutcome":
        return cls(matched=True, passed=False, reason=reason)

    @classmethod
    def from_fallback(cls, action: FallbackAction, reason: str) -> "RuleOutcome":
        if action is FallbackAction.APPROVE:
            return cls(matched=True, passed=True, reason=reason)
        if action is FallbackAction.FLAG_REVIEW:
            return cls(matched=True, passed=True, reason=reason, flagged_for_review=True)
        if action is FallbackAction.REQUIRE_APPROVAL:
            return cls(matched=True, passed=False, reason=reason, requires_approval=True)
        return cls(matched=True, passed=False, reason=reason)


def evaluate_rule(
    rule: Rule,
    request: TransactionRequest,
    context: Optional[EvaluationContext] = None,
) -> RuleOutcome:
    """Evaluate one rule against one request.

    Raises RuleConfigError when the rule's parameters are malformed; the
    engine treats that as "did not match".
    """
    ctx = context or EvaluationContext()
    params = rule.params

    if isinstance(params, MalformedParams):
        raise RuleConfigError(rule.rule_id, params.error)
    if rule.kind is RuleKind.BUDGET and isinstance(params, BudgetParams):
        return _check_budget(params, request, ctx)
    if rule.kind is RuleKind.TRANSACTION_SIZE and isinstance(params, TransactionSizeParams):
        return _check_transaction_size(params, request)
    if rule.kind is RuleKind.MERCHANT and isinstance(params, ListParams):
        return _check_list(rule, params, request, "Merchant", request.counterparty)
    if rule.kind is RuleKind.CATEGORY and isinstance(params, ListParams):
        return _check_list(rule, params, request, "Category", request.category)
    if rule.kind is RuleKind.TIME_WINDOW and isinstance(params, TimeWindowParams):
        return _check_time_window(params, request)
    if rule.kind is RuleKind.AGENT_IDENTITY and isinstance(params, AgentIdentityParams):
        return _check_agent_identity(params, request)
    if rule.kind is RuleKind.PURPOSE and isinstance(params, PurposeParams):
        return _check_purpose(params, request)
    if rule.kind is RuleKind.COMPOSITE and isinstance(params, CompositeParams):
        return _check_composite(rule, params, request)

    raise RuleConfigError(
        rule.rule_id, f"params {type(params).__name__} do not fit kind {rule.kind.value}"
    )


def _check_budget(params: BudgetParams, request: TransactionRequest, ctx: EvaluationContext) -> RuleOutcome:
    spent = ctx.spent(params.period)
    limit = limit_to_micros(params.max_amount)
    if spent + request.amount_micros > limit:
        return RuleOutcome.fail(
            f"Purchase would exceed {params.period.value} budget limit of "
            f"{format_micros(limit, request.currency)} "
            f"(current spending: {format_micros(spent, request.currency)})"
        )
    return RuleOutcome.ok()


def _check_transaction_size(params: TransactionSizeParams, request: TransactionRequest) -> RuleOutcome:
    limit = limit_to_micros(params.max_transaction_amount)
    if request.amount_micros > limit:
        return RuleOutcome.fail(
            f"Exceeds transaction limit of {format_micros(limit, request.currency)}"
        )
    return RuleOutcome.ok()


def _check_list(
    rule: Rule,
    params: ListParams,
    request: TransactionRequest,
    label: str,
    value: Optional[str],
) -> RuleOutcome:
    if not value:
        return RuleOutcome.no_match()
    if _contains_ci(params.block, value):
        return RuleOutcome.fail(f'{label} "{value}" is blocked')
    if params.allow and not _contains_ci(params.allow, value):
        return RuleOutcome.fail(f'{label} "{value}" is not in the allowed list')
    if params.max_amount is not None:
        cap = limit_to_micros(params.max_amount)
        if request.amount_micros > cap:
            return RuleOutcome.from_fallback(
                rule.fallback_action,
                f'{label} "{value}" amount {format_micros(request.amount_micros, request.currency)} '
                f"exceeds cap of {format_micros(cap, request.currency)}",
            )
    return RuleOutcome.ok()


def _check_time_window(params: TimeWindowParams, request: TransactionRequest) -> RuleOutcome:
    check_time = bool(params.ranges) and request.time_of_day is not None
    check_day = bool(params.days_of_week) and request.day_of_week is not None
    if not check_time and not check_day:
        return RuleOutcome.no_match()

    if check_day and request.day_of_week not in params.days_of_week:
        return RuleOutcome.fail("Purchases are not allowed on this day of the week")
    if check_time and not any(r.contains(request.time_of_day) for r in params.ranges):
        windows = ", ".join(f"{r.start} and {r.end}" for r in params.ranges)
        return RuleOutcome.fail(f"Purchases are only allowed between {windows}")
    return RuleOutcome.ok()


def _check_agent_identity(params: AgentIdentityParams, request: TransactionRequest) -> RuleOutcome:
    name, agent_type, peer = request.agent_name, request.agent_type, request.counterparty_agent
    if not name and not agent_type and not peer:
        return RuleOutcome.no_match()

    if name and _contains_ci(params.blocked_names, name):
        return RuleOutcome.fail(f'Agent "{name}" is blocked')
    if agent_type and _contains_ci(params.blocked_types, agent_type):
        return RuleOutcome.fail(f'Agent type "{agent_type}" is blocked')
    if peer and peer in params.blocked_counterparty_agents:
        return RuleOutcome.fail(f'Counterparty agent "{peer}" is blocked')

    if params.allowed_names and not (name and _contains_ci(params.allowed_names, name)):
        return RuleOutcome.fail(f'Agent "{name or "unknown"}" is not in the allowed list')
    if params.allowed_types and not (agent_type and _contains_ci(params.allowed_types, agent_type)):
        return RuleOutcome.fail(f'Agent type "{agent_type or "unknown"}" is not in the allowed list')
    if params.allowed_counterparty_agents and peer not in params.allowed_counterparty_agents:
        return RuleOutcome.fail(f'Counterparty agent "{peer or "unknown"}" is not in the allowed list')
    return RuleOutcome.ok()


def _check_purpose(params: PurposeParams, request: TransactionRequest) -> RuleOutcome:
    purpose = request.purpose
    if not purpose:
        return RuleOutcome.no_match()
    if _contains_ci(params.block, purpose):
        return RuleOutcome.fail(f'Purpose "{purpose}" is blocked')
    if params.allow and not _contains_ci(params.allow, purpose):
        return RuleOutcome.fail(f'Purpose "{purpose}" is not in the allowed list')
    return RuleOutcome.ok()


def _check_composite(rule: Rule, params: CompositeParams, request: TransactionRequest) -> RuleOutcome:
    values = [request.field_value(clause.field) for clause in params.clauses]
    if any(v is None for v in values):
        return RuleOutcome.no_match()

    for clause, actual in zip(params.clauses, values):
        if not _clause_holds(rule.rule_id, clause, actual):
            return RuleOutcome.fail(
                f"Condition failed: {clause.field} {clause.operator.value} {_display(clause.value)}"
            )
    return RuleOutcome.ok()


def _clause_holds(rule_id: str, clause: Clause, actual: Any) -> bool:
    op, expected = clause.operator, clause.value

    if op in (
        Operator.GREATER_THAN,
        Operator.LESS_THAN,
        Operator.GREATER_THAN_OR_EQUAL,
        Operator.LESS_THAN_OR_EQUAL,
    ):
        left, right = _number(rule_id, actual), _number(rule_id, expected)
        if op is Operator.GREATER_THAN:
            return left > right
        if op is Operator.LESS_THAN:
            return left < right
        if op is Operator.GREATER_THAN_OR_EQUAL:
            return left >= right
        return left <= right

    if op in (Operator.EQUALS, Operator.NOT_EQUALS):
        equal = _equal(actual, expected)
        return equal if op is Operator.EQUALS else not equal
    if op is Operator.CONTAINS:
        return _text(expected) in _text(actual)
    if op is Operator.NOT_CONTAINS:
        return _text(expected) not in _text(actual)
    if op is Operator.STARTS_WITH:
        return _text(actual).startswith(_text(expected))
    if op is Operator.IN_LIST:
        return any(_equal(actual, item) for item in expected)

    raise RuleConfigError(rule_id, f"unsupported operator {op}")


def _equal(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (Decimal, int)) and not isinstance(actual, bool):
        try:
            return to_decimal(actual) == to_decimal(expected)
        except ValueError:
            return False
    return _text(actual) == _text(expected)


def _number(rule_id: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise RuleConfigError(rule_id, f"expected a number, got {value!r}")
    try:
        return to_decimal(value)
    except ValueError:
        raise RuleConfigError(rule_id, f"expected a number, got {value!r}") from None


def _text(value: Any) -> str:
    return str(value).strip().lower()


def _display(value: Any) -> str:
    if isinstance(value, tuple):
        return "[" + ", ".join(str(v) for v in value) + "]"
    return str(value)


def _contains_ci(values: tuple[str, ...], candidate: str) -> bool:
    needle = candidate.strip().lower()
    return any(v.lower() == needle for v in values)
