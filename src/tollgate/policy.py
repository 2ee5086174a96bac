"""
Policy decision engine.

Loads a user's active rules for the request's transaction class, evaluates
them in descending priority and aggregates the outcomes into one Decision.
Every decision is persisted, whatever its outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .config import TollgateConfig
from .errors import RuleConfigError
from .evaluator import EvaluationContext, RuleOutcome, TransactionRequest, evaluate_rule
from .money import limit_to_micros, micros_to_decimal
from .rules import BudgetParams, Period, Rule, RuleKind, TransactionClass
from .store import DecisionRecord, PolicySession, PolicyStore

logger = logging.getLogger(__name__)

__all__ = [
    "BudgetStatus",
    "Decision",
    "NO_RULES_REASON",
    "PolicyEngine",
    "RuleResult",
    "TransactionRequest",
    "decide",
]


NO_RULES_REASON = "No applicable rules: no policies configured for this transaction class"


@dataclass(frozen=True)
class RuleResult:
    rule_id: str
    name: str
    passed: bool
    reason: Optional[str] = None
    requires_approval: bool = False
    flagged_for_review: bool = False

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "passed": self.passed,
            "reason": self.reason,
            "requires_approval": self.requires_approval,
            "flagged_for_review": self.flagged_for_review,
        }


@dataclass(frozen=True)
class Decision:
    """The engine's verdict for one transaction request."""

    allowed: bool
    requires_approval: bool = False
    flagged_for_review: bool = False
    reason: Optional[str] = None
    rule_results: tuple[RuleResult, ...] = ()
    decision_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "allowed": self.allowed,
            "requires_approval": self.requires_approval,
            "flagged_for_review": self.flagged_for_review,
            "reason": self.reason,
            "rule_results": [r.to_dict() for r in self.rule_results],
        }


@dataclass(frozen=True)
class BudgetStatus:
    rule_id: str
    name: str
    period: Period
    limit_micros: int
    spent_micros: int

    @property
    def remaining_micros(self) -> int:
        return max(0, self.limit_micros - self.spent_micros)

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "period": self.period.value,
            "limit": str(micros_to_decimal(self.limit_micros)),
            "spent": str(micros_to_decimal(self.spent_micros)),
            "remaining": str(micros_to_decimal(self.remaining_micros)),
        }


def _result(rule: Rule, outcome: RuleOutcome) -> RuleResult:
    return RuleResult(
        rule_id=rule.rule_id,
        name=rule.name,
        passed=outcome.passed,
        reason=outcome.reason,
        requires_approval=outcome.requires_approval,
        flagged_for_review=outcome.flagged_for_review,
    )


def decide(rules: list[Rule], request: TransactionRequest, context: EvaluationContext) -> Decision:
    """Aggregate rule outcomes into a Decision.

    ``rules`` must already be filtered to the request's transaction class and
    ordered by descending priority. A hard failure stops evaluation; approval
    and review requirements accumulate and survive later passing rules.
    """
    if not rules:
        return Decision(allowed=False, reason=NO_RULES_REASON)

    results: list[RuleResult] = []
    reasons: list[str] = []
    requires_approval = False
    flagged = False
    matched_any = False

    for rule in rules:
        try:
            outcome = evaluate_rule(rule, request, context)
        except RuleConfigError as exc:
            logger.warning("%s; treating rule as not matched", exc)
            continue
        if not outcome.matched:
            continue

        matched_any = True
        results.append(_result(rule, outcome))

        if outcome.hard_fail:
            return Decision(
                allowed=False,
                flagged_for_review=flagged,
                reason=outcome.reason,
                rule_results=tuple(results),
            )
        requires_approval = requires_approval or outcome.requires_approval
        flagged = flagged or outcome.flagged_for_review
        if outcome.reason and (outcome.requires_approval or outcome.flagged_for_review):
            reasons.append(outcome.reason)

    if not matched_any:
        top = rules[0]
        outcome = RuleOutcome.from_fallback(
            top.fallback_action,
            f"No rule matched; applied fallback '{top.fallback_action.value}' of rule {top.rule_id}",
        )
        return Decision(
            allowed=outcome.passed,
            requires_approval=outcome.requires_approval,
            flagged_for_review=outcome.flagged_for_review,
            reason=None if outcome.passed and not outcome.flagged_for_review else outcome.reason,
            rule_results=(_result(top, outcome),),
        )

    return Decision(
        allowed=not requires_approval,
        requires_approval=requires_approval,
        flagged_for_review=flagged,
        reason="; ".join(reasons) or None,
        rule_results=tuple(results),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PolicyEngine:
    """Authorizes transaction requests against stored rules."""

    def __init__(
        self,
        store: PolicyStore,
        config: Optional[TollgateConfig] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.config = config or TollgateConfig()
        self.audit = audit
        self._clock = clock

    def evaluate(self, request: TransactionRequest) -> Decision:
        """Evaluate ``request`` and persist the resulting decision.

        Rule lookup, spend lookup and the decision insert share one write
        transaction, so concurrent requests for the same budget cannot both
        observe spend below the cap.
        """
        now = self._clock().astimezone(timezone.utc)
        request = self._with_clock_fields(request, now)

        with self.store.session(request.user_id) as session:
            rules = session.list_active_rules(request.transaction_class)
            context = self._context(session, rules, now)
            decision = decide(rules, request, context)
            decision_id = session.record_decision(request, decision, created_at=int(now.timestamp()))

        decision = replace(decision, decision_id=decision_id)
        logger.info(
            "Decision %d for %s -> %s (%s %s): allowed=%s approval=%s flagged=%s",
            decision_id,
            request.user_id,
            request.counterparty,
            request.amount,
            request.currency,
            decision.allowed,
            decision.requires_approval,
            decision.flagged_for_review,
        )
        self._audit_decision(request, decision)
        return decision

    def budget_summary(
        self,
        user_id: str,
        transaction_class: TransactionClass = TransactionClass.AGENT_TO_MERCHANT,
    ) -> list[BudgetStatus]:
        now = self._clock().astimezone(timezone.utc)
        with self.store.session(user_id) as session:
            rules = session.list_active_rules(transaction_class)
            statuses = []
            for rule in rules:
                if rule.kind is not RuleKind.BUDGET or not isinstance(rule.params, BudgetParams):
                    continue
                statuses.append(
                    BudgetStatus(
                        rule_id=rule.rule_id,
                        name=rule.name,
                        period=rule.params.period,
                        limit_micros=limit_to_micros(rule.params.max_amount),
                        spent_micros=session.sum_approved_spend(rule.params.period, now),
                    )
                )
        return statuses

    def approve(self, decision_id: int) -> DecisionRecord:
        record = self.store.approve_decision(decision_id)
        self._audit_resolution(EventType.DECISION_APPROVED, record)
        return record

    def reject(self, decision_id: int) -> DecisionRecord:
        record = self.store.reject_decision(decision_id)
        self._audit_resolution(EventType.DECISION_REJECTED, record)
        return record

    @staticmethod
    def _with_clock_fields(request: TransactionRequest, now: datetime) -> TransactionRequest:
        changes = {}
        if request.time_of_day is None:
            changes["time_of_day"] = now.strftime("%H:%M")
        if request.day_of_week is None:
            changes["day_of_week"] = (now.weekday() + 1) % 7
        return replace(request, **changes) if changes else request

    @staticmethod
    def _context(session: PolicySession, rules: list[Rule], now: datetime) -> EvaluationContext:
        periods = {
            rule.params.period
            for rule in rules
            if rule.kind is RuleKind.BUDGET and isinstance(rule.params, BudgetParams)
        }
        return EvaluationContext(
            spent_micros={period: session.sum_approved_spend(period, now) for period in periods}
        )

    def _audit_decision(self, request: TransactionRequest, decision: Decision) -> None:
        if self.audit is None:
            return
        if decision.requires_approval:
            event_type = EventType.DECISION_PENDING_APPROVAL
        elif not decision.allowed:
            event_type = EventType.DECISION_DENIED
        elif decision.flagged_for_review:
            event_type = EventType.DECISION_FLAGGED
        else:
            event_type = EventType.DECISION_ALLOWED
        self.audit.log(
            event_type,
            user_id=request.user_id,
            counterparty=request.counterparty,
            amount=str(request.amount),
            success=decision.allowed,
            reason=decision.reason,
            details={
                "decision_id": decision.decision_id,
                "transaction_class": request.transaction_class.value,
                "rule_results": [r.to_dict() for r in decision.rule_results],
            },
        )

    def _audit_resolution(self, event_type: EventType, record: DecisionRecord) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            user_id=record.user_id,
            counterparty=record.counterparty,
            amount=str(micros_to_decimal(record.amount_micros)),
            details={"decision_id": record.decision_id},
        )
