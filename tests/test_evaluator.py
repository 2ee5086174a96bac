"""Tests for single-rule evaluation."""

from decimal import Decimal

import pytest

from tollgate.errors import RuleConfigError
from tollgate.evaluator import EvaluationContext, TransactionRequest, evaluate_rule
from tollgate.rules import FallbackAction, Period, Rule, RuleKind, TransactionClass


def make_rule(kind, params, fallback=FallbackAction.DENY, rule_id="r1"):
    return Rule.from_dict(
        {
            "rule_id": rule_id,
            "name": rule_id,
            "kind": kind.value,
            "params": params,
            "fallback_action": fallback.value,
        },
        strict=False,
    )


def make_request(**kwargs):
    defaults = dict(user_id="u1", counterparty="Amazon", amount=Decimal("100"))
    defaults.update(kwargs)
    return TransactionRequest(**defaults)


class TestBudget:
    def test_fails_when_spend_plus_amount_exceeds_cap(self):
        rule = make_rule(RuleKind.BUDGET, {"max_amount": 1000, "period": "daily"})
        ctx = EvaluationContext(spent_micros={Period.DAILY: 950_000_000})
        outcome = evaluate_rule(rule, make_request(), ctx)
        assert outcome.matched
        assert not outcome.passed
        assert outcome.reason == (
            "Purchase would exceed daily budget limit of $1000.00 (current spending: $950.00)"
        )

    def test_passes_at_exactly_the_cap(self):
        rule = make_rule(RuleKind.BUDGET, {"max_amount": 1000, "period": "daily"})
        ctx = EvaluationContext(spent_micros={Period.DAILY: 900_000_000})
        outcome = evaluate_rule(rule, make_request(), ctx)
        assert outcome.passed

    def test_uses_the_rule_period(self):
        rule = make_rule(RuleKind.BUDGET, {"max_amount": 500, "period": "monthly"})
        ctx = EvaluationContext(spent_micros={Period.DAILY: 0, Period.MONTHLY: 450_000_000})
        outcome = evaluate_rule(rule, make_request(), ctx)
        assert not outcome.passed
        assert "monthly budget" in outcome.reason


class TestTransactionSize:
    def test_over_limit(self):
        rule = make_rule(RuleKind.TRANSACTION_SIZE, {"max_transaction_amount": 50})
        outcome = evaluate_rule(rule, make_request(amount=Decimal("50.01")))
        assert not outcome.passed
        assert "Exceeds transaction limit of $50.00" in outcome.reason

    def test_at_limit(self):
        rule = make_rule(RuleKind.TRANSACTION_SIZE, {"max_transaction_amount": 50})
        assert evaluate_rule(rule, make_request(amount=Decimal("50"))).passed


class TestMerchantAndCategory:
    def test_not_in_allowed_list(self):
        rule = make_rule(RuleKind.MERCHANT, {"allow": ["Amazon"]})
        outcome = evaluate_rule(rule, make_request(counterparty="Etsy"))
        assert not outcome.passed
        assert outcome.reason == 'Merchant "Etsy" is not in the allowed list'

    def test_allow_list_is_case_insensitive(self):
        rule = make_rule(RuleKind.MERCHANT, {"allow": ["Amazon"]})
        assert evaluate_rule(rule, make_request(counterparty="amazon")).passed

    def test_block_list_checked_first(self):
        rule = make_rule(RuleKind.MERCHANT, {"allow": ["Shady"], "block": ["shady"]})
        outcome = evaluate_rule(rule, make_request(counterparty="Shady"))
        assert outcome.reason == 'Merchant "Shady" is blocked'

    def test_category_rule_without_category_does_not_match(self):
        rule = make_rule(RuleKind.CATEGORY, {"block": ["gambling"]})
        outcome = evaluate_rule(rule, make_request(category=None))
        assert not outcome.matched

    def test_cap_breach_uses_fallback_action(self):
        rule = make_rule(
            RuleKind.CATEGORY,
            {"allow": ["electronics"], "max_amount": 50},
            fallback=FallbackAction.REQUIRE_APPROVAL,
        )
        outcome = evaluate_rule(rule, make_request(category="electronics"))
        assert not outcome.passed
        assert outcome.requires_approval
        assert not outcome.hard_fail

    def test_cap_breach_with_flag_fallback_passes_flagged(self):
        rule = make_rule(RuleKind.MERCHANT, {"max_amount": 10}, fallback=FallbackAction.FLAG_REVIEW)
        outcome = evaluate_rule(rule, make_request())
        assert outcome.passed
        assert outcome.flagged_for_review


class TestTimeWindow:
    def test_outside_hours(self):
        rule = make_rule(RuleKind.TIME_WINDOW, {"ranges": [{"start": "09:00", "end": "17:00"}]})
        outcome = evaluate_rule(rule, make_request(time_of_day="20:15"))
        assert not outcome.passed
        assert "09:00 and 17:00" in outcome.reason

    def test_inside_hours(self):
        rule = make_rule(RuleKind.TIME_WINDOW, {"ranges": [{"start": "09:00", "end": "17:00"}]})
        assert evaluate_rule(rule, make_request(time_of_day="12:00")).passed

    def test_disallowed_day(self):
        rule = make_rule(RuleKind.TIME_WINDOW, {"days_of_week": [1, 2, 3, 4, 5]})
        outcome = evaluate_rule(rule, make_request(day_of_week=0))
        assert not outcome.passed
        assert "day of the week" in outcome.reason

    def test_no_time_information_does_not_match(self):
        rule = make_rule(RuleKind.TIME_WINDOW, {"ranges": [{"start": "09:00", "end": "17:00"}]})
        assert not evaluate_rule(rule, make_request()).matched

    def test_unpadded_hour_inside_hours(self):
        rule = make_rule(RuleKind.TIME_WINDOW, {"ranges": [{"start": "09:00", "end": "17:00"}]})
        request = make_request(time_of_day="9:30")
        assert request.time_of_day == "09:30"
        assert evaluate_rule(rule, request).passed

    def test_unpadded_hour_outside_hours(self):
        rule = make_rule(RuleKind.TIME_WINDOW, {"ranges": [{"start": "09:00", "end": "17:00"}]})
        assert not evaluate_rule(rule, make_request(time_of_day="8:59")).passed

    def test_overnight_range(self):
        rule = make_rule(RuleKind.TIME_WINDOW, {"ranges": [{"start": "22:00", "end": "06:00"}]})
        assert evaluate_rule(rule, make_request(time_of_day="23:30")).passed
        assert evaluate_rule(rule, make_request(time_of_day="5:45")).passed
        assert not evaluate_rule(rule, make_request(time_of_day="12:00")).passed


class TestAgentIdentity:
    def test_blocked_agent_name_is_case_insensitive(self):
        rule = make_rule(RuleKind.AGENT_IDENTITY, {"blocked_names": ["RogueBot"]})
        outcome = evaluate_rule(rule, make_request(agent_name="roguebot"))
        assert not outcome.passed
        assert outcome.reason == 'Agent "roguebot" is blocked'

    def test_allowed_agent_types(self):
        rule = make_rule(RuleKind.AGENT_IDENTITY, {"allowed_types": ["shopping"]})
        assert evaluate_rule(rule, make_request(agent_type="Shopping")).passed
        outcome = evaluate_rule(rule, make_request(agent_type="trading"))
        assert 'Agent type "trading" is not in the allowed list' == outcome.reason

    def test_blocked_counterparty_agent(self):
        rule = make_rule(RuleKind.AGENT_IDENTITY, {"blocked_counterparty_agents": ["agent-evil"]})
        outcome = evaluate_rule(
            rule,
            make_request(
                transaction_class=TransactionClass.AGENT_TO_AGENT,
                counterparty="agent-evil",
                counterparty_agent="agent-evil",
            ),
        )
        assert not outcome.passed

    def test_no_agent_fields_does_not_match(self):
        rule = make_rule(RuleKind.AGENT_IDENTITY, {"blocked_names": ["RogueBot"]})
        assert not evaluate_rule(rule, make_request()).matched


class TestPurpose:
    def test_blocked_purpose(self):
        rule = make_rule(RuleKind.PURPOSE, {"block": ["Gambling"]})
        outcome = evaluate_rule(rule, make_request(purpose="gambling"))
        assert outcome.reason == 'Purpose "gambling" is blocked'

    def test_missing_purpose_does_not_match(self):
        rule = make_rule(RuleKind.PURPOSE, {"allow": ["research"]})
        assert not evaluate_rule(rule, make_request()).matched


class TestComposite:
    def test_all_clauses_hold(self):
        rule = make_rule(
            RuleKind.COMPOSITE,
            {
                "clauses": [
                    {"field": "amount", "operator": "less_than_or_equal", "value": 100},
                    {"field": "merchant", "operator": "starts_with", "value": "ama"},
                ]
            },
        )
        assert evaluate_rule(rule, make_request()).passed

    def test_failing_clause_is_a_hard_fail(self):
        rule = make_rule(
            RuleKind.COMPOSITE,
            {"clauses": [{"field": "amount", "operator": "greater_than", "value": "250"}]},
        )
        outcome = evaluate_rule(rule, make_request())
        assert outcome.hard_fail
        assert outcome.reason == "Condition failed: amount greater_than 250"

    def test_missing_field_does_not_match(self):
        rule = make_rule(
            RuleKind.COMPOSITE,
            {"clauses": [{"field": "category", "operator": "equals", "value": "books"}]},
        )
        assert not evaluate_rule(rule, make_request(category=None)).matched

    def test_in_list_and_not_contains(self):
        rule = make_rule(
            RuleKind.COMPOSITE,
            {
                "clauses": [
                    {"field": "category", "operator": "in_list", "value": ["Books", "music"]},
                    {"field": "purpose", "operator": "not_contains", "value": "resale"},
                ]
            },
        )
        assert evaluate_rule(rule, make_request(category="books", purpose="gift")).passed
        assert not evaluate_rule(rule, make_request(category="books", purpose="bulk resale")).passed

    def test_numeric_operator_on_text_field_is_config_error(self):
        rule = make_rule(
            RuleKind.COMPOSITE,
            {"clauses": [{"field": "merchant", "operator": "greater_than", "value": 5}]},
        )
        with pytest.raises(RuleConfigError):
            evaluate_rule(rule, make_request())


def test_malformed_params_raise_config_error():
    rule = make_rule(RuleKind.BUDGET, {"period": "daily"})
    with pytest.raises(RuleConfigError, match="max_amount is required"):
        evaluate_rule(rule, make_request())


def test_request_rejects_negative_amount():
    with pytest.raises(ValueError, match="negative"):
        make_request(amount=Decimal("-1"))


@pytest.mark.parametrize("value", ["25:00", "12:60", "9", "noon", "09:30:00"])
def test_request_rejects_invalid_time(value):
    with pytest.raises(ValueError, match="Invalid time"):
        make_request(time_of_day=value)
