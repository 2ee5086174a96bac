"""Tests for rule parsing and serialization."""

from decimal import Decimal

import pytest

from tollgate.errors import RuleConfigError
from tollgate.rules import (
    ALL_CLASSES,
    BudgetParams,
    CompositeParams,
    FallbackAction,
    ListParams,
    MalformedParams,
    Operator,
    Period,
    Rule,
    RuleKind,
    TimeRange,
    TransactionClass,
    parse_rule_params,
    parse_scope,
)


class TestParseRuleParams:
    def test_budget(self):
        params = parse_rule_params(RuleKind.BUDGET, {"max_amount": 1000, "period": "daily"})
        assert params == BudgetParams(max_amount=Decimal("1000"), period=Period.DAILY)

    def test_budget_rejects_unknown_period(self):
        with pytest.raises(RuleConfigError, match="invalid period"):
            parse_rule_params(RuleKind.BUDGET, {"max_amount": 10, "period": "hourly"}, "r1")

    def test_budget_rejects_negative_amount(self):
        with pytest.raises(RuleConfigError, match="cannot be negative"):
            parse_rule_params(RuleKind.BUDGET, {"max_amount": -1, "period": "daily"})

    def test_merchant_lists(self):
        params = parse_rule_params(RuleKind.MERCHANT, {"allow": ["Amazon", " Etsy "], "max_amount": "50"})
        assert params == ListParams(allow=("Amazon", "Etsy"), block=(), max_amount=Decimal("50"))

    def test_empty_list_rule_is_rejected(self):
        with pytest.raises(RuleConfigError, match="needs allow, block or max_amount"):
            parse_rule_params(RuleKind.CATEGORY, {})

    def test_time_ranges_are_validated(self):
        with pytest.raises(RuleConfigError, match="expected HH:MM"):
            parse_rule_params(RuleKind.TIME_WINDOW, {"ranges": [{"start": "9:00", "end": "17:00"}]})

    def test_days_of_week_must_be_in_range(self):
        with pytest.raises(RuleConfigError, match="Sunday = 0"):
            parse_rule_params(RuleKind.TIME_WINDOW, {"days_of_week": [7]})

    def test_composite_clauses(self):
        params = parse_rule_params(
            RuleKind.COMPOSITE,
            {"clauses": [{"field": "category", "operator": "in_list", "value": ["books", "music"]}]},
        )
        assert isinstance(params, CompositeParams)
        clause = params.clauses[0]
        assert clause.operator is Operator.IN_LIST
        assert clause.value == ("books", "music")

    def test_in_list_requires_list_value(self):
        with pytest.raises(RuleConfigError, match="in_list"):
            parse_rule_params(
                RuleKind.COMPOSITE,
                {"clauses": [{"field": "category", "operator": "in_list", "value": "books"}]},
            )

    def test_params_must_be_mapping(self):
        with pytest.raises(RuleConfigError, match="mapping"):
            parse_rule_params(RuleKind.PURPOSE, ["gifts"])


class TestTimeRange:
    def test_daytime_range(self):
        r = TimeRange("09:00", "17:00")
        assert r.contains("09:00")
        assert r.contains("17:00")
        assert not r.contains("17:01")

    def test_overnight_range(self):
        r = TimeRange("22:00", "06:00")
        assert r.contains("23:30")
        assert r.contains("05:59")
        assert not r.contains("12:00")


class TestRule:
    def test_round_trip_through_dict(self):
        rule = Rule(
            rule_id="r-budget",
            name="Daily cap",
            kind=RuleKind.BUDGET,
            params=BudgetParams(max_amount=Decimal("1000"), period=Period.DAILY),
            priority=10,
            scope=frozenset({TransactionClass.AGENT_TO_AGENT}),
            fallback_action=FallbackAction.REQUIRE_APPROVAL,
        )
        assert Rule.from_dict(rule.to_dict()) == rule

    def test_strict_load_raises_on_bad_params(self):
        with pytest.raises(RuleConfigError):
            Rule.from_dict({"rule_id": "r1", "kind": "budget", "params": {"period": "daily"}})

    def test_lenient_load_keeps_malformed_params(self):
        rule = Rule.from_dict(
            {"rule_id": "r1", "kind": "budget", "params": {"period": "daily"}}, strict=False
        )
        assert isinstance(rule.params, MalformedParams)
        assert "max_amount is required" in rule.params.error

    def test_scope_defaults_to_all(self):
        assert parse_scope("all") == ALL_CLASSES
        assert parse_scope(["agent-to-agent"]) == frozenset({TransactionClass.AGENT_TO_AGENT})

    def test_unknown_scope_rejected(self):
        with pytest.raises(RuleConfigError, match="invalid scope"):
            parse_scope(["agent-to-bank"], "r1")
