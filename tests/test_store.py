"""Tests for SQLite persistence: migrations, rules, assignments, decisions, nonces."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal
import sqlite3

import pytest

from tollgate.errors import DecisionNotFoundError, MigrationError, PolicyError, RuleNotFoundError, StoreError
from tollgate.policy import Decision, TransactionRequest
from tollgate.rules import BudgetParams, MalformedParams, Period, Rule, RuleKind, TransactionClass
from tollgate.storage import SCHEMA_VERSION, connect, migrate, schema_version
from tollgate.store import (
    ALL_USERS,
    NonceLedger,
    NonceRecord,
    NonceStatus,
    PolicyStore,
    period_start,
)


def budget_rule(rule_id="daily", max_amount="100", priority=0):
    return Rule(
        rule_id=rule_id,
        name=f"{rule_id} budget",
        kind=RuleKind.BUDGET,
        params=BudgetParams(max_amount=Decimal(max_amount), period=Period.DAILY),
        priority=priority,
    )


class TestMigrations:
    def test_fresh_database_is_migrated(self, tmp_path):
        db = tmp_path / "db" / "tollgate.sqlite3"
        assert migrate(db) == SCHEMA_VERSION

        conn = connect(db)
        try:
            assert schema_version(conn) == SCHEMA_VERSION
            tables = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
        finally:
            conn.close()
        assert {"rules", "rule_assignments", "decisions", "nonces"} <= tables

    def test_migrate_is_idempotent(self, tmp_path):
        db = tmp_path / "tollgate.sqlite3"
        migrate(db)
        assert migrate(db) == SCHEMA_VERSION

    def test_newer_schema_is_refused(self, tmp_path):
        db = tmp_path / "tollgate.sqlite3"
        migrate(db)
        conn = sqlite3.connect(db)
        conn.execute("PRAGMA user_version = 99")
        conn.close()

        with pytest.raises(MigrationError, match="newer than supported"):
            PolicyStore(db)

    def test_database_file_is_private(self, tmp_path):
        db = tmp_path / "tollgate.sqlite3"
        migrate(db)
        assert db.stat().st_mode & 0o777 == 0o600


class TestPeriodStart:
    NOW = datetime(2026, 3, 4, 15, 30, tzinfo=timezone.utc)  # Wednesday

    def test_daily(self):
        assert period_start(Period.DAILY, self.NOW) == datetime(2026, 3, 4, tzinfo=timezone.utc)

    def test_weekly_starts_on_sunday(self):
        assert period_start(Period.WEEKLY, self.NOW) == datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_monthly_and_yearly(self):
        assert period_start(Period.MONTHLY, self.NOW) == datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert period_start(Period.YEARLY, self.NOW) == datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestRules:
    def test_add_get_list(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        store.add_rule(budget_rule("low", priority=1))
        store.add_rule(budget_rule("high", priority=9))

        assert store.get_rule("low") == budget_rule("low", priority=1)
        assert [r.rule_id for r in store.list_rules()] == ["high", "low"]

    def test_duplicate_rule_id(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        store.add_rule(budget_rule())
        with pytest.raises(StoreError, match="already exists"):
            store.add_rule(budget_rule())

    def test_update_and_disable(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        store.add_rule(budget_rule())
        store.update_rule(budget_rule(max_amount="250"))
        assert store.get_rule("daily").params.max_amount == Decimal("250")

        store.set_rule_enabled("daily", False)
        assert store.get_rule("daily").enabled is False
        assert store.list_rules(include_disabled=False) == []

    def test_missing_rule(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        with pytest.raises(RuleNotFoundError, match="Rule not found: nope"):
            store.get_rule("nope")
        with pytest.raises(RuleNotFoundError):
            store.delete_rule("nope")
        with pytest.raises(RuleNotFoundError):
            store.update_rule(budget_rule("nope"))

    def test_malformed_params_survive_storage(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        rule = Rule.from_dict({"rule_id": "bad", "kind": "budget", "params": {"period": "daily"}}, strict=False)
        store.add_rule(rule)

        loaded = store.get_rule("bad")
        assert isinstance(loaded.params, MalformedParams)
        assert loaded.params.raw == {"period": "daily"}

    def test_unknown_kind_rows_are_skipped(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        store.add_rule(budget_rule())
        conn = connect(store.db_path)
        conn.execute(
            "INSERT INTO rules (rule_id, name, kind, enabled, priority, scope, params, fallback_action,"
            " created_at, updated_at) VALUES ('odd', 'odd', 'geofence', 1, 0, '[\"all\"]', '{}', 'deny', 0, 0)"
        )
        conn.close()

        assert [r.rule_id for r in store.list_rules()] == ["daily"]


class TestAssignments:
    def test_assign_and_unassign(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        store.add_rule(budget_rule())
        store.assign_rule("daily", "alice")
        store.assign_rule("daily", "alice")
        store.assign_rule("daily")

        assert store.assignments("daily") == [ALL_USERS, "alice"]
        assert store.unassign_rule("daily", "alice") is True
        assert store.unassign_rule("daily", "alice") is False
        assert store.assignments("daily") == [ALL_USERS]

    def test_assign_unknown_rule(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        with pytest.raises(RuleNotFoundError):
            store.assign_rule("ghost", "alice")

    def test_delete_rule_drops_assignments(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        store.add_rule(budget_rule())
        store.assign_rule("daily", "alice")
        store.delete_rule("daily")

        store.add_rule(budget_rule())
        assert store.assignments("daily") == []

    def test_session_lists_only_assigned_rules(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        store.add_rule(budget_rule("mine"))
        store.add_rule(budget_rule("theirs"))
        store.add_rule(budget_rule("everyone"))
        store.assign_rule("mine", "alice")
        store.assign_rule("theirs", "bob")
        store.assign_rule("everyone")

        with store.session("alice") as session:
            rules = session.list_active_rules(TransactionClass.AGENT_TO_MERCHANT)
        assert sorted(r.rule_id for r in rules) == ["everyone", "mine"]


class TestDecisions:
    def _record(self, store, allowed=True, requires_approval=False, amount="10", user_id="alice"):
        request = TransactionRequest(user_id=user_id, counterparty="Amazon", amount=Decimal(amount))
        decision = Decision(allowed=allowed, requires_approval=requires_approval)
        with store.session(user_id) as session:
            return session.record_decision(request, decision, created_at=1_700_000_000)

    def test_record_and_read_back(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        decision_id = self._record(store, amount="12.5")

        record = store.get_decision(decision_id)
        assert record.amount_micros == 12_500_000
        assert record.allowed is True
        assert record.approval_status is None
        assert record.counts_as_spend
        assert record.to_dict()["transaction_class"] == "agent-to-merchant"

    def test_list_decisions_newest_first(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        first = self._record(store)
        second = self._record(store)
        self._record(store, user_id="bob")

        assert [d.decision_id for d in store.list_decisions("alice")] == [second, first]
        assert len(store.list_decisions()) == 3
        assert len(store.list_decisions(limit=1)) == 1

    def test_missing_decision(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        with pytest.raises(DecisionNotFoundError, match="Decision not found: 7"):
            store.get_decision(7)

    def test_approve_pending(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        decision_id = self._record(store, allowed=False, requires_approval=True)
        assert [d.decision_id for d in store.pending_approvals()] == [decision_id]

        record = store.approve_decision(decision_id)
        assert record.approval_status == "approved"
        assert record.counts_as_spend
        assert store.pending_approvals() == []

    def test_reject_pending_does_not_count(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        decision_id = self._record(store, allowed=False, requires_approval=True)
        record = store.reject_decision(decision_id)
        assert record.approval_status == "rejected"
        assert not record.counts_as_spend

    def test_only_pending_decisions_can_be_resolved(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        decision_id = self._record(store)
        with pytest.raises(PolicyError, match="not pending approval"):
            store.approve_decision(decision_id)

        pending = self._record(store, allowed=False, requires_approval=True)
        store.reject_decision(pending)
        with pytest.raises(PolicyError, match="status: rejected"):
            store.approve_decision(pending)

    def test_spend_sums_allowed_and_approved_only(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        self._record(store, amount="10")
        self._record(store, allowed=False, amount="1000")
        approved = self._record(store, allowed=False, requires_approval=True, amount="5")
        self._record(store, allowed=False, requires_approval=True, amount="7")
        store.approve_decision(approved)

        now = datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        with store.session("alice") as session:
            assert session.sum_approved_spend(Period.DAILY, now) == 15_000_000

    def test_spend_spans_currencies_and_classes(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        requests = [
            TransactionRequest(user_id="alice", counterparty="Amazon", amount=Decimal("10")),
            TransactionRequest(user_id="alice", counterparty="Zalando", amount=Decimal("5"), currency="EUR"),
            TransactionRequest(
                user_id="alice", counterparty="agent-b", amount=Decimal("2"),
                transaction_class=TransactionClass.AGENT_TO_AGENT,
            ),
        ]
        with store.session("alice") as session:
            for request in requests:
                session.record_decision(request, Decision(allowed=True), created_at=1_700_000_000)

        now = datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        with store.session("alice") as session:
            assert session.sum_approved_spend(Period.DAILY, now) == 17_000_000

    def test_failed_session_rolls_back(self, tmp_path):
        store = PolicyStore(tmp_path / "tollgate.sqlite3")
        request = TransactionRequest(user_id="alice", counterparty="Amazon", amount=Decimal("1"))
        with pytest.raises(RuntimeError):
            with store.session("alice") as session:
                session.record_decision(request, Decision(allowed=True))
                raise RuntimeError("boom")

        assert store.list_decisions("alice") == []


def nonce_record(nonce="nonce-0001", tx_reference="0x" + "ab" * 32):
    return NonceRecord(
        nonce=nonce,
        tx_reference=tx_reference,
        counterparty="0x1234567890123456789012345678901234567890",
        amount="1000000",
        asset="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        claimed_at=1_700_000_000,
        expires_at=1_700_000_060,
    )


class TestNonceLedger:
    def test_claim_is_exclusive(self, tmp_path):
        ledger = NonceLedger(tmp_path / "tollgate.sqlite3")
        assert ledger.claim_if_absent(nonce_record()) is True
        assert ledger.claim_if_absent(nonce_record(tx_reference="0x" + "cd" * 32)) is False

        record = ledger.get("nonce-0001")
        assert record.status is NonceStatus.CLAIMED
        assert record.tx_reference == "0x" + "ab" * 32
        assert record.verified is False

    def test_concurrent_claims_have_one_winner(self, tmp_path):
        ledger = NonceLedger(tmp_path / "tollgate.sqlite3")

        def claim(i):
            return ledger.claim_if_absent(nonce_record(tx_reference=f"0x{i:064x}"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(claim, range(16)))

        assert results.count(True) == 1

    def test_verified_is_terminal(self, tmp_path):
        ledger = NonceLedger(tmp_path / "tollgate.sqlite3")
        ledger.claim_if_absent(nonce_record())
        assert ledger.mark_verified("nonce-0001", verified_at=1_700_000_010) is True

        record = ledger.get("nonce-0001")
        assert record.status is NonceStatus.VERIFIED
        assert record.verified is True
        assert record.verified_at == 1_700_000_010

        assert ledger.mark_rejected("nonce-0001", "late") is False
        assert ledger.get("nonce-0001").status is NonceStatus.VERIFIED

    def test_rejected_nonce_stays_burned(self, tmp_path):
        ledger = NonceLedger(tmp_path / "tollgate.sqlite3")
        ledger.claim_if_absent(nonce_record())
        ledger.mark_rejected("nonce-0001", "Asset mismatch")

        record = ledger.get("nonce-0001")
        assert record.status is NonceStatus.REJECTED
        assert record.reason == "Asset mismatch"
        assert ledger.claim_if_absent(nonce_record()) is False

    def test_reclaim_after_chain_unavailable_succeeds_once(self, tmp_path):
        ledger = NonceLedger(tmp_path / "tollgate.sqlite3")
        ledger.claim_if_absent(nonce_record())
        ledger.mark_chain_unavailable("nonce-0001", "RPC timeout")
        assert ledger.get("nonce-0001").status is NonceStatus.CHAIN_UNAVAILABLE

        assert ledger.reclaim_for_reconfirm("nonce-0001", "0x" + "cd" * 32) is False
        assert ledger.reclaim_for_reconfirm("nonce-0001", "0x" + "ab" * 32) is True
        assert ledger.reclaim_for_reconfirm("nonce-0001", "0x" + "ab" * 32) is False
        assert ledger.get("nonce-0001").status is NonceStatus.CLAIMED

    def test_unknown_nonce(self, tmp_path):
        ledger = NonceLedger(tmp_path / "tollgate.sqlite3")
        assert ledger.get("missing-nonce") is None
        assert ledger.mark_verified("missing-nonce") is False

    def test_ledger_and_store_share_a_database(self, tmp_path):
        db = tmp_path / "tollgate.sqlite3"
        store = PolicyStore(db)
        ledger = NonceLedger(db)
        store.add_rule(budget_rule())
        ledger.claim_if_absent(nonce_record())

        assert store.get_rule("daily").rule_id == "daily"
        assert ledger.get("nonce-0001") is not None
