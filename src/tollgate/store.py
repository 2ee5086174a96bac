"""
SQLite persistence for rules, user assignments, the decision log and the
nonce ledger.

Every write runs inside ``BEGIN IMMEDIATE`` so concurrent writers against the
same database file are serialized. ``PolicyStore.session`` holds one such
transaction across rule lookup, spend lookup and decision recording, which
makes the spend check and the record of the resulting decision atomic.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

from .errors import DecisionNotFoundError, PolicyError, RuleConfigError, RuleNotFoundError, StoreError
from .rules import Period, Rule, RuleKind, TransactionClass, params_to_dict, scope_to_list
from .storage import connect, migrate

if TYPE_CHECKING:
    from .evaluator import TransactionRequest
    from .policy import Decision

logger = logging.getLogger(__name__)


ALL_USERS = "*"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def period_start(period: Period, now: datetime) -> datetime:
    """Start of the UTC period containing ``now``. Weeks start on Sunday."""
    now = now.astimezone(timezone.utc)
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is Period.DAILY:
        return day
    if period is Period.WEEKLY:
        return day - timedelta(days=(day.weekday() + 1) % 7)
    if period is Period.MONTHLY:
        return day.replace(day=1)
    return day.replace(month=1, day=1)


@dataclass
class DecisionRecord:
    """A persisted decision, as read back from the log."""

    decision_id: int
    user_id: str
    counterparty: str
    amount_micros: int
    currency: str
    transaction_class: str
    allowed: bool
    requires_approval: bool
    flagged_for_review: bool
    reason: Optional[str]
    rule_results: list[dict]
    created_at: int
    category: Optional[str] = None
    agent_name: Optional[str] = None
    agent_type: Optional[str] = None
    counterparty_agent: Optional[str] = None
    purpose: Optional[str] = None
    time_of_day: Optional[str] = None
    day_of_week: Optional[int] = None
    approval_status: Optional[str] = None

    @property
    def counts_as_spend(self) -> bool:
        return self.allowed or self.approval_status == ApprovalStatus.APPROVED.value

    def to_dict(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "user_id": self.user_id,
            "counterparty": self.counterparty,
            "amount_micros": self.amount_micros,
            "currency": self.currency,
            "category": self.category,
            "transaction_class": self.transaction_class,
            "agent_name": self.agent_name,
            "agent_type": self.agent_type,
            "counterparty_agent": self.counterparty_agent,
            "purpose": self.purpose,
            "time_of_day": self.time_of_day,
            "day_of_week": self.day_of_week,
            "allowed": self.allowed,
            "requires_approval": self.requires_approval,
            "flagged_for_review": self.flagged_for_review,
            "reason": self.reason,
            "rule_results": self.rule_results,
            "approval_status": self.approval_status,
            "created_at": self.created_at,
        }


def _row_to_rule(row: sqlite3.Row) -> Optional[Rule]:
    try:
        kind = RuleKind(row["kind"])
    except ValueError:
        logger.warning("Skipping rule %s with unknown kind %r", row["rule_id"], row["kind"])
        return None
    try:
        params = json.loads(row["params"])
    except json.JSONDecodeError:
        params = row["params"]
    try:
        return Rule.from_dict(
            {
                "rule_id": row["rule_id"],
                "name": row["name"],
                "kind": kind.value,
                "params": params,
                "priority": row["priority"],
                "enabled": bool(row["enabled"]),
                "scope": json.loads(row["scope"]),
                "fallback_action": row["fallback_action"],
            },
            strict=False,
        )
    except (RuleConfigError, ValueError, TypeError) as exc:
        # json.JSONDecodeError is a ValueError.
        logger.warning("Skipping rule %s with malformed settings: %s", row["rule_id"], exc)
        return None


def _row_to_decision(row: sqlite3.Row) -> DecisionRecord:
    return DecisionRecord(
        decision_id=row["decision_id"],
        user_id=row["user_id"],
        counterparty=row["counterparty"],
        amount_micros=row["amount_micros"],
        currency=row["currency"],
        category=row["category"],
        transaction_class=row["transaction_class"],
        agent_name=row["agent_name"],
        agent_type=row["agent_type"],
        counterparty_agent=row["counterparty_agent"],
        purpose=row["purpose"],
        time_of_day=row["time_of_day"],
        day_of_week=row["day_of_week"],
        allowed=bool(row["allowed"]),
        requires_approval=bool(row["requires_approval"]),
        flagged_for_review=bool(row["flagged_for_review"]),
        reason=row["reason"],
        rule_results=json.loads(row["rule_results"]),
        approval_status=row["approval_status"],
        created_at=row["created_at"],
    )


@contextmanager
def _immediate(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


class PolicySession:
    """Reads and writes for one evaluation, inside one write transaction."""

    def __init__(self, conn: sqlite3.Connection, user_id: str):
        self._conn = conn
        self.user_id = user_id

    def list_active_rules(self, transaction_class: TransactionClass) -> list[Rule]:
        """Enabled rules assigned to this user, highest priority first."""
        rows = self._conn.execute(
            """
            SELECT DISTINCT r.* FROM rules r
            JOIN rule_assignments a ON a.rule_id = r.rule_id
            WHERE r.enabled = 1 AND a.active = 1 AND a.user_id IN (?, ?)
            ORDER BY r.priority DESC, r.created_at ASC, r.rule_id ASC
            """,
            (self.user_id, ALL_USERS),
        ).fetchall()
        rules = []
        for row in rows:
            rule = _row_to_rule(row)
            if rule is not None and rule.applies_to(transaction_class):
                rules.append(rule)
        return rules

    def sum_approved_spend(self, period: Period, now: datetime) -> int:
        """Approved spend in micro-units since the start of ``period``.

        Budgets are denominated in one unit, so the total covers every
        currency and transaction class this user has spent in. Amounts are
        not converted between currencies.
        """
        since = int(period_start(period, now).timestamp())
        row = self._conn.execute(
            """
            SELECT COALESCE(SUM(amount_micros), 0) AS spent FROM decisions
            WHERE user_id = ? AND created_at >= ?
              AND (allowed = 1 OR approval_status = ?)
            """,
            (self.user_id, since, ApprovalStatus.APPROVED.value),
        ).fetchone()
        return int(row["spent"])

    def record_decision(
        self,
        request: "TransactionRequest",
        decision: "Decision",
        created_at: Optional[int] = None,
    ) -> int:
        approval_status = ApprovalStatus.PENDING.value if decision.requires_approval else None
        cursor = self._conn.execute(
            """
            INSERT INTO decisions (
                user_id, counterparty, amount_micros, currency, category,
                transaction_class, agent_name, agent_type, counterparty_agent,
                purpose, time_of_day, day_of_week, allowed, requires_approval,
                flagged_for_review, reason, rule_results, approval_status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.user_id,
                request.counterparty,
                request.amount_micros,
                request.currency,
                request.category,
                request.transaction_class.value,
                request.agent_name,
                request.agent_type,
                request.counterparty_agent,
                request.purpose,
                request.time_of_day,
                request.day_of_week,
                int(decision.allowed),
                int(decision.requires_approval),
                int(decision.flagged_for_review),
                decision.reason,
                json.dumps([r.to_dict() for r in decision.rule_results]),
                approval_status,
                int(time.time()) if created_at is None else created_at,
            ),
        )
        return int(cursor.lastrowid)


class PolicyStore:
    """Rules, user assignments and the decision log."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        migrate(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    @contextmanager
    def session(self, user_id: str) -> Iterator[PolicySession]:
        conn = self._connect()
        try:
            with _immediate(conn):
                yield PolicySession(conn, user_id)
        finally:
            conn.close()

    # Rules

    def add_rule(self, rule: Rule) -> Rule:
        now = int(time.time())
        conn = self._connect()
        try:
            with _immediate(conn):
                conn.execute(
                    """
                    INSERT INTO rules (
                        rule_id, name, kind, enabled, priority, scope, params,
                        fallback_action, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rule.rule_id,
                        rule.name,
                        rule.kind.value,
                        int(rule.enabled),
                        rule.priority,
                        json.dumps(scope_to_list(rule.scope)),
                        json.dumps(params_to_dict(rule.params)),
                        rule.fallback_action.value,
                        now,
                        now,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise StoreError(f"Rule {rule.rule_id} already exists") from exc
        finally:
            conn.close()
        logger.info("Added rule %s (%s, priority %d)", rule.rule_id, rule.kind.value, rule.priority)
        return rule

    def update_rule(self, rule: Rule) -> Rule:
        conn = self._connect()
        try:
            with _immediate(conn):
                cursor = conn.execute(
                    """
                    UPDATE rules SET name = ?, kind = ?, enabled = ?, priority = ?,
                        scope = ?, params = ?, fallback_action = ?, updated_at = ?
                    WHERE rule_id = ?
                    """,
                    (
                        rule.name,
                        rule.kind.value,
                        int(rule.enabled),
                        rule.priority,
                        json.dumps(scope_to_list(rule.scope)),
                        json.dumps(params_to_dict(rule.params)),
                        rule.fallback_action.value,
                        int(time.time()),
                        rule.rule_id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise RuleNotFoundError(f"Rule not found: {rule.rule_id}")
        finally:
            conn.close()
        return rule

    def get_rule(self, rule_id: str) -> Rule:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM rules WHERE rule_id = ?", (rule_id,)).fetchone()
        finally:
            conn.close()
        rule = _row_to_rule(row) if row is not None else None
        if rule is None:
            raise RuleNotFoundError(f"Rule not found: {rule_id}")
        return rule

    def list_rules(self, include_disabled: bool = True) -> list[Rule]:
        query = "SELECT * FROM rules"
        if not include_disabled:
            query += " WHERE enabled = 1"
        query += " ORDER BY priority DESC, created_at ASC, rule_id ASC"
        conn = self._connect()
        try:
            rows = conn.execute(query).fetchall()
        finally:
            conn.close()
        return [rule for rule in map(_row_to_rule, rows) if rule is not None]

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> None:
        conn = self._connect()
        try:
            with _immediate(conn):
                cursor = conn.execute(
                    "UPDATE rules SET enabled = ?, updated_at = ? WHERE rule_id = ?",
                    (int(enabled), int(time.time()), rule_id),
                )
                if cursor.rowcount == 0:
                    raise RuleNotFoundError(f"Rule not found: {rule_id}")
        finally:
            conn.close()

    def delete_rule(self, rule_id: str) -> None:
        conn = self._connect()
        try:
            with _immediate(conn):
                cursor = conn.execute("DELETE FROM rules WHERE rule_id = ?", (rule_id,))
                if cursor.rowcount == 0:
                    raise RuleNotFoundError(f"Rule not found: {rule_id}")
        finally:
            conn.close()
        logger.info("Deleted rule %s", rule_id)

    # Assignments

    def assign_rule(self, rule_id: str, user_id: str = ALL_USERS) -> None:
        """Make ``rule_id`` active for ``user_id`` (``*`` for every user)."""
        conn = self._connect()
        try:
            with _immediate(conn):
                if conn.execute("SELECT 1 FROM rules WHERE rule_id = ?", (rule_id,)).fetchone() is None:
                    raise RuleNotFoundError(f"Rule not found: {rule_id}")
                conn.execute(
                    """
                    INSERT INTO rule_assignments (user_id, rule_id, active, created_at)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT (user_id, rule_id) DO UPDATE SET active = 1
                    """,
                    (user_id, rule_id, int(time.time())),
                )
        finally:
            conn.close()

    def unassign_rule(self, rule_id: str, user_id: str = ALL_USERS) -> bool:
        conn = self._connect()
        try:
            with _immediate(conn):
                cursor = conn.execute(
                    "UPDATE rule_assignments SET active = 0 WHERE user_id = ? AND rule_id = ? AND active = 1",
                    (user_id, rule_id),
                )
        finally:
            conn.close()
        return cursor.rowcount > 0

    def assignments(self, rule_id: str) -> list[str]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT user_id FROM rule_assignments WHERE rule_id = ? AND active = 1 ORDER BY user_id",
                (rule_id,),
            ).fetchall()
        finally:
            conn.close()
        return [row["user_id"] for row in rows]

    # Decisions

    def get_decision(self, decision_id: int) -> DecisionRecord:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM decisions WHERE decision_id = ?", (decision_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise DecisionNotFoundError(f"Decision not found: {decision_id}")
        return _row_to_decision(row)

    def list_decisions(self, user_id: Optional[str] = None, limit: int = 50) -> list[DecisionRecord]:
        conn = self._connect()
        try:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM decisions ORDER BY decision_id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM decisions WHERE user_id = ? ORDER BY decision_id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
        finally:
            conn.close()
        return [_row_to_decision(row) for row in rows]

    def pending_approvals(self, user_id: Optional[str] = None) -> list[DecisionRecord]:
        query = "SELECT * FROM decisions WHERE approval_status = ?"
        args: list = [ApprovalStatus.PENDING.value]
        if user_id is not None:
            query += " AND user_id = ?"
            args.append(user_id)
        query += " ORDER BY decision_id ASC"
        conn = self._connect()
        try:
            rows = conn.execute(query, args).fetchall()
        finally:
            conn.close()
        return [_row_to_decision(row) for row in rows]

    def approve_decision(self, decision_id: int) -> DecisionRecord:
        """Approve a pending decision; its amount then counts as approved spend."""
        return self._resolve_approval(decision_id, ApprovalStatus.APPROVED)

    def reject_decision(self, decision_id: int) -> DecisionRecord:
        return self._resolve_approval(decision_id, ApprovalStatus.REJECTED)

    def _resolve_approval(self, decision_id: int, status: ApprovalStatus) -> DecisionRecord:
        conn = self._connect()
        try:
            with _immediate(conn):
                row = conn.execute(
                    "SELECT approval_status FROM decisions WHERE decision_id = ?", (decision_id,)
                ).fetchone()
                if row is None:
                    raise DecisionNotFoundError(f"Decision not found: {decision_id}")
                if row["approval_status"] != ApprovalStatus.PENDING.value:
                    raise PolicyError(
                        f"Decision {decision_id} is not pending approval "
                        f"(status: {row['approval_status'] or 'none'})"
                    )
                conn.execute(
                    "UPDATE decisions SET approval_status = ? WHERE decision_id = ?",
                    (status.value, decision_id),
                )
        finally:
            conn.close()
        logger.info("Decision %d %s", decision_id, status.value)
        return self.get_decision(decision_id)


class NonceStatus(str, Enum):
    CLAIMED = "claimed"
    VERIFIED = "verified"
    REJECTED = "rejected"
    CHAIN_UNAVAILABLE = "chain_unavailable"


@dataclass
class NonceRecord:
    """Replay-prevention ledger entry. One per nonce, never deleted."""

    nonce: str
    tx_reference: str
    counterparty: str
    amount: str
    asset: str
    claimed_at: int = field(default_factory=lambda: int(time.time()))
    expires_at: int = 0
    status: NonceStatus = NonceStatus.CLAIMED
    verified: bool = False
    verified_at: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "nonce": self.nonce,
            "tx_reference": self.tx_reference,
            "counterparty": self.counterparty,
            "amount": self.amount,
            "asset": self.asset,
            "status": self.status.value,
            "verified": self.verified,
            "verified_at": self.verified_at,
            "claimed_at": self.claimed_at,
            "expires_at": self.expires_at,
            "reason": self.reason,
        }


def _row_to_nonce(row: sqlite3.Row) -> NonceRecord:
    return NonceRecord(
        nonce=row["nonce"],
        tx_reference=row["tx_reference"],
        counterparty=row["counterparty"],
        amount=row["amount"],
        asset=row["asset"],
        claimed_at=row["claimed_at"],
        expires_at=row["expires_at"],
        status=NonceStatus(row["status"]),
        verified=bool(row["verified"]),
        verified_at=row["verified_at"],
        reason=row["reason"],
    )


class NonceLedger:
    """Single source of truth for which nonces have been used."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        migrate(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def claim_if_absent(self, record: NonceRecord) -> bool:
        """Insert ``record`` unless its nonce already exists. True if claimed."""
        conn = self._connect()
        try:
            with _immediate(conn):
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO nonces (
                        nonce, tx_reference, counterparty, amount, asset, status,
                        verified, verified_at, claimed_at, expires_at, reason
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, NULL, ?, ?, NULL)
                    """,
                    (
                        record.nonce,
                        record.tx_reference,
                        record.counterparty,
                        record.amount,
                        record.asset,
                        NonceStatus.CLAIMED.value,
                        record.claimed_at,
                        record.expires_at,
                    ),
                )
        finally:
            conn.close()
        return cursor.rowcount == 1

    def get(self, nonce: str) -> Optional[NonceRecord]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM nonces WHERE nonce = ?", (nonce,)).fetchone()
        finally:
            conn.close()
        return _row_to_nonce(row) if row is not None else None

    def mark_verified(self, nonce: str, verified_at: Optional[int] = None) -> bool:
        return self._transition(
            nonce,
            "status = ?, verified = 1, verified_at = ?, reason = NULL",
            (NonceStatus.VERIFIED.value, int(time.time()) if verified_at is None else verified_at),
        )

    def mark_rejected(self, nonce: str, reason: str) -> bool:
        return self._transition(nonce, "status = ?, reason = ?", (NonceStatus.REJECTED.value, reason))

    def mark_chain_unavailable(self, nonce: str, reason: str) -> bool:
        return self._transition(
            nonce, "status = ?, reason = ?", (NonceStatus.CHAIN_UNAVAILABLE.value, reason)
        )

    def reclaim_for_reconfirm(self, nonce: str, tx_reference: str) -> bool:
        """Move a chain-unavailable record back to claimed. Succeeds once."""
        conn = self._connect()
        try:
            with _immediate(conn):
                cursor = conn.execute(
                    """
                    UPDATE nonces SET status = ?, reason = NULL
                    WHERE nonce = ? AND status = ? AND tx_reference = ?
                    """,
                    (NonceStatus.CLAIMED.value, nonce, NonceStatus.CHAIN_UNAVAILABLE.value, tx_reference),
                )
        finally:
            conn.close()
        return cursor.rowcount == 1

    def _transition(self, nonce: str, assignments: str, args: tuple) -> bool:
        # Only a claimed record may move to a terminal state.
        conn = self._connect()
        try:
            with _immediate(conn):
                cursor = conn.execute(
                    f"UPDATE nonces SET {assignments} WHERE nonce = ? AND status = ?",
                    (*args, nonce, NonceStatus.CLAIMED.value),
                )
        finally:
            conn.close()
        return cursor.rowcount == 1
