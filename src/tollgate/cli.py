"""
Tollgate CLI: policy administration and x402 payment verification.

Commands:
    tollgate migrate        Create or upgrade the database schema
    tollgate rules ...      Manage authorization rules and user assignments
    tollgate evaluate       Authorize a transaction request
    tollgate decisions ...  Review the decision log and resolve approvals
    tollgate budget         Show budget usage for a user
    tollgate requirement    Issue an x402 payment requirement
    tollgate verify         Verify a payment proof on chain
    tollgate nonces show    Inspect a nonce ledger entry
    tollgate audit          View the audit trail
"""

from __future__ import annotations

import json
import logging
import secrets
import sys
import time
from pathlib import Path
from typing import Optional

import click

from .audit import AuditTrail, EventType
from .chain import EvmJsonRpcClient
from .config import TollgateConfig
from .errors import PolicyError, ProtocolError, StoreError, TollgateError
from .facilitator import Facilitator, ReceiptSigner
from .money import format_micros
from .policy import PolicyEngine, TransactionRequest
from .protocol import PaymentProof, PaymentRequirement, PaymentRequirementBuilder, decode_header, fingerprint
from .rules import FallbackAction, Rule, RuleKind, TransactionClass
from .store import ALL_USERS, NonceLedger, PolicyStore
from .storage import migrate as migrate_db


SCOPE_CHOICES = [c.value for c in TransactionClass] + ["all"]


def _config(ctx: click.Context) -> TollgateConfig:
    return ctx.obj["config"]


def _store(ctx: click.Context) -> PolicyStore:
    return PolicyStore(_config(ctx).db_path)


def _audit(ctx: click.Context) -> AuditTrail:
    config = _config(ctx)
    return AuditTrail(config.audit_path, key_path=config.audit_key_path)


def _engine(ctx: click.Context) -> PolicyEngine:
    return PolicyEngine(_store(ctx), config=_config(ctx), audit=_audit(ctx))


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _load_payload(path: Path) -> dict:
    """Read a JSON object, or a base64url header value, from a file."""
    text = path.read_text().strip()
    if text.startswith("{"):
        return json.loads(text)
    return decode_header(text)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--db", "db_path", type=click.Path(path_type=Path), default=None, help="SQLite database path")
@click.option("--audit-log", "audit_path", type=click.Path(path_type=Path), default=None, help="Audit log path")
@click.option("--audit-key", "audit_key_path", type=click.Path(path_type=Path), default=None,
              help="Audit HMAC key path")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    db_path: Optional[Path],
    audit_path: Optional[Path],
    audit_key_path: Optional[Path],
    verbose: bool,
):
    """Tollgate: policy decisions and x402 payment verification for AI agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    config = TollgateConfig.from_env().with_overrides(
        db_path=db_path, audit_path=audit_path, audit_key_path=audit_key_path
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command()
@click.pass_context
def migrate(ctx: click.Context):
    """Create or upgrade the database schema."""
    db_path = _config(ctx).db_path
    try:
        version = migrate_db(db_path)
    except StoreError as exc:
        _fail(str(exc))
    click.echo(f"✅ {db_path} is at schema v{version}")


# ── Rules ─────────────────────────────────────────────────────────


@main.group("rules")
def rules_group():
    """Manage authorization rules."""


@rules_group.command("add")
@click.option("--id", "rule_id", default=None, help="Rule ID (default: generated)")
@click.option("--name", required=True, help="Human-readable rule name")
@click.option("--kind", type=click.Choice([k.value for k in RuleKind]), required=True)
@click.option("--params", "params_json", required=True, help="Rule parameters as a JSON object")
@click.option("--priority", type=int, default=0, help="Higher runs first")
@click.option("--scope", multiple=True, type=click.Choice(SCOPE_CHOICES), help="Transaction classes (default: all)")
@click.option("--fallback", type=click.Choice([a.value for a in FallbackAction]), default=FallbackAction.DENY.value,
              help="Verdict when no rule matches")
@click.option("--user", "users", multiple=True, help="Assign to user (repeatable; default: every user)")
@click.option("--disabled", is_flag=True, help="Create the rule disabled")
@click.pass_context
def rules_add(
    ctx: click.Context,
    rule_id: Optional[str],
    name: str,
    kind: str,
    params_json: str,
    priority: int,
    scope: tuple[str, ...],
    fallback: str,
    users: tuple[str, ...],
    disabled: bool,
):
    """Create a rule and assign it."""
    try:
        params = json.loads(params_json)
    except json.JSONDecodeError as exc:
        _fail(f"--params is not valid JSON: {exc}")

    try:
        rule = Rule.from_dict(
            {
                "rule_id": rule_id or f"rule_{secrets.token_hex(4)}",
                "name": name,
                "kind": kind,
                "params": params,
                "priority": priority,
                "enabled": not disabled,
                "scope": list(scope) or "all",
                "fallback_action": fallback,
            }
        )
        store = _store(ctx)
        store.add_rule(rule)
        for user in users or (ALL_USERS,):
            store.assign_rule(rule.rule_id, user)
    except TollgateError as exc:
        _fail(f"Failed to add rule: {exc}")

    click.echo(f"✅ Rule created: {rule.rule_id}")
    click.echo(f"   Kind:     {rule.kind.value}")
    click.echo(f"   Priority: {rule.priority}")
    click.echo(f"   Users:    {', '.join(users) if users else 'all'}")


@rules_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def rules_list(ctx: click.Context, as_json: bool):
    """List rules, highest priority first."""
    rules = _store(ctx).list_rules()
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in rules], indent=2))
        return
    if not rules:
        click.echo("No rules configured.")
        return
    for rule in rules:
        state = "enabled" if rule.enabled else "disabled"
        click.echo(f"{rule.rule_id}  {rule.kind.value:<11} p={rule.priority:<4} {state:<8} {rule.name}")


@rules_group.command("show")
@click.argument("rule_id")
@click.pass_context
def rules_show(ctx: click.Context, rule_id: str):
    """Show one rule and its assignments."""
    store = _store(ctx)
    try:
        rule = store.get_rule(rule_id)
    except PolicyError:
        _fail(f"Rule not found: {rule_id}")
    payload = rule.to_dict()
    payload["assigned_to"] = store.assignments(rule_id)
    click.echo(json.dumps(payload, indent=2))


@rules_group.command("disable")
@click.argument("rule_id")
@click.pass_context
def rules_disable(ctx: click.Context, rule_id: str):
    """Disable a rule without deleting it."""
    try:
        _store(ctx).set_rule_enabled(rule_id, False)
    except PolicyError:
        _fail(f"Rule not found: {rule_id}")
    click.echo(f"✅ Rule disabled: {rule_id}")


@rules_group.command("enable")
@click.argument("rule_id")
@click.pass_context
def rules_enable(ctx: click.Context, rule_id: str):
    """Re-enable a disabled rule."""
    try:
        _store(ctx).set_rule_enabled(rule_id, True)
    except PolicyError:
        _fail(f"Rule not found: {rule_id}")
    click.echo(f"✅ Rule enabled: {rule_id}")


@rules_group.command("delete")
@click.argument("rule_id")
@click.pass_context
def rules_delete(ctx: click.Context, rule_id: str):
    """Delete a rule and its assignments."""
    try:
        _store(ctx).delete_rule(rule_id)
    except PolicyError:
        _fail(f"Rule not found: {rule_id}")
    click.echo(f"✅ Rule deleted: {rule_id}")


@rules_group.command("assign")
@click.argument("rule_id")
@click.argument("user_id")
@click.pass_context
def rules_assign(ctx: click.Context, rule_id: str, user_id: str):
    """Make a rule active for a user ("*" for every user)."""
    try:
        _store(ctx).assign_rule(rule_id, user_id)
    except PolicyError:
        _fail(f"Rule not found: {rule_id}")
    click.echo(f"✅ Rule {rule_id} assigned to {user_id}")


@rules_group.command("unassign")
@click.argument("rule_id")
@click.argument("user_id")
@click.pass_context
def rules_unassign(ctx: click.Context, rule_id: str, user_id: str):
    """Deactivate a rule for a user."""
    if not _store(ctx).unassign_rule(rule_id, user_id):
        _fail(f"Rule {rule_id} is not assigned to {user_id}")
    click.echo(f"✅ Rule {rule_id} unassigned from {user_id}")


# ── Decisions ─────────────────────────────────────────────────────


@main.command()
@click.option("--user", "user_id", required=True, help="Requesting user ID")
@click.option("--counterparty", required=True, help="Merchant name or agent ID")
@click.option("--amount", required=True, help="Amount in currency units")
@click.option("--currency", default="USD")
@click.option("--category", default=None)
@click.option("--class", "transaction_class", type=click.Choice([c.value for c in TransactionClass]),
              default=TransactionClass.AGENT_TO_MERCHANT.value)
@click.option("--agent-name", default=None)
@click.option("--agent-type", default=None)
@click.option("--counterparty-agent", default=None)
@click.option("--purpose", default=None)
@click.option("--time", "time_of_day", default=None, help="HH:MM (default: now, UTC)")
@click.option("--day", "day_of_week", type=click.IntRange(0, 6), default=None, help="0-6, Sunday = 0")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def evaluate(
    ctx: click.Context,
    user_id: str,
    counterparty: str,
    amount: str,
    currency: str,
    category: Optional[str],
    transaction_class: str,
    agent_name: Optional[str],
    agent_type: Optional[str],
    counterparty_agent: Optional[str],
    purpose: Optional[str],
    time_of_day: Optional[str],
    day_of_week: Optional[int],
    as_json: bool,
):
    """Authorize a transaction request and record the decision."""
    try:
        request = TransactionRequest(
            user_id=user_id,
            counterparty=counterparty,
            amount=amount,
            currency=currency,
            category=category,
            transaction_class=TransactionClass(transaction_class),
            agent_name=agent_name,
            agent_type=agent_type,
            counterparty_agent=counterparty_agent,
            purpose=purpose,
            time_of_day=time_of_day,
            day_of_week=day_of_week,
        )
    except ValueError as exc:
        _fail(f"Invalid request: {exc}")

    decision = _engine(ctx).evaluate(request)

    if as_json:
        click.echo(json.dumps(decision.to_dict(), indent=2))
    elif decision.allowed:
        marker = " (flagged for review)" if decision.flagged_for_review else ""
        click.echo(f"✅ Allowed{marker} [decision {decision.decision_id}]")
    elif decision.requires_approval:
        click.echo(f"⏸️  Requires approval [decision {decision.decision_id}]: {decision.reason}")
    else:
        click.echo(f"❌ Denied [decision {decision.decision_id}]: {decision.reason}")
    if not as_json:
        for result in decision.rule_results:
            status = "✅" if result.passed else "❌"
            reason = f": {result.reason}" if result.reason else ""
            click.echo(f"   {status} {result.rule_id} ({result.name}){reason}")

    if not decision.allowed:
        sys.exit(1)


@main.group("decisions")
def decisions_group():
    """Review the decision log."""


@decisions_group.command("list")
@click.option("--user", "user_id", default=None)
@click.option("--pending", is_flag=True, help="Only decisions awaiting approval")
@click.option("--limit", type=int, default=20)
@click.pass_context
def decisions_list(ctx: click.Context, user_id: Optional[str], pending: bool, limit: int):
    """List recent decisions."""
    store = _store(ctx)
    records = store.pending_approvals(user_id) if pending else store.list_decisions(user_id, limit=limit)
    if not records:
        click.echo("No decisions found.")
        return
    for record in records:
        if record.approval_status:
            verdict = record.approval_status
        else:
            verdict = "allowed" if record.allowed else "denied"
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(record.created_at))
        click.echo(
            f"{record.decision_id:>6}  {ts}  {record.user_id} -> {record.counterparty}  "
            f"{format_micros(record.amount_micros, record.currency)}  {verdict}"
            + (f"  ({record.reason})" if record.reason else "")
        )


@decisions_group.command("approve")
@click.argument("decision_id", type=int)
@click.pass_context
def decisions_approve(ctx: click.Context, decision_id: int):
    """Approve a decision that requires approval."""
    try:
        record = _engine(ctx).approve(decision_id)
    except PolicyError as exc:
        _fail(str(exc))
    click.echo(f"✅ Decision {record.decision_id} approved")


@decisions_group.command("reject")
@click.argument("decision_id", type=int)
@click.pass_context
def decisions_reject(ctx: click.Context, decision_id: int):
    """Reject a decision that requires approval."""
    try:
        record = _engine(ctx).reject(decision_id)
    except PolicyError as exc:
        _fail(str(exc))
    click.echo(f"✅ Decision {record.decision_id} rejected")


@main.command()
@click.argument("user_id")
@click.option("--class", "transaction_class", type=click.Choice([c.value for c in TransactionClass]),
              default=TransactionClass.AGENT_TO_MERCHANT.value)
@click.pass_context
def budget(ctx: click.Context, user_id: str, transaction_class: str):
    """Show budget usage for a user."""
    statuses = _engine(ctx).budget_summary(user_id, TransactionClass(transaction_class))
    if not statuses:
        click.echo(f"No budget rules apply to {user_id}.")
        return
    click.echo(f"💰 Budgets for {user_id}")
    for status in statuses:
        click.echo(f"   {status.name} ({status.period.value})")
        click.echo(f"      Limit:     {format_micros(status.limit_micros)}")
        click.echo(f"      Spent:     {format_micros(status.spent_micros)}")
        click.echo(f"      Remaining: {format_micros(status.remaining_micros)}")


# ── Payments ──────────────────────────────────────────────────────


@main.command()
@click.option("--amount", required=True, help="Amount in the asset's base units")
@click.option("--pay-to", required=True, help="Destination address")
@click.option("--method", default="GET", help="HTTP method of the resource")
@click.option("--path", "resource_path", required=True, help="Request path of the resource")
@click.option("--body", default=None, help="Exact request body (hashed)")
@click.option("--body-hash", default=None, help="SHA-256 hex of the request body")
@click.option("--asset", default=None, help="Token contract (default: configured asset)")
@click.option("--network", default=None, help="CAIP-2 network (default: configured network)")
@click.option("--expires-in", type=int, default=None, help="Seconds until expiry")
@click.pass_context
def requirement(
    ctx: click.Context,
    amount: str,
    pay_to: str,
    method: str,
    resource_path: str,
    body: Optional[str],
    body_hash: Optional[str],
    asset: Optional[str],
    network: Optional[str],
    expires_in: Optional[int],
):
    """Issue an x402 payment requirement."""
    if body is not None and body_hash is not None:
        _fail("Pass either --body or --body-hash, not both")
    builder = PaymentRequirementBuilder(_config(ctx), audit=_audit(ctx))
    try:
        req = builder.build(
            amount=amount,
            pay_to=pay_to,
            method=method,
            path=resource_path,
            body_hash=body_hash or fingerprint(body or ""),
            asset=asset,
            network=network,
            expiry_window=expires_in,
        )
    except ValueError as exc:
        _fail(f"Invalid requirement: {exc}")
    click.echo(json.dumps(req.to_dict(), indent=2))
    click.echo(f"PAYMENT-REQUIRED: {req.to_header()}")


@main.command()
@click.option("--proof", "proof_path", type=click.Path(exists=True, path_type=Path), required=True,
              help="Proof as JSON or base64url header value")
@click.option("--requirement", "requirement_path", type=click.Path(exists=True, path_type=Path), required=True,
              help="The requirement issued for this resource")
@click.option("--rpc-url", default=None, help="EVM JSON-RPC endpoint (default: TOLLGATE_RPC_URL)")
@click.option("--signing-key", envvar="TOLLGATE_RECEIPT_KEY", default=None,
              help="Private key used to sign receipts")
@click.option("--reconfirm", is_flag=True, help="Retry a verification that hit a chain outage")
@click.pass_context
def verify(
    ctx: click.Context,
    proof_path: Path,
    requirement_path: Path,
    rpc_url: Optional[str],
    signing_key: Optional[str],
    reconfirm: bool,
):
    """Verify a payment proof and print the receipt."""
    config = _config(ctx)
    rpc_url = rpc_url or config.rpc_url
    if not rpc_url:
        _fail("No RPC endpoint: pass --rpc-url or set TOLLGATE_RPC_URL")
    try:
        proof = PaymentProof.from_dict(_load_payload(proof_path))
        expected = PaymentRequirement.from_dict(_load_payload(requirement_path))
    except (ProtocolError, ValueError) as exc:
        _fail(f"Could not read payload: {exc}")

    try:
        signer = ReceiptSigner.from_private_key(signing_key) if signing_key else None
    except ValueError as exc:
        _fail(f"Invalid signing key: {exc}")

    with EvmJsonRpcClient(rpc_url, timeout=config.rpc_timeout) as rpc:
        facilitator = Facilitator(
            NonceLedger(config.db_path), rpc, config=config, audit=_audit(ctx), signer=signer
        )
        result = facilitator.reconfirm(proof, expected) if reconfirm else facilitator.verify(proof, expected)

    if result.ok:
        click.echo("✅ Payment verified")
        click.echo(json.dumps(result.to_dict(), indent=2))
        click.echo(f"PAYMENT-RESPONSE: {result.to_header()}")
        return
    click.echo(f"❌ {result.code.value} ({result.status}): {result.reason}")
    if result.retryable:
        click.echo("   Retryable: re-run with --reconfirm once the chain is reachable.")
    sys.exit(1)


@main.group("nonces")
def nonces_group():
    """Inspect the nonce ledger."""


@nonces_group.command("show")
@click.argument("nonce")
@click.pass_context
def nonces_show(ctx: click.Context, nonce: str):
    """Show the ledger entry for a nonce."""
    record = NonceLedger(_config(ctx).db_path).get(nonce)
    if record is None:
        _fail(f"Nonce not found: {nonce}")
    click.echo(json.dumps(record.to_dict(), indent=2))


@main.command()
@click.option("--user", "user_id", default=None, help="Filter by user")
@click.option("--nonce", default=None, help="Filter by nonce")
@click.option("--type", "event_type", type=click.Choice([e.value for e in EventType]), default=None)
@click.option("--limit", type=int, default=20)
@click.option("--summary", "show_summary", is_flag=True, help="Show counts only")
@click.pass_context
def audit(
    ctx: click.Context,
    user_id: Optional[str],
    nonce: Optional[str],
    event_type: Optional[str],
    limit: int,
    show_summary: bool,
):
    """View the audit trail."""
    trail = _audit(ctx)
    try:
        if show_summary:
            summary = trail.summary(user_id=user_id)
            click.echo(f"📋 Audit Summary{f' for {user_id}' if user_id else ''}")
            click.echo(f"   Total events: {summary['total_events']}")
            click.echo(f"   Failures:     {summary['failures']}")
            for kind, count in sorted(summary["by_type"].items()):
                click.echo(f"   {kind}: {count}")
            return
        events = trail.read_events(
            event_type=EventType(event_type) if event_type else None,
            user_id=user_id,
            nonce=nonce,
            limit=limit,
        )
    except TollgateError as exc:
        _fail(str(exc))

    if not events:
        click.echo("No audit events found.")
        return
    for event in events:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        subject = event.user_id or event.nonce or "-"
        line = f"{ts} {status} {event.event_type:<26} {subject}"
        if event.amount:
            line += f" {event.amount}"
        if event.code:
            line += f" [{event.code}]"
        if event.reason:
            line += f" ({event.reason})"
        click.echo(line)


if __name__ == "__main__":
    main()
