"""
Audit trail for policy decisions and payment verification.

Each line of the JSONL log carries ``prev_hash`` and ``event_hash``. The
event hash is an HMAC over the previous hash plus the canonical record, so
editing, reordering or dropping a line is caught on the next read.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import TOLLGATE_DIR, TOLLGATE_SECRETS_DIR
from .errors import AuditIntegrityError
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = TOLLGATE_DIR / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = TOLLGATE_SECRETS_DIR / "audit_hmac.key"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    DECISION_ALLOWED = "decision_allowed"
    DECISION_DENIED = "decision_denied"
    DECISION_PENDING_APPROVAL = "decision_pending_approval"
    DECISION_FLAGGED = "decision_flagged"
    DECISION_APPROVED = "decision_approved"
    DECISION_REJECTED = "decision_rejected"
    REQUIREMENT_ISSUED = "requirement_issued"
    NONCE_CLAIMED = "nonce_claimed"
    PAYMENT_VERIFIED = "payment_verified"
    PROOF_REJECTED = "proof_rejected"
    CHAIN_UNAVAILABLE = "chain_unavailable"


@dataclass
class AuditEvent:
    """One line of the audit log."""

    event_type: str
    timestamp: float
    user_id: Optional[str] = None
    counterparty: Optional[str] = None
    amount: Optional[str] = None
    nonce: Optional[str] = None
    code: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict) -> "AuditEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in record.items() if k in known})

    def to_json(self) -> str:
        record = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(record, separators=(",", ":"))


class AuditTrail:
    """HMAC-chained, append-only JSONL log shared by the policy engine and facilitator."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        hmac_key: Optional[bytes] = None,
    ):
        self.path = Path(path) if path else DEFAULT_AUDIT_PATH
        self.key_path = Path(key_path) if key_path else DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)

        self._key = hmac_key or self._read_key()
        self._write_lock = threading.Lock()
        self._tail = self._tail_hash()

    def _read_key(self) -> bytes:
        ensure_private_dir(self.key_path.parent)
        if self.key_path.is_file():
            existing = self.key_path.read_bytes().strip()
            if existing:
                return existing
        fresh = secrets.token_hex(32).encode()
        self.key_path.write_bytes(fresh)
        ensure_private_file(self.key_path)
        return fresh

    def _lines(self) -> Iterator[dict]:
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def _tail_hash(self) -> str:
        tail = ""
        for record in self._lines():
            tail = record.get("event_hash") or ""
        return tail

    def _digest(self, record: dict, prev_hash: str) -> str:
        body = json.dumps(record, sort_keys=True, separators=(",", ":"))
        message = (prev_hash + "|" + body).encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def _verified(self) -> Iterator[dict]:
        expected = ""
        for record in self._lines():
            prev_hash = record.get("prev_hash") or ""
            claimed = record.get("event_hash") or ""
            if prev_hash != expected:
                raise AuditIntegrityError("Audit chain broken: previous hash mismatch")
            content = {k: v for k, v in record.items() if k not in _CHAIN_FIELDS}
            if not hmac.compare_digest(self._digest(content, prev_hash), claimed):
                raise AuditIntegrityError("Audit chain broken: event hash mismatch")
            expected = claimed
            yield record

    def log(
        self,
        event_type: EventType,
        user_id: Optional[str] = None,
        counterparty: Optional[str] = None,
        amount: Optional[str] = None,
        nonce: Optional[str] = None,
        code: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        record = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "success": success,
        }
        optional = {
            "user_id": user_id,
            "counterparty": counterparty,
            "amount": None if amount is None else str(amount),
            "nonce": nonce,
            "code": code,
            "reason": reason,
            "details": details,
        }
        record.update((k, v) for k, v in optional.items() if v is not None)

        with self._write_lock:
            prev_hash = self._tail
            event = AuditEvent.from_record(record)
            event.prev_hash = prev_hash or None
            event.event_hash = self._digest(record, prev_hash)
            with open(self.path, "a") as f:
                f.write(event.to_json())
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            self._tail = event.event_hash
        return event

    def read_events(
        self,
        event_type: Optional[EventType] = None,
        user_id: Optional[str] = None,
        nonce: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Return matching events, oldest first.

        The whole chain is verified even when filters narrow the result;
        ``limit=0`` returns every match.
        """
        wanted = {
            "event_type": event_type.value if event_type else None,
            "user_id": user_id,
            "nonce": nonce,
        }
        criteria = {k: v for k, v in wanted.items() if v}
        matches = [
            AuditEvent.from_record(record)
            for record in self._verified()
            if all(record.get(k) == v for k, v in criteria.items())
        ]
        return matches[-limit:] if limit else matches

    def summary(self, user_id: Optional[str] = None) -> dict:
        events = self.read_events(user_id=user_id, limit=0)
        return {
            "total_events": len(events),
            "by_type": dict(Counter(e.event_type for e in events)),
            "failures": sum(not e.success for e in events),
            "last_timestamp": events[-1].timestamp if events else None,
        }
