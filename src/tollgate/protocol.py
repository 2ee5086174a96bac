"""
x402 payment requirement and proof types.

A PaymentRequirement is a time-boxed, single-use claim check binding an
amount, destination, asset and network to one request body. A PaymentProof
is the buyer's evidence that it paid. Both travel as base64url JSON in HTTP
headers.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from .audit import AuditTrail, EventType
from .config import TollgateConfig
from .errors import ProtocolError


PROTOCOL = "x402"
PROTOCOL_VERSION = "v2"
SCHEME_EXACT = "exact"

PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
PAYMENT_RESPONSE_HEADER = "PAYMENT-RESPONSE"

MIN_TX_REFERENCE_LENGTH = 40
MAX_TX_REFERENCE_LENGTH = 128
MIN_NONCE_LENGTH = 8
FINGERPRINT_LENGTH = 64

_DIGITS_RE = re.compile(r"^\d+$")
_HEX64_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def encode_header(obj: Mapping[str, Any]) -> str:
    """Encode a JSON object as unpadded base64url for an HTTP header.

    These are not the x402 SDK's v2 payloads: a proof here references a
    settled transaction and carries the requirement nonce and body hash,
    which the SDK's signed-authorization models have no fields for. The
    header transport (base64 JSON under the same header names) is shared.
    """
    raw = json.dumps(obj, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_header(value: str) -> dict:
    padded = value.strip() + "=" * (-len(value.strip()) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ProtocolError(f"Malformed payment header: {exc}") from exc
    if not isinstance(decoded, dict):
        raise ProtocolError("Malformed payment header: expected a JSON object")
    return decoded


def header_lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    target = name.lower()
    for k, v in headers.items():
        if k.lower() == target:
            return v
    return None


def fingerprint(body: Union[bytes, str, Mapping[str, Any], None]) -> str:
    """SHA-256 hex digest of a request body.

    Bytes and strings are hashed as sent; mappings are hashed as compact,
    key-sorted JSON.
    """
    if body is None:
        data = b""
    elif isinstance(body, bytes):
        data = body
    elif isinstance(body, str):
        data = body.encode("utf-8")
    else:
        data = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class Resource:
    method: str
    path: str
    body_hash: str

    def to_dict(self) -> dict:
        return {"method": self.method, "path": self.path, "bodyHash": self.body_hash}


@dataclass(frozen=True)
class PaymentRequirement:
    network: str
    asset: str
    amount: str  # integer, smallest unit of the asset
    pay_to: str
    nonce: str
    expires_at: int
    resource: Resource
    facilitator: str
    protocol: str = PROTOCOL
    version: str = PROTOCOL_VERSION
    scheme: str = SCHEME_EXACT

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) > self.expires_at

    def to_dict(self) -> dict:
        return {
            "protocol": self.protocol,
            "version": self.version,
            "scheme": self.scheme,
            "network": self.network,
            "asset": self.asset,
            "amount": self.amount,
            "payTo": self.pay_to,
            "nonce": self.nonce,
            "expiresAt": self.expires_at,
            "resource": self.resource.to_dict(),
            "facilitator": self.facilitator,
        }

    def to_header(self) -> str:
        return encode_header(self.to_dict())

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PaymentRequirement":
        try:
            resource = d["resource"]
            return cls(
                protocol=str(d.get("protocol", PROTOCOL)),
                version=str(d.get("version", PROTOCOL_VERSION)),
                scheme=str(d.get("scheme", SCHEME_EXACT)),
                network=str(d["network"]),
                asset=str(d.get("asset") or d["mint"]),
                amount=str(d["amount"]),
                pay_to=str(d["payTo"]),
                nonce=str(d["nonce"]),
                expires_at=int(d["expiresAt"]),
                resource=Resource(
                    method=str(resource["method"]),
                    path=str(resource["path"]),
                    body_hash=str(resource["bodyHash"]),
                ),
                facilitator=str(d.get("facilitator", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(f"Malformed payment requirement: {exc!r}") from exc

    @classmethod
    def from_header(cls, value: str) -> "PaymentRequirement":
        return cls.from_dict(decode_header(value))


@dataclass(frozen=True)
class PaymentProof:
    """Buyer's evidence of payment. Untrusted until validated."""

    tx_reference: str
    nonce: str
    body_hash: str
    pay_to: str
    amount: str
    asset: str
    network: str
    submitted_at: Optional[int] = None

    def to_dict(self) -> dict:
        d = {
            "txReference": self.tx_reference,
            "nonce": self.nonce,
            "bodyHash": self.body_hash,
            "payTo": self.pay_to,
            "amount": self.amount,
            "asset": self.asset,
            "network": self.network,
        }
        if self.submitted_at is not None:
            d["submittedAt"] = self.submitted_at
        return d

    def to_header(self) -> str:
        return encode_header(self.to_dict())

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PaymentProof":
        """Build a proof from its wire form without validating it.

        Missing fields become empty strings so ``validate_proof`` can report
        them as a structural rejection.
        """

        def text(*keys: str) -> str:
            for key in keys:
                value = d.get(key)
                if value is not None:
                    return str(value)
            return ""

        submitted = d.get("submittedAt")
        return cls(
            tx_reference=text("txReference", "txHash", "txSignature"),
            nonce=text("nonce"),
            body_hash=text("bodyHash"),
            pay_to=text("payTo"),
            amount=text("amount"),
            asset=text("asset", "mint"),
            network=text("network"),
            submitted_at=int(submitted) if isinstance(submitted, (int, float)) else None,
        )

    @classmethod
    def from_header(cls, value: str) -> "PaymentProof":
        return cls.from_dict(decode_header(value))


@dataclass(frozen=True)
class ProofValidation:
    valid: bool
    error: Optional[str] = None


def validate_proof(proof: PaymentProof) -> ProofValidation:
    """Structural checks only; never touches the ledger or the chain."""
    tx_ref = proof.tx_reference
    if not tx_ref or not MIN_TX_REFERENCE_LENGTH <= len(tx_ref) <= MAX_TX_REFERENCE_LENGTH:
        return ProofValidation(False, "Invalid transaction reference")
    if not proof.nonce or len(proof.nonce) < MIN_NONCE_LENGTH:
        return ProofValidation(False, "Invalid nonce")
    if not proof.body_hash or not _HEX64_RE.match(proof.body_hash):
        return ProofValidation(False, "Invalid body hash")
    if not proof.pay_to or not proof.asset or not proof.network:
        return ProofValidation(False, "Missing required fields")
    if not _DIGITS_RE.match(proof.amount):
        return ProofValidation(False, "Invalid amount format")
    return ProofValidation(True)


def make_payment_proof(
    requirement: PaymentRequirement,
    tx_reference: str,
    submitted_at: Optional[int] = None,
) -> PaymentProof:
    """Buyer side: bind a sent transaction to the requirement it pays."""
    return PaymentProof(
        tx_reference=tx_reference,
        nonce=requirement.nonce,
        body_hash=requirement.resource.body_hash,
        pay_to=requirement.pay_to,
        amount=requirement.amount,
        asset=requirement.asset,
        network=requirement.network,
        submitted_at=int(time.time()) if submitted_at is None else submitted_at,
    )


class PaymentRequirementBuilder:
    """Issues requirements with fresh nonces. Claims nothing."""

    def __init__(
        self,
        config: Optional[TollgateConfig] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or TollgateConfig()
        self.audit = audit
        self._clock = clock

    def build(
        self,
        amount: Union[int, str],
        pay_to: str,
        method: str,
        path: str,
        body_hash: str,
        asset: Optional[str] = None,
        network: Optional[str] = None,
        facilitator: Optional[str] = None,
        expiry_window: Optional[int] = None,
    ) -> PaymentRequirement:
        amount_str = str(amount)
        if isinstance(amount, bool) or not _DIGITS_RE.match(amount_str):
            raise ValueError(f"Amount must be a non-negative integer in base units, got {amount!r}")
        if not pay_to:
            raise ValueError("pay_to is required")
        if not _HEX64_RE.match(body_hash or ""):
            raise ValueError("body_hash must be a 64-character hex SHA-256 digest")
        window = self.config.expiry_window if expiry_window is None else expiry_window
        if window <= 0:
            raise ValueError("expiry_window must be positive")

        requirement = PaymentRequirement(
            network=network or self.config.network_id,
            asset=asset or self.config.asset_id,
            amount=str(int(amount_str)),
            pay_to=pay_to,
            nonce=secrets.token_hex(16),
            expires_at=int(self._clock()) + window,
            resource=Resource(method=method.upper(), path=path, body_hash=body_hash.lower()),
            facilitator=facilitator or self.config.facilitator_address,
        )
        if self.audit is not None:
            self.audit.log(
                EventType.REQUIREMENT_ISSUED,
                counterparty=requirement.pay_to,
                amount=requirement.amount,
                nonce=requirement.nonce,
                details={
                    "network": requirement.network,
                    "asset": requirement.asset,
                    "resource": requirement.resource.to_dict(),
                    "expires_at": requirement.expires_at,
                },
            )
        return requirement
