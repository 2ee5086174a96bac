"""
x402 payment verification.

The Facilitator turns a buyer's PaymentProof into a Receipt or a typed
Rejection:

    validate structure -> claim nonce -> check binding -> check expiry
        -> confirm on chain -> mark verified -> Receipt

The nonce is claimed with a single conditional insert right after structural
validation. From then on it stays burned whatever the outcome, so a nonce
can never be replayed or probed against other destinations.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from .audit import AuditTrail, EventType
from .chain import ChainRPC, TransferEffect, same_address
from .config import TollgateConfig
from .errors import ChainUnavailableError
from .protocol import PaymentProof, PaymentRequirement, encode_header, validate_proof
from .store import NonceLedger, NonceRecord

logger = logging.getLogger(__name__)

NONCE_MISMATCH_REASON = "Proof nonce does not match the requirement"


class ErrorKind(str, Enum):
    PROOF_MALFORMED = "proof-malformed"
    REPLAY = "replay"
    BINDING_MISMATCH = "binding-mismatch"
    EXPIRED = "expired"
    VERIFICATION_FAILED = "verification-failed"
    CHAIN_UNAVAILABLE = "chain-unavailable"


class RejectionCode(str, Enum):
    INVALID_PROOF = "INVALID_PROOF"
    NONCE_REUSED = "NONCE_REUSED"
    NONCE_MISMATCH = "NONCE_MISMATCH"
    BODY_HASH_MISMATCH = "BODY_HASH_MISMATCH"
    ASSET_MISMATCH = "ASSET_MISMATCH"
    PAYTO_MISMATCH = "PAYTO_MISMATCH"
    NETWORK_MISMATCH = "NETWORK_MISMATCH"
    REQUIREMENT_EXPIRED = "REQUIREMENT_EXPIRED"
    TX_NOT_FOUND = "TX_NOT_FOUND"
    TX_FAILED = "TX_FAILED"
    INVALID_TRANSFER = "INVALID_TRANSFER"
    INSUFFICIENT_AMOUNT = "INSUFFICIENT_AMOUNT"
    CHAIN_UNAVAILABLE = "CHAIN_UNAVAILABLE"

    @property
    def status(self) -> int:
        return _CODE_INFO[self][0]

    @property
    def error_kind(self) -> ErrorKind:
        return _CODE_INFO[self][1]

    @property
    def retryable(self) -> bool:
        return self is RejectionCode.CHAIN_UNAVAILABLE


# code -> (HTTP-equivalent status, error kind)
_CODE_INFO = {
    RejectionCode.INVALID_PROOF: (400, ErrorKind.PROOF_MALFORMED),
    RejectionCode.NONCE_REUSED: (409, ErrorKind.REPLAY),
    RejectionCode.NONCE_MISMATCH: (400, ErrorKind.BINDING_MISMATCH),
    RejectionCode.BODY_HASH_MISMATCH: (400, ErrorKind.BINDING_MISMATCH),
    RejectionCode.ASSET_MISMATCH: (400, ErrorKind.BINDING_MISMATCH),
    RejectionCode.PAYTO_MISMATCH: (400, ErrorKind.BINDING_MISMATCH),
    RejectionCode.NETWORK_MISMATCH: (400, ErrorKind.BINDING_MISMATCH),
    RejectionCode.REQUIREMENT_EXPIRED: (410, ErrorKind.EXPIRED),
    RejectionCode.TX_NOT_FOUND: (404, ErrorKind.VERIFICATION_FAILED),
    RejectionCode.TX_FAILED: (400, ErrorKind.VERIFICATION_FAILED),
    RejectionCode.INVALID_TRANSFER: (400, ErrorKind.VERIFICATION_FAILED),
    RejectionCode.INSUFFICIENT_AMOUNT: (402, ErrorKind.VERIFICATION_FAILED),
    RejectionCode.CHAIN_UNAVAILABLE: (503, ErrorKind.CHAIN_UNAVAILABLE),
}


@dataclass(frozen=True)
class Rejection:
    code: RejectionCode
    reason: str
    retry_after: Optional[float] = None

    ok = False

    @property
    def status(self) -> int:
        return self.code.status

    @property
    def error_kind(self) -> ErrorKind:
        return self.code.error_kind

    @property
    def retryable(self) -> bool:
        return self.code.retryable

    def to_dict(self) -> dict:
        d = {
            "ok": False,
            "code": self.code.value,
            "status": self.status,
            "errorKind": self.error_kind.value,
            "retryable": self.retryable,
            "reason": self.reason,
        }
        if self.retry_after is not None:
            d["retryAfter"] = self.retry_after
        return d


@dataclass(frozen=True)
class Receipt:
    """Proof that a payment was verified on chain. Immutable once issued."""

    tx_reference: str
    amount: str
    asset: str
    pay_to: str
    nonce: str
    network: str
    verified_at: int
    payer: Optional[str] = None
    signer: Optional[str] = None
    signature: Optional[str] = None

    ok = True

    def signing_payload(self) -> dict:
        return {
            "txReference": self.tx_reference,
            "amount": self.amount,
            "asset": self.asset,
            "payTo": self.pay_to,
            "nonce": self.nonce,
            "network": self.network,
            "verifiedAt": self.verified_at,
            "payer": self.payer,
        }

    def to_dict(self) -> dict:
        d = {"ok": True, **self.signing_payload()}
        if self.signature is not None:
            d["signer"] = self.signer
            d["signature"] = self.signature
        return d

    def to_header(self) -> str:
        return encode_header(self.to_dict())


VerificationResult = Union[Receipt, Rejection]


def _canonical(payload: dict) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class ReceiptSigner:
    """Signs receipts with an EIP-191 personal message signature."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_private_key(cls, private_key: str) -> "ReceiptSigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, receipt: Receipt) -> str:
        message = encode_defunct(text=_canonical(receipt.signing_payload()))
        signed = self._account.sign_message(message)
        return "0x" + bytes(signed.signature).hex()


def verify_receipt_signature(receipt: Receipt, expected_signer: Optional[str] = None) -> bool:
    """Check that ``receipt.signature`` was made by its signer (or ``expected_signer``)."""
    signer = expected_signer or receipt.signer
    if not receipt.signature or not signer:
        return False
    message = encode_defunct(text=_canonical(receipt.signing_payload()))
    try:
        sig = bytes.fromhex(receipt.signature[2:] if receipt.signature.startswith("0x") else receipt.signature)
        recovered = Account.recover_message(message, signature=sig)
    except ValueError:
        return False
    return same_address(recovered, signer)


class ChainVerifier:
    """Confirms that a referenced transaction paid what a requirement asks."""

    def __init__(self, rpc: ChainRPC):
        self.rpc = rpc

    def confirm(self, tx_reference: str, expected: PaymentRequirement) -> Union[TransferEffect, Rejection]:
        """Return the matching transfer, or a Rejection.

        Raises ChainUnavailableError when the ledger cannot be reached.
        """
        tx = self.rpc.get_transaction(tx_reference)
        if tx is None:
            return Rejection(RejectionCode.TX_NOT_FOUND, "Transaction not found on chain")
        if not tx.succeeded:
            return Rejection(RejectionCode.TX_FAILED, f"Transaction failed: {tx.error or 'reverted'}")

        required = int(expected.amount)
        matching = [
            effect
            for effect in tx.effects
            if same_address(effect.asset, expected.asset) and same_address(effect.destination, expected.pay_to)
        ]
        for effect in matching:
            if effect.amount >= required:
                return effect
        if matching:
            largest = max(effect.amount for effect in matching)
            return Rejection(
                RejectionCode.INSUFFICIENT_AMOUNT,
                f"Expected {required}, got {largest}",
            )
        return Rejection(
            RejectionCode.INVALID_TRANSFER,
            f"No transfer of {expected.asset} to {expected.pay_to} found in transaction",
        )


class Facilitator:
    """Verifies payment proofs with single-use nonces."""

    def __init__(
        self,
        ledger: NonceLedger,
        chain: ChainRPC,
        config: Optional[TollgateConfig] = None,
        audit: Optional[AuditTrail] = None,
        signer: Optional[ReceiptSigner] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.verifier = ChainVerifier(chain)
        self.config = config or TollgateConfig()
        self.audit = audit
        self.signer = signer
        self._clock = clock

    def verify(self, proof: PaymentProof, expected: PaymentRequirement) -> VerificationResult:
        """Verify ``proof`` against the requirement issued for this resource.

        ``expected`` is the caller's own copy of the requirement, never the
        values the proof claims for itself.
        """
        validation = validate_proof(proof)
        if not validation.valid:
            return self._reject(proof, RejectionCode.INVALID_PROOF, validation.error or "Invalid proof")
        # A proof presented against another requirement must not touch its own nonce.
        if proof.nonce != expected.nonce:
            return self._reject(proof, RejectionCode.NONCE_MISMATCH, NONCE_MISMATCH_REASON)

        now = int(self._clock())
        record = NonceRecord(
            nonce=proof.nonce,
            tx_reference=proof.tx_reference,
            counterparty=expected.pay_to,
            amount=expected.amount,
            asset=expected.asset,
            claimed_at=now,
            expires_at=max(expected.expires_at, now) + self.config.nonce_retention,
        )
        if not self.ledger.claim_if_absent(record):
            return self._reject(proof, RejectionCode.NONCE_REUSED, "This nonce has already been used")
        if self.audit is not None:
            self.audit.log(
                EventType.NONCE_CLAIMED,
                counterparty=expected.pay_to,
                amount=expected.amount,
                nonce=proof.nonce,
                details={"tx_reference": proof.tx_reference},
            )

        mismatch = _binding_mismatch(proof, expected)
        if mismatch is not None:
            return self._burn(proof, *mismatch)
        if expected.is_expired(now):
            return self._burn(
                proof,
                RejectionCode.REQUIREMENT_EXPIRED,
                f"Payment requirement expired at {expected.expires_at}",
            )
        return self._confirm(proof, expected)

    def reconfirm(self, proof: PaymentProof, expected: PaymentRequirement) -> VerificationResult:
        """Retry the chain lookup for a nonce whose verification hit a chain outage.

        Only a nonce left in ``chain_unavailable`` with the same transaction
        reference can be re-confirmed, and only once per outage. Requirement
        expiry is not re-checked; the proof was accepted in time.
        """
        validation = validate_proof(proof)
        if not validation.valid:
            return self._reject(proof, RejectionCode.INVALID_PROOF, validation.error or "Invalid proof")
        mismatch = _binding_mismatch(proof, expected)
        if mismatch is not None:
            return self._reject(proof, *mismatch)
        if not self.ledger.reclaim_for_reconfirm(proof.nonce, proof.tx_reference):
            return self._reject(
                proof, RejectionCode.NONCE_REUSED, "Nonce is not awaiting chain re-confirmation"
            )
        return self._confirm(proof, expected)

    def _confirm(self, proof: PaymentProof, expected: PaymentRequirement) -> VerificationResult:
        try:
            outcome = self.verifier.confirm(proof.tx_reference, expected)
        except ChainUnavailableError as exc:
            self.ledger.mark_chain_unavailable(proof.nonce, str(exc))
            logger.warning("Chain unavailable verifying nonce %s: %s", proof.nonce, exc)
            if self.audit is not None:
                self.audit.log(
                    EventType.CHAIN_UNAVAILABLE,
                    counterparty=expected.pay_to,
                    amount=expected.amount,
                    nonce=proof.nonce,
                    code=RejectionCode.CHAIN_UNAVAILABLE.value,
                    success=False,
                    reason=str(exc),
                )
            return Rejection(
                RejectionCode.CHAIN_UNAVAILABLE,
                f"Chain lookup failed: {exc}",
                retry_after=exc.retry_after,
            )

        if isinstance(outcome, Rejection):
            return self._burn(proof, outcome.code, outcome.reason)

        verified_at = int(self._clock())
        self.ledger.mark_verified(proof.nonce, verified_at)
        receipt = Receipt(
            tx_reference=proof.tx_reference,
            amount=str(outcome.amount),
            asset=expected.asset,
            pay_to=expected.pay_to,
            nonce=proof.nonce,
            network=expected.network,
            verified_at=verified_at,
            payer=outcome.source,
        )
        if self.signer is not None:
            receipt = replace(receipt, signer=self.signer.address)
            receipt = replace(receipt, signature=self.signer.sign(receipt))

        logger.info(
            "Verified payment %s: %s of %s to %s (nonce %s)",
            proof.tx_reference,
            receipt.amount,
            receipt.asset,
            receipt.pay_to,
            proof.nonce,
        )
        if self.audit is not None:
            self.audit.log(
                EventType.PAYMENT_VERIFIED,
                counterparty=receipt.pay_to,
                amount=receipt.amount,
                nonce=receipt.nonce,
                details={"tx_reference": receipt.tx_reference, "payer": receipt.payer},
            )
        return receipt

    def _burn(self, proof: PaymentProof, code: RejectionCode, reason: str) -> Rejection:
        self.ledger.mark_rejected(proof.nonce, f"{code.value}: {reason}")
        return self._reject(proof, code, reason)

    def _reject(self, proof: PaymentProof, code: RejectionCode, reason: str) -> Rejection:
        logger.warning("Rejected proof for nonce %s: %s (%s)", proof.nonce or "-", code.value, reason)
        if self.audit is not None:
            self.audit.log(
                EventType.PROOF_REJECTED,
                counterparty=proof.pay_to or None,
                amount=proof.amount or None,
                nonce=proof.nonce or None,
                code=code.value,
                success=False,
                reason=reason,
                details={"tx_reference": proof.tx_reference} if proof.tx_reference else None,
            )
        return Rejection(code, reason)


def _binding_mismatch(
    proof: PaymentProof, expected: PaymentRequirement
) -> Optional[tuple[RejectionCode, str]]:
    if proof.nonce != expected.nonce:
        return RejectionCode.NONCE_MISMATCH, NONCE_MISMATCH_REASON
    if proof.body_hash.lower() != expected.resource.body_hash.lower():
        return RejectionCode.BODY_HASH_MISMATCH, "Payment is not bound to this request"
    if not same_address(proof.asset, expected.asset):
        return RejectionCode.ASSET_MISMATCH, f"Expected asset {expected.asset}, got {proof.asset}"
    if not same_address(proof.pay_to, expected.pay_to):
        return RejectionCode.PAYTO_MISMATCH, f"Expected payTo {expected.pay_to}, got {proof.pay_to}"
    if proof.network != expected.network:
        return RejectionCode.NETWORK_MISMATCH, f"Expected network {expected.network}, got {proof.network}"
    return None
