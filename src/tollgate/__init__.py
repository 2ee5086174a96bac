"""
Tollgate: policy decisions and x402 payment verification for AI agents.

Agent requests a purchase → rules decide → payment proof verified on chain
→ single-use receipt issued, with a full audit trail.
"""

__version__ = "0.1.0"

from .rules import FallbackAction, Period, Rule, RuleKind, TransactionClass
from .evaluator import EvaluationContext, RuleOutcome, evaluate_rule
from .policy import Decision, PolicyEngine, RuleResult, TransactionRequest
from .store import ALL_USERS, NonceLedger, NonceRecord, NonceStatus, PolicyStore
from .protocol import (
    PaymentProof,
    PaymentRequirement,
    PaymentRequirementBuilder,
    fingerprint,
    make_payment_proof,
    validate_proof,
)
from .chain import ChainTransaction, EvmJsonRpcClient, TransferEffect
from .facilitator import (
    Facilitator,
    Receipt,
    ReceiptSigner,
    Rejection,
    RejectionCode,
    verify_receipt_signature,
)
from .config import TollgateConfig
from .audit import AuditTrail, EventType

__all__ = [
    "Rule", "RuleKind", "FallbackAction", "Period", "TransactionClass",
    "EvaluationContext", "RuleOutcome", "evaluate_rule",
    "Decision", "PolicyEngine", "RuleResult", "TransactionRequest",
    "ALL_USERS", "NonceLedger", "NonceRecord", "NonceStatus", "PolicyStore",
    "PaymentProof", "PaymentRequirement", "PaymentRequirementBuilder",
    "fingerprint", "make_payment_proof", "validate_proof",
    "ChainTransaction", "EvmJsonRpcClient", "TransferEffect",
    "Facilitator", "Receipt", "ReceiptSigner", "Rejection", "RejectionCode",
    "verify_receipt_signature",
    "TollgateConfig",
    "AuditTrail", "EventType",
]
