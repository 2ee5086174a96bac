"""
Tollgate error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, abort, alert, etc.).
Verification outcomes are returned as values (see facilitator.Rejection);
exceptions are reserved for faults the caller cannot treat as a verdict.
"""


class TollgateError(Exception):
    """Base error for all Tollgate operations."""
    pass


class RetryableError(TollgateError):
    """Error that may succeed if retried."""
    def __init__(self, message: str, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


# Policy errors
class PolicyError(TollgateError):
    """Base error for policy configuration problems."""
    pass


class RuleConfigError(PolicyError):
    """Rule parameters are malformed for the rule's kind."""
    def __init__(self, rule_id: str, message: str):
        self.rule_id = rule_id
        self.detail = message
        super().__init__(f"Rule {rule_id}: {message}")


class RuleNotFoundError(PolicyError):
    """Rule ID not found in the rule store."""
    pass


class DecisionNotFoundError(PolicyError):
    """Decision ID not found in the decision log."""
    pass


# Storage errors
class StoreError(TollgateError):
    """Base error for persistence failures."""
    pass


class MigrationError(StoreError):
    """Schema migration could not be applied."""
    pass


# Protocol errors
class ProtocolError(TollgateError):
    """Malformed payment header or requirement payload."""
    pass


# Chain errors
class ChainError(TollgateError):
    """Base error for ledger lookups."""
    pass


class ChainUnavailableError(ChainError, RetryableError):
    """RPC endpoint unreachable, timed out, or returned a transport-level error."""
    pass


# Audit errors
class AuditIntegrityError(TollgateError):
    """Audit log hash chain does not verify."""
    pass
