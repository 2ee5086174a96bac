"""
Explicit configuration for the policy engine and payment facilitator.

Business logic never reads the environment; ``TollgateConfig.from_env`` is
called once by entry points and the resulting object is passed to each
component at construction time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional


TOLLGATE_DIR = Path.home() / ".tollgate"
TOLLGATE_SECRETS_DIR = Path.home() / ".tollgate-secrets"

BASE_SEPOLIA = "eip155:84532"
BASE_MAINNET = "eip155:8453"

USDC_BASE_SEPOLIA = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
USDC_BASE_MAINNET = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"

DEFAULT_EXPIRY_WINDOW = 60
DEFAULT_NONCE_RETENTION = 3600

NETWORK_ENV = "TOLLGATE_NETWORK"
ASSET_ENV = "TOLLGATE_ASSET"
FACILITATOR_ENV = "TOLLGATE_FACILITATOR"
EXPIRY_WINDOW_ENV = "TOLLGATE_EXPIRY_WINDOW"
NONCE_RETENTION_ENV = "TOLLGATE_NONCE_RETENTION"
DB_PATH_ENV = "TOLLGATE_DB"
AUDIT_PATH_ENV = "TOLLGATE_AUDIT_LOG"
AUDIT_KEY_ENV = "TOLLGATE_AUDIT_KEY"
RPC_URL_ENV = "TOLLGATE_RPC_URL"
RPC_TIMEOUT_ENV = "TOLLGATE_RPC_TIMEOUT"


@dataclass(frozen=True)
class TollgateConfig:
    network_id: str = BASE_SEPOLIA
    asset_id: str = USDC_BASE_SEPOLIA
    facilitator_address: str = "http://localhost:8402/facilitator/verify"
    expiry_window: int = DEFAULT_EXPIRY_WINDOW
    nonce_retention: int = DEFAULT_NONCE_RETENTION
    db_path: Path = field(default_factory=lambda: TOLLGATE_DIR / "tollgate.sqlite3")
    audit_path: Path = field(default_factory=lambda: TOLLGATE_DIR / "audit.jsonl")
    audit_key_path: Path = field(default_factory=lambda: TOLLGATE_SECRETS_DIR / "audit_hmac.key")
    rpc_url: Optional[str] = None
    rpc_timeout: float = 10.0

    def __post_init__(self):
        if self.expiry_window <= 0:
            raise ValueError("expiry_window must be positive")
        if self.nonce_retention < 0:
            raise ValueError("nonce_retention cannot be negative")
        if not self.network_id:
            raise ValueError("network_id is required")
        if not self.asset_id:
            raise ValueError("asset_id is required")

    def with_overrides(self, **changes) -> "TollgateConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "TollgateConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            network_id=env.get(NETWORK_ENV, defaults.network_id),
            asset_id=env.get(ASSET_ENV, defaults.asset_id),
            facilitator_address=env.get(FACILITATOR_ENV, defaults.facilitator_address),
            expiry_window=int(env.get(EXPIRY_WINDOW_ENV, defaults.expiry_window)),
            nonce_retention=int(env.get(NONCE_RETENTION_ENV, defaults.nonce_retention)),
            db_path=Path(env[DB_PATH_ENV]) if env.get(DB_PATH_ENV) else defaults.db_path,
            audit_path=Path(env[AUDIT_PATH_ENV]) if env.get(AUDIT_PATH_ENV) else defaults.audit_path,
            audit_key_path=Path(env[AUDIT_KEY_ENV]) if env.get(AUDIT_KEY_ENV) else defaults.audit_key_path,
            rpc_url=env.get(RPC_URL_ENV) or None,
            rpc_timeout=float(env.get(RPC_TIMEOUT_ENV, defaults.rpc_timeout)),
        )
