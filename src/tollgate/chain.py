"""
Ledger lookups for payment verification.

The facilitator only needs one question answered: did this transaction
succeed, and which token transfers did it perform? ``ChainRPC`` is that
interface; ``EvmJsonRpcClient`` answers it from an EVM node over JSON-RPC
using the transaction receipt's ERC-20 ``Transfer`` logs.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx
from eth_utils import keccak, to_checksum_address

from .errors import ChainUnavailableError

logger = logging.getLogger(__name__)


TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def same_address(a: str, b: str) -> bool:
    """Compare ledger addresses; EVM hex addresses compare case-insensitively."""
    if _EVM_ADDRESS_RE.match(a) and _EVM_ADDRESS_RE.match(b):
        return a.lower() == b.lower()
    return a == b


@dataclass(frozen=True)
class TransferEffect:
    """One token movement performed by a transaction."""

    asset: str
    source: str
    destination: str
    amount: int


@dataclass(frozen=True)
class ChainTransaction:
    tx_reference: str
    succeeded: bool
    effects: list[TransferEffect] = field(default_factory=list)
    error: Optional[str] = None


class ChainRPC(Protocol):
    def get_transaction(self, tx_reference: str) -> Optional[ChainTransaction]:
        """Return the transaction, or None when the ledger does not know it.

        Raises ChainUnavailableError when the ledger cannot be reached.
        """
        ...


class EvmJsonRpcClient:
    """Reads transaction receipts from an EVM JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.rpc_url = rpc_url
        self._http = client or httpx.Client(timeout=timeout)
        self._request_id = 0

    def get_transaction(self, tx_reference: str) -> Optional[ChainTransaction]:
        receipt = self._call("eth_getTransactionReceipt", [tx_reference])
        if receipt is None:
            return None
        if not isinstance(receipt, dict):
            raise ChainUnavailableError(f"Unexpected receipt payload for {tx_reference}")

        succeeded = _hex_int(receipt.get("status")) == 1
        effects = []
        for log in receipt.get("logs") or []:
            effect = _parse_transfer_log(log)
            if effect is not None:
                effects.append(effect)
        return ChainTransaction(
            tx_reference=tx_reference,
            succeeded=succeeded,
            effects=effects,
            error=None if succeeded else "Transaction reverted",
        )

    def _call(self, method: str, params: list) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            response = self._http.post(self.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as exc:
            raise ChainUnavailableError(f"RPC timeout calling {method}: {exc}", retry_after=2.0) from exc
        except httpx.HTTPError as exc:
            raise ChainUnavailableError(f"RPC request {method} failed: {exc}") from exc
        except ValueError as exc:
            raise ChainUnavailableError(f"RPC returned invalid JSON for {method}") from exc

        if not isinstance(body, dict):
            raise ChainUnavailableError(f"RPC returned a non-object response for {method}")
        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChainUnavailableError(f"RPC error from {method}: {message}")
        return body.get("result")

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _hex_int(value: Any) -> Optional[int]:
    if not isinstance(value, str):
        return None
    try:
        return int(value, 16)
    except ValueError:
        return None


def _topic_address(topic: str) -> str:
    return to_checksum_address("0x" + topic[-40:])


def _parse_transfer_log(log: Any) -> Optional[TransferEffect]:
    if not isinstance(log, dict):
        return None
    topics = log.get("topics") or []
    if len(topics) != 3 or str(topics[0]).lower() != TRANSFER_TOPIC:
        return None
    amount = _hex_int(log.get("data"))
    if amount is None:
        logger.warning("Skipping Transfer log with unreadable amount: %r", log.get("data"))
        return None
    try:
        return TransferEffect(
            asset=to_checksum_address(log["address"]),
            source=_topic_address(topics[1]),
            destination=_topic_address(topics[2]),
            amount=amount,
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping malformed Transfer log: %r", log)
        return None
