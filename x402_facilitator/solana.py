"""
JSON-RPC access to a Solana cluster.

Exposes the same surface the settlement executor uses on EVM networks:
submit signed bytes, read a "receipt", read the current slot and a native
balance. The receipt of a Solana transaction is built from the
``preTokenBalances`` / ``postTokenBalances`` of its metadata, so the amount
delivered is the recipient's token balance delta within that transaction.
"""
import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from solders.pubkey import Pubkey

from x402_facilitator.errors import ChainRejection, ConfigError, TransportError, X402Error
from x402_facilitator.retry import RetryConfig, call_with_retries

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"

# Base fee charged to the fee payer per transaction signature
LAMPORTS_PER_SIGNATURE = 5000

# Commitment levels that satisfy each requested commitment
_SATISFIES = {
    "confirmed": ("confirmed", "finalized"),
    "finalized": ("finalized",),
}

# Node errors meaning the node itself is unusable right now
_UNHEALTHY_CODES = (-32004, -32005, -32014, -32016)

# Compared against the lowercased message with spaces removed
_ALREADY_PROCESSED_MARKERS = ("alreadybeenprocessed", "alreadyprocessed")


def _is_already_processed(exc: "SolanaRpcError") -> bool:
    message = exc.message.lower().replace(" ", "")
    return any(marker in message for marker in _ALREADY_PROCESSED_MARKERS)


def is_solana_network(network: str) -> bool:
    return network == "solana" or network.startswith("solana-") or network.startswith("solana:")


def derive_ata(owner: str, mint: str, token_program: str = TOKEN_PROGRAM_ID) -> str:
    """Associated token account of ``owner`` for ``mint``."""
    address, _bump = Pubkey.find_program_address(
        [bytes(Pubkey.from_string(owner)), bytes(Pubkey.from_string(token_program)), bytes(Pubkey.from_string(mint))],
        Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID),
    )
    return str(address)


class SolanaRpcError(X402Error):
    """The node answered a JSON-RPC call with an error object."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


@dataclass(frozen=True)
class TokenBalanceChange:
    account: str
    mint: str
    owner: Optional[str]
    delta: int


@dataclass(frozen=True)
class SolanaReceipt:
    tx_hash: str
    status: int
    block_number: int
    changes: List[TokenBalanceChange] = field(default_factory=list)

    def received(self, asset: str, recipient: str) -> int:
        """Net amount of mint ``asset`` credited to ``recipient`` by this transaction.

        ``recipient`` is either the wallet owning the token account or the
        token account itself. Base58 addresses are compared exactly.
        """
        return sum(
            change.delta
            for change in self.changes
            if change.mint == asset and recipient in (change.owner, change.account)
        )


def token_balance_changes(transaction: Dict[str, Any]) -> List[TokenBalanceChange]:
    """Per-account token deltas from a ``getTransaction`` result."""
    meta = transaction.get("meta") or {}
    keys = list(transaction["transaction"]["message"]["accountKeys"])
    loaded = meta.get("loadedAddresses") or {}
    keys += loaded.get("writable", []) + loaded.get("readonly", [])

    balances: Dict[int, Dict[str, Any]] = {}
    for side in ("preTokenBalances", "postTokenBalances"):
        for entry in meta.get(side) or []:
            balance = balances.setdefault(
                entry["accountIndex"], {"mint": entry["mint"], "owner": entry.get("owner"), "pre": 0, "post": 0}
            )
            balance["pre" if side == "preTokenBalances" else "post"] = int(entry["uiTokenAmount"]["amount"])

    changes = []
    for index, entry in sorted(balances.items()):
        delta = entry["post"] - entry["pre"]
        if delta:
            changes.append(
                TokenBalanceChange(account=keys[index], mint=entry["mint"], owner=entry["owner"], delta=delta)
            )
    return changes


def get_rpc_session(pool_size: int = 20) -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class SolanaChainClient:
    """RPC access for one Solana cluster.

    Transport failures and unhealthy-node answers surface as
    :class:`TransportError`; a transaction the node refuses raises
    :class:`ChainRejection`.
    """

    def __init__(
        self,
        network: str,
        rpc_url: str,
        session: Optional[requests.Session] = None,
        retry_config: Optional[RetryConfig] = None,
        commitment: str = "confirmed",
        timeout: float = 10.0,
    ):
        if commitment not in _SATISFIES:
            raise ConfigError(f"Unsupported Solana commitment '{commitment}'")
        self.network = network
        self.rpc_url = rpc_url
        self.session = session or get_rpc_session()
        self.retry_config = retry_config or RetryConfig()
        self.commitment = commitment
        self.timeout = timeout
        self._request_id = 0

    def _call(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            response = self.session.post(self.rpc_url, json=body, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise TransportError(f"RPC request to {self.network} failed: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransportError(f"RPC request to {self.network} failed: HTTP {response.status_code}")
        try:
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.HTTPError, ValueError) as exc:
            raise TransportError(f"RPC request to {self.network} failed: {exc}") from exc

        error = data.get("error")
        if error:
            code = error.get("code")
            message = error.get("message", "unknown RPC error")
            if code in _UNHEALTHY_CODES:
                raise TransportError(f"{self.network} node unavailable: {message}")
            raise SolanaRpcError(message, code, error.get("data"))
        return data.get("result")

    def _rpc(self, method: str, params: List[Any]) -> Any:
        try:
            return call_with_retries(lambda: self._call(method, params), self.retry_config)
        except SolanaRpcError as exc:
            raise TransportError(f"{method} on {self.network} failed: {exc.message}") from exc

    def block_number(self) -> int:
        return int(self._rpc("getSlot", [{"commitment": self.commitment}]))

    def native_balance(self, address: str) -> int:
        result = self._rpc("getBalance", [address, {"commitment": self.commitment}])
        return int(result["value"])

    def abandon(self, tx_hash: str) -> None:
        """Nothing to hand back: Solana transactions carry no relayer nonce."""

    def send_raw_transaction(self, raw: bytes, tx_hash: str) -> str:
        """Submit signed bytes. Resubmitting the same bytes is harmless."""
        encoded = base64.b64encode(raw).decode("ascii")
        params = [encoded, {"encoding": "base64", "skipPreflight": False, "preflightCommitment": self.commitment}]
        try:
            signature = call_with_retries(lambda: self._call("sendTransaction", params), self.retry_config)
        except SolanaRpcError as exc:
            if _is_already_processed(exc):
                logger.info(f"Transaction {tx_hash} already processed by {self.network}")
                return tx_hash
            raise ChainRejection(exc.message, tx_hash=tx_hash) from exc
        if signature != tx_hash:
            logger.warning(f"{self.network} returned signature {signature} for {tx_hash}")
        return tx_hash

    def get_receipt(self, tx_hash: str) -> Optional[SolanaReceipt]:
        statuses = self._rpc("getSignatureStatuses", [[tx_hash], {"searchTransactionHistory": True}])
        status = (statuses.get("value") or [None])[0]
        if status is None or status.get("confirmationStatus") not in _SATISFIES[self.commitment]:
            return None
        slot = int(status["slot"])
        if status.get("err"):
            return SolanaReceipt(tx_hash=tx_hash, status=0, block_number=slot)

        transaction = self._rpc(
            "getTransaction",
            [tx_hash, {"encoding": "json", "commitment": self.commitment, "maxSupportedTransactionVersion": 0}],
        )
        if transaction is None:
            return None
        if (transaction.get("meta") or {}).get("err"):
            return SolanaReceipt(tx_hash=tx_hash, status=0, block_number=slot)
        return SolanaReceipt(
            tx_hash=tx_hash,
            status=1,
            block_number=int(transaction.get("slot", slot)),
            changes=token_balance_changes(transaction),
        )
