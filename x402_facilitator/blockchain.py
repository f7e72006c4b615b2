import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from requests.adapters import HTTPAdapter
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception
from x402.chains import get_chain_id

from x402_facilitator.errors import ChainRejection, ConfigError, TransportError
from x402_facilitator.retry import RetryConfig, call_with_retries
from x402_facilitator.schemas import ExactEvmAuthorization

logger = logging.getLogger(__name__)

T = TypeVar("T")

# EIP-3009 transferWithAuthorization / authorizationState ABI
TRANSFER_WITH_AUTHORIZATION_ABI = [
    {
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "signature", "type": "bytes"},
        ],
        "name": "transferWithAuthorization",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "authorizer", "type": "address"},
            {"name": "nonce", "type": "bytes32"},
        ],
        "name": "authorizationState",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC20_TRANSFER_SELECTOR = HexBytes("0xa9059cbb")
TRANSFER_EVENT_TOPIC = HexBytes(Web3.keccak(text="Transfer(address,address,uint256)"))

# Node responses meaning the exact same signed bytes are already in the pool
_ALREADY_KNOWN_MARKERS = ("already known", "known transaction", "already imported")


def resolve_chain_id(network: str, configured: Optional[int] = None) -> int:
    """Chain id for a network name: configured value first, then x402's table."""
    if configured is not None:
        return configured
    try:
        return int(get_chain_id(network))
    except (ValueError, KeyError) as exc:
        raise ConfigError(f"Unknown chain id for network '{network}'; set X402_CHAIN_ID_*") from exc


def load_facilitator_account(private_key: str) -> LocalAccount:
    return Account.from_key(private_key)


def get_web3_provider(rpc_url: str, pool_size: int = 20, timeout: float = 10.0) -> Web3:
    """Get a Web3 provider backed by a pooled HTTP session."""
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return Web3(Web3.HTTPProvider(rpc_url, session=session, request_kwargs={"timeout": timeout}))


def _topic_address(topic: Any) -> str:
    return Web3.to_checksum_address(HexBytes(topic)[-20:])


def _is_already_known(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _ALREADY_KNOWN_MARKERS)


@dataclass(frozen=True)
class TokenTransfer:
    asset: str
    sender: str
    recipient: str
    value: int


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: int
    block_number: int
    transfers: List[TokenTransfer] = field(default_factory=list)

    def received(self, asset: str, recipient: str) -> int:
        """Total amount of ``asset`` this transaction moved to ``recipient``."""
        return sum(
            transfer.value
            for transfer in self.transfers
            if transfer.asset.lower() == asset.lower() and transfer.recipient.lower() == recipient.lower()
        )


@dataclass(frozen=True)
class SignedTransfer:
    raw: bytes
    tx_hash: str


class ChainClient:
    """RPC access for one EVM network.

    Every read goes through bounded retries; connection failures surface as
    :class:`TransportError` so callers can tell "unknown" from "rejected".
    """

    def __init__(
        self,
        network: str,
        chain_id: int,
        web3: Web3,
        account: Optional[LocalAccount] = None,
        retry_config: Optional[RetryConfig] = None,
        gas_limit: int = 200_000,
    ):
        self.network = network
        self.chain_id = chain_id
        self.web3 = web3
        self.account = account
        self.retry_config = retry_config or RetryConfig()
        self.gas_limit = gas_limit
        self._nonce_lock = threading.Lock()
        self._next_nonce: Optional[int] = None
        # Relayer transactions signed but not yet accepted by the node
        self._issued: Dict[str, int] = {}

    def _rpc(self, fn: Callable[[], T]) -> T:
        def attempt() -> T:
            try:
                return fn()
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
                raise TransportError(f"RPC request to {self.network} failed: {exc}") from exc

        return call_with_retries(attempt, self.retry_config)

    def _token(self, asset: str):
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(asset),
            abi=TRANSFER_WITH_AUTHORIZATION_ABI,
        )

    def block_number(self) -> int:
        return self._rpc(lambda: self.web3.eth.block_number)

    def native_balance(self, address: str) -> int:
        return self._rpc(lambda: self.web3.eth.get_balance(Web3.to_checksum_address(address)))

    def authorization_state(self, asset: str, authorizer: str, nonce: bytes) -> bool:
        """True when the EIP-3009 nonce has already been consumed on chain."""
        token = self._token(asset)
        return self._rpc(
            lambda: token.functions.authorizationState(Web3.to_checksum_address(authorizer), nonce).call()
        )

    def _allocate_nonce(self) -> int:
        # Settlements run in parallel threads sharing one relayer account
        with self._nonce_lock:
            pending = self._rpc(lambda: self.web3.eth.get_transaction_count(self.account.address, "pending"))
            nonce = pending if self._next_nonce is None else max(pending, self._next_nonce)
            self._next_nonce = nonce + 1
            return nonce

    def _return_nonce(self, nonce: int) -> None:
        """Give back a nonce whose transaction never reached the node."""
        with self._nonce_lock:
            if self._next_nonce == nonce + 1:
                self._next_nonce = nonce
            else:
                # Later nonces are out; re-read the node's pending count
                self._next_nonce = None

    def abandon(self, tx_hash: str) -> None:
        """Forget a signed relayer transaction that was never accepted."""
        nonce = self._issued.pop(tx_hash, None)
        if nonce is not None:
            logger.info(f"Relayer nonce {nonce} on {self.network} returned; {tx_hash} was not sent")
            self._return_nonce(nonce)

    def sign_transfer_with_authorization(
        self,
        asset: str,
        authorization: ExactEvmAuthorization,
        signature: bytes,
    ) -> SignedTransfer:
        if self.account is None:
            raise ConfigError(f"FACILITATOR_WALLET is not set; cannot settle on {self.network}")

        token = self._token(asset)
        nonce = self._allocate_nonce()
        try:
            gas_price = self._rpc(lambda: self.web3.eth.gas_price)

            # Build transaction
            tx = token.functions.transferWithAuthorization(
                Web3.to_checksum_address(authorization.from_),
                Web3.to_checksum_address(authorization.to),
                int(authorization.value),
                int(authorization.valid_after),
                int(authorization.valid_before),
                HexBytes(authorization.nonce),
                signature,
            ).build_transaction(
                {
                    "from": self.account.address,
                    "nonce": nonce,
                    "gas": self.gas_limit,
                    "chainId": self.chain_id,
                    "maxFeePerGas": gas_price * 2,
                    "maxPriorityFeePerGas": self.web3.to_wei(1, "gwei"),
                }
            )
            signed_tx = self.account.sign_transaction(tx)
        except Exception:
            self._return_nonce(nonce)
            raise

        tx_hash = Web3.to_hex(signed_tx.hash)
        self._issued[tx_hash] = nonce
        return SignedTransfer(raw=bytes(signed_tx.raw_transaction), tx_hash=tx_hash)

    def send_raw_transaction(self, raw: bytes, tx_hash: str) -> str:
        """Submit signed bytes. Resubmitting the same bytes is harmless.

        When a relayer transaction is rejected, or never gets through, its
        nonce is handed back so later settlements do not queue behind a gap.
        """

        def attempt() -> str:
            try:
                return Web3.to_hex(self.web3.eth.send_raw_transaction(raw))
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
                raise TransportError(f"RPC request to {self.network} failed: {exc}") from exc
            except (ValueError, Web3Exception) as exc:
                if _is_already_known(exc):
                    logger.info(f"Transaction {tx_hash} already known to {self.network}")
                    return tx_hash
                raise ChainRejection(str(exc), tx_hash=tx_hash) from exc

        try:
            sent = call_with_retries(attempt, self.retry_config)
        except (ChainRejection, TransportError):
            self.abandon(tx_hash)
            raise
        self._issued.pop(tx_hash, None)
        return sent

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        def fetch():
            try:
                return self.web3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = self._rpc(fetch)
        if receipt is None:
            return None

        transfers = []
        for log in receipt["logs"]:
            topics = log["topics"]
            if len(topics) == 3 and HexBytes(topics[0]) == TRANSFER_EVENT_TOPIC:
                transfers.append(
                    TokenTransfer(
                        asset=Web3.to_checksum_address(log["address"]),
                        sender=_topic_address(topics[1]),
                        recipient=_topic_address(topics[2]),
                        value=int.from_bytes(HexBytes(log["data"]), "big"),
                    )
                )
        return Receipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=int(receipt["blockNumber"]),
            transfers=transfers,
        )
