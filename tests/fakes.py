import base64
import os
import threading
import time
from typing import Dict, List, Optional, Set, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from web3 import Web3

from x402_facilitator.blockchain import (
    ERC20_TRANSFER_SELECTOR,
    Receipt,
    SignedTransfer,
    TokenTransfer,
)
from x402_facilitator.errors import TransportError
from x402_facilitator.facilitator import Facilitator
from x402_facilitator.registry import SchemeRegistry
from x402_facilitator.replay import InMemoryReplayGuard
from x402_facilitator.schemas import ExactEvmAuthorization, PaymentPayload, PaymentRequirements
from x402_facilitator.schemes import EXACT, ExactEvmVerifier, ExactSvmVerifier
from x402_facilitator.schemes.exact_evm import decode_raw_transaction, transfer_with_authorization_typed_data
from x402_facilitator.schemes.exact_svm import decode_solana_transaction
from x402_facilitator.settlement import SettlementExecutor, SvmSettlementExecutor
from x402_facilitator.solana import TOKEN_PROGRAM_ID, SolanaReceipt, TokenBalanceChange, derive_ata

NETWORK = "X"
CHAIN_ID = 1337
ASSET = "0x036cbd53842c5426634e7929541ec2318f3dcf7e"
PAY_TO = "0x209693bc6afc0c5328ba36faf03c514ef312287c"


def make_requirements(amount: int = 1_000_000, network: str = NETWORK, **overrides) -> PaymentRequirements:
    fields = dict(
        scheme="exact",
        network=network,
        max_amount_required=str(amount),
        resource="https://api.example.com/premium/report",
        description="Premium market report",
        pay_to=PAY_TO,
        max_timeout_seconds=5,
        asset=ASSET,
        extra={"name": "USD Coin", "version": "2"},
    )
    fields.update(overrides)
    return PaymentRequirements(**fields)


def sign_authorization(
    account: LocalAccount,
    requirements: PaymentRequirements,
    value: int,
    chain_id: int = CHAIN_ID,
    to: Optional[str] = None,
    valid_after: int = 0,
    valid_before: Optional[int] = None,
    nonce: Optional[bytes] = None,
    signer: Optional[LocalAccount] = None,
) -> PaymentPayload:
    """EIP-3009 payment payload signed the way a wallet would sign it."""
    authorization = ExactEvmAuthorization(
        from_=account.address,
        to=to or requirements.pay_to,
        value=str(value),
        valid_after=str(valid_after),
        valid_before=str(valid_before if valid_before is not None else int(time.time()) + 600),
        nonce=Web3.to_hex(nonce or os.urandom(32)),
    )
    typed_data = transfer_with_authorization_typed_data(authorization, requirements, chain_id)
    signed = Account.sign_message(encode_typed_data(full_message=typed_data), private_key=(signer or account).key)
    return PaymentPayload(
        x402_version=1,
        scheme=requirements.scheme,
        network=requirements.network,
        payload={
            "signature": Web3.to_hex(signed.signature),
            "authorization": authorization.model_dump(by_alias=True),
        },
    )


def transfer_call_data(recipient: str, amount: int) -> bytes:
    return bytes(ERC20_TRANSFER_SELECTOR) + bytes(12) + bytes(HexBytes(recipient)) + amount.to_bytes(32, "big")


def sign_transfer_transaction(
    account: LocalAccount,
    requirements: PaymentRequirements,
    amount: int,
    chain_id: int = CHAIN_ID,
    nonce: int = 0,
    recipient: Optional[str] = None,
    to: Optional[str] = None,
    legacy: bool = False,
    data: Optional[bytes] = None,
) -> PaymentPayload:
    """Signed, unsubmitted ERC-20 transfer wrapped as a payment payload."""
    tx = {
        "chainId": chain_id,
        "nonce": nonce,
        "to": Web3.to_checksum_address(to or requirements.asset),
        "value": 0,
        "data": Web3.to_hex(data if data is not None else transfer_call_data(recipient or requirements.pay_to, amount)),
        "gas": 60_000,
    }
    if legacy:
        tx["gasPrice"] = 2_000_000_000
    else:
        tx.update(type=2, maxFeePerGas=2_000_000_000, maxPriorityFeePerGas=1_000_000_000)
    signed = account.sign_transaction(tx)
    return PaymentPayload(
        x402_version=1,
        scheme=requirements.scheme,
        network=requirements.network,
        payload={"transaction": Web3.to_hex(signed.raw_transaction)},
    )


class FakeChain:
    """In-memory EVM network exposing the ChainClient surface.

    Authorization nonces and sender nonces are single use: a second transfer
    reusing one is mined with status 0, like the real token contract.
    """

    def __init__(self, network: str = NETWORK, chain_id: int = CHAIN_ID):
        self.network = network
        self.chain_id = chain_id
        self.account = Account.create()
        self.block = 100
        self.submissions: List[bytes] = []
        self.hold_receipts = False
        self.transfer_fee = 0
        self.send_delay = 0.0
        self.fail_sends = 0
        self.lose_acks = 0
        self.abandoned: List[str] = []
        self.fail_receipts = False
        self.balances: Dict[str, int] = {}
        self._receipts: Dict[str, Receipt] = {}
        self._held: Dict[str, Receipt] = {}
        self._intents: Dict[str, Tuple[str, str, str, int, Tuple[str, bytes]]] = {}
        self._used: Set[Tuple[str, bytes]] = set()
        self._relayer_nonce = 0
        self._lock = threading.Lock()

    def block_number(self) -> int:
        return self.block

    def mine_block(self, count: int = 1) -> None:
        self.block += count

    def native_balance(self, address: str) -> int:
        return self.balances.get(address.lower(), 10**18)

    def authorization_state(self, asset: str, authorizer: str, nonce: bytes) -> bool:
        return (authorizer.lower(), bytes(nonce)) in self._used

    def sign_transfer_with_authorization(
        self,
        asset: str,
        authorization: ExactEvmAuthorization,
        signature: bytes,
    ) -> SignedTransfer:
        with self._lock:
            self._relayer_nonce += 1
            raw = b"\x02" + self._relayer_nonce.to_bytes(8, "big") + signature
        tx_hash = Web3.to_hex(Web3.keccak(raw))
        self._intents[tx_hash] = (
            asset,
            authorization.from_,
            authorization.to,
            int(authorization.value),
            (authorization.from_.lower(), bytes(HexBytes(authorization.nonce))),
        )
        return SignedTransfer(raw=raw, tx_hash=tx_hash)

    def send_raw_transaction(self, raw: bytes, tx_hash: str) -> str:
        if self.send_delay:
            time.sleep(self.send_delay)
        with self._lock:
            if self.fail_sends > 0:
                self.fail_sends -= 1
                raise TransportError("connection refused")
            self.submissions.append(bytes(raw))
            if tx_hash in self._receipts or tx_hash in self._held:
                return tx_hash

            intent = self._intents.get(tx_hash)
            if intent is None:
                decoded = decode_raw_transaction(bytes(raw))
                used_key = (decoded.sender.lower(), decoded.nonce.to_bytes(32, "big"))
                intent = (decoded.to, decoded.sender, decoded.recipient, decoded.amount, used_key)
            asset, sender, recipient, value, used_key = intent

            if used_key in self._used:
                receipt = Receipt(tx_hash=tx_hash, status=0, block_number=self.block)
            else:
                self._used.add(used_key)
                transfer = TokenTransfer(asset=asset, sender=sender, recipient=recipient, value=value - self.transfer_fee)
                receipt = Receipt(tx_hash=tx_hash, status=1, block_number=self.block, transfers=[transfer])

            if self.hold_receipts:
                self._held[tx_hash] = receipt
            else:
                self._receipts[tx_hash] = receipt
            if self.lose_acks > 0:
                self.lose_acks -= 1
                raise TransportError("read timed out")
            return tx_hash

    def abandon(self, tx_hash: str) -> None:
        self.abandoned.append(tx_hash)

    def release_receipts(self) -> None:
        with self._lock:
            self._receipts.update(self._held)
            self._held.clear()

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        if self.fail_receipts:
            raise TransportError("read timed out")
        return self._receipts.get(tx_hash)


def make_facilitator(chain: FakeChain, replay_guard=None, **executor_options) -> Facilitator:
    executor_options.setdefault("poll_interval", 0.01)
    schemes = SchemeRegistry().register(
        EXACT,
        chain.network,
        ExactEvmVerifier(chain.network, chain.chain_id, chain=chain),
        SettlementExecutor(chain, **executor_options),
    )
    return Facilitator(schemes, replay_guard or InMemoryReplayGuard(), wait_slack_seconds=1.0)


SOLANA_NETWORK = "solana-devnet"


def make_svm_requirements(mint: str, pay_to: str, amount: int = 1_000_000, **overrides) -> PaymentRequirements:
    overrides.setdefault("extra", None)
    return make_requirements(amount, network=SOLANA_NETWORK, asset=mint, pay_to=pay_to, **overrides)


def sign_spl_transfer(
    payer: Keypair,
    requirements: PaymentRequirements,
    amount: int,
    destination: Optional[str] = None,
    checked: bool = False,
    mint: Optional[str] = None,
    fee_payer: Optional[Keypair] = None,
    payload_key: str = "transaction",
) -> PaymentPayload:
    """SPL token transfer signed by the payer, wrapped as a payment payload."""
    owner = payer.pubkey()
    source = Pubkey.from_string(derive_ata(str(owner), requirements.asset))
    target = Pubkey.from_string(destination or derive_ata(requirements.pay_to, requirements.asset))
    if checked:
        data = bytes([12]) + amount.to_bytes(8, "little") + bytes([6])
        accounts = [
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(Pubkey.from_string(mint or requirements.asset), is_signer=False, is_writable=False),
            AccountMeta(target, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ]
    else:
        data = bytes([3]) + amount.to_bytes(8, "little")
        accounts = [
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(target, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ]
    instruction = Instruction(Pubkey.from_string(TOKEN_PROGRAM_ID), data, accounts)

    sponsor = fee_payer or payer
    message = MessageV0.try_compile(sponsor.pubkey(), [instruction], [], Hash.new_unique())
    signers = [sponsor] if fee_payer is None else [sponsor, payer]
    tx = VersionedTransaction(message, signers)
    return PaymentPayload(
        x402_version=1,
        scheme=requirements.scheme,
        network=requirements.network,
        payload={payload_key: base64.b64encode(bytes(tx)).decode("ascii")},
    )


class FakeSolanaChain:
    """In-memory Solana cluster exposing the SolanaChainClient surface.

    Token accounts opened with :meth:`open_account` report their owner in
    receipts, the way ``postTokenBalances`` does.
    """

    def __init__(self, network: str = SOLANA_NETWORK):
        self.network = network
        self.slot = 1_000
        self.submissions: List[bytes] = []
        self.balances: Dict[str, int] = {}
        self.transfer_fee = 0
        self.fail_sends = 0
        self.fail_transactions = False
        self.hold_receipts = False
        self.abandoned: List[str] = []
        self._accounts: Dict[str, Tuple[str, str]] = {}
        self._receipts: Dict[str, SolanaReceipt] = {}
        self._held: Dict[str, SolanaReceipt] = {}
        self._lock = threading.Lock()

    def open_account(self, owner: str, mint: str) -> str:
        account = derive_ata(owner, mint)
        self._accounts[account] = (owner, mint)
        return account

    def block_number(self) -> int:
        return self.slot

    def native_balance(self, address: str) -> int:
        return self.balances.get(address, 10**9)

    def abandon(self, tx_hash: str) -> None:
        self.abandoned.append(tx_hash)

    def send_raw_transaction(self, raw: bytes, tx_hash: str) -> str:
        with self._lock:
            if self.fail_sends > 0:
                self.fail_sends -= 1
                raise TransportError("connection refused")
            self.submissions.append(bytes(raw))
            if tx_hash in self._receipts or tx_hash in self._held:
                return tx_hash

            decoded = decode_solana_transaction(bytes(raw))
            if self.fail_transactions:
                receipt = SolanaReceipt(tx_hash=tx_hash, status=0, block_number=self.slot)
            else:
                changes = []
                for transfer in decoded.transfers:
                    owner, mint = self._accounts.get(transfer.destination, (None, transfer.mint))
                    delta = transfer.amount - self.transfer_fee
                    changes.append(
                        TokenBalanceChange(account=transfer.destination, mint=mint, owner=owner, delta=delta)
                    )
                receipt = SolanaReceipt(tx_hash=tx_hash, status=1, block_number=self.slot, changes=changes)

            if self.hold_receipts:
                self._held[tx_hash] = receipt
            else:
                self._receipts[tx_hash] = receipt
            return tx_hash

    def release_receipts(self) -> None:
        with self._lock:
            self._receipts.update(self._held)
            self._held.clear()

    def get_receipt(self, tx_hash: str) -> Optional[SolanaReceipt]:
        return self._receipts.get(tx_hash)


def make_svm_facilitator(chain: FakeSolanaChain, replay_guard=None, **executor_options) -> Facilitator:
    executor_options.setdefault("poll_interval", 0.01)
    schemes = SchemeRegistry().register(
        EXACT,
        chain.network,
        ExactSvmVerifier(chain.network, chain=chain),
        SvmSettlementExecutor(chain, **executor_options),
    )
    return Facilitator(schemes, replay_guard or InMemoryReplayGuard(), wait_slack_seconds=1.0)
