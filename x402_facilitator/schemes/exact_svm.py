"""
The ``exact`` scheme on Solana networks.

The payload is a fully signed, unsubmitted transaction
(``{"transaction": "<base64>"}``, also accepted as ``serializedTransaction``)
holding SPL Token ``Transfer`` or ``TransferChecked`` instructions into the
associated token account of ``payTo`` for the required mint. It is submitted
as-is at settlement; its first signature is the transaction id.
"""
import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from x402_facilitator.errors import (
    ASSET_MISMATCH,
    INSUFFICIENT_AMOUNT,
    INSUFFICIENT_FEE_FUNDS,
    INVALID_PAYLOAD,
    INVALID_SIGNATURE,
    RECIPIENT_MISMATCH,
    SemanticValidationError,
)
from x402_facilitator.schemas import ExactSvmPayload, PaymentPayload, PaymentRequirements, VerificationOutcome
from x402_facilitator.solana import (
    LAMPORTS_PER_SIGNATURE,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    SolanaChainClient,
    derive_ata,
)

logger = logging.getLogger(__name__)

TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

# SPL Token instruction tags
TRANSFER = 3
TRANSFER_CHECKED = 12


@dataclass(frozen=True)
class SplTransfer:
    program: str
    source: str
    destination: str
    authority: str
    amount: int
    # Only TransferChecked names the mint
    mint: Optional[str] = None


@dataclass(frozen=True)
class DecodedSolanaTransaction:
    raw: bytes
    signature: str
    signature_bytes: bytes
    fee_payer: str
    signers: Tuple[str, ...]
    signatures_valid: bool
    transfers: List[SplTransfer]


def parse_svm_payload(payload: Dict[str, Any]) -> ExactSvmPayload:
    try:
        return ExactSvmPayload.from_payload(payload)
    except ValidationError as exc:
        raise SemanticValidationError(INVALID_PAYLOAD, "payload carries no base64 transaction") from exc


def _transaction_bytes(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SemanticValidationError(INVALID_PAYLOAD, "transaction is not valid base64") from exc


def _account(keys: List[str], index: int) -> str:
    if index >= len(keys):
        raise SemanticValidationError(
            INVALID_PAYLOAD, "instruction uses an address lookup table account; only static keys are accepted"
        )
    return keys[index]


def _spl_transfer(program: str, data: bytes, accounts: List[str]) -> Optional[SplTransfer]:
    if data[:1] == bytes([TRANSFER]) and len(data) == 9 and len(accounts) >= 3:
        source, destination, authority = accounts[:3]
        return SplTransfer(program, source, destination, authority, int.from_bytes(data[1:9], "little"))
    if data[:1] == bytes([TRANSFER_CHECKED]) and len(data) == 10 and len(accounts) >= 4:
        source, mint, destination, authority = accounts[:4]
        return SplTransfer(program, source, destination, authority, int.from_bytes(data[1:9], "little"), mint)
    return None


def decode_solana_transaction(raw: bytes) -> DecodedSolanaTransaction:
    """Deserialize a legacy or v0 transaction and collect its SPL transfers."""
    try:
        tx = VersionedTransaction.from_bytes(raw)
    except Exception as exc:
        # solders raises its own deserialization error types
        raise SemanticValidationError(INVALID_PAYLOAD, f"not a Solana transaction: {exc}") from exc

    message = tx.message
    keys = [str(key) for key in message.account_keys]
    required = message.header.num_required_signatures
    if not tx.signatures or len(tx.signatures) != required or len(keys) < required:
        raise SemanticValidationError(INVALID_PAYLOAD, "signature count does not match the message header")

    transfers = []
    for instruction in message.instructions:
        program = _account(keys, instruction.program_id_index)
        if program not in TOKEN_PROGRAMS:
            continue
        accounts = [_account(keys, index) for index in bytes(instruction.accounts)]
        transfer = _spl_transfer(program, bytes(instruction.data), accounts)
        if transfer is not None:
            transfers.append(transfer)

    return DecodedSolanaTransaction(
        raw=raw,
        signature=str(tx.signatures[0]),
        signature_bytes=bytes(tx.signatures[0]),
        fee_payer=keys[0],
        signers=tuple(keys[:required]),
        signatures_valid=all(tx.verify_with_results()),
        transfers=transfers,
    )


def decode_svm_payload(payload: Dict[str, Any]) -> DecodedSolanaTransaction:
    return decode_solana_transaction(_transaction_bytes(parse_svm_payload(payload).transaction))


def _pubkey(value: str, reason: str, name: str) -> str:
    try:
        return str(Pubkey.from_string(value))
    except ValueError as exc:
        raise SemanticValidationError(reason, f"{name} {value} is not a Solana address") from exc


class ExactSvmVerifier:
    def __init__(
        self,
        network: str,
        chain: Optional[SolanaChainClient] = None,
        check_fee_balance: bool = True,
    ):
        self.network = network
        self.chain = chain
        self.check_fee_balance = check_fee_balance

    def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerificationOutcome:
        logger.info(f"Verifying exact payment on {self.network}")
        try:
            return self._verify(decode_svm_payload(payload.payload), requirements)
        except SemanticValidationError as exc:
            logger.info(f"Payment rejected on {self.network}: {exc.reason} ({exc})")
            return VerificationOutcome.invalid(exc.reason)

    def idempotency_key(self, payload: PaymentPayload) -> bytes:
        """sha256 of the first signature, which is the transaction id."""
        return hashlib.sha256(decode_svm_payload(payload.payload).signature_bytes).digest()

    def _verify(self, decoded: DecodedSolanaTransaction, requirements: PaymentRequirements) -> VerificationOutcome:
        if not decoded.signatures_valid:
            raise SemanticValidationError(INVALID_SIGNATURE, "transaction is not fully signed")

        asset = _pubkey(requirements.asset, ASSET_MISMATCH, "asset")
        pay_to = _pubkey(requirements.pay_to, RECIPIENT_MISMATCH, "payTo")

        if not decoded.transfers:
            raise SemanticValidationError(INVALID_PAYLOAD, "transaction holds no SPL token transfer")
        same_mint = [transfer for transfer in decoded.transfers if transfer.mint in (None, asset)]
        if not same_mint:
            raise SemanticValidationError(ASSET_MISMATCH, f"transaction moves mint {decoded.transfers[0].mint}")

        paying = [
            transfer
            for transfer in same_mint
            if transfer.destination in (derive_ata(pay_to, asset, transfer.program), pay_to)
        ]
        if not paying:
            raise SemanticValidationError(
                RECIPIENT_MISMATCH,
                f"transaction pays {same_mint[0].destination}, required the {asset} token account of {pay_to}",
            )

        for transfer in paying:
            if transfer.authority not in decoded.signers:
                raise SemanticValidationError(
                    INVALID_SIGNATURE, f"transfer authority {transfer.authority} did not sign"
                )

        amount = sum(transfer.amount for transfer in paying)
        if amount < requirements.amount:
            raise SemanticValidationError(
                INSUFFICIENT_AMOUNT,
                f"transfers {amount}, required {requirements.max_amount_required}",
            )

        if self.chain is not None and self.check_fee_balance:
            fee = LAMPORTS_PER_SIGNATURE * len(decoded.signers)
            balance = self.chain.native_balance(decoded.fee_payer)
            if balance < fee:
                raise SemanticValidationError(
                    INSUFFICIENT_FEE_FUNDS, f"fee payer {decoded.fee_payer} holds {balance}, fee {fee}"
                )

        payer = paying[0].authority
        logger.info(f"Transaction {decoded.signature} from {payer} verified on {self.network}")
        return VerificationOutcome.valid(hashlib.sha256(decoded.signature_bytes).digest(), payer=payer)
