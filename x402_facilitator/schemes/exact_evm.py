"""
The ``exact`` scheme on EVM networks.

Two payload forms are accepted:

* an EIP-3009 ``TransferWithAuthorization`` signed off chain by the payer,
  which the facilitator later relays (``{"signature", "authorization"}``);
* a fully signed, unsubmitted ERC-20 ``transfer`` transaction
  (``{"transaction": "0x..."}``), submitted as-is at settlement.

Verification of the authorization form needs no chain access. The
transaction form optionally checks the payer's native balance for fees.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import rlp
from eth_account import Account
from eth_account.messages import encode_typed_data
from hexbytes import HexBytes
from pydantic import ValidationError
from web3 import Web3

from x402_facilitator.blockchain import ERC20_TRANSFER_SELECTOR, ChainClient
from x402_facilitator.errors import (
    ASSET_MISMATCH,
    AUTHORIZATION_EXPIRED,
    AUTHORIZATION_NOT_YET_VALID,
    INSUFFICIENT_AMOUNT,
    INSUFFICIENT_FEE_FUNDS,
    INVALID_PAYLOAD,
    INVALID_SIGNATURE,
    NETWORK_MISMATCH,
    RECIPIENT_MISMATCH,
    SemanticValidationError,
)
from x402_facilitator.schemas import (
    ExactEvmAuthorization,
    ExactEvmAuthorizationPayload,
    ExactEvmPayload,
    ExactEvmTransactionPayload,
    PaymentPayload,
    PaymentRequirements,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)

SCHEME = "exact"

# validBefore must leave room for the settlement transaction to be mined
VALIDITY_BUFFER_SECONDS = 6


def parse_exact_payload(payload: Dict[str, Any]) -> ExactEvmPayload:
    try:
        if "authorization" in payload:
            return ExactEvmAuthorizationPayload.model_validate(payload)
        if "transaction" in payload or "rawTransaction" in payload:
            return ExactEvmTransactionPayload.from_payload(payload)
    except ValidationError as exc:
        raise SemanticValidationError(INVALID_PAYLOAD, str(exc)) from exc
    raise SemanticValidationError(INVALID_PAYLOAD, "payload carries neither an authorization nor a transaction")


def _hex_bytes(value: str, name: str, length: Optional[int] = None) -> bytes:
    try:
        data = bytes(HexBytes(value))
    except (ValueError, TypeError) as exc:
        raise SemanticValidationError(INVALID_PAYLOAD, f"{name} is not valid hex") from exc
    if length is not None and len(data) != length:
        raise SemanticValidationError(INVALID_PAYLOAD, f"{name} must be {length} bytes, got {len(data)}")
    return data


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


def transfer_with_authorization_typed_data(
    authorization: ExactEvmAuthorization,
    requirements: PaymentRequirements,
    chain_id: int,
) -> Dict[str, Any]:
    """EIP-712 typed data the payer signed, rebuilt from the requirement."""
    extra = requirements.extra or {}
    return {
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "TransferWithAuthorization": [
                {"name": "from", "type": "address"},
                {"name": "to", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "validAfter", "type": "uint256"},
                {"name": "validBefore", "type": "uint256"},
                {"name": "nonce", "type": "bytes32"},
            ],
        },
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": extra["name"],
            "version": extra["version"],
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(requirements.asset),
        },
        "message": {
            "from": Web3.to_checksum_address(authorization.from_),
            "to": Web3.to_checksum_address(authorization.to),
            "value": int(authorization.value),
            "validAfter": int(authorization.valid_after),
            "validBefore": int(authorization.valid_before),
            "nonce": HexBytes(authorization.nonce),
        },
    }


@dataclass(frozen=True)
class DecodedTransfer:
    tx_hash: str
    sender: str
    to: Optional[str]
    recipient: str
    amount: int
    chain_id: Optional[int]
    nonce: int
    gas: int
    max_fee_per_gas: int


def _int(field: bytes) -> int:
    return int.from_bytes(field, "big") if field else 0


def decode_raw_transaction(raw: bytes) -> DecodedTransfer:
    """Decode a signed ERC-20 ``transfer`` transaction (legacy, EIP-2930 or EIP-1559)."""
    if not raw:
        raise SemanticValidationError(INVALID_PAYLOAD, "transaction is empty")

    try:
        if raw[0] == 2:
            # [chainId, nonce, maxPriorityFee, maxFee, gas, to, value, data, accessList, y, r, s]
            fields = rlp.decode(raw[1:])
            chain_id, nonce, gas, max_fee = _int(fields[0]), _int(fields[1]), _int(fields[4]), _int(fields[3])
            to, data = fields[5], fields[7]
        elif raw[0] == 1:
            # [chainId, nonce, gasPrice, gas, to, value, data, accessList, y, r, s]
            fields = rlp.decode(raw[1:])
            chain_id, nonce, gas, max_fee = _int(fields[0]), _int(fields[1]), _int(fields[3]), _int(fields[2])
            to, data = fields[4], fields[6]
        elif raw[0] >= 0xC0:
            # Legacy: [nonce, gasPrice, gas, to, value, data, v, r, s]
            fields = rlp.decode(raw)
            nonce, max_fee, gas = _int(fields[0]), _int(fields[1]), _int(fields[2])
            to, data = fields[3], fields[5]
            v = _int(fields[6])
            chain_id = (v - 35) // 2 if v >= 35 else None
        else:
            raise SemanticValidationError(INVALID_PAYLOAD, f"unsupported transaction type {raw[0]}")

        sender = Account.recover_transaction(raw)
    except SemanticValidationError:
        raise
    except Exception as exc:
        raise SemanticValidationError(INVALID_PAYLOAD, f"cannot decode transaction: {exc}") from exc

    data = bytes(data)
    if len(data) < 68 or data[:4] != ERC20_TRANSFER_SELECTOR:
        raise SemanticValidationError(INVALID_PAYLOAD, "transaction is not an ERC-20 transfer(address,uint256)")

    return DecodedTransfer(
        tx_hash=Web3.to_hex(Web3.keccak(raw)),
        sender=sender,
        to=Web3.to_checksum_address(to) if to else None,
        recipient=Web3.to_checksum_address(data[16:36]),
        amount=int.from_bytes(data[36:68], "big"),
        chain_id=chain_id,
        nonce=nonce,
        gas=gas,
        max_fee_per_gas=max_fee,
    )


class ExactEvmVerifier:
    def __init__(
        self,
        network: str,
        chain_id: int,
        chain: Optional[ChainClient] = None,
        check_fee_balance: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.network = network
        self.chain_id = chain_id
        self.chain = chain
        self.check_fee_balance = check_fee_balance
        self._clock = clock

    def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerificationOutcome:
        logger.info(f"Verifying exact payment on {self.network}")
        try:
            parsed = parse_exact_payload(payload.payload)
            if isinstance(parsed, ExactEvmAuthorizationPayload):
                return self._verify_authorization(parsed, requirements)
            return self._verify_transaction(parsed, requirements)
        except SemanticValidationError as exc:
            logger.info(f"Payment rejected on {self.network}: {exc.reason} ({exc})")
            return VerificationOutcome.invalid(exc.reason)

    def idempotency_key(self, payload: PaymentPayload) -> bytes:
        """keccak of the signature, or of the raw transaction (its hash)."""
        parsed = parse_exact_payload(payload.payload)
        if isinstance(parsed, ExactEvmAuthorizationPayload):
            return bytes(Web3.keccak(_hex_bytes(parsed.signature, "signature", 65)))
        return bytes(Web3.keccak(_hex_bytes(parsed.transaction, "transaction")))

    def _verify_authorization(
        self,
        parsed: ExactEvmAuthorizationPayload,
        requirements: PaymentRequirements,
    ) -> VerificationOutcome:
        auth = parsed.authorization
        signature = _hex_bytes(parsed.signature, "signature", 65)
        _hex_bytes(auth.nonce, "nonce", 32)

        for name, address in (("from", auth.from_), ("to", auth.to)):
            if not Web3.is_address(address):
                raise SemanticValidationError(INVALID_PAYLOAD, f"authorization.{name} is not an address")

        extra = requirements.extra or {}
        if not extra.get("name") or not extra.get("version"):
            raise SemanticValidationError(
                INVALID_PAYLOAD, "requirements.extra must carry the token's EIP-712 name and version"
            )
        if not Web3.is_address(requirements.asset):
            raise SemanticValidationError(ASSET_MISMATCH, f"asset {requirements.asset} is not a token contract")

        # Recover the signer from the EIP-712 message
        typed_data = transfer_with_authorization_typed_data(auth, requirements, self.chain_id)
        try:
            recovered = Account.recover_message(encode_typed_data(full_message=typed_data), signature=signature)
        except Exception as exc:
            raise SemanticValidationError(INVALID_SIGNATURE, f"cannot recover signer: {exc}") from exc

        if not _same_address(recovered, auth.from_):
            raise SemanticValidationError(
                INVALID_SIGNATURE,
                f"recovered address {recovered} does not match sender {auth.from_}",
            )

        if int(auth.value) < requirements.amount:
            raise SemanticValidationError(
                INSUFFICIENT_AMOUNT,
                f"authorized {auth.value}, required {requirements.max_amount_required}",
            )

        if not _same_address(auth.to, requirements.pay_to):
            raise SemanticValidationError(
                RECIPIENT_MISMATCH,
                f"authorization pays {auth.to}, required {requirements.pay_to}",
            )

        if parsed.asset is not None and not _same_address(parsed.asset, requirements.asset):
            raise SemanticValidationError(ASSET_MISMATCH, f"payload asset {parsed.asset}")

        # Validate timestamp bounds
        now = int(self._clock())
        if now < int(auth.valid_after):
            raise SemanticValidationError(AUTHORIZATION_NOT_YET_VALID, f"validAfter {auth.valid_after}, now {now}")
        if now >= int(auth.valid_before) - VALIDITY_BUFFER_SECONDS:
            raise SemanticValidationError(AUTHORIZATION_EXPIRED, f"validBefore {auth.valid_before}, now {now}")

        logger.info(f"Authorization from {recovered} verified on {self.network}")
        return VerificationOutcome.valid(bytes(Web3.keccak(signature)), payer=recovered)

    def _verify_transaction(
        self,
        parsed: ExactEvmTransactionPayload,
        requirements: PaymentRequirements,
    ) -> VerificationOutcome:
        raw = _hex_bytes(parsed.transaction, "transaction")
        decoded = decode_raw_transaction(raw)

        if decoded.chain_id is not None and decoded.chain_id != self.chain_id:
            raise SemanticValidationError(
                NETWORK_MISMATCH,
                f"transaction chain id {decoded.chain_id}, network {self.network} is {self.chain_id}",
            )

        if not _same_address(decoded.to, requirements.asset):
            raise SemanticValidationError(ASSET_MISMATCH, f"transaction calls {decoded.to}")

        if not _same_address(decoded.recipient, requirements.pay_to):
            raise SemanticValidationError(
                RECIPIENT_MISMATCH,
                f"transaction pays {decoded.recipient}, required {requirements.pay_to}",
            )

        if decoded.amount < requirements.amount:
            raise SemanticValidationError(
                INSUFFICIENT_AMOUNT,
                f"transfers {decoded.amount}, required {requirements.max_amount_required}",
            )

        if self.chain is not None and self.check_fee_balance:
            fee = decoded.gas * decoded.max_fee_per_gas
            balance = self.chain.native_balance(decoded.sender)
            if balance < fee:
                raise SemanticValidationError(INSUFFICIENT_FEE_FUNDS, f"balance {balance}, fee up to {fee}")

        logger.info(f"Transaction {decoded.tx_hash} from {decoded.sender} verified on {self.network}")
        return VerificationOutcome.valid(bytes(Web3.keccak(raw)), payer=decoded.sender)
