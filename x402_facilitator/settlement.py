"""
Settlement executors for the ``exact`` scheme.

Submits exactly one signed transaction per call, then watches the chain
until the receipt is final or the requirement's ``maxTimeoutSeconds`` runs
out. The amount actually delivered is read back from the receipt rather than
trusted from the payload: on EVM networks it is the sum of the ERC-20
``Transfer`` events ``asset`` emitted to ``payTo`` in that transaction, so
unrelated transfers mined in the same block are never counted. On Solana it
is the ``payTo`` token balance delta recorded by that transaction.
"""
import logging
import time
from dataclasses import replace
from typing import Callable, Optional

from hexbytes import HexBytes
from web3 import Web3

from x402_facilitator.blockchain import ChainClient, SignedTransfer
from x402_facilitator.errors import (
    AUTHORIZATION_USED,
    INSUFFICIENT_AMOUNT_RECEIVED,
    SETTLEMENT_IN_PROGRESS,
    TIMEOUT,
    TRANSACTION_REVERTED,
    ChainRejection,
    SemanticValidationError,
    TransportError,
)
from x402_facilitator.schemas import (
    ExactEvmAuthorizationPayload,
    PaymentPayload,
    PaymentRequirements,
    SettlementOutcome,
    VerificationOutcome,
)
from x402_facilitator.schemes.exact_evm import parse_exact_payload
from x402_facilitator.schemes.exact_svm import decode_svm_payload

logger = logging.getLogger(__name__)


class SettlementExecutor:
    def __init__(
        self,
        chain: ChainClient,
        confirmations: int = 1,
        poll_interval: float = 1.0,
        check_authorization_state: bool = True,
    ):
        self.chain = chain
        self.confirmations = confirmations
        self.poll_interval = poll_interval
        self.check_authorization_state = check_authorization_state

    def settle(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        verification: Optional[VerificationOutcome] = None,
        deadline: Optional[float] = None,
        checkpoint: Optional[Callable[[SettlementOutcome], None]] = None,
    ) -> SettlementOutcome:
        """Submit the payment and wait for its receipt.

        ``deadline`` is a ``time.monotonic()`` value; it defaults to
        ``maxTimeoutSeconds`` from now. ``checkpoint`` receives the signed,
        unsubmitted outcome before anything is sent, and again with
        ``error="timeout"`` when the submission itself hit a
        :class:`TransportError`. The error then propagates: whether the node
        took the bytes is unknown, and only those bytes may be sent again.
        """
        network = requirements.network
        payer = verification.payer if verification else None
        if deadline is None:
            deadline = time.monotonic() + requirements.max_timeout_seconds

        try:
            signed = self._prepare(payload, requirements)
        except SemanticValidationError as exc:
            return SettlementOutcome.failure(exc.reason, network, payer=payer)
        except ChainRejection as exc:
            logger.warning(f"Settlement on {network} rejected before submission: {exc.reason}")
            return SettlementOutcome.failure(exc.reason, network, payer=payer)

        unsent = SettlementOutcome(
            success=False,
            error=SETTLEMENT_IN_PROGRESS,
            tx_hash=signed.tx_hash,
            network_id=network,
            payer=payer,
            pending=True,
            raw_transaction=Web3.to_hex(signed.raw),
        )
        if checkpoint is not None:
            try:
                checkpoint(unsent)
            except Exception:
                self.chain.abandon(signed.tx_hash)
                raise

        logger.info(f"Submitting settlement {signed.tx_hash} on {network}")
        try:
            submitted = self._submit(unsent)
        except TransportError:
            if checkpoint is not None:
                checkpoint(replace(unsent, error=TIMEOUT))
            raise
        if not submitted.pending:
            return submitted
        return self._await(submitted, requirements, deadline)

    def recheck(
        self,
        outcome: SettlementOutcome,
        requirements: PaymentRequirements,
        deadline: Optional[float] = None,
    ) -> SettlementOutcome:
        """Re-read the receipt of a pending outcome. Never signs anything.

        With a ``deadline``, signed bytes whose submission was never
        acknowledged are broadcast again and awaited until then.
        """
        if not outcome.pending or not outcome.tx_hash:
            return outcome
        try:
            current = self._evaluate(outcome, requirements)
        except ChainRejection as exc:
            return outcome.resolved(success=False, error=exc.reason)

        if not current.pending or deadline is None or outcome.in_flight or not outcome.raw_transaction:
            return current

        logger.info(f"Broadcasting {outcome.tx_hash} again on {requirements.network}")
        submitted = self._submit(outcome)
        if not submitted.pending:
            return submitted
        return self._await(submitted, requirements, deadline)

    def _submit(self, outcome: SettlementOutcome) -> SettlementOutcome:
        raw = bytes(HexBytes(outcome.raw_transaction))
        try:
            self.chain.send_raw_transaction(raw, outcome.tx_hash)
        except ChainRejection as exc:
            # A node refuses bytes it has already mined; that is our transaction
            if self.chain.get_receipt(outcome.tx_hash) is None:
                logger.error(f"Settlement {outcome.tx_hash} rejected by {outcome.network_id}: {exc.reason}")
                return outcome.resolved(success=False, error=exc.reason)
        return replace(outcome, error=TIMEOUT, raw_transaction=None)

    def _prepare(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SignedTransfer:
        parsed = parse_exact_payload(payload.payload)
        if isinstance(parsed, ExactEvmAuthorizationPayload):
            auth = parsed.authorization
            if self.check_authorization_state and self.chain.authorization_state(
                requirements.asset, auth.from_, bytes(HexBytes(auth.nonce))
            ):
                raise ChainRejection(AUTHORIZATION_USED)
            return self.chain.sign_transfer_with_authorization(
                requirements.asset, auth, bytes(HexBytes(parsed.signature))
            )

        raw = bytes(HexBytes(parsed.transaction))
        return SignedTransfer(raw=raw, tx_hash=Web3.to_hex(Web3.keccak(raw)))

    def _await(
        self,
        outcome: SettlementOutcome,
        requirements: PaymentRequirements,
        deadline: float,
    ) -> SettlementOutcome:
        while True:
            try:
                current = self._evaluate(outcome, requirements)
            except ChainRejection as exc:
                logger.error(f"Settlement {outcome.tx_hash} failed: {exc.reason}")
                return outcome.resolved(success=False, error=exc.reason)
            except TransportError as exc:
                logger.warning(f"Could not poll receipt of {outcome.tx_hash}: {exc}")
                current = outcome

            if not current.pending:
                logger.info(f"Settlement successful: {current.tx_hash}")
                return current

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    f"Settlement {outcome.tx_hash} not final within {requirements.max_timeout_seconds}s"
                )
                return current
            time.sleep(min(self.poll_interval, remaining))

    def _evaluate(self, outcome: SettlementOutcome, requirements: PaymentRequirements) -> SettlementOutcome:
        receipt = self.chain.get_receipt(outcome.tx_hash)
        if receipt is None:
            return outcome

        if receipt.status != 1:
            raise ChainRejection(TRANSACTION_REVERTED, tx_hash=outcome.tx_hash)

        if self.confirmations > 1:
            depth = self.chain.block_number() - receipt.block_number + 1
            if depth < self.confirmations:
                return outcome

        received = receipt.received(requirements.asset, requirements.pay_to)
        if received < requirements.amount:
            raise ChainRejection(INSUFFICIENT_AMOUNT_RECEIVED, tx_hash=outcome.tx_hash)

        return outcome.resolved(success=True, error=None)


class SvmSettlementExecutor(SettlementExecutor):
    """Settles Solana ``exact`` payments by submitting the payer's transaction.

    The receipt's delivered amount is the ``payTo`` token balance delta
    recorded in the transaction metadata.
    """

    def _prepare(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SignedTransfer:
        decoded = decode_svm_payload(payload.payload)
        return SignedTransfer(raw=decoded.raw, tx_hash=decoded.signature)
