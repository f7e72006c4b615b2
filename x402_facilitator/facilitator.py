import logging
import time
from typing import List, Optional

from x402_facilitator.blockchain import (
    ChainClient,
    get_web3_provider,
    load_facilitator_account,
    resolve_chain_id,
)
from x402_facilitator.config import FacilitatorSettings
from x402_facilitator.errors import (
    NETWORK_MISMATCH,
    SCHEME_MISMATCH,
    SETTLEMENT_IN_PROGRESS,
    UNSUPPORTED_SCHEME,
    NoMatchError,
    ReplayConflict,
    SemanticValidationError,
    TransportError,
)
from x402_facilitator.registry import SchemeHandler, SchemeRegistry
from x402_facilitator.replay import InMemoryReplayGuard, RedisReplayGuard, ReplayGuard
from x402_facilitator.retry import RetryConfig
from x402_facilitator.schemas import (
    PaymentPayload,
    PaymentRequirements,
    SchemeKey,
    SettlementOutcome,
    VerificationOutcome,
)
from x402_facilitator.schemes import EXACT, ExactEvmVerifier, ExactSvmVerifier
from x402_facilitator.settlement import SettlementExecutor, SvmSettlementExecutor
from x402_facilitator.solana import SolanaChainClient, get_rpc_session, is_solana_network

logger = logging.getLogger(__name__)


class Facilitator:
    """Verifies and settles payments for every registered scheme.

    The replay guard is the only state shared between requests. For a given
    idempotency key exactly one ``settle`` call reaches the chain; every other
    call returns the outcome that one produced.
    """

    def __init__(self, schemes: SchemeRegistry, replay_guard: ReplayGuard, wait_slack_seconds: float = 5.0):
        self.schemes = schemes
        self.replay_guard = replay_guard
        self.wait_slack_seconds = wait_slack_seconds

    def supported(self) -> List[SchemeKey]:
        return self.schemes.supported()

    def _handler(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SchemeHandler:
        # Verify scheme matches
        if payload.scheme != requirements.scheme:
            raise SemanticValidationError(SCHEME_MISMATCH)

        # Verify network matches
        if payload.network != requirements.network:
            raise SemanticValidationError(NETWORK_MISMATCH)

        try:
            return self.schemes.get(SchemeKey(payload.scheme, payload.network))
        except NoMatchError as exc:
            logger.info(f"No verifier for scheme {payload.scheme} on {payload.network}")
            raise SemanticValidationError(UNSUPPORTED_SCHEME, str(exc)) from exc

    def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerificationOutcome:
        try:
            handler = self._handler(payload, requirements)
        except SemanticValidationError as exc:
            return VerificationOutcome.invalid(exc.reason)
        return handler.verifier.verify(payload, requirements)

    def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettlementOutcome:
        network = requirements.network
        try:
            handler = self._handler(payload, requirements)
            key = handler.verifier.idempotency_key(payload)
        except SemanticValidationError as exc:
            return SettlementOutcome.failure(exc.reason, network)
        if handler.settler is None:
            return SettlementOutcome.failure(UNSUPPORTED_SCHEME, network)

        settle_deadline = time.monotonic() + requirements.max_timeout_seconds

        # A recorded payment is answered from its record, even once the
        # payload itself has expired or the payer's balance has moved
        record = self.replay_guard.record(key)
        if record is not None and record.outcome is not None and record.requirements == requirements:
            if not record.outcome.in_flight:
                return self._refresh(key, record.outcome, handler, requirements, settle_deadline)
            joined = self._join(key, handler, requirements, record.outcome.payer, settle_deadline)
            if joined is not None:
                return joined

        verification = handler.verifier.verify(payload, requirements)
        if not verification.is_valid:
            return SettlementOutcome.failure(verification.invalid_reason, network, payer=verification.payer)

        while True:
            reservation = self.replay_guard.reserve(key)
            if reservation.won:
                return self._run_settlement(key, handler, payload, requirements, verification, settle_deadline)
            joined = self._join(key, handler, requirements, verification.payer, settle_deadline, reservation.outcome)
            if joined is not None:
                return joined
            # The previous holder released its reservation without settling

    def lookup(self, idempotency_key: bytes) -> Optional[SettlementOutcome]:
        record = self.replay_guard.record(idempotency_key)
        if record is None:
            return None
        if record.outcome is None:
            return SettlementOutcome.failure(SETTLEMENT_IN_PROGRESS, pending=True)
        if record.requirements is None:
            return record.outcome

        requirements = record.requirements
        try:
            handler = self.schemes.get(SchemeKey(requirements.scheme, requirements.network))
        except NoMatchError:
            return record.outcome
        return self._refresh(idempotency_key, record.outcome, handler, requirements)

    def _join(
        self,
        key: bytes,
        handler: SchemeHandler,
        requirements: PaymentRequirements,
        payer: Optional[str],
        settle_deadline: float,
        existing: Optional[SettlementOutcome] = None,
    ) -> Optional[SettlementOutcome]:
        """Wait for the caller settling ``key``; ``None`` when it gave the key up."""
        wait_deadline = settle_deadline + self.wait_slack_seconds
        if existing is None or existing.in_flight:
            logger.info(f"Settlement {key.hex()} already in progress; waiting")
            existing = self.replay_guard.wait(key, max(0.0, wait_deadline - time.monotonic()))
        if existing is not None:
            return self._refresh(key, existing, handler, requirements, settle_deadline)
        if time.monotonic() >= wait_deadline:
            return SettlementOutcome.failure(SETTLEMENT_IN_PROGRESS, requirements.network, payer=payer, pending=True)
        return None

    def _run_settlement(
        self,
        key: bytes,
        handler: SchemeHandler,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        verification: VerificationOutcome,
        deadline: float,
    ) -> SettlementOutcome:
        committed = False

        def checkpoint(outcome: SettlementOutcome) -> None:
            # Signed bytes are recorded before they are sent; from here on
            # the key is never released, so nothing is signed twice
            nonlocal committed
            self.replay_guard.commit(key, outcome, requirements)
            committed = True

        try:
            outcome = handler.settler.settle(
                payload, requirements, verification, deadline=deadline, checkpoint=checkpoint
            )
            try:
                self.replay_guard.commit(key, outcome, requirements)
            except ReplayConflict:
                # A lookup resolved the submission while this call was waiting
                committed = True
                return self.replay_guard.lookup(key) or outcome
            committed = True
            logger.info(
                f"Settlement {key.hex()} on {requirements.network}: "
                f"success={outcome.success} error={outcome.error} tx={outcome.tx_hash}"
            )
            return outcome
        finally:
            if not committed:
                logger.warning(f"Releasing reservation {key.hex()} after an interrupted settlement")
                self.replay_guard.release(key)

    def _refresh(
        self,
        key: bytes,
        outcome: SettlementOutcome,
        handler: SchemeHandler,
        requirements: PaymentRequirements,
        deadline: Optional[float] = None,
    ) -> SettlementOutcome:
        if not outcome.pending or handler.settler is None:
            return outcome
        try:
            refreshed = handler.settler.recheck(outcome, requirements, deadline=deadline)
        except TransportError as exc:
            logger.warning(f"Could not recheck settlement {key.hex()}: {exc}")
            return outcome
        if refreshed != outcome:
            logger.info(f"Settlement {key.hex()} resolved: success={refreshed.success} error={refreshed.error}")
            try:
                self.replay_guard.commit(key, refreshed, requirements)
            except ReplayConflict:
                # Another caller resolved it first
                return self.replay_guard.lookup(key) or refreshed
        return refreshed


def build_facilitator(settings: FacilitatorSettings) -> Facilitator:
    """Wire chain clients, the ``exact`` scheme per network and the replay guard from settings."""
    account = None
    if settings.facilitator_private_key:
        account = load_facilitator_account(settings.facilitator_private_key)
        logger.info(f"Relaying settlements from {account.address}")
    else:
        logger.warning("FACILITATOR_WALLET is not set; authorization payloads cannot be settled")

    retry_config = RetryConfig(max_retries=settings.rpc_max_retries)
    schemes = SchemeRegistry()
    for network in settings.networks:
        if is_solana_network(network.network):
            solana = SolanaChainClient(
                network.network,
                network.rpc_url,
                session=get_rpc_session(settings.rpc_pool_size),
                retry_config=retry_config,
            )
            schemes.register(
                EXACT,
                network.network,
                ExactSvmVerifier(network.network, chain=solana),
                SvmSettlementExecutor(solana, confirmations=settings.confirmations),
            )
            continue

        chain_id = resolve_chain_id(network.network, network.chain_id)
        chain = ChainClient(
            network.network,
            chain_id,
            get_web3_provider(network.rpc_url, pool_size=settings.rpc_pool_size),
            account=account,
            retry_config=retry_config,
            gas_limit=settings.gas_limit,
        )
        schemes.register(
            EXACT,
            network.network,
            ExactEvmVerifier(network.network, chain_id, chain=chain),
            SettlementExecutor(chain, confirmations=settings.confirmations),
        )

    if settings.redis_url:
        replay_guard = RedisReplayGuard.from_url(settings.redis_url, ttl_seconds=settings.replay_ttl_seconds)
    else:
        replay_guard = InMemoryReplayGuard(ttl_seconds=settings.replay_ttl_seconds)

    return Facilitator(schemes, replay_guard)
