"""
Resource-server side of the x402 header protocol.

A request to a paywalled path without a valid ``X-PAYMENT`` header gets a
``402`` whose body lists the accepted requirements. With a valid payment the
content is released either after verification (settlement follows the
response) or only after settlement succeeded, depending on the policy.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from x402_facilitator.codec import decode_payment_header, encode_payment_response
from x402_facilitator.config import RELEASE_ON_SETTLE, RELEASE_ON_VERIFY, RELEASE_POLICIES, FacilitatorSettings
from x402_facilitator.errors import ConfigError, DecodeError, NoMatchError, TransportError
from x402_facilitator.registry import RequirementRegistry, select
from x402_facilitator.schemas import (
    PaymentPayload,
    PaymentRequiredResponse,
    PaymentRequirements,
    SettlementOutcome,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)

PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
HEADER_REQUIRED = "X-PAYMENT header is required"


class PaymentProcessor(Protocol):
    """Either an in-process Facilitator or a remote FacilitatorClient."""

    def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerificationOutcome:
        ...

    def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettlementOutcome:
        ...


@dataclass(frozen=True)
class GateDecision:
    release: bool
    body: Optional[Dict[str, Any]] = None
    payment_response: Optional[str] = None
    payload: Optional[PaymentPayload] = None
    requirements: Optional[PaymentRequirements] = None
    settle_after_response: bool = False

    @classmethod
    def payment_required(cls, accepts: Sequence[PaymentRequirements], error: str) -> "GateDecision":
        body = PaymentRequiredResponse(accepts=list(accepts), error=error).to_wire()
        return cls(release=False, body=body)


class PaymentGate:
    def __init__(
        self,
        registry: RequirementRegistry,
        facilitator: PaymentProcessor,
        policy: str = RELEASE_ON_SETTLE,
    ):
        if policy not in RELEASE_POLICIES:
            raise ConfigError(f"Unknown release policy '{policy}'")
        self.registry = registry
        self.facilitator = facilitator
        self.policy = policy

    @classmethod
    def from_settings(
        cls,
        registry: RequirementRegistry,
        facilitator: PaymentProcessor,
        settings: FacilitatorSettings,
    ) -> "PaymentGate":
        return cls(registry, facilitator, settings.release_policy)

    def evaluate(self, path: str, header: Optional[str]) -> GateDecision:
        """Decide whether a request to ``path`` carrying ``header`` may proceed.

        Blocking: with ``release-on-settle`` this waits for the settlement.
        Raises :class:`TransportError` when the chain cannot be reached.
        """
        accepts = self.registry.requirements_for(path)
        if not accepts:
            return GateDecision(release=True)

        if not header:
            return GateDecision.payment_required(accepts, HEADER_REQUIRED)

        try:
            payload = decode_payment_header(header)
            requirements = select(payload, accepts)
        except DecodeError as exc:
            logger.info(f"Rejecting payment for {path}: {exc.reason}")
            return GateDecision.payment_required(accepts, exc.reason)
        except NoMatchError as exc:
            logger.info(f"Rejecting payment for {path}: {exc}")
            return GateDecision.payment_required(accepts, str(exc))

        verification = self.facilitator.verify(payload, requirements)
        if not verification.is_valid:
            logger.info(f"Payment for {path} is invalid: {verification.invalid_reason}")
            return GateDecision.payment_required(accepts, verification.invalid_reason)

        if self.policy == RELEASE_ON_VERIFY:
            return GateDecision(
                release=True,
                payload=payload,
                requirements=requirements,
                settle_after_response=True,
            )

        outcome = self.facilitator.settle(payload, requirements)
        if not outcome.success:
            logger.warning(f"Settlement for {path} failed: {outcome.error}")
            return GateDecision.payment_required(accepts, outcome.error)

        return GateDecision(
            release=True,
            payload=payload,
            requirements=requirements,
            payment_response=encode_payment_response(outcome),
        )

    def settle_deferred(self, decision: GateDecision) -> Optional[SettlementOutcome]:
        """Settle a payment whose content was released on verification."""
        try:
            outcome = self.facilitator.settle(decision.payload, decision.requirements)
        except TransportError as exc:
            logger.error(f"Deferred settlement could not reach the chain: {exc}", exc_info=True)
            return None
        if not outcome.success:
            logger.warning(f"Deferred settlement failed after content release: {outcome.error}")
        return outcome


class X402PaywallMiddleware(BaseHTTPMiddleware):
    """Applies a :class:`PaymentGate` to every request."""

    def __init__(self, app, gate: PaymentGate):
        super().__init__(app)
        self.gate = gate

    async def dispatch(self, request: Request, call_next) -> Response:
        header = request.headers.get(PAYMENT_HEADER)
        try:
            decision = await run_in_threadpool(self.gate.evaluate, request.url.path, header)
        except TransportError as exc:
            logger.warning(f"Payment for {request.url.path} could not be processed: {exc}")
            return JSONResponse(status_code=503, content={"error": str(exc), "retryable": True})

        if not decision.release:
            return JSONResponse(status_code=402, content=decision.body)

        response = await call_next(request)
        if decision.payment_response:
            response.headers[PAYMENT_RESPONSE_HEADER] = decision.payment_response
        if decision.settle_after_response and response.status_code < 400:
            response.background = BackgroundTask(self.gate.settle_deferred, decision)
        return response
