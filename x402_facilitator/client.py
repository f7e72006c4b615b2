"""
HTTP client for a facilitator running in another process.

Exposes the same ``verify`` / ``settle`` signatures as
:class:`x402_facilitator.facilitator.Facilitator` so a resource server can
use either one behind :class:`x402_facilitator.paywall.PaymentGate`.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import requests

from x402_facilitator.codec import encode_payment_header
from x402_facilitator.errors import SETTLEMENT_IN_PROGRESS, TIMEOUT, TransportError, X402Error
from x402_facilitator.schemas import (
    X402_VERSION,
    PaymentPayload,
    PaymentRequirements,
    SchemeKey,
    SettleResponse,
    SettlementOutcome,
    SupportedResponse,
    VerificationOutcome,
    VerifyResponse,
)

logger = logging.getLogger(__name__)

__all__ = ["FacilitatorClient"]


def _request_body(payload: PaymentPayload, requirements: PaymentRequirements) -> Dict[str, Any]:
    return {
        "x402Version": X402_VERSION,
        "paymentHeader": encode_payment_header(payload),
        "paymentRequirements": requirements.to_wire(),
    }


class FacilitatorClient:
    def __init__(self, base_url: str, *, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _handle(self, url: str, response: requests.Response) -> Dict[str, Any]:
        if response.status_code >= 500:
            raise TransportError(f"Facilitator responded with {response.status_code}: {response.text}")
        if response.status_code >= 400:
            raise X402Error(f"Facilitator responded with {response.status_code}: {response.text}")
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise X402Error(f"Failed to parse JSON from facilitator at {url}: {response.text}") from exc

    def _post_json(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, json=body, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise TransportError(f"Facilitator at {url} unreachable: {exc}") from exc
        return self._handle(url, response)

    def _get_json(self, path: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise TransportError(f"Facilitator at {url} unreachable: {exc}") from exc
        return self._handle(url, response)

    def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerificationOutcome:
        logger.info(f"Submitting payment for verification to {self.base_url}/verify")
        result = VerifyResponse.model_validate(self._post_json("/verify", _request_body(payload, requirements)))
        return VerificationOutcome(
            is_valid=result.is_valid,
            invalid_reason=result.invalid_reason,
            payer=result.payer,
        )

    def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettlementOutcome:
        logger.info(f"Submitting payment for settlement to {self.base_url}/settle")
        result = SettleResponse.model_validate(self._post_json("/settle", _request_body(payload, requirements)))
        return SettlementOutcome(
            success=result.success,
            error=result.error,
            tx_hash=result.tx_hash,
            network_id=result.network_id,
            payer=result.payer,
            pending=result.error in (TIMEOUT, SETTLEMENT_IN_PROGRESS),
        )

    def supported(self) -> List[SchemeKey]:
        result = SupportedResponse.model_validate(self._get_json("/supported"))
        return [SchemeKey(kind.scheme, kind.network) for kind in result.kinds]
