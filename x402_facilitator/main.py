import logging
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from hexbytes import HexBytes

from x402_facilitator.codec import SUPPORTED_VERSIONS, decode_payment_header, parse_payment_payload
from x402_facilitator.config import FacilitatorSettings
from x402_facilitator.errors import ConfigError, DecodeError, DecodeErrorKind, TransportError
from x402_facilitator.facilitator import Facilitator, build_facilitator
from x402_facilitator.schemas import (
    PaymentPayload,
    SettleRequest,
    SettleResponse,
    SupportedKind,
    SupportedResponse,
    VerifyRequest,
    VerifyResponse,
)

logger = logging.getLogger(__name__)


app = FastAPI(title="Facilitator")


@lru_cache(maxsize=1)
def get_facilitator() -> Facilitator:
    return build_facilitator(FacilitatorSettings.from_env())


def _payment_payload(request: VerifyRequest) -> PaymentPayload:
    if request.x402_version not in SUPPORTED_VERSIONS:
        raise DecodeError(DecodeErrorKind.UNSUPPORTED_VERSION, f"x402Version {request.x402_version} is not supported")
    if request.payment_header:
        return decode_payment_header(request.payment_header)
    if request.payment_payload is not None:
        return parse_payment_payload(request.payment_payload)
    raise DecodeError(DecodeErrorKind.MISSING_FIELD, "paymentHeader is required")


@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError):
    logger.warning(f"Chain RPC unavailable while handling {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"error": str(exc), "retryable": True})


@app.exception_handler(ConfigError)
async def config_error_handler(request: Request, exc: ConfigError):
    logger.error(f"Facilitator misconfigured: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc), "retryable": False})


@app.post("/verify", response_model=VerifyResponse)
def verify(request: VerifyRequest, facilitator: Facilitator = Depends(get_facilitator)):
    logger.info("Verifying payment")

    try:
        payment = _payment_payload(request)
    except DecodeError as e:
        logger.info(f"Undecodable payment: {e.reason}")
        return VerifyResponse(is_valid=False, invalid_reason=e.reason)

    outcome = facilitator.verify(payment, request.payment_requirements)
    if outcome.is_valid:
        logger.info("Payment verified successfully")
    return outcome.to_response()


@app.post("/settle", response_model=SettleResponse)
def settle(request: SettleRequest, facilitator: Facilitator = Depends(get_facilitator)):
    logger.info("Settling payment")

    try:
        payment = _payment_payload(request)
    except DecodeError as e:
        logger.info(f"Undecodable payment: {e.reason}")
        return SettleResponse(success=False, error=e.reason, network_id=request.payment_requirements.network)

    return facilitator.settle(payment, request.payment_requirements).to_response()


@app.get("/supported", response_model=SupportedResponse)
def supported(facilitator: Facilitator = Depends(get_facilitator)):
    return SupportedResponse(
        kinds=[SupportedKind(scheme=key.scheme, network=key.network) for key in facilitator.supported()]
    )


@app.get("/settlements/{idempotency_key}", response_model=SettleResponse)
def settlement(idempotency_key: str, facilitator: Facilitator = Depends(get_facilitator)):
    try:
        key = bytes(HexBytes(idempotency_key))
    except ValueError:
        raise HTTPException(status_code=404, detail="Unknown idempotency key") from None

    outcome = facilitator.lookup(key)
    if outcome is None:
        raise HTTPException(status_code=404, detail="Unknown idempotency key")
    return outcome.to_response()


@app.get("/health")
def health(facilitator: Facilitator = Depends(get_facilitator)):
    return {"status": "ok", "networks": sorted({key.network for key in facilitator.supported()})}
