"""
Encoding and decoding of the x402 header values.

``X-PAYMENT`` carries a base64 JSON :class:`PaymentPayload`;
``X-PAYMENT-RESPONSE`` carries a base64 JSON settlement summary. Only the
envelope is checked here, the scheme-specific ``payload`` object is left to
the scheme verifier.
"""
import base64
import binascii
import json
from typing import Any, Dict, Mapping

from pydantic import ValidationError

from x402_facilitator.errors import DecodeError, DecodeErrorKind
from x402_facilitator.schemas import PaymentPayload, PaymentRequirements, SettlementOutcome

SUPPORTED_VERSIONS = frozenset({1})


def _b64decode(value: str) -> bytes:
    text = value.strip()
    if not text:
        raise DecodeError(DecodeErrorKind.MALFORMED_ENCODING, "payment header is empty")
    # Accept URL-safe alphabet and missing padding
    text = text.replace("-", "+").replace("_", "/")
    text += "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(DecodeErrorKind.MALFORMED_ENCODING, f"invalid base64: {exc}") from exc


def _b64encode_json(data: Mapping[str, Any]) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def _decode_json_object(value: str) -> Dict[str, Any]:
    raw = _b64decode(value)
    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(DecodeErrorKind.MALFORMED_ENCODING, f"invalid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise DecodeError(DecodeErrorKind.MALFORMED_ENCODING, "payment header must encode a JSON object")
    return obj


def parse_payment_payload(obj: Mapping[str, Any]) -> PaymentPayload:
    """Validate an already-decoded payment payload object."""
    version = obj.get("x402Version")
    if version is None:
        raise DecodeError(DecodeErrorKind.MISSING_FIELD, "x402Version is required")
    if isinstance(version, bool) or not isinstance(version, int):
        raise DecodeError(DecodeErrorKind.UNSUPPORTED_VERSION, f"x402Version must be an integer, got {version!r}")
    if version not in SUPPORTED_VERSIONS:
        raise DecodeError(DecodeErrorKind.UNSUPPORTED_VERSION, f"x402Version {version} is not supported")

    for name in ("scheme", "network"):
        value = obj.get(name)
        if not isinstance(value, str) or not value.strip():
            raise DecodeError(DecodeErrorKind.MISSING_FIELD, f"{name} must be a non-empty string")

    payload = obj.get("payload")
    if not isinstance(payload, dict):
        raise DecodeError(DecodeErrorKind.MISSING_FIELD, "payload must be an object")

    return PaymentPayload(
        x402_version=version,
        scheme=obj["scheme"],
        network=obj["network"],
        payload=payload,
    )


def decode_payment_header(header: str) -> PaymentPayload:
    return parse_payment_payload(_decode_json_object(header))


def encode_payment_header(payload: PaymentPayload) -> str:
    return _b64encode_json(payload.to_wire())


def parse_payment_requirements(data: Mapping[str, Any]) -> PaymentRequirements:
    try:
        return PaymentRequirements.model_validate(dict(data))
    except ValidationError as exc:
        raise DecodeError(DecodeErrorKind.MISSING_FIELD, f"invalid payment requirements: {exc}") from exc


def encode_payment_response(outcome: SettlementOutcome) -> str:
    """Build the ``X-PAYMENT-RESPONSE`` header value."""
    return _b64encode_json(
        {
            "success": outcome.success,
            "transaction": outcome.tx_hash,
            "network": outcome.network_id,
            "payer": outcome.payer,
        }
    )


def decode_payment_response(header: str) -> Dict[str, Any]:
    return _decode_json_object(header)
