from enum import Enum
from typing import Optional, Sequence

# Reason strings returned in invalidReason / error fields
INSUFFICIENT_AMOUNT = "insufficient amount"
INSUFFICIENT_AMOUNT_RECEIVED = "insufficient amount received"
RECIPIENT_MISMATCH = "recipient mismatch"
ASSET_MISMATCH = "asset mismatch"
SCHEME_MISMATCH = "scheme mismatch"
NETWORK_MISMATCH = "network mismatch"
INVALID_SIGNATURE = "invalid signature"
INVALID_PAYLOAD = "invalid payload"
AUTHORIZATION_EXPIRED = "authorization expired"
AUTHORIZATION_NOT_YET_VALID = "authorization not yet valid"
AUTHORIZATION_USED = "authorization already used"
INSUFFICIENT_FEE_FUNDS = "insufficient funds for fee"
UNSUPPORTED_SCHEME = "unsupported scheme"
TRANSACTION_REVERTED = "transaction reverted"
TIMEOUT = "timeout"
SETTLEMENT_IN_PROGRESS = "settlement in progress"


class X402Error(Exception):
    """Base class for every error raised by the facilitator."""


class DecodeErrorKind(str, Enum):
    MALFORMED_ENCODING = "malformed_encoding"
    UNSUPPORTED_VERSION = "unsupported_version"
    MISSING_FIELD = "missing_field"


class DecodeError(X402Error):
    """The payment header or body could not be decoded."""

    def __init__(self, kind: DecodeErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def reason(self) -> str:
        return f"{self.kind.value}: {self.message}"


class NoMatchError(X402Error):
    """No accepted requirement or registered scheme matches the payload."""

    def __init__(self, scheme: str, network: str, accepts: Sequence = ()):
        super().__init__(f"No payment requirement accepts scheme '{scheme}' on network '{network}'")
        self.scheme = scheme
        self.network = network
        self.accepts = tuple(accepts)


class SemanticValidationError(X402Error):
    """A payload is well formed but does not satisfy the requirement."""

    def __init__(self, reason: str, detail: Optional[str] = None):
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail


class TransportError(X402Error):
    """The chain RPC could not be reached; the outcome is unknown, not rejected."""


class ReplayConflict(X402Error):
    """An idempotency key already holds a final settlement outcome."""

    def __init__(self, idempotency_key: bytes):
        super().__init__(f"Settlement for {idempotency_key.hex()} is already final")
        self.idempotency_key = idempotency_key


class ChainRejection(X402Error):
    """The chain refused or reverted the transfer. Terminal for the payload."""

    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.tx_hash = tx_hash


class ConfigError(X402Error):
    """Raised when the supplied configuration is invalid."""
