from dataclasses import dataclass, replace
from typing import Any, Dict, List, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from x402_facilitator.errors import SETTLEMENT_IN_PROGRESS

X402_VERSION = 1


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class FrozenCamelModel(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        frozen=True,
    )


class PaymentRequirements(FrozenCamelModel):
    scheme: str
    network: str
    max_amount_required: str
    resource: str = ""
    description: str = ""
    mime_type: str = "application/json"
    pay_to: str
    max_timeout_seconds: int = Field(default=60, gt=0)
    asset: str
    output_schema: Optional[Dict[str, Any]] = None
    extra: Optional[Dict[str, Any]] = None

    @field_validator("max_amount_required", mode="before")
    @classmethod
    def _atomic_units(cls, value: Any) -> str:
        # JSON clients send both "1000000" and 1000000
        if isinstance(value, bool):
            raise ValueError("maxAmountRequired must be an integer string")
        if isinstance(value, int):
            value = str(value)
        if not isinstance(value, str) or not value.isdigit():
            raise ValueError("maxAmountRequired must be a non-negative integer string")
        return value

    @property
    def amount(self) -> int:
        return int(self.max_amount_required)


class PaymentPayload(FrozenCamelModel):
    x402_version: int
    scheme: str
    network: str
    payload: Dict[str, Any]


class ExactEvmAuthorization(CamelModel):
    from_: str = Field(alias="from")
    to: str
    value: str
    valid_after: str
    valid_before: str
    nonce: str

    @field_validator("value", "valid_after", "valid_before", mode="before")
    @classmethod
    def _integer_string(cls, value: Any) -> str:
        if isinstance(value, bool):
            raise ValueError("expected an integer")
        if isinstance(value, int):
            return str(value)
        if not isinstance(value, str) or not value.isdigit():
            raise ValueError("expected a non-negative integer string")
        return value


class ExactEvmAuthorizationPayload(CamelModel):
    signature: str
    authorization: ExactEvmAuthorization
    asset: Optional[str] = None


class ExactEvmTransactionPayload(CamelModel):
    transaction: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ExactEvmTransactionPayload":
        raw = payload.get("transaction") or payload.get("rawTransaction")
        return cls.model_validate({"transaction": raw})


ExactEvmPayload = Union[ExactEvmAuthorizationPayload, ExactEvmTransactionPayload]


class ExactSvmPayload(CamelModel):
    # Base64 wire-format Solana transaction, fully signed by the payer
    transaction: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ExactSvmPayload":
        raw = payload.get("transaction") or payload.get("serializedTransaction")
        return cls.model_validate({"transaction": raw})


class VerifyRequest(CamelModel):
    x402_version: int
    payment_header: Optional[str] = None
    payment_payload: Optional[Dict[str, Any]] = None
    payment_requirements: PaymentRequirements


class SettleRequest(VerifyRequest):
    pass


class VerifyResponse(CamelModel):
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None


class SettleResponse(CamelModel):
    success: bool
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    network_id: Optional[str] = None
    payer: Optional[str] = None


class SupportedKind(CamelModel):
    x402_version: int = X402_VERSION
    scheme: str
    network: str


class SupportedResponse(CamelModel):
    kinds: List[SupportedKind]


class PaymentRequiredResponse(CamelModel):
    x402_version: int = X402_VERSION
    accepts: List[PaymentRequirements]
    error: str


class SchemeKey(NamedTuple):
    scheme: str
    network: str


@dataclass(frozen=True)
class VerificationOutcome:
    is_valid: bool
    invalid_reason: Optional[str] = None
    idempotency_key: bytes = b""
    payer: Optional[str] = None

    @classmethod
    def valid(cls, idempotency_key: bytes, payer: Optional[str] = None) -> "VerificationOutcome":
        return cls(is_valid=True, idempotency_key=idempotency_key, payer=payer)

    @classmethod
    def invalid(cls, reason: str, idempotency_key: bytes = b"", payer: Optional[str] = None) -> "VerificationOutcome":
        return cls(is_valid=False, invalid_reason=reason, idempotency_key=idempotency_key, payer=payer)

    def to_response(self) -> VerifyResponse:
        return VerifyResponse(is_valid=self.is_valid, invalid_reason=self.invalid_reason, payer=self.payer)


@dataclass(frozen=True)
class SettlementOutcome:
    success: bool
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    network_id: Optional[str] = None
    payer: Optional[str] = None
    # True while the chain result of a submitted transaction is unknown
    pending: bool = False
    # Signed bytes (0x hex) whose submission the node has not acknowledged
    raw_transaction: Optional[str] = None

    @classmethod
    def failure(cls, error: str, network_id: Optional[str] = None, **kwargs: Any) -> "SettlementOutcome":
        return cls(success=False, error=error, network_id=network_id, **kwargs)

    @property
    def in_flight(self) -> bool:
        """The settling caller is still submitting; others wait for it."""
        return self.pending and self.error == SETTLEMENT_IN_PROGRESS

    def resolved(self, **changes: Any) -> "SettlementOutcome":
        return replace(self, pending=False, raw_transaction=None, **changes)

    def to_response(self) -> SettleResponse:
        return SettleResponse(
            success=self.success,
            error=self.error,
            tx_hash=self.tx_hash,
            network_id=self.network_id,
            payer=self.payer,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "txHash": self.tx_hash,
            "networkId": self.network_id,
            "payer": self.payer,
            "pending": self.pending,
            "rawTransaction": self.raw_transaction,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementOutcome":
        return cls(
            success=bool(data.get("success")),
            error=data.get("error"),
            tx_hash=data.get("txHash"),
            network_id=data.get("networkId"),
            payer=data.get("payer"),
            pending=bool(data.get("pending", False)),
            raw_transaction=data.get("rawTransaction"),
        )
