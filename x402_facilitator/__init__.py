"""
x402 payment facilitator: verification, replay-safe settlement and the
resource-server paywall.
"""

from .client import FacilitatorClient
from .codec import (
    decode_payment_header,
    decode_payment_response,
    encode_payment_header,
    encode_payment_response,
)
from .config import RELEASE_ON_SETTLE, RELEASE_ON_VERIFY, FacilitatorSettings
from .errors import (
    ChainRejection,
    ConfigError,
    DecodeError,
    NoMatchError,
    ReplayConflict,
    SemanticValidationError,
    TransportError,
    X402Error,
)
from .facilitator import Facilitator, build_facilitator
from .paywall import GateDecision, PaymentGate, X402PaywallMiddleware
from .registry import RequirementRegistry, SchemeRegistry, select
from .replay import InMemoryReplayGuard, RedisReplayGuard
from .schemas import (
    PaymentPayload,
    PaymentRequirements,
    SchemeKey,
    SettlementOutcome,
    VerificationOutcome,
)
from .schemes import ExactEvmVerifier, ExactSvmVerifier
from .settlement import SettlementExecutor, SvmSettlementExecutor
from .solana import SolanaChainClient

__all__ = [
    "ChainRejection",
    "ConfigError",
    "DecodeError",
    "ExactEvmVerifier",
    "ExactSvmVerifier",
    "Facilitator",
    "FacilitatorClient",
    "FacilitatorSettings",
    "GateDecision",
    "InMemoryReplayGuard",
    "NoMatchError",
    "PaymentGate",
    "PaymentPayload",
    "PaymentRequirements",
    "RELEASE_ON_SETTLE",
    "RELEASE_ON_VERIFY",
    "RedisReplayGuard",
    "ReplayConflict",
    "RequirementRegistry",
    "SchemeKey",
    "SchemeRegistry",
    "SemanticValidationError",
    "SettlementExecutor",
    "SettlementOutcome",
    "SolanaChainClient",
    "SvmSettlementExecutor",
    "TransportError",
    "VerificationOutcome",
    "X402Error",
    "X402PaywallMiddleware",
    "build_facilitator",
    "decode_payment_header",
    "decode_payment_response",
    "encode_payment_header",
    "encode_payment_response",
    "select",
]
