"""
Requirement and scheme registries.

``RequirementRegistry`` answers "what does this resource accept?" and picks
the requirement a payload pays against. ``SchemeRegistry`` is the dispatch
table from ``(scheme, network)`` to the verifier and settler registered for
it at startup.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from x402_facilitator.errors import NoMatchError
from x402_facilitator.schemas import (
    PaymentPayload,
    PaymentRequirements,
    SchemeKey,
    SettlementOutcome,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)


class SchemeVerifier(Protocol):
    def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerificationOutcome:
        ...

    def idempotency_key(self, payload: PaymentPayload) -> bytes:
        """Key of a payload from its structure alone; raises SemanticValidationError."""
        ...


class SchemeSettler(Protocol):
    def settle(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        verification: Optional[VerificationOutcome] = None,
        deadline: Optional[float] = None,
        checkpoint: Optional[Callable[[SettlementOutcome], None]] = None,
    ) -> SettlementOutcome:
        ...

    def recheck(
        self,
        outcome: SettlementOutcome,
        requirements: PaymentRequirements,
        deadline: Optional[float] = None,
    ) -> SettlementOutcome:
        ...


@dataclass(frozen=True)
class SchemeHandler:
    key: SchemeKey
    verifier: SchemeVerifier
    settler: Optional[SchemeSettler] = None


class SchemeRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[SchemeKey, SchemeHandler] = {}

    def register(
        self,
        scheme: str,
        network: str,
        verifier: SchemeVerifier,
        settler: Optional[SchemeSettler] = None,
    ) -> "SchemeRegistry":
        key = SchemeKey(scheme, network)
        if key in self._handlers:
            raise ValueError(f"Scheme '{scheme}' is already registered for network '{network}'")
        self._handlers[key] = SchemeHandler(key=key, verifier=verifier, settler=settler)
        logger.info(f"Registered scheme {scheme} on {network}")
        return self

    def get(self, key: SchemeKey) -> SchemeHandler:
        try:
            return self._handlers[key]
        except KeyError:
            raise NoMatchError(key.scheme, key.network) from None

    def supported(self) -> List[SchemeKey]:
        return list(self._handlers)

    def __contains__(self, key: object) -> bool:
        return key in self._handlers


class RequirementRegistry:
    """Per-resource accepted requirements, kept in preference order."""

    def __init__(self) -> None:
        self._routes: Dict[str, List[PaymentRequirements]] = {}
        self._lock = threading.Lock()

    def add(self, resource_path: str, requirements: Iterable[PaymentRequirements]) -> "RequirementRegistry":
        with self._lock:
            self._routes.setdefault(resource_path, []).extend(requirements)
        return self

    def requirements_for(self, resource_path: str) -> Tuple[PaymentRequirements, ...]:
        with self._lock:
            # Exact match
            if resource_path in self._routes:
                return tuple(self._routes[resource_path])

            # Longest prefix match (e.g. /premium matches /premium/report)
            candidates = [
                route
                for route in self._routes
                if resource_path.startswith(route.rstrip("/") + "/")
            ]
            if not candidates:
                return ()
            return tuple(self._routes[max(candidates, key=len)])

    def paths(self) -> List[str]:
        with self._lock:
            return list(self._routes)


def select(payload: PaymentPayload, requirements: Sequence[PaymentRequirements]) -> PaymentRequirements:
    """Return the first requirement matching the payload's scheme and network."""
    for requirement in requirements:
        if requirement.scheme == payload.scheme and requirement.network == payload.network:
            return requirement
    raise NoMatchError(payload.scheme, payload.network, accepts=requirements)
