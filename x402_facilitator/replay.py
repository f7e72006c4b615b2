"""
Replay guard: the only cross-request mutable state of the facilitator.

A payment's idempotency key is reserved by exactly one settlement attempt.
Every other caller holding the same key either sees the committed outcome or
waits for it; none of them may submit to the chain.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from redis import Redis, WatchError

from x402_facilitator.errors import ReplayConflict
from x402_facilitator.schemas import PaymentRequirements, SettlementOutcome

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class ReplayRecord:
    idempotency_key: bytes
    first_seen_at: float
    expires_at: float
    outcome: Optional[SettlementOutcome] = None
    requirements: Optional[PaymentRequirements] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "idempotencyKey": self.idempotency_key.hex(),
                "firstSeenAt": self.first_seen_at,
                "expiresAt": self.expires_at,
                "outcome": self.outcome.to_dict() if self.outcome else None,
                "requirements": self.requirements.to_wire() if self.requirements else None,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "ReplayRecord":
        data: Dict[str, Any] = json.loads(raw)
        outcome = data.get("outcome")
        requirements = data.get("requirements")
        return cls(
            idempotency_key=bytes.fromhex(data["idempotencyKey"]),
            first_seen_at=float(data["firstSeenAt"]),
            expires_at=float(data["expiresAt"]),
            outcome=SettlementOutcome.from_dict(outcome) if outcome else None,
            requirements=PaymentRequirements.model_validate(requirements) if requirements else None,
        )


@dataclass(frozen=True)
class Reservation:
    """Result of :meth:`ReplayGuard.reserve`.

    ``won`` is true for the single caller allowed to settle. Losers get the
    existing outcome, or ``None`` while the winner is still running.
    """

    won: bool
    outcome: Optional[SettlementOutcome] = None


class ReplayGuard(Protocol):
    def reserve(self, idempotency_key: bytes) -> Reservation:
        ...

    def commit(
        self,
        idempotency_key: bytes,
        outcome: SettlementOutcome,
        requirements: Optional[PaymentRequirements] = None,
    ) -> None:
        ...

    def release(self, idempotency_key: bytes) -> None:
        ...

    def lookup(self, idempotency_key: bytes) -> Optional[SettlementOutcome]:
        ...

    def record(self, idempotency_key: bytes) -> Optional[ReplayRecord]:
        ...

    def wait(self, idempotency_key: bytes, timeout: float) -> Optional[SettlementOutcome]:
        ...


def _check_overwrite(existing: Optional[ReplayRecord], outcome: SettlementOutcome) -> None:
    # A final outcome may only be replaced by itself
    if existing is None or existing.outcome is None or existing.outcome.pending:
        return
    if existing.outcome != outcome:
        raise ReplayConflict(existing.idempotency_key)


class InMemoryReplayGuard:
    """Process-local guard backed by a dict and a condition variable."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: Dict[bytes, ReplayRecord] = {}
        self._cond = threading.Condition()

    def _live(self, key: bytes, now: float) -> Optional[ReplayRecord]:
        record = self._records.get(key)
        if record is not None and record.expires_at <= now:
            del self._records[key]
            return None
        return record

    def reserve(self, idempotency_key: bytes) -> Reservation:
        with self._cond:
            now = self._clock()
            existing = self._live(idempotency_key, now)
            if existing is not None:
                return Reservation(won=False, outcome=existing.outcome)
            self._records[idempotency_key] = ReplayRecord(
                idempotency_key=idempotency_key,
                first_seen_at=now,
                expires_at=now + self.ttl_seconds,
            )
            return Reservation(won=True)

    def commit(
        self,
        idempotency_key: bytes,
        outcome: SettlementOutcome,
        requirements: Optional[PaymentRequirements] = None,
    ) -> None:
        with self._cond:
            now = self._clock()
            existing = self._live(idempotency_key, now)
            _check_overwrite(existing, outcome)
            self._records[idempotency_key] = ReplayRecord(
                idempotency_key=idempotency_key,
                first_seen_at=existing.first_seen_at if existing else now,
                expires_at=now + self.ttl_seconds,
                outcome=outcome,
                requirements=requirements or (existing.requirements if existing else None),
            )
            self._cond.notify_all()

    def release(self, idempotency_key: bytes) -> None:
        with self._cond:
            record = self._records.get(idempotency_key)
            if record is not None and record.outcome is None:
                del self._records[idempotency_key]
                self._cond.notify_all()

    def lookup(self, idempotency_key: bytes) -> Optional[SettlementOutcome]:
        record = self.record(idempotency_key)
        return record.outcome if record else None

    def record(self, idempotency_key: bytes) -> Optional[ReplayRecord]:
        with self._cond:
            return self._live(idempotency_key, self._clock())

    def wait(self, idempotency_key: bytes, timeout: float) -> Optional[SettlementOutcome]:
        """Block until the key is committed or released, at most ``timeout`` seconds.

        An outcome still marked in flight does not end the wait.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                record = self._live(idempotency_key, self._clock())
                if record is None:
                    return None
                if record.outcome is not None and not record.outcome.in_flight:
                    return record.outcome
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def purge_expired(self) -> int:
        with self._cond:
            now = self._clock()
            expired = [key for key, record in self._records.items() if record.expires_at <= now]
            for key in expired:
                del self._records[key]
            return len(expired)

    def __len__(self) -> int:
        with self._cond:
            return len(self._records)


class RedisReplayGuard:
    """Guard shared by every worker through Redis.

    Reservation is ``SET NX EX``, so it is atomic across processes and
    survives restarts; records expire through Redis TTLs.
    """

    def __init__(
        self,
        client: Redis,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        prefix: str = "x402:replay:",
        poll_interval: float = 0.1,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self.ttl_seconds = ttl_seconds
        self._prefix = prefix
        self._poll_interval = poll_interval
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisReplayGuard":
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, idempotency_key: bytes) -> str:
        return self._prefix + idempotency_key.hex()

    def reserve(self, idempotency_key: bytes) -> Reservation:
        now = self._clock()
        record = ReplayRecord(
            idempotency_key=idempotency_key,
            first_seen_at=now,
            expires_at=now + self.ttl_seconds,
        )
        if self._client.set(self._key(idempotency_key), record.to_json(), nx=True, ex=self.ttl_seconds):
            return Reservation(won=True)
        existing = self.record(idempotency_key)
        if existing is None:
            # Expired or released between SET and GET
            return self.reserve(idempotency_key)
        return Reservation(won=False, outcome=existing.outcome)

    def commit(
        self,
        idempotency_key: bytes,
        outcome: SettlementOutcome,
        requirements: Optional[PaymentRequirements] = None,
    ) -> None:
        key = self._key(idempotency_key)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    existing = ReplayRecord.from_json(raw) if raw is not None else None
                    _check_overwrite(existing, outcome)
                    now = self._clock()
                    record = ReplayRecord(
                        idempotency_key=idempotency_key,
                        first_seen_at=existing.first_seen_at if existing else now,
                        expires_at=now + self.ttl_seconds,
                        outcome=outcome,
                        requirements=requirements or (existing.requirements if existing else None),
                    )
                    pipe.multi()
                    pipe.set(key, record.to_json(), ex=self.ttl_seconds)
                    pipe.execute()
                    return
                except WatchError:
                    # Written concurrently; check the new record again
                    continue

    def release(self, idempotency_key: bytes) -> None:
        key = self._key(idempotency_key)
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                if raw is None or ReplayRecord.from_json(raw).outcome is not None:
                    pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
            except WatchError:
                # Committed concurrently; the outcome must be kept
                logger.info(f"Reservation {idempotency_key.hex()} was committed while releasing")

    def lookup(self, idempotency_key: bytes) -> Optional[SettlementOutcome]:
        record = self.record(idempotency_key)
        return record.outcome if record else None

    def record(self, idempotency_key: bytes) -> Optional[ReplayRecord]:
        raw = self._client.get(self._key(idempotency_key))
        if raw is None:
            return None
        return ReplayRecord.from_json(raw)

    def wait(self, idempotency_key: bytes, timeout: float) -> Optional[SettlementOutcome]:
        deadline = time.monotonic() + timeout
        while True:
            record = self.record(idempotency_key)
            if record is None:
                return None
            if record.outcome is not None and not record.outcome.in_flight:
                return record.outcome
            if time.monotonic() >= deadline:
                return None
            time.sleep(self._poll_interval)


__all__ = [
    "DEFAULT_TTL_SECONDS",
    "InMemoryReplayGuard",
    "RedisReplayGuard",
    "ReplayGuard",
    "ReplayRecord",
    "Reservation",
]
