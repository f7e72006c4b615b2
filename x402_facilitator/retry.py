"""
Bounded exponential backoff for chain RPC calls.

Retries only ever repeat the same request. Callers that submit transactions
pass the already-signed bytes so a retry can never produce a second transfer.
"""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from x402_facilitator.errors import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Retry settings.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retrying)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor between consecutive delays
        jitter: Fraction of the delay randomly added or removed
    """

    max_retries: int = 3
    base_delay: float = 0.25
    max_delay: float = 4.0
    exponential_base: float = 2.0
    jitter: float = 0.2

    def calculate_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter > 0:
            spread = delay * self.jitter
            delay += random.uniform(-spread, spread)
        return max(0.0, delay)


NO_RETRY = RetryConfig(max_retries=0)


def call_with_retries(
    fn: Callable[[], T],
    config: RetryConfig,
    retryable: Tuple[Type[BaseException], ...] = (TransportError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 0
    while True:
        try:
            return fn()
        except retryable as exc:
            if attempt >= config.max_retries:
                raise
            delay = config.calculate_delay(attempt)
            attempt += 1
            logger.warning(
                "Transient RPC failure (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                config.max_retries,
                delay,
                exc,
            )
            sleep(delay)
