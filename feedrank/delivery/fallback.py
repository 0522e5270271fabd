"""Ordered fallback over delivery strategies.

Strategies run left to right; the first success ends the chain. A failure
(DeliveryError) only advances to the next strategy, and when every strategy
has failed the last error is raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from feedrank.delivery.models import DeliveryHandle
from feedrank.errors import DeliveryError

logger = logging.getLogger(__name__)


@dataclass
class Strategy:
    name: str
    send: Callable[[], Awaitable[DeliveryHandle]]


@dataclass
class Attempt:
    strategy: str
    handle: DeliveryHandle | None = None
    error: DeliveryError | None = None

    @property
    def ok(self) -> bool:
        return self.handle is not None


@dataclass
class FallbackChain:
    strategies: list[Strategy]
    attempts: list[Attempt] = field(default_factory=list)

    async def run(self) -> Attempt:
        if not self.strategies:
            raise DeliveryError("No delivery strategy applies")

        last_error: DeliveryError | None = None
        for strategy in self.strategies:
            try:
                handle = await strategy.send()
            except DeliveryError as exc:
                attempt = Attempt(strategy=strategy.name, error=exc)
                self.attempts.append(attempt)
                last_error = exc
                logger.info("Strategy %s failed, falling back: %s", strategy.name, exc)
                continue

            attempt = Attempt(strategy=strategy.name, handle=handle)
            self.attempts.append(attempt)
            return attempt

        raise last_error
