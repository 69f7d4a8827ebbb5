"""Per-provider outbound rate limiting.

Every call to a given provider passes through that provider's
RateLimiter: one call admitted at a time, spaced by at least
1 / requests_per_second. Limiters are shared by all concurrent
requests that use the same RateLimitedModelsFactory instance.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from .base import GenerateTextRequest, GenerateTextResult, ModelsFactory

logger = logging.getLogger(__name__)


class RateLimiter:
    """Serializes admissions with a minimum interval between them."""

    def __init__(
        self,
        rate_per_second: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0
        self._clock = clock
        self._lock = asyncio.Lock()
        self._next_available_at = 0.0

    @property
    def interval_seconds(self) -> float:
        return self._interval

    async def wait_turn(self) -> None:
        """Block until this caller may issue its request."""
        if self._interval <= 0:
            return
        async with self._lock:
            now = self._clock()
            wait = self._next_available_at - now
            if wait > 0:
                await asyncio.sleep(wait)
                now = self._clock()
            self._next_available_at = max(self._next_available_at, now) + self._interval


class RateLimitedModelsFactory(ModelsFactory):
    """Wraps a ModelsFactory with one RateLimiter per provider."""

    def __init__(
        self,
        inner: ModelsFactory,
        rates: dict[str, float] | None = None,
    ) -> None:
        self._inner = inner
        self._rates = dict(rates or {})
        self._limiters: dict[str, RateLimiter] = {}

    @classmethod
    def from_config(cls, inner: ModelsFactory, config) -> RateLimitedModelsFactory:
        """Build from AppConfig.providers[*].requests_per_second."""
        rates = {
            name: provider.requests_per_second
            for name, provider in config.providers.items()
            if provider.requests_per_second > 0
        }
        return cls(inner, rates)

    def limiter_for(self, provider: str) -> RateLimiter:
        limiter = self._limiters.get(provider)
        if limiter is None:
            limiter = RateLimiter(self._rates.get(provider, 0.0))
            self._limiters[provider] = limiter
            logger.debug(
                "Rate limiter created provider=%s interval=%.3fs",
                provider, limiter.interval_seconds,
            )
        return limiter

    async def generate_text(
        self, request: GenerateTextRequest,
    ) -> GenerateTextResult:
        await self.limiter_for(request.provider).wait_turn()
        return await self._inner.generate_text(request)

    async def generate_text_stream(
        self,
        request: GenerateTextRequest,
        on_delta: Callable[[str], None],
    ) -> GenerateTextResult:
        await self.limiter_for(request.provider).wait_turn()
        return await self._inner.generate_text_stream(request, on_delta)

    async def shutdown(self) -> None:
        await self._inner.shutdown()
