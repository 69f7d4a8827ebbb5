"""Model-call contract and outbound rate limiting."""
from .base import GenerateTextRequest, GenerateTextResult, ModelsFactory
from .rate_limiter import RateLimitedModelsFactory, RateLimiter

__all__ = [
    "GenerateTextRequest",
    "GenerateTextResult",
    "ModelsFactory",
    "RateLimitedModelsFactory",
    "RateLimiter",
]
