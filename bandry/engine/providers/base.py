"""Abstract base for model execution.

A ModelsFactory executes or streams one model call given resolved
credentials. Concrete transports (HTTP APIs, retries, stream decoding)
live outside the engine; the engine only depends on this contract.
"""
from __future__ import annotations

import abc
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..models import AbortSignal, LlmMessage

if TYPE_CHECKING:
    from ..model_routing import RuntimeConfig

logger = logging.getLogger(__name__)


@dataclass
class GenerateTextRequest:
    """Parameters for one model call."""
    runtime_config: RuntimeConfig
    model: str
    messages: list[LlmMessage]
    temperature: float | None = None
    max_tokens: int | None = None
    abort_signal: AbortSignal | None = None

    @property
    def provider(self) -> str:
        return self.runtime_config.provider


@dataclass
class GenerateTextResult:
    """Result from a model invocation."""
    provider: str
    model: str
    text: str
    latency_ms: int = 0
    usage: dict[str, Any] = field(default_factory=dict)


class ModelsFactory(abc.ABC):
    """Abstract model-call interface.

    Implementations must honor request.abort_signal for in-flight I/O
    and raise on failure; the engine annotates and rethrows.
    """

    @abc.abstractmethod
    async def generate_text(
        self, request: GenerateTextRequest,
    ) -> GenerateTextResult:
        """Run one non-streaming completion."""

    @abc.abstractmethod
    async def generate_text_stream(
        self,
        request: GenerateTextRequest,
        on_delta: Callable[[str], None],
    ) -> GenerateTextResult:
        """Run one streaming completion.

        Calls on_delta for each text fragment as it arrives and returns
        the aggregated result once the stream ends.
        """

    async def shutdown(self) -> None:
        """Clean up resources (e.g. close HTTP sessions).

        Default no-op. Override in factories that hold connections.
        """
        return None
