"""Exception hierarchy for the chat orchestration engine.

Specific exceptions for each failure mode. Tool failures are not
exceptions: they travel as ToolObservation(ok=False).
"""
from __future__ import annotations

import asyncio


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class EmptyMessageError(OrchestrationError):
    """The user message was empty or whitespace only."""
    def __init__(self) -> None:
        super().__init__("message is required")


class RoutingError(OrchestrationError):
    """A model role could not be bound to a usable provider/model."""
    def __init__(
        self,
        role: str,
        reason: str,
        profile_id: str | None = None,
        provider: str | None = None,
        model: str | None = None,
    ):
        self.role = role
        self.reason = reason
        self.profile_id = profile_id
        self.provider = provider
        self.model = model
        binding = f"role={role}"
        if profile_id:
            binding += f" profile={profile_id}"
        if provider:
            binding += f" provider={provider}"
            if model:
                binding += f" model={provider}/{model}"
        super().__init__(
            f"[{binding}] {reason}. "
            f"Bind a model profile for '{role}' in Settings."
        )


class ModelCallError(OrchestrationError):
    """A model call failed; annotated with the role binding it used."""
    def __init__(
        self,
        role: str,
        profile_id: str,
        provider: str,
        model: str,
        reason: str,
    ):
        self.role = role
        self.profile_id = profile_id
        self.provider = provider
        self.model = model
        self.reason = reason
        super().__init__(
            f"[{role} profile={profile_id} model={provider}/{model}] "
            f"model call failed: {reason}"
        )


class MiddlewareError(OrchestrationError):
    """A middleware hook raised; aborts the pipeline."""
    def __init__(self, middleware: str, phase: str, reason: str):
        self.middleware = middleware
        self.phase = phase
        self.reason = reason
        super().__init__(f"{middleware} failed at {phase}: {reason}")


class MiddlewareOrderError(OrchestrationError):
    """A pipeline was assembled in an order that breaks its contract."""
    def __init__(self, reason: str, names: list[str]):
        self.reason = reason
        self.names = names
        super().__init__(
            f"Invalid middleware order ({' -> '.join(names) or 'empty'}): "
            f"{reason}"
        )


class CancellationError(OrchestrationError):
    """The request was cancelled through its abort signal."""
    def __init__(self, where: str = ""):
        self.where = where
        message = "Request cancelled by user"
        if where:
            message += f" ({where})"
        super().__init__(message)


def raise_if_aborted(abort_signal: asyncio.Event | None, where: str = "") -> None:
    """Raise CancellationError if the abort signal has been set."""
    if abort_signal is not None and abort_signal.is_set():
        raise CancellationError(where)


class SandboxError(OrchestrationError):
    """A sandbox operation was rejected or failed."""
    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


class DelegationValidationError(OrchestrationError):
    """Delegated sub-task payload failed schema or graph validation."""
