"""Role-to-model routing.

Resolves a logical role (``planner``, ``synthesizer``) to a concrete
provider/model binding through ``config.routing`` and the model
profile list. Resolution is strict: any unusable binding raises
RoutingError carrying role, profile and provider identifiers so the
caller can point the user at the right setting.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import RoutingError
from .yaml_config import AppConfig

logger = logging.getLogger(__name__)

PLANNER_ROLE = "planner"
SYNTHESIZER_ROLE = "synthesizer"


@dataclass(frozen=True)
class RuntimeConfig:
    """Credentials and endpoint handed to the ModelsFactory."""
    provider: str
    base_url: str = ""
    api_key: str = ""
    org_id: str | None = None


@dataclass(frozen=True)
class RuntimeTarget:
    """A role resolved to a usable provider/model binding."""
    role: str
    profile_id: str
    provider: str
    model: str
    runtime_config: RuntimeConfig
    temperature: float | None = None
    max_tokens: int | None = None

    def describe(self) -> str:
        return (
            f"{self.role} profile={self.profile_id} "
            f"model={self.provider}/{self.model}"
        )


def resolve_runtime_target(config: AppConfig, role: str) -> RuntimeTarget:
    """Resolve *role* to a RuntimeTarget or raise RoutingError."""
    profile_id = config.routing.get(role)
    if not profile_id:
        raise RoutingError(role, "no model profile assigned")

    profile = config.find_profile(profile_id)
    if profile is None:
        raise RoutingError(role, "model profile not found", profile_id=profile_id)
    if not profile.enabled:
        raise RoutingError(
            role, "model profile is disabled",
            profile_id=profile_id, provider=profile.provider, model=profile.model,
        )

    provider_cfg = config.providers.get(profile.provider)
    if provider_cfg is None:
        raise RoutingError(
            role, "provider is not configured",
            profile_id=profile_id, provider=profile.provider, model=profile.model,
        )
    if not provider_cfg.enabled:
        raise RoutingError(
            role, "provider is disabled",
            profile_id=profile_id, provider=profile.provider, model=profile.model,
        )

    target = RuntimeTarget(
        role=role,
        profile_id=profile.id,
        provider=profile.provider,
        model=profile.model,
        runtime_config=RuntimeConfig(
            provider=profile.provider,
            base_url=provider_cfg.base_url,
            api_key=provider_cfg.api_key,
            org_id=provider_cfg.org_id,
        ),
        temperature=profile.temperature,
        max_tokens=profile.max_tokens,
    )
    logger.debug("Resolved %s", target.describe())
    return target


def require_api_key(target: RuntimeTarget) -> None:
    """Pre-flight check: the bound provider must carry an API key."""
    if not target.runtime_config.api_key.strip():
        raise RoutingError(
            target.role, "provider api key is missing",
            profile_id=target.profile_id,
            provider=target.provider,
            model=target.model,
        )
