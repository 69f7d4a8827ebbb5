"""YAML configuration loader.

Loads a single YAML file describing providers, model profiles, role
routing, the sandbox and optional tools. Engine knobs start from
BANDRY_* env vars (EngineConfig.from_env) and are overridden by the
``engine:`` section.

Example YAML:
    engine:
      max_tool_steps: 6
      hitl_enabled: true

    providers:
      deepseek:
        base_url: https://api.deepseek.com
        api_key_env: DEEPSEEK_API_KEY
        requests_per_second: 2
      openai:
        enabled: false

    model_profiles:
      - id: ds-chat
        provider: deepseek
        model: deepseek-chat
        temperature: 0
      - id: ds-writer
        provider: deepseek
        model: deepseek-chat
        temperature: 0.2
        max_tokens: 2048

    routing:
      planner: ds-chat
      synthesizer: ds-writer

    sandbox:
      virtual_root: /mnt/workspace
      allowed_commands: [ls, cat, rg, git, python3]

    tools:
      web_fetch_enabled: true
      web_search_enabled: true
      web_search_api_key: tvly-...
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

DEFAULT_VIRTUAL_ROOT = "/mnt/workspace"
DEFAULT_ALLOWED_COMMANDS = ["ls", "cat", "pwd", "head", "tail", "wc", "rg", "grep", "find", "git"]


@dataclass
class ProviderConfig:
    """Connection settings for one model provider."""
    enabled: bool = True
    api_key: str = ""
    api_key_env: str | None = None
    base_url: str = ""
    org_id: str | None = None
    # 0 disables outbound rate limiting for this provider.
    requests_per_second: float = 0.0


@dataclass
class ModelProfile:
    """A named provider/model binding that roles are routed to."""
    id: str
    provider: str
    model: str
    name: str = ""
    enabled: bool = True
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class SandboxConfig:
    """Bounds for filesystem and shell tools."""
    virtual_root: str = DEFAULT_VIRTUAL_ROOT
    # Real directory backing virtual_root when no workspace is bound.
    root_dir: str | None = None
    allowed_commands: list[str] = field(
        default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS)
    )
    exec_timeout_seconds: float = 30.0
    max_output_chars: int = 12_000


@dataclass
class ToolsConfig:
    """Optional planner tools."""
    web_fetch_enabled: bool = False
    web_fetch_timeout_seconds: float = 15.0
    # Tavily-compatible search endpoint: POST {base_url}/search.
    web_search_enabled: bool = False
    web_search_base_url: str = "https://api.tavily.com"
    web_search_api_key: str = ""
    web_search_max_results: int = 5
    web_search_timeout_seconds: float = 15.0
    github_search_enabled: bool = False
    github_api_base_url: str = "https://api.github.com"
    github_token: str = ""
    github_search_max_results: int = 5


@dataclass
class AppConfig:
    """Complete parsed configuration."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    model_profiles: list[ModelProfile] = field(default_factory=list)
    routing: dict[str, str] = field(default_factory=dict)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)

    def find_profile(self, profile_id: str) -> ModelProfile | None:
        for profile in self.model_profiles:
            if profile.id == profile_id:
                return profile
        return None


def _coerce(value: Any, template: Any) -> Any:
    """Coerce a YAML scalar to the type of an existing default."""
    if isinstance(template, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes"}
        return bool(value)
    if isinstance(template, int):
        return int(value)
    if isinstance(template, float):
        return float(value)
    if isinstance(template, str):
        return str(value)
    return value


def _apply_section(instance: Any, raw: dict[str, Any], section: str) -> Any:
    """Return a copy of a dataclass instance with known keys overridden."""
    known = {f.name for f in fields(instance)}
    overrides: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning("Unknown key '%s' in %s section, ignoring", key, section)
            continue
        overrides[key] = _coerce(value, getattr(instance, key))
    return replace(instance, **overrides)


def _parse_provider(name: str, raw: dict[str, Any]) -> ProviderConfig:
    provider = _apply_section(ProviderConfig(), raw, f"providers.{name}")
    if not provider.api_key and provider.api_key_env:
        provider.api_key = os.getenv(provider.api_key_env, "")
        if not provider.api_key:
            logger.warning(
                "Provider '%s': env var %s is not set",
                name, provider.api_key_env,
            )
    return provider


def _parse_profiles(raw_profiles: Any) -> list[ModelProfile]:
    profiles: list[ModelProfile] = []
    if not isinstance(raw_profiles, list):
        return profiles
    for entry in raw_profiles:
        if not isinstance(entry, dict):
            continue
        profile_id = str(entry.get("id", "")).strip()
        provider = str(entry.get("provider", "")).strip()
        model = str(entry.get("model", "")).strip()
        if not profile_id or not provider or not model:
            logger.warning("Skipping incomplete model profile: %s", entry)
            continue
        temperature = entry.get("temperature")
        max_tokens = entry.get("max_tokens")
        profiles.append(ModelProfile(
            id=profile_id,
            provider=provider,
            model=model,
            name=str(entry.get("name", profile_id)),
            enabled=bool(entry.get("enabled", True)),
            temperature=float(temperature) if temperature is not None else None,
            max_tokens=int(max_tokens) if max_tokens is not None else None,
        ))
    return profiles


def load_app_config(path: str | Path | None = None) -> AppConfig:
    """Load and parse a YAML config file.

    A missing path (or None) yields the env-derived defaults so the
    engine can start unconfigured; routing then fails at send() time.
    """
    engine = EngineConfig.from_env()
    if path is None:
        return AppConfig(engine=engine)

    path = Path(path)
    if not path.exists():
        logger.info("load_app_config: %s not found, using defaults", path)
        return AppConfig(engine=engine)

    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.error("load_app_config: YAML parse error in %s: %s", path, exc)
        raise

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    engine = _apply_section(engine, raw.get("engine") or {}, "engine")

    providers = {
        str(name): _parse_provider(str(name), cfg or {})
        for name, cfg in (raw.get("providers") or {}).items()
    }
    profiles = _parse_profiles(raw.get("model_profiles"))
    routing = {
        str(role): str(profile_id)
        for role, profile_id in (raw.get("routing") or {}).items()
        if profile_id
    }

    sandbox_raw = dict(raw.get("sandbox") or {})
    allowed = sandbox_raw.pop("allowed_commands", None)
    sandbox = _apply_section(SandboxConfig(), sandbox_raw, "sandbox")
    if allowed is not None:
        sandbox.allowed_commands = [str(c) for c in allowed]

    tools = _apply_section(ToolsConfig(), raw.get("tools") or {}, "tools")
    if not tools.web_search_api_key:
        tools.web_search_api_key = os.getenv("TAVILY_API_KEY", "")
    if not tools.github_token:
        tools.github_token = os.getenv("GITHUB_TOKEN", "")

    config = AppConfig(
        engine=engine,
        providers=providers,
        model_profiles=profiles,
        routing=routing,
        sandbox=sandbox,
        tools=tools,
    )
    logger.info(
        "load_app_config: %d providers, %d profiles, routing=%s",
        len(providers), len(profiles),
        ", ".join(f"{k}->{v}" for k, v in sorted(routing.items())) or "(none)",
    )
    return config
