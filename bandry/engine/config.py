"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via BANDRY_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Progress callback for one chat request.
# Signature: def callback(stage, message, payload=None) -> None
# stage is one of planning/model/tool/clarification/final/error.
UpdateCallback = Callable[[str, str, Any], None]

# Incremental synthesis text.
# Signature: def callback(delta: str) -> None
DeltaCallback = Callable[[str], None]


def fire_update(
    callback: UpdateCallback | None,
    stage: str,
    message: str,
    payload: dict[str, Any] | None = None,
) -> None:
    """Fire a progress callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        callback(stage, message, payload)
    except Exception:
        # Never let callback errors break the engine
        logger.debug("Update callback failed stage=%s", stage, exc_info=True)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in {"1", "true", "yes"}


@dataclass
class EngineConfig:
    """Chat orchestration engine configuration."""

    # Planner loop
    max_tool_steps: int = 6
    # Upper bound on sub-tasks a single delegation may request.
    max_subagents: int = 3

    # Risk-gated approval. Waits resolve to rejection after the timeout.
    hitl_enabled: bool = False
    hitl_timeout_seconds: float = 300.0

    # Context compression thresholds
    summarization_message_threshold: int = 24
    summarization_char_threshold: int = 16_000
    summarization_keep_recent: int = 8

    # Per-task workspace root (task_{id}/{input,staging,output})
    workspaces_dir: str = field(
        default_factory=lambda: str(Path.home() / ".bandry" / "workspaces")
    )

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from BANDRY_* environment variables."""
        bandry_vars = {
            k: v for k, v in os.environ.items() if k.startswith("BANDRY_")
        }
        if bandry_vars:
            logger.info(
                "EngineConfig.from_env: BANDRY_* env overrides: %s",
                ", ".join(sorted(bandry_vars)),
            )
        else:
            logger.debug("EngineConfig.from_env: no BANDRY_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            max_tool_steps=int(os.getenv(
                "BANDRY_MAX_TOOL_STEPS", str(defaults.max_tool_steps)
            )),
            max_subagents=int(os.getenv(
                "BANDRY_MAX_SUBAGENTS", str(defaults.max_subagents)
            )),
            hitl_enabled=_env_flag("BANDRY_HITL_ENABLED"),
            hitl_timeout_seconds=float(os.getenv(
                "BANDRY_HITL_TIMEOUT", str(defaults.hitl_timeout_seconds)
            )),
            workspaces_dir=os.getenv(
                "BANDRY_WORKSPACES_DIR", defaults.workspaces_dir
            ),
            log_level=os.getenv("BANDRY_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "EngineConfig.from_env: max_tool_steps=%d max_subagents=%d "
            "hitl=%s workspaces=%s",
            config.max_tool_steps, config.max_subagents,
            config.hitl_enabled, config.workspaces_dir,
        )
        return config
