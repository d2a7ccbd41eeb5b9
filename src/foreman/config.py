"""Configuration loading for Foreman.

Reads a YAML file (``--config``, ``$FOREMAN_CONFIG`` or
``~/.foreman/config.yaml``) into pydantic models. A missing file yields the
defaults, so a bare ``foreman serve`` works out of the box.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

CONFIG_ENV = "FOREMAN_CONFIG"
ALLOWED_ROOTS_ENV = "FOREMAN_ALLOWED_ROOTS"
DEFAULT_CONFIG_PATH = Path("~/.foreman/config.yaml")

# Per-project state directory, relative to the project root.
STATE_DIR_NAME = ".foreman"
INIT_SCRIPT_FILENAME = "worktree-init.sh"


class ProjectConfig(BaseModel):
    # None: use whatever branch the project root has checked out.
    main_branch: str | None = None


class AutoModeConfig(BaseModel):
    max_concurrency: int = 3
    require_approval: bool = True  # verified features stop in waiting_approval
    use_worktrees: bool = True
    planning: bool = True  # run a read-only planning pass before acting
    poll_interval: float = 5.0  # seconds between admission passes when idle
    verification_commands: list[str] = Field(default_factory=list)
    verification_timeout: float = 600

    @field_validator("max_concurrency")
    @classmethod
    def _validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {v}")
        return v


class WorktreesConfig(BaseModel):
    dir_name: str = ".worktrees"

    @field_validator("dir_name")
    @classmethod
    def _validate_dir_name(cls, v: str) -> str:
        """Worktrees must live inside the project: no absolute paths, no ``..``."""
        p = PurePosixPath(v)
        if p.is_absolute():
            raise ValueError(f"worktrees.dir_name must be relative, got absolute: {v!r}")
        if ".." in p.parts:
            raise ValueError(f"worktrees.dir_name must not contain '..': {v!r}")
        return v


class AgentConfig(BaseModel):
    """How the default subprocess agent runner is invoked.

    The command receives the prompt on stdin and prints one JSON object per
    line (Claude CLI ``stream-json`` messages, or the flat
    ``{"type": "text"|"tool_use"|"result"|"error"}`` form). Flags set to
    None are not passed.
    """

    command: list[str] = Field(
        default_factory=lambda: [
            "claude",
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
        ]
    )
    model: str | None = None
    max_turns: int = 50
    model_flag: str | None = "--model"
    max_turns_flag: str | None = "--max-turns"
    tools_flag: str | None = "--allowedTools"
    allowed_tools: list[str] = Field(
        default_factory=lambda: ["Read", "Write", "Edit", "Glob", "Grep", "Bash"]
    )
    planning_tools: list[str] = Field(default_factory=lambda: ["Read", "Glob", "Grep"])


class SecurityConfig(BaseModel):
    allowed_roots: list[str] = Field(default_factory=list)


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8008


class ForemanConfig(BaseModel):
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    auto_mode: AutoModeConfig = Field(default_factory=AutoModeConfig)
    worktrees: WorktreesConfig = Field(default_factory=WorktreesConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def resolve_config_path(explicit: Path | None = None) -> Path:
    if explicit is not None:
        return explicit
    from_env = os.environ.get(CONFIG_ENV, "").strip()
    if from_env:
        return Path(from_env)
    return DEFAULT_CONFIG_PATH.expanduser()


def load_config(path: Path | None = None) -> ForemanConfig:
    """Load config from YAML, apply environment overrides."""
    config_path = resolve_config_path(path)
    raw: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("Loaded config from %s", config_path)
    else:
        logger.info("No config at %s, using defaults", config_path)

    config = ForemanConfig(**raw)

    env_roots = os.environ.get(ALLOWED_ROOTS_ENV, "")
    for root in env_roots.split(","):
        root = root.strip()
        if root and root not in config.security.allowed_roots:
            config.security.allowed_roots.append(root)

    return config


def state_dir(project: Path) -> Path:
    return project / STATE_DIR_NAME


def init_script_path(project: Path) -> Path:
    return state_dir(project) / INIT_SCRIPT_FILENAME
