"""Core data models for Foreman.

Records are persisted as camelCase JSON (``branchName``, ``createdAt``, ...);
Python attributes stay snake_case. Both spellings are accepted on load.
"""

from __future__ import annotations

import enum
import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── Feature ──────────────────────────────────────────────────────────────────


class FeatureStatus(str, enum.Enum):
    """Feature lifecycle states. Transitions are driven by the scheduler."""

    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    VERIFIED = "verified"
    ARCHIVED = "archived"


# Older feature files used these before the kanban columns settled.
_LEGACY_BACKLOG_STATUSES = {"pending", "ready"}


class Complexity(str, enum.Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


DEFAULT_PRIORITY = 999
_TITLE_MAX = 60

# Ids name the feature's directory, so "." and ".." can never match.
FEATURE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"
_FEATURE_ID_RE = re.compile(FEATURE_ID_PATTERN)


def is_valid_feature_id(feature_id: str) -> bool:
    return _FEATURE_ID_RE.fullmatch(feature_id) is not None


class Feature(_CamelModel):
    """A unit of agent-driven work."""

    id: str = Field(description="Stable identifier, also the directory name")
    title: str = ""
    description: str = ""
    category: str = ""
    complexity: Complexity = Complexity.MODERATE
    priority: int = Field(default=DEFAULT_PRIORITY, description="Lower runs first")
    dependencies: list[str] = Field(default_factory=list)
    status: FeatureStatus = FeatureStatus.BACKLOG
    branch_name: str | None = Field(
        default=None, description="Assigned worktree branch; None means the main branch"
    )
    spec: str | None = None
    model: str | None = Field(default=None, description="Agent model override")
    image_paths: list[str] = Field(default_factory=list)
    error: str | None = Field(default=None, description="Text of the last failed run")
    just_finished_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("id")
    @classmethod
    def _check_id(cls, v: str) -> str:
        if not is_valid_feature_id(v):
            raise ValueError(f"invalid feature id {v!r}: use letters, digits, '.', '_' and '-'")
        return v

    @field_validator("status", mode="before")
    @classmethod
    def _map_legacy_status(cls, v: Any) -> Any:
        if isinstance(v, str) and v in _LEGACY_BACKLOG_STATUSES:
            return FeatureStatus.BACKLOG.value
        return v

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, v: Any) -> Any:
        return DEFAULT_PRIORITY if v is None else v

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))

    @field_validator("image_paths", mode="before")
    @classmethod
    def _flatten_image_paths(cls, v: Any) -> Any:
        # Image entries may be plain paths or {"path": ..., "filename": ...} objects.
        if isinstance(v, list):
            return [item.get("path", "") if isinstance(item, dict) else item for item in v]
        return v

    @property
    def display_title(self) -> str:
        if self.title.strip():
            return self.title.strip()
        return title_from_description(self.description)

    def touch(self) -> None:
        """Advance ``updated_at``; it never moves backwards."""
        now = utcnow()
        if now > self.updated_at:
            self.updated_at = now


def title_from_description(description: str) -> str:
    """First line of the description, truncated to 60 characters."""
    if not description or not description.strip():
        return "Untitled Feature"
    first_line = description.strip().split("\n")[0].strip()
    if len(first_line) <= _TITLE_MAX:
        return first_line
    return first_line[: _TITLE_MAX - 3] + "..."


# ── Worktrees ────────────────────────────────────────────────────────────────


class InitScriptStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class WorktreeMetadata(_CamelModel):
    """Per-branch worktree record."""

    branch: str
    created_at: datetime = Field(default_factory=utcnow)
    init_script_ran: bool = False
    init_script_status: InitScriptStatus | None = None
    init_script_error: str | None = None
    pr: dict[str, Any] | None = Field(default=None, description="Linked review request, opaque")


class WorktreeInfo(_CamelModel):
    path: str
    branch: str | None
    is_new: bool = False
    is_main: bool = False
    metadata: WorktreeMetadata | None = None


class InitScriptInfo(_CamelModel):
    exists: bool
    content: str
    path: str


class DeleteResult(_CamelModel):
    path: str | None
    branch: str
    branch_deleted: bool
    reassigned_features: int = 0


# ── Events ───────────────────────────────────────────────────────────────────


AUTO_MODE_TOPIC = "auto-mode:event"


class WorktreeTopic(str, enum.Enum):
    INIT_STARTED = "worktree:init-started"
    INIT_OUTPUT = "worktree:init-output"
    INIT_COMPLETED = "worktree:init-completed"


class AgentPhase(str, enum.Enum):
    PLANNING = "planning"
    ACTION = "action"
    VERIFICATION = "verification"


class AutoModeEventType(str, enum.Enum):
    # Loop lifecycle
    STARTED = "auto_mode_started"
    STOPPED = "auto_mode_stopped"
    IDLE = "auto_mode_idle"

    # Per-feature
    FEATURE_START = "auto_mode_feature_start"
    PHASE = "auto_mode_phase"
    PROGRESS = "auto_mode_progress"
    TOOL = "auto_mode_tool"
    FEATURE_COMPLETE = "auto_mode_feature_complete"
    ERROR = "auto_mode_error"


class AgentEvent(_CamelModel):
    """One message on the ``auto-mode:event`` channel."""

    type: AutoModeEventType
    feature_id: str | None = None
    project_path: str | None = None
    phase: AgentPhase | None = None

    content: str | None = None  # progress text chunk
    tool: str | None = None
    input: dict[str, Any] | None = None

    passes: bool | None = None  # terminal complete
    message: str | None = None
    error: str | None = None
    error_type: str | None = None

    feature: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.type in (AutoModeEventType.FEATURE_COMPLETE, AutoModeEventType.ERROR)
