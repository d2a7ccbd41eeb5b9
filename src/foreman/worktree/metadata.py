"""Worktree Metadata Store: one JSON record per (project, branch).

Records live at ``<project>/.foreman/worktrees/<sanitized-branch>/worktree.json``.
Two branches can sanitize to the same directory (``feature/x`` and
``feature-x``); the record's ``branch`` field says which one owns it.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from foreman.config import state_dir
from foreman.errors import InvalidBranchNameError, WorktreeCreationError
from foreman.file_store import SecureFileStore
from foreman.models import WorktreeMetadata

logger = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9_-]")
_FORBIDDEN_BRANCH_CHARS_RE = re.compile(r"[~^:\\?*\[\s\x00-\x1f\x7f]")
METADATA_FILENAME = "worktree.json"


def sanitize_branch(branch: str) -> str:
    """Map a branch name to a directory-safe name (``feature/x`` -> ``feature-x``)."""
    return _UNSAFE_CHARS_RE.sub("-", branch)


def validate_branch_name(branch: str) -> str:
    """Return ``branch`` unchanged, or raise InvalidBranchNameError.

    Rejects names git refuses as refs and names that would be parsed as a
    command-line option.
    """
    if not branch:
        raise InvalidBranchNameError("Branch name must not be empty")
    if branch.startswith(("-", ".")):
        raise InvalidBranchNameError(f'Invalid branch name "{branch}": must not start with "-" or "."')
    if branch.endswith(("/", ".")) or branch.endswith(".lock"):
        raise InvalidBranchNameError(f'Invalid branch name "{branch}": bad ending')
    if ".." in branch or "@{" in branch or "//" in branch:
        raise InvalidBranchNameError(f'Invalid branch name "{branch}": contains "..", "//" or "@{{"')
    if _FORBIDDEN_BRANCH_CHARS_RE.search(branch):
        raise InvalidBranchNameError(
            f'Invalid branch name "{branch}": contains whitespace, a control character or one of ~^:\\?*['
        )
    return branch


class WorktreeMetadataStore:
    def __init__(self, files: SecureFileStore):
        self.files = files

    def metadata_dir(self, project: Path) -> Path:
        return state_dir(project) / "worktrees"

    def metadata_path(self, project: Path, branch: str) -> Path:
        return self.metadata_dir(project) / sanitize_branch(branch) / METADATA_FILENAME

    async def _load(self, project: Path, branch: str) -> WorktreeMetadata | None:
        path = self.metadata_path(project, branch)
        if not await self.files.exists(path):
            return None
        try:
            return WorktreeMetadata.model_validate_json(await self.files.read_text(path))
        except (ValidationError, ValueError):
            logger.warning("Ignoring corrupt worktree metadata at %s", path)
            return None

    async def owner(self, project: Path, branch: str) -> str | None:
        """The branch whose record occupies ``branch``'s slot, if any."""
        record = await self._load(project, branch)
        return record.branch if record is not None else None

    async def read(self, project: Path, branch: str) -> WorktreeMetadata | None:
        """Return the record, or None when absent, unreadable or owned by another branch."""
        record = await self._load(project, branch)
        if record is None or record.branch != branch:
            return None
        return record

    async def write(self, project: Path, metadata: WorktreeMetadata) -> None:
        await self._check_owner(project, metadata.branch)
        path = self.metadata_path(project, metadata.branch)
        await self.files.write_text(path, json.dumps(metadata.to_json_dict(), indent=2))

    async def update(self, project: Path, branch: str, **changes: Any) -> WorktreeMetadata:
        """Apply ``changes`` on top of the existing record (or a fresh one).

        ``created_at`` and ``pr`` survive unless explicitly overwritten.
        """
        current = await self.read(project, branch) or WorktreeMetadata(branch=branch)
        updated = current.model_copy(update=changes)
        await self.write(project, updated)
        return updated

    async def ensure(self, project: Path, branch: str) -> WorktreeMetadata:
        existing = await self.read(project, branch)
        if existing is not None:
            return existing
        metadata = WorktreeMetadata(branch=branch)
        await self.write(project, metadata)
        return metadata

    async def delete(self, project: Path, branch: str) -> None:
        owner = await self.owner(project, branch)
        if owner is not None and owner != branch:
            logger.debug('Leaving metadata of "%s" in place while deleting "%s"', owner, branch)
            return
        await self.files.rm(self.metadata_path(project, branch).parent)

    async def _check_owner(self, project: Path, branch: str) -> None:
        owner = await self.owner(project, branch)
        if owner is not None and owner != branch:
            raise WorktreeCreationError(
                f'Branch "{branch}" maps to the same worktree directory as "{owner}"'
            )
