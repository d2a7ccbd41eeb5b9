"""Worktree lifecycle: git helpers, per-branch metadata, one-shot init scripts.

Key exports:
    WorktreeManager: create, merge, revert and delete worktrees
    InitScriptRunner: run ``.foreman/worktree-init.sh`` once per worktree
    WorktreeMetadataStore: per-branch JSON records
"""

from foreman.worktree.git import Git, GitResult
from foreman.worktree.init_script import InitScriptRunner
from foreman.worktree.manager import WorktreeManager
from foreman.worktree.metadata import WorktreeMetadataStore, sanitize_branch

__all__ = [
    "Git",
    "GitResult",
    "InitScriptRunner",
    "WorktreeManager",
    "WorktreeMetadataStore",
    "sanitize_branch",
]
