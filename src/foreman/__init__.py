"""Foreman: drives a coding agent through plan, act and verify cycles,
one isolated git worktree per feature."""

__version__ = "0.1.0"
