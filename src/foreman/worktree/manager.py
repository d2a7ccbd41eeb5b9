"""Worktree Lifecycle Manager: map (project, branch) to an isolated worktree.

Worktrees live at ``<project>/<worktrees.dir_name>/<sanitized-branch>``.
Creation is serialized per (project, branch) so concurrent callers for the
same branch observe one ``git worktree add`` and share its result; git work
on different branches runs concurrently.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from pathlib import Path

from foreman.config import ForemanConfig
from foreman.errors import (
    ForemanError,
    MergeConflictError,
    WorktreeCreationError,
    WorktreeNotFoundError,
)
from foreman.features import FeatureStore
from foreman.file_store import SecureFileStore
from foreman.models import DeleteResult, InitScriptInfo, InitScriptStatus, WorktreeInfo
from foreman.worktree.git import ENGINE_GIT_ENV, Git, parse_worktree_list
from foreman.worktree.init_script import InitScriptRunner
from foreman.worktree.metadata import WorktreeMetadataStore, sanitize_branch, validate_branch_name

logger = logging.getLogger(__name__)


class WorktreeManager:
    def __init__(
        self,
        config: ForemanConfig,
        files: SecureFileStore,
        metadata: WorktreeMetadataStore,
        init_runner: InitScriptRunner,
        features: FeatureStore,
        git: Git | None = None,
    ):
        self.config = config
        self.files = files
        self.metadata = metadata
        self.init_runner = init_runner
        self.features = features
        self.git = git or Git()

        self._branch_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._init_tasks: dict[tuple[str, str], asyncio.Task] = {}

    # ── Paths & queries ──────────────────────────────────────────────────

    def worktrees_dir(self, project: Path) -> Path:
        return project / self.config.worktrees.dir_name

    def worktree_dir(self, project: Path, branch: str) -> Path:
        return self.worktrees_dir(project) / sanitize_branch(branch)

    def _lock(self, project: Path, branch: str) -> asyncio.Lock:
        key = (str(project), branch)
        lock = self._branch_locks.get(key)
        if lock is None:
            lock = self._branch_locks[key] = asyncio.Lock()
        return lock

    async def main_branch(self, project: Path) -> str:
        """The configured main branch, else the branch checked out in the project root."""
        if self.config.project.main_branch:
            return self.config.project.main_branch
        result = await self.git.run(project, "symbolic-ref", "--short", "HEAD")
        if result.ok and result.stdout.strip():
            return result.stdout.strip()
        return "main"

    async def branch_exists(self, project: Path, branch: str) -> bool:
        result = await self.git.run(project, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        return result.ok

    async def list_worktrees(self, project: Path) -> list[WorktreeInfo]:
        result = await self.git.check(project, "worktree", "list", "--porcelain")
        worktrees = []
        for index, (path, branch) in enumerate(parse_worktree_list(result.stdout, project)):
            metadata = await self.metadata.read(project, branch) if branch else None
            worktrees.append(
                WorktreeInfo(path=str(path), branch=branch, is_main=index == 0, metadata=metadata)
            )
        return worktrees

    async def find_worktree(self, project: Path, branch: str) -> Path | None:
        """Path of the worktree that has ``branch`` checked out, if any."""
        result = await self.git.run(project, "worktree", "list", "--porcelain")
        if not result.ok:
            return None
        for path, wt_branch in parse_worktree_list(result.stdout, project):
            if wt_branch == branch:
                return path
        return None

    # ── Creation ─────────────────────────────────────────────────────────

    async def ensure_initial_commit(self, project: Path) -> None:
        """Worktree commands reference HEAD, so an unborn HEAD gets an empty commit."""
        head = await self.git.run(project, "rev-parse", "--verify", "HEAD")
        if head.ok:
            return
        logger.info("Repository %s has no commits, creating an initial one", project)
        await self.git.check(
            project,
            "commit",
            "--allow-empty",
            "-m",
            "Initial commit",
            env=ENGINE_GIT_ENV,
        )

    async def ensure_worktree(
        self,
        project: Path,
        branch: str,
        base_ref: str | None = None,
    ) -> WorktreeInfo:
        """Return the worktree for ``branch``, creating it if needed.

        A newly created worktree gets its one-shot init script scheduled in
        the background.
        """
        validate_branch_name(branch)
        if branch == await self.main_branch(project):
            return WorktreeInfo(path=str(project), branch=branch, is_main=True)

        async with self._lock(project, branch):
            try:
                await self.ensure_initial_commit(project)
            except ForemanError as e:
                raise WorktreeCreationError(str(e)) from e

            existing = await self.find_worktree(project, branch)
            if existing is not None:
                logger.info('Found existing worktree for branch "%s" at %s', branch, existing)
                return WorktreeInfo(path=str(existing), branch=branch, is_new=False)

            owner = await self._directory_owner(project, branch)
            if owner is not None:
                raise WorktreeCreationError(
                    f'Cannot create worktree for branch "{branch}": its directory belongs to "{owner}"'
                )

            worktree_path = self.worktree_dir(project, branch)
            await self.files.mkdir(worktree_path.parent)

            branch_exists = await self.branch_exists(project, branch)
            if branch_exists:
                args = ("worktree", "add", str(worktree_path), branch)
            else:
                args = ("worktree", "add", "-b", branch, str(worktree_path), base_ref or "HEAD")
            result = await self.git.run(project, *args)
            if not result.ok:
                logger.error("Failed to create worktree for %s: %s", branch, result.output)
                raise WorktreeCreationError(
                    f'Failed to create worktree for branch "{branch}": {result.output}'
                )

            worktree_path = worktree_path.resolve()
            await self.metadata.ensure(project, branch)
            logger.info("Created worktree: %s -> %s", branch, worktree_path)

        self._schedule_init(project, worktree_path, branch)
        return WorktreeInfo(path=str(worktree_path), branch=branch, is_new=not branch_exists)

    # ── Init script ──────────────────────────────────────────────────────

    def _schedule_init(self, project: Path, worktree_path: Path, branch: str) -> None:
        key = (str(project), branch)
        task = asyncio.create_task(
            self._run_init(project, worktree_path, branch), name=f"init-{sanitize_branch(branch)}"
        )
        self._init_tasks[key] = task
        task.add_done_callback(functools.partial(self._forget_init, key))

    def _forget_init(self, key: tuple[str, str], task: asyncio.Task) -> None:
        if self._init_tasks.get(key) is task:
            del self._init_tasks[key]

    async def _run_init(self, project: Path, worktree_path: Path, branch: str) -> None:
        try:
            await self.init_runner.run(project, worktree_path, branch)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Init script failed for %s", branch)

    async def wait_for_init(self, project: Path, branch: str) -> None:
        """Wait for a scheduled init script of ``branch`` to finish (if any).

        Cancelling the waiter leaves the init script running.
        """
        task = self._init_tasks.get((str(project), branch))
        if task is not None:
            await asyncio.wait({task})

    async def force_run_init_script(
        self,
        project: Path,
        branch: str,
        worktree_path: Path | None = None,
    ) -> InitScriptStatus | None:
        """Re-run the init script, bypassing the ran-once guard."""
        validate_branch_name(branch)
        if worktree_path is None:
            worktree_path = await self.find_worktree(project, branch)
            if worktree_path is None:
                raise WorktreeNotFoundError(f'No worktree for branch "{branch}"')
        logger.info('Running init script for branch "%s" (forced)', branch)
        return await self.init_runner.force_run(project, worktree_path, branch)

    async def get_init_script(self, project: Path) -> InitScriptInfo:
        return await self.init_runner.get_script(project)

    async def set_init_script(self, project: Path, content: str) -> Path:
        return await self.init_runner.set_script(project, content)

    async def delete_init_script(self, project: Path) -> None:
        await self.init_runner.delete_script(project)

    # ── Merge / revert / delete ──────────────────────────────────────────

    async def merge_feature(
        self,
        project: Path,
        branch: str,
        *,
        squash: bool = False,
        commit_message: str | None = None,
    ) -> str:
        """Merge ``branch`` into the main branch; returns the resulting HEAD.

        On failure the merge is aborted so the main tree is left clean, and
        MergeConflictError carries git's output. The worktree is kept.
        """
        validate_branch_name(branch)
        main = await self.main_branch(project)
        message = commit_message or f"Merge {branch} into {main}"

        current = await self.git.run(project, "symbolic-ref", "--short", "HEAD")
        if current.stdout.strip() != main:
            await self.git.check(project, "checkout", main)

        if squash:
            result = await self.git.run(project, "merge", "--squash", branch)
            if not result.ok:
                await self.git.run(project, "reset", "--merge")
                raise MergeConflictError(result.output)
            staged = await self.git.run(project, "diff", "--cached", "--quiet")
            if not staged.ok:
                await self.git.check(project, "commit", "-m", message)
        else:
            result = await self.git.run(project, "merge", "--no-ff", "-m", message, branch)
            if not result.ok:
                await self.git.run(project, "merge", "--abort")
                raise MergeConflictError(result.output)

        head = await self.git.check(project, "rev-parse", "HEAD")
        logger.info("Merged %s into %s (squash=%s)", branch, main, squash)
        return head.stdout.strip()

    async def revert_feature(self, project: Path, branch: str) -> DeleteResult:
        """Discard the branch's work: remove its worktree and the branch. Irreversible."""
        return await self.delete_worktree(project, branch, delete_branch=True)

    async def delete_worktree(
        self,
        project: Path,
        branch: str,
        *,
        delete_branch: bool = False,
    ) -> DeleteResult:
        """Remove the worktree and its metadata; features move to the main branch."""
        validate_branch_name(branch)
        main = await self.main_branch(project)
        if branch == main:
            raise ForemanError("Refusing to delete the main branch worktree")

        async with self._lock(project, branch):
            init_task = self._init_tasks.get((str(project), branch))
            if init_task is not None and not init_task.done():
                init_task.cancel()
                await asyncio.gather(init_task, return_exceptions=True)

            path = await self.find_worktree(project, branch)
            if path is not None:
                if path == project.resolve():
                    raise ForemanError(f"Refusing to remove {path}: it is the main repo root")
                await self.git.check(project, "worktree", "remove", "--force", str(path))
                logger.info("Removed worktree %s (%s)", path, branch)
            await self.git.run(project, "worktree", "prune")

            branch_deleted = False
            if delete_branch and await self.branch_exists(project, branch):
                await self.git.check(project, "branch", "-D", branch)
                branch_deleted = True
                logger.info("Deleted branch %s", branch)

            await self.metadata.delete(project, branch)

        reassigned = await self.features.reassign_branch(project, branch, main)
        return DeleteResult(
            path=str(path) if path else None,
            branch=branch,
            branch_deleted=branch_deleted,
            reassigned_features=reassigned,
        )

    # ── Commits ──────────────────────────────────────────────────────────

    async def commit_changes(self, work_dir: Path, message: str) -> str | None:
        """Stage everything and commit; None when the tree is clean."""
        status = await self.git.check(work_dir, "status", "--porcelain")
        if not status.stdout.strip():
            return None
        await self.git.check(work_dir, "add", "-A")
        await self.git.check(work_dir, "commit", "-m", message)
        head = await self.git.check(work_dir, "rev-parse", "HEAD")
        return head.stdout.strip()

    async def shutdown(self) -> None:
        tasks = [t for t in self._init_tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._init_tasks.clear()
