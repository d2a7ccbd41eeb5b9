"""One-shot worktree initialization.

Runs ``.foreman/worktree-init.sh`` inside a freshly created worktree (dependency
install, env files, ...). The ``init_script_ran`` flag in the worktree
metadata is checked before running, so the script executes at most once per
worktree unless forced. Output is streamed on the event bus as it arrives.

A missing shell is reported as a failed run, not raised: the worktree stays
usable for agent work without the tooling bootstrap.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from foreman.config import init_script_path
from foreman.errors import InitScriptNotFoundError, ShellNotFoundError
from foreman.events import EventBus
from foreman.file_store import SecureFileStore
from foreman.models import InitScriptInfo, InitScriptStatus, WorktreeTopic
from foreman.shell import ShellResolver
from foreman.worktree.git import terminate_process
from foreman.worktree.metadata import WorktreeMetadataStore

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096


class InitScriptRunner:
    def __init__(
        self,
        files: SecureFileStore,
        metadata: WorktreeMetadataStore,
        shell_resolver: ShellResolver,
        bus: EventBus,
    ):
        self.files = files
        self.metadata = metadata
        self.shell_resolver = shell_resolver
        self.bus = bus

    # ── Script file ──────────────────────────────────────────────────────

    def script_path(self, project: Path) -> Path:
        return init_script_path(project)

    async def get_script(self, project: Path) -> InitScriptInfo:
        path = self.script_path(project)
        if await self.files.exists(path):
            return InitScriptInfo(exists=True, content=await self.files.read_text(path), path=str(path))
        return InitScriptInfo(exists=False, content="", path=str(path))

    async def set_script(self, project: Path, content: str) -> Path:
        path = self.script_path(project)
        await self.files.write_text(path, content)
        logger.info("Wrote init script to %s", path)
        return path

    async def delete_script(self, project: Path) -> None:
        path = self.script_path(project)
        await self.files.rm(path)
        logger.info("Deleted init script at %s", path)

    async def has_run(self, project: Path, branch: str) -> bool:
        metadata = await self.metadata.read(project, branch)
        return bool(metadata and metadata.init_script_ran)

    # ── Execution ────────────────────────────────────────────────────────

    async def run(self, project: Path, worktree_path: Path, branch: str) -> InitScriptStatus | None:
        """Run the init script unless absent or already run.

        Returns the final status, or None when nothing was run.
        """
        script = self.script_path(project)
        if not await self.files.exists(script):
            logger.debug("No init script found at %s", script)
            return None

        if await self.has_run(project, branch):
            logger.info('Init script already ran for branch "%s", skipping', branch)
            return None

        try:
            shell = self.shell_resolver.require()
        except ShellNotFoundError as e:
            logger.error("Cannot run init script for %s: %s", branch, e)
            await self._finish(project, worktree_path, branch, success=False, error=str(e))
            return InitScriptStatus.FAILED

        logger.info('Running init script for branch "%s" in %s (shell=%s)', branch, worktree_path, shell.shell)
        await self.metadata.update(
            project,
            branch,
            init_script_ran=False,
            init_script_status=InitScriptStatus.RUNNING,
            init_script_error=None,
        )
        self.bus.emit(
            WorktreeTopic.INIT_STARTED.value,
            {"projectPath": str(project), "worktreePath": str(worktree_path), "branch": branch},
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *shell.argv(str(script)),
                cwd=str(worktree_path),
                env=self._script_env(project, worktree_path, branch),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error('Init script error for branch "%s": %s', branch, e)
            await self._finish(project, worktree_path, branch, success=False, error=str(e))
            return InitScriptStatus.FAILED

        try:
            await asyncio.gather(
                self._pump(proc.stdout, "stdout", project, branch),
                self._pump(proc.stderr, "stderr", project, branch),
            )
            code = await proc.wait()
        except asyncio.CancelledError:
            await terminate_process(proc)
            await self._finish(project, worktree_path, branch, success=False, error="Init script cancelled")
            raise

        success = code == 0
        logger.info('Init script for branch "%s" %s with exit code %s', branch, "succeeded" if success else "failed", code)
        await self._finish(
            project,
            worktree_path,
            branch,
            success=success,
            error=None if success else f"Exit code: {code}",
            exit_code=code,
        )
        return InitScriptStatus.SUCCESS if success else InitScriptStatus.FAILED

    async def force_run(self, project: Path, worktree_path: Path, branch: str) -> InitScriptStatus | None:
        """Clear the ran flag (keeping created_at and pr) and run again."""
        if not await self.files.exists(self.script_path(project)):
            raise InitScriptNotFoundError(
                f"No init script found at {self.script_path(project)}"
            )
        if await self.metadata.read(project, branch) is not None:
            await self.metadata.update(
                project,
                branch,
                init_script_ran=False,
                init_script_status=None,
                init_script_error=None,
            )
        return await self.run(project, worktree_path, branch)

    # ── Helpers ──────────────────────────────────────────────────────────

    def _script_env(self, project: Path, worktree_path: Path, branch: str) -> dict[str, str]:
        return {
            **os.environ,
            "FOREMAN_PROJECT_PATH": str(project),
            "FOREMAN_WORKTREE_PATH": str(worktree_path),
            "FOREMAN_BRANCH": branch,
            # Not a TTY, but the output is rendered in a terminal widget
            "FORCE_COLOR": "1",
            "npm_config_color": "always",
            "CLICOLOR_FORCE": "1",
            "GIT_TERMINAL_PROMPT": "0",
        }

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        name: str,
        project: Path,
        branch: str,
    ) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            self.bus.emit(
                WorktreeTopic.INIT_OUTPUT.value,
                {
                    "projectPath": str(project),
                    "branch": branch,
                    "type": name,
                    "content": chunk.decode(errors="replace"),
                },
            )

    async def _finish(
        self,
        project: Path,
        worktree_path: Path,
        branch: str,
        *,
        success: bool,
        error: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        await self.metadata.update(
            project,
            branch,
            init_script_ran=True,
            init_script_status=InitScriptStatus.SUCCESS if success else InitScriptStatus.FAILED,
            init_script_error=error,
        )
        payload: dict = {
            "projectPath": str(project),
            "worktreePath": str(worktree_path),
            "branch": branch,
            "success": success,
        }
        if exit_code is not None:
            payload["exitCode"] = exit_code
        if error is not None:
            payload["error"] = error
        self.bus.emit(WorktreeTopic.INIT_COMPLETED.value, payload)
