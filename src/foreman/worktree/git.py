"""Git subprocess helpers.

Git is always invoked with an argument vector, never through a shell.
Cancelling the awaiting task terminates the child process.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from foreman.errors import GitCommandError

logger = logging.getLogger(__name__)

# Identity used for commits the engine makes on its own behalf, so they work
# without a global git config.
ENGINE_GIT_ENV = {
    "GIT_AUTHOR_NAME": "Foreman",
    "GIT_AUTHOR_EMAIL": "foreman@localhost",
    "GIT_COMMITTER_NAME": "Foreman",
    "GIT_COMMITTER_EMAIL": "foreman@localhost",
}

_TERMINATE_GRACE = 5.0


@dataclass
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout/stderr, the way git reports merge conflicts."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)

    def check(self) -> GitResult:
        if not self.ok:
            raise GitCommandError(self.args, self.returncode, self.stdout, self.stderr)
        return self


class Git:
    """Runs git commands asynchronously without blocking the event loop."""

    def __init__(self, executable: str = "git", timeout: float = 300):
        self.executable = executable
        self.timeout = timeout

    async def run(
        self,
        cwd: Path,
        *args: str,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> GitResult:
        """Run ``git <args>`` in ``cwd``; returns the result without raising."""
        proc_env = None
        if env:
            proc_env = {**os.environ, **env}
        proc = await asyncio.create_subprocess_exec(
            self.executable,
            *args,
            cwd=str(cwd),
            env=proc_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout or self.timeout
            )
        except (asyncio.TimeoutError, asyncio.CancelledError):
            await terminate_process(proc)
            raise
        result = GitResult(
            args=args,
            returncode=proc.returncode or 0,
            stdout=(stdout_bytes or b"").decode(errors="replace"),
            stderr=(stderr_bytes or b"").decode(errors="replace"),
        )
        if not result.ok:
            logger.debug("git %s exited %d: %s", " ".join(args), result.returncode, result.stderr)
        return result

    async def check(self, cwd: Path, *args: str, **kwargs) -> GitResult:
        """Like :meth:`run` but raises GitCommandError on a non-zero exit."""
        return (await self.run(cwd, *args, **kwargs)).check()


async def terminate_process(proc: asyncio.subprocess.Process) -> None:
    """Terminate, then kill if the process ignores SIGTERM."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


def parse_worktree_list(output: str, project: Path) -> list[tuple[Path, str | None]]:
    """Parse ``git worktree list --porcelain`` into (absolute path, branch) pairs.

    Detached worktrees report ``None`` for the branch. Relative paths are
    resolved against ``project``.
    """
    entries: list[tuple[Path, str | None]] = []
    current_path: str | None = None
    current_branch: str | None = None

    def flush() -> None:
        if current_path is not None:
            path = Path(current_path)
            if not path.is_absolute():
                path = project / path
            entries.append((path.resolve(), current_branch))

    for line in output.splitlines():
        if line.startswith("worktree "):
            flush()
            current_path = line[len("worktree "):]
            current_branch = None
        elif line.startswith("branch "):
            current_branch = line[len("branch "):].removeprefix("refs/heads/")
    flush()
    return entries
