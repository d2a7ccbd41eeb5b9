"""Shell Resolver: locate a POSIX-compatible shell for init scripts.

Resolved once per resolver instance. On Windows, Git Bash is preferred and the
WSL launcher (``C:\\Windows\\System32\\bash.exe``) is skipped: it is frequently
not configured and fails with ENOENT when handed a Windows path.
"""

from __future__ import annotations

import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from typing import Callable, Mapping

from foreman.errors import ShellNotFoundError

logger = logging.getLogger(__name__)

POSIX_SHELL_PATHS: tuple[str, ...] = (
    "/bin/bash",
    "/usr/bin/bash",
    "/usr/local/bin/bash",
    "/opt/homebrew/bin/bash",
    "/bin/sh",
    "/usr/bin/sh",
)


def git_bash_paths(environ: Mapping[str, str]) -> list[str]:
    paths = [
        r"C:\Program Files\Git\bin\bash.exe",
        r"C:\Program Files (x86)\Git\bin\bash.exe",
    ]
    local_app_data = environ.get("LOCALAPPDATA")
    if local_app_data:
        paths.append(os.path.join(local_app_data, "Programs", "Git", "bin", "bash.exe"))
    return paths


@dataclass(frozen=True)
class ShellCommand:
    shell: str
    args: list[str] = field(default_factory=list)

    def argv(self, script: str) -> list[str]:
        return [self.shell, *self.args, script]


def _is_posix_shell(path: str) -> bool:
    name = os.path.basename(path)
    return "bash" in name or name == "sh"


class ShellResolver:
    """Platform-aware shell lookup with explicit memoization."""

    def __init__(
        self,
        platform: str | None = None,
        *,
        path_exists: Callable[[str], bool] = os.path.exists,
        which: Callable[[str], str | None] = shutil.which,
        environ: Mapping[str, str] | None = None,
    ):
        self.platform = platform or sys.platform
        self._path_exists = path_exists
        self._which = which
        self._environ = environ if environ is not None else os.environ
        self._resolved = False
        self._result: ShellCommand | None = None

    @property
    def is_windows(self) -> bool:
        return self.platform == "win32"

    def resolve(self) -> ShellCommand | None:
        """Return the shell to use, or None when no usable shell exists."""
        if not self._resolved:
            self._result = self._find_windows() if self.is_windows else self._find_posix()
            self._resolved = True
            if self._result is None:
                logger.warning("No usable shell found: %s", self.not_found_message())
            else:
                logger.debug("Resolved shell: %s", self._result.shell)
        return self._result

    def require(self) -> ShellCommand:
        shell = self.resolve()
        if shell is None:
            raise ShellNotFoundError(self.not_found_message())
        return shell

    def not_found_message(self) -> str:
        if self.is_windows:
            return "Git Bash not found. Please install Git for Windows to run init scripts."
        return "No shell found (/bin/bash or /bin/sh)"

    def _find_windows(self) -> ShellCommand | None:
        for candidate in git_bash_paths(self._environ):
            if self._exists(candidate):
                return ShellCommand(candidate)

        bash_in_path = self._which("bash")
        if bash_in_path and "system32" not in bash_in_path.lower():
            return ShellCommand(bash_in_path)

        logger.warning("Git Bash not found; WSL bash was skipped")
        return None

    def _find_posix(self) -> ShellCommand | None:
        candidates: list[str] = []
        user_shell = self._environ.get("SHELL", "")
        if user_shell and _is_posix_shell(user_shell):
            candidates.append(user_shell)
        candidates.extend(p for p in POSIX_SHELL_PATHS if p not in candidates)

        for candidate in candidates:
            if self._exists(candidate):
                return ShellCommand(candidate)

        bash_in_path = self._which("bash") or self._which("sh")
        if bash_in_path:
            return ShellCommand(bash_in_path)
        return None

    def _exists(self, path: str) -> bool:
        try:
            return self._path_exists(path)
        except OSError:
            return False
