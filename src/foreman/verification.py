"""Verification phase: run the configured check commands in a work dir.

Checks run in order and stop at the first failure. With no commands
configured, verification passes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from foreman.config import AutoModeConfig
from foreman.errors import ShellNotFoundError
from foreman.shell import ShellResolver
from foreman.worktree.git import terminate_process

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 4000


@dataclass
class CheckResult:
    command: str
    passed: bool
    output: str = ""
    exit_code: int | None = None


@dataclass
class VerificationResult:
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failure(self) -> str | None:
        """Description of the first failed check, if any."""
        for check in self.checks:
            if not check.passed:
                return f"Verification failed: {check.command}\n{check.output}".strip()
        return None


class Verifier:
    def __init__(self, config: AutoModeConfig, shell_resolver: ShellResolver):
        self.config = config
        self.shell_resolver = shell_resolver

    async def run(
        self,
        work_dir: Path,
        on_check: Callable[[CheckResult], None] | None = None,
    ) -> VerificationResult:
        result = VerificationResult()
        commands = self.config.verification_commands
        if not commands:
            return result

        try:
            shell = self.shell_resolver.require()
        except ShellNotFoundError as e:
            result.checks.append(CheckResult(command=commands[0], passed=False, output=str(e)))
            return result

        for command in commands:
            check = await self._run_check(shell.shell, command, work_dir)
            result.checks.append(check)
            if on_check is not None:
                on_check(check)
            if not check.passed:
                logger.info("Verification check failed in %s: %s", work_dir, command)
                break
        return result

    async def _run_check(self, shell: str, command: str, work_dir: Path) -> CheckResult:
        proc = await asyncio.create_subprocess_exec(
            shell,
            "-c",
            command,
            cwd=str(work_dir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self.config.verification_timeout
            )
        except asyncio.TimeoutError:
            await terminate_process(proc)
            return CheckResult(
                command=command,
                passed=False,
                output=f"Timed out after {self.config.verification_timeout}s",
            )
        except asyncio.CancelledError:
            await terminate_process(proc)
            raise

        output = (stdout or b"").decode(errors="replace")[-_OUTPUT_TAIL:]
        return CheckResult(
            command=command,
            passed=proc.returncode == 0,
            output=output,
            exit_code=proc.returncode,
        )
