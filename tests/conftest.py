"""Shared fixtures: throwaway git repositories and a scripted agent runner."""

from __future__ import annotations

import asyncio
import re
import subprocess
from pathlib import Path
from typing import Callable

import pytest

from foreman.agent import AgentMessage, AgentMessageKind, AgentRequest

_FEATURE_ID_RE = re.compile(r"\*\*Feature ID:\*\* (\S+)")


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


@pytest.fixture(autouse=True)
def git_env(monkeypatch, tmp_path):
    """Isolate git from the developer's global config and identity."""
    global_config = tmp_path / "gitconfig"
    global_config.write_text("")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    monkeypatch.delenv("FOREMAN_ALLOWED_ROOTS", raising=False)
    monkeypatch.delenv("FOREMAN_CONFIG", raising=False)


@pytest.fixture
def git_repo(tmp_path) -> Path:
    """A repository on ``main`` with one commit."""
    repo = tmp_path / "project"
    repo.mkdir()
    git(repo, "init", "-b", "main")
    (repo / "README.md").write_text("# project\n")
    git(repo, "add", "README.md")
    git(repo, "commit", "-m", "initial")
    return repo.resolve()


@pytest.fixture
def project(tmp_path) -> Path:
    """A plain (non-git) project directory."""
    path = tmp_path / "plain-project"
    path.mkdir()
    return path.resolve()


def feature_id_of(prompt: str) -> str:
    match = _FEATURE_ID_RE.search(prompt)
    return match.group(1) if match else ""


class FakeRunner:
    """Scripted stand-in for the agent CLI.

    Each run emits a text chunk and a tool call, then optionally blocks on a
    per-feature gate, then ends with a result (or the configured error).
    """

    def __init__(self) -> None:
        self.requests: list[AgentRequest] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.errors: dict[str, str] = {}
        self.delay = 0.0
        self.on_run: Callable[[AgentRequest], None] | None = None
        self.active = 0
        self.max_active = 0

    def feature_ids(self) -> list[str]:
        return [feature_id_of(r.prompt) for r in self.requests]

    async def run(self, request: AgentRequest):
        self.requests.append(request)
        feature_id = feature_id_of(request.prompt)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            yield AgentMessage(AgentMessageKind.TEXT, text=f"working on {feature_id}")
            yield AgentMessage(AgentMessageKind.TOOL_USE, tool="Read", input={"file_path": "README.md"})
            if self.on_run is not None:
                self.on_run(request)
            gate = self.gates.get(feature_id)
            if gate is not None:
                await gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if feature_id in self.errors:
                yield AgentMessage(AgentMessageKind.ERROR, text=self.errors[feature_id])
                return
            yield AgentMessage(AgentMessageKind.RESULT, text="done")
        finally:
            self.active -= 1


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


async def eventually(check, timeout: float = 5.0, interval: float = 0.02) -> None:
    """Poll the async ``check`` until it returns truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if await check():
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
