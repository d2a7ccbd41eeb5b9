"""Agent Task Runner: the contract between the scheduler and the coding agent.

The scheduler only sees an async iterator of :class:`AgentMessage`. Cancelling
the task that consumes the iterator is the abort signal; the subprocess runner
terminates its child process when that happens.

The default runner drives a CLI agent (Claude Code's ``--print`` mode by
default) with the prompt on stdin, and reads one JSON object per line from
stdout. Both Claude ``stream-json`` messages and a flat
``{"type": "text"|"tool_use"|"result"|"error", ...}`` form are understood.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from foreman.config import AgentConfig
from foreman.errors import AgentTaskError
from foreman.models import Feature
from foreman.worktree.git import terminate_process

logger = logging.getLogger(__name__)

# Substrings the agent CLI prints when its credentials are rejected.
_AUTH_ERROR_MARKERS = (
    "invalid api key",
    "authentication_failed",
    "fix external api key",
    "authentication failed",
)

_STDERR_TAIL = 2000
# stream-json lines carry whole tool results; the asyncio default is 64 KiB.
_LINE_LIMIT = 16 * 1024 * 1024


class AgentMessageKind(str, enum.Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    RESULT = "result"
    ERROR = "error"


@dataclass
class AgentMessage:
    kind: AgentMessageKind
    text: str = ""
    tool: str | None = None
    input: dict[str, Any] | None = None


@dataclass
class AgentRequest:
    prompt: str
    cwd: Path
    allowed_tools: list[str] = field(default_factory=list)
    model: str | None = None
    image_paths: list[str] = field(default_factory=list)
    max_turns: int | None = None


class AgentTaskRunner(Protocol):
    def run(self, request: AgentRequest) -> AsyncIterator[AgentMessage]: ...


def is_auth_error(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _AUTH_ERROR_MARKERS)


def parse_agent_line(data: dict[str, Any]) -> list[AgentMessage]:
    """Translate one JSON line of agent output into messages.

    Unknown message types (``system``, ``user`` tool results, ...) yield nothing.
    """
    msg_type = data.get("type")

    if msg_type == "assistant":
        messages = []
        content = (data.get("message") or {}).get("content") or []
        for block in content:
            if block.get("type") == "text" and block.get("text"):
                messages.append(AgentMessage(AgentMessageKind.TEXT, text=block["text"]))
            elif block.get("type") == "tool_use":
                messages.append(
                    AgentMessage(
                        AgentMessageKind.TOOL_USE,
                        tool=block.get("name"),
                        input=block.get("input") or {},
                    )
                )
        return messages

    if msg_type == "result":
        text = data.get("result") or ""
        if data.get("is_error") or data.get("subtype", "success") != "success":
            return [AgentMessage(AgentMessageKind.ERROR, text=text or str(data.get("subtype")))]
        return [AgentMessage(AgentMessageKind.RESULT, text=text)]

    if msg_type == "text":
        return [AgentMessage(AgentMessageKind.TEXT, text=data.get("text") or data.get("content") or "")]

    if msg_type == "tool_use":
        return [
            AgentMessage(
                AgentMessageKind.TOOL_USE,
                tool=data.get("tool") or data.get("name"),
                input=data.get("input") or {},
            )
        ]

    if msg_type == "error":
        return [AgentMessage(AgentMessageKind.ERROR, text=data.get("error") or data.get("message") or "")]

    return []


class SubprocessAgentRunner:
    """Runs the configured agent command once per request."""

    def __init__(self, config: AgentConfig):
        self.config = config

    def build_argv(self, request: AgentRequest) -> list[str]:
        argv = list(self.config.command)
        model = request.model or self.config.model
        if model and self.config.model_flag:
            argv += [self.config.model_flag, model]
        max_turns = request.max_turns or self.config.max_turns
        if max_turns and self.config.max_turns_flag:
            argv += [self.config.max_turns_flag, str(max_turns)]
        if request.allowed_tools and self.config.tools_flag:
            argv += [self.config.tools_flag, ",".join(request.allowed_tools)]
        return argv

    async def run(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        argv = self.build_argv(request)
        logger.info("Starting agent in %s: %s", request.cwd, argv[0])
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(request.cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_LINE_LIMIT,
            )
        except OSError as e:
            raise AgentTaskError(f"Failed to start agent {argv[0]!r}: {e}") from e

        stderr_task = asyncio.create_task(proc.stderr.read())
        try:
            proc.stdin.write(request.prompt.encode())
            await proc.stdin.drain()
            proc.stdin.close()

            saw_result = False
            async for raw in proc.stdout:
                line = raw.decode(errors="replace").strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    yield AgentMessage(AgentMessageKind.TEXT, text=line)
                    continue
                if not isinstance(data, dict):
                    continue
                for message in parse_agent_line(data):
                    if message.kind == AgentMessageKind.RESULT:
                        saw_result = True
                    yield message

            code = await proc.wait()
            stderr = (await stderr_task).decode(errors="replace")
            if code != 0 and not saw_result:
                detail = stderr.strip()[-_STDERR_TAIL:] or f"exit code {code}"
                raise AgentTaskError(
                    f"Agent exited with code {code}: {detail}", is_auth=is_auth_error(stderr)
                )
        finally:
            if proc.returncode is None:
                await terminate_process(proc)
            if not stderr_task.done():
                stderr_task.cancel()


# ── Prompts ──────────────────────────────────────────────────────────────────


def build_feature_prompt(feature: Feature) -> str:
    prompt = (
        "## Feature Implementation Task\n\n"
        f"**Feature ID:** {feature.id}\n"
        f"**Title:** {feature.display_title}\n"
        f"**Description:** {feature.description}\n"
    )
    if feature.spec:
        prompt += f"\n**Specification:**\n{feature.spec}\n"
    if feature.image_paths:
        images = "\n".join(
            f"   {i}. {Path(path).name}\n      Path: {path}"
            for i, path in enumerate(feature.image_paths, start=1)
        )
        prompt += (
            "\n**Context Images Attached:**\n"
            f"The user has attached {len(feature.image_paths)} image(s) for context. "
            "Use the Read tool to view them before implementing:\n\n"
            f"{images}\n"
        )
    return prompt


def build_planning_prompt(feature: Feature) -> str:
    return (
        f"{build_feature_prompt(feature)}\n"
        "## Instructions\n\n"
        "Do not modify any files yet. Explore the codebase and write a short,\n"
        "concrete implementation plan: the files to change, the approach, and\n"
        "the tests to add or update."
    )


def build_action_prompt(feature: Feature, plan: str | None = None) -> str:
    prompt = build_feature_prompt(feature)
    if plan:
        prompt += f"\n## Implementation Plan\n\n{plan}\n"
    prompt += (
        "\n## Instructions\n\n"
        "Implement this feature by:\n"
        "1. First, explore the codebase to understand the existing structure\n"
        "2. Follow the plan (or make one) for your implementation approach\n"
        "3. Write the necessary code changes\n"
        "4. Add or update tests as needed\n"
        "5. Ensure the code follows existing patterns and conventions\n\n"
        "When done, summarize what you implemented and any notes for the developer."
    )
    return prompt


def build_continuation_prompt(feature: Feature, context: str) -> str:
    return (
        "## Continuing Feature Implementation\n\n"
        f"{build_feature_prompt(feature)}\n"
        "## Previous Context\n"
        "The following is the output from a previous implementation attempt. "
        "Continue from where you left off:\n\n"
        f"{context}\n\n"
        "## Instructions\n"
        "Review the previous work and continue the implementation. "
        "If the feature appears complete, verify it works correctly."
    )


def build_follow_up_prompt(feature: Feature, instructions: str, previous: str | None) -> str:
    prompt = f"## Follow-up on Feature Implementation\n\n{build_feature_prompt(feature)}\n"
    if previous:
        prompt += (
            "\n## Previous Agent Work\n"
            "The following is the output from the previous implementation attempt:\n\n"
            f"{previous}\n"
        )
    prompt += (
        f"\n## Follow-up Instructions\n{instructions}\n\n"
        "## Task\n"
        "Address the follow-up instructions above. Review the previous work and "
        "make the requested changes or fixes."
    )
    return prompt
