"""Auto-Mode Scheduler: admits, runs, cancels and resumes feature tasks.

Each admitted feature runs as one ``asyncio.Task`` that moves through up to
three phases: planning (read-only agent pass), action (agent implements the
feature) and verification (configured check commands). The task is the
cancellation handle stored in the :class:`RunningSet`; ``stop_feature``
cancels it and waits for it to settle.

Status writes happen only at start-of-run and at settle. Every failure inside
a feature task is converted into a terminal event at the task boundary, so
nothing escapes into the event loop.

Per-project auto loops are event driven: admission is re-evaluated when a
feature settles, when ``max_concurrency`` changes, when a feature is approved,
and every ``auto_mode.poll_interval`` seconds to pick up external edits.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from foreman.agent import (
    AgentMessageKind,
    AgentRequest,
    AgentTaskRunner,
    build_action_prompt,
    build_continuation_prompt,
    build_follow_up_prompt,
    build_planning_prompt,
    is_auth_error,
)
from foreman.config import ForemanConfig
from foreman.errors import (
    AgentTaskError,
    AlreadyRunningError,
    DependencyUnsatisfiedError,
    ForemanError,
    NotRunningError,
    WorktreeCreationError,
)
from foreman.events import EventBus
from foreman.features import FeatureStore
from foreman.models import (
    AUTO_MODE_TOPIC,
    AgentEvent,
    AgentPhase,
    AutoModeEventType,
    Feature,
    FeatureStatus,
    utcnow,
)
from foreman.verification import CheckResult, Verifier
from foreman.worktree.manager import WorktreeManager

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "stopped by user"


class RunMode(str, enum.Enum):
    FRESH = "fresh"
    RESUME = "resume"
    VERIFY = "verify"
    FOLLOW_UP = "follow_up"


# ── Running set ──────────────────────────────────────────────────────────────


@dataclass
class RunningFeature:
    feature_id: str
    project: Path
    branch: str | None
    work_dir: Path
    is_auto: bool = False
    started_at: datetime = field(default_factory=utcnow)
    task: asyncio.Task | None = field(default=None, repr=False)
    stopping: bool = False
    settled: bool = False

    def describe(self) -> dict[str, Any]:
        return {
            "featureId": self.feature_id,
            "projectPath": str(self.project),
            "branchName": self.branch,
            "worktreePath": str(self.work_dir),
            "isAutoMode": self.is_auto,
            "startedAt": self.started_at.isoformat(),
        }


class RunningSet:
    """Feature id -> RunningFeature. Mutated only on the event loop."""

    def __init__(self) -> None:
        self._items: dict[str, RunningFeature] = {}

    def add(self, running: RunningFeature) -> None:
        if running.feature_id in self._items:
            raise AlreadyRunningError(f"Feature {running.feature_id} is already running")
        self._items[running.feature_id] = running

    def get(self, feature_id: str) -> RunningFeature | None:
        return self._items.get(feature_id)

    def discard(self, running: RunningFeature) -> None:
        if self._items.get(running.feature_id) is running:
            del self._items[running.feature_id]

    def for_project(self, project: Path) -> list[RunningFeature]:
        return [r for r in self._items.values() if r.project == project]

    def values(self) -> list[RunningFeature]:
        return list(self._items.values())

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._items

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class FeatureRun:
    """Acknowledgement returned once a run has its work dir."""

    feature_id: str
    branch: str | None
    work_dir: Path
    task: asyncio.Task = field(repr=False)

    async def wait(self) -> bool:
        """Wait for the run to settle; returns whether it passed."""
        try:
            return await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.task.cancelled():
                return False
            raise

    def to_json_dict(self) -> dict[str, Any]:
        return {"featureId": self.feature_id, "branch": self.branch, "workDir": str(self.work_dir)}


@dataclass
class _ProjectLoop:
    project: Path
    max_concurrency: int
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    idle_reported: bool = False
    # Features that failed while this loop ran; not re-admitted until restart.
    failed: set[str] = field(default_factory=set)


# ── Scheduler ────────────────────────────────────────────────────────────────


class AutoModeScheduler:
    def __init__(
        self,
        config: ForemanConfig,
        features: FeatureStore,
        worktrees: WorktreeManager,
        runner: AgentTaskRunner,
        bus: EventBus,
        verifier: Verifier,
    ):
        self.config = config
        self.features = features
        self.worktrees = worktrees
        self.runner = runner
        self.bus = bus
        self.verifier = verifier

        self.running = RunningSet()
        self._loops: dict[Path, _ProjectLoop] = {}

    # ── Auto loop ────────────────────────────────────────────────────────

    async def start(self, project: Path, max_concurrency: int | None = None) -> None:
        project = _normalize(project)
        if project in self._loops:
            raise AlreadyRunningError(f"Auto mode is already running for {project}")
        limit = max_concurrency or self.config.auto_mode.max_concurrency
        if limit < 1:
            raise ForemanError(f"max_concurrency must be at least 1, got {limit}")

        loop = _ProjectLoop(project=project, max_concurrency=limit)
        self._loops[project] = loop
        self._emit(
            AutoModeEventType.STARTED,
            project=project,
            message=f"Auto mode started with max_concurrency={limit}",
        )
        loop.task = asyncio.create_task(self._run_loop(loop), name=f"auto-mode-{project.name}")
        logger.info("Auto mode started for %s (max_concurrency=%d)", project, limit)

    async def stop(self, project: Path) -> int:
        """Stop the project's loop and cancel its running features; returns how many were running."""
        project = _normalize(project)
        loop = self._loops.pop(project, None)
        if loop is not None and loop.task is not None:
            loop.task.cancel()
            await asyncio.wait({loop.task})

        running = self.running.for_project(project)
        await asyncio.gather(*(self._cancel(r) for r in running))

        if loop is not None:
            self._emit(AutoModeEventType.STOPPED, project=project, message="Auto mode stopped")
            logger.info("Auto mode stopped for %s (%d feature(s) cancelled)", project, len(running))
        return len(running)

    async def set_max_concurrency(self, project: Path, max_concurrency: int) -> None:
        project = _normalize(project)
        if max_concurrency < 1:
            raise ForemanError(f"max_concurrency must be at least 1, got {max_concurrency}")
        loop = self._loops.get(project)
        if loop is None:
            raise NotRunningError(f"Auto mode is not running for {project}")
        loop.max_concurrency = max_concurrency
        loop.wake.set()

    async def _run_loop(self, loop: _ProjectLoop) -> None:
        while True:
            loop.wake.clear()
            try:
                await self._admit(loop)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Auto-mode iteration failed for %s", loop.project)
            try:
                await asyncio.wait_for(loop.wake.wait(), timeout=self.config.auto_mode.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _admit(self, loop: _ProjectLoop) -> None:
        project = loop.project
        features = await self.features.list_features(project)
        by_id = {f.id: f for f in features}

        candidates = sorted(
            (
                f
                for f in features
                if f.status == FeatureStatus.BACKLOG
                and f.id not in self.running
                and f.id not in loop.failed
            ),
            key=lambda f: (f.priority, f.created_at, f.id),
        )
        eligible = []
        for feature in candidates:
            try:
                check_dependencies(feature, by_id)
            except DependencyUnsatisfiedError as e:
                logger.debug("%s", e)
                continue
            eligible.append(feature)

        if not eligible and not self.running.for_project(project):
            if not loop.idle_reported:
                loop.idle_reported = True
                self._emit(
                    AutoModeEventType.IDLE,
                    project=project,
                    message="No pending features - auto mode idle",
                )
            return
        loop.idle_reported = False

        for feature in eligible:
            if len(self.running.for_project(project)) >= loop.max_concurrency:
                break
            try:
                await self._launch(
                    project,
                    feature,
                    RunMode.FRESH,
                    use_worktrees=self.config.auto_mode.use_worktrees,
                    is_auto=True,
                )
            except AlreadyRunningError:
                continue
            except NotRunningError:
                logger.info("Feature %s was stopped before it started", feature.id)
                continue
            except ForemanError as e:
                logger.warning("Could not admit feature %s: %s", feature.id, e)
                loop.failed.add(feature.id)

    def _wake(self, project: Path) -> None:
        loop = self._loops.get(project)
        if loop is not None:
            loop.wake.set()

    # ── Commands ─────────────────────────────────────────────────────────

    async def run_feature(
        self,
        project: Path,
        feature_id: str,
        use_worktrees: bool = True,
    ) -> FeatureRun:
        project = _normalize(project)
        feature = await self._require_idle(project, feature_id)
        return await self._launch(project, feature, RunMode.FRESH, use_worktrees=use_worktrees)

    async def resume_feature(
        self,
        project: Path,
        feature_id: str,
        use_worktrees: bool = True,
    ) -> FeatureRun:
        """Continue from the saved agent context, or start fresh when there is none."""
        project = _normalize(project)
        feature = await self._require_idle(project, feature_id)
        return await self._launch(project, feature, RunMode.RESUME, use_worktrees=use_worktrees)

    async def verify_feature(
        self,
        project: Path,
        feature_id: str,
        use_worktrees: bool = True,
    ) -> FeatureRun:
        """Run only the verification phase in the feature's existing work dir."""
        project = _normalize(project)
        feature = await self._require_idle(project, feature_id)
        return await self._launch(project, feature, RunMode.VERIFY, use_worktrees=use_worktrees)

    async def follow_up_feature(
        self,
        project: Path,
        feature_id: str,
        prompt: str,
        image_paths: list[str] | None = None,
        use_worktrees: bool = True,
    ) -> FeatureRun:
        project = _normalize(project)
        feature = await self._require_idle(project, feature_id)
        if image_paths:
            copied = await self.features.copy_images(project, feature_id, image_paths)
            feature.image_paths += [p for p in copied if p not in feature.image_paths]
            await self.features.save(project, feature)
        return await self._launch(
            project, feature, RunMode.FOLLOW_UP, use_worktrees=use_worktrees, prompt=prompt
        )

    async def commit_feature(self, project: Path, feature_id: str) -> str | None:
        """Commit everything in the feature's work dir; None when it is clean."""
        project = _normalize(project)
        feature = await self.features.require(project, feature_id)
        work_dir = project
        if feature.branch_name:
            work_dir = await self.worktrees.find_worktree(project, feature.branch_name) or project

        message = f"feat: {feature.display_title}\n\nImplemented by Foreman auto-mode"
        commit = await self.worktrees.commit_changes(work_dir, message)
        if commit is None:
            logger.info("Nothing to commit for feature %s", feature_id)
            return None
        logger.info("Committed feature %s as %s", feature_id, commit[:8])
        self._emit(
            AutoModeEventType.FEATURE_COMPLETE,
            feature_id=feature_id,
            project=project,
            passes=True,
            message=f"Changes committed: {commit[:8]}",
        )
        return commit

    async def approve_feature(self, project: Path, feature_id: str) -> Feature:
        project = _normalize(project)
        feature = await self.features.require(project, feature_id)
        if feature.status != FeatureStatus.WAITING_APPROVAL:
            raise ForemanError(
                f"Feature {feature_id} is {feature.status.value}, not waiting for approval"
            )
        feature = await self.features.update_status(project, feature_id, FeatureStatus.VERIFIED)
        self._wake(project)
        return feature

    async def archive_feature(self, project: Path, feature_id: str) -> Feature:
        project = _normalize(project)
        if feature_id in self.running:
            raise AlreadyRunningError(f"Feature {feature_id} is running; stop it before archiving")
        return await self.features.update_status(project, feature_id, FeatureStatus.ARCHIVED)

    async def stop_feature(self, feature_id: str) -> None:
        running = self.running.get(feature_id)
        if running is None:
            raise NotRunningError(f"Feature {feature_id} is not running")
        await self._cancel(running)

    async def context_exists(self, project: Path, feature_id: str) -> bool:
        return await self.features.context_exists(_normalize(project), feature_id)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_status(self, project: Path | None = None) -> dict[str, Any]:
        if project is not None:
            project = _normalize(project)
            running = self.running.for_project(project)
            loop = self._loops.get(project)
            is_running = loop is not None
        else:
            running = self.running.values()
            loop = None
            is_running = bool(self._loops)
        status: dict[str, Any] = {
            "isRunning": is_running,
            "runningFeatures": [r.feature_id for r in running],
            "runningCount": len(running),
        }
        if loop is not None:
            status["maxConcurrency"] = loop.max_concurrency
        return status

    def get_running_agents(self) -> list[dict[str, Any]]:
        return [r.describe() for r in self.running.values()]

    async def shutdown(self) -> None:
        for project in list(self._loops):
            await self.stop(project)
        await asyncio.gather(*(self._cancel(r) for r in self.running.values()))

    # ── Feature task ─────────────────────────────────────────────────────

    async def _require_idle(self, project: Path, feature_id: str) -> Feature:
        if feature_id in self.running:
            raise AlreadyRunningError(f"Feature {feature_id} is already running")
        feature = await self.features.require(project, feature_id)
        if feature_id in self.running:
            raise AlreadyRunningError(f"Feature {feature_id} is already running")
        return feature

    async def _launch(
        self,
        project: Path,
        feature: Feature,
        mode: RunMode,
        *,
        use_worktrees: bool,
        is_auto: bool = False,
        prompt: str | None = None,
    ) -> FeatureRun:
        running = RunningFeature(
            feature_id=feature.id,
            project=project,
            branch=feature.branch_name,
            work_dir=project,
            is_auto=is_auto,
        )
        self.running.add(running)

        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        use_worktrees = use_worktrees and self.config.auto_mode.use_worktrees
        running.task = asyncio.create_task(
            self._execute(running, feature, mode, use_worktrees, ready, prompt),
            name=f"feature-{feature.id}",
        )
        running.task.add_done_callback(lambda task: self._on_task_done(running, ready))

        await ready
        return FeatureRun(
            feature_id=feature.id,
            branch=running.branch,
            work_dir=running.work_dir,
            task=running.task,
        )

    async def _execute(
        self,
        running: RunningFeature,
        feature: Feature,
        mode: RunMode,
        use_worktrees: bool,
        ready: asyncio.Future[None],
        prompt: str | None,
    ) -> bool:
        project = running.project
        feature_id = feature.id
        try:
            try:
                running.work_dir, running.branch = await self._acquire_work_dir(
                    project,
                    feature,
                    use_worktrees,
                    reuse_only=mode in (RunMode.VERIFY, RunMode.FOLLOW_UP),
                )
            except ForemanError as e:
                logger.error("Worktree setup failed for feature %s: %s", feature_id, e)
                self._emit(
                    AutoModeEventType.ERROR,
                    feature_id=feature_id,
                    project=project,
                    error=str(e),
                    error_type="worktree",
                )
                if not ready.done():
                    ready.set_exception(
                        e if isinstance(e, WorktreeCreationError) else WorktreeCreationError(str(e))
                    )
                return False

            feature = await self.features.update_status(
                project,
                feature_id,
                FeatureStatus.IN_PROGRESS,
                error=feature.error,
                branch_name=running.branch,
            )
            self._emit(
                AutoModeEventType.FEATURE_START,
                feature_id=feature_id,
                project=project,
                feature=feature.to_json_dict(),
            )
            if not ready.done():
                ready.set_result(None)

            if running.branch and running.work_dir != project:
                await self.worktrees.wait_for_init(project, running.branch)

            if mode != RunMode.VERIFY:
                await self._agent_phases(running, feature, mode, prompt)
            failure = await self._verify(running)
            if failure is not None:
                await self._settle(running, passes=False, error=failure, error_type="verification")
                return False
            await self._settle(running, passes=True)
            return True
        except asyncio.CancelledError:
            logger.info("Feature %s stopped", feature_id)
            if not ready.done():
                ready.set_exception(NotRunningError(STOPPED_MESSAGE))
            # Stopped before FEATURE_START: the BACKLOG write leaves the status unchanged.
            await self._settle(running, passes=False, message=STOPPED_MESSAGE)
            return False
        except AgentTaskError as e:
            logger.warning("Agent failed on feature %s: %s", feature_id, e)
            await self._settle(
                running,
                passes=False,
                error=str(e),
                error_type="authentication" if e.is_auth else "execution",
            )
            return False
        except Exception as e:
            logger.exception("Feature %s failed", feature_id)
            if not ready.done():
                ready.set_exception(e)
            await self._settle(running, passes=False, error=str(e), error_type="execution")
            return False
        finally:
            running.settled = True
            self.running.discard(running)
            self._wake(project)

    async def _acquire_work_dir(
        self,
        project: Path,
        feature: Feature,
        use_worktrees: bool,
        *,
        reuse_only: bool = False,
    ) -> tuple[Path, str | None]:
        if not use_worktrees:
            return project, feature.branch_name

        main = await self.worktrees.main_branch(project)
        branch = feature.branch_name
        if not branch or branch == main:
            branch = f"feature/{feature.id}"

        if reuse_only:
            path = await self.worktrees.find_worktree(project, branch)
            if path is None:
                logger.warning("No worktree for %s, using project root", branch)
                return project, feature.branch_name
            return path, branch

        info = await self.worktrees.ensure_worktree(project, branch)
        return Path(info.path), branch

    async def _agent_phases(
        self,
        running: RunningFeature,
        feature: Feature,
        mode: RunMode,
        prompt: str | None,
    ) -> None:
        project = running.project
        previous = await self.features.read_context(project, feature.id)

        if mode == RunMode.FOLLOW_UP:
            action_prompt = build_follow_up_prompt(feature, prompt or "", previous)
        elif mode == RunMode.RESUME and previous:
            action_prompt = build_continuation_prompt(feature, previous)
        else:
            previous = None
            plan = None
            if self.config.auto_mode.planning:
                self._emit_phase(running, AgentPhase.PLANNING, "Planning implementation")
                plan = "\n\n".join(
                    await self._run_agent(
                        running,
                        feature,
                        build_planning_prompt(feature),
                        self.config.agent.planning_tools,
                        AgentPhase.PLANNING,
                    )
                )
            action_prompt = build_action_prompt(feature, plan)

        self._emit_phase(running, AgentPhase.ACTION, "Implementing feature")
        transcript: list[str] = []
        try:
            await self._run_agent(
                running,
                feature,
                action_prompt,
                self.config.agent.allowed_tools,
                AgentPhase.ACTION,
                transcript,
            )
        finally:
            # Saved even when the run is stopped, so it can be resumed.
            if transcript:
                output = "\n\n".join(transcript)
                if mode == RunMode.FOLLOW_UP and previous:
                    output = f"{previous}\n\n---\n\n## Follow-up Session\n\n{output}"
                await self.features.write_context(project, feature.id, output)

    async def _run_agent(
        self,
        running: RunningFeature,
        feature: Feature,
        prompt: str,
        tools: list[str],
        phase: AgentPhase,
        transcript: list[str] | None = None,
    ) -> list[str]:
        if transcript is None:
            transcript = []
        request = AgentRequest(
            prompt=prompt,
            cwd=running.work_dir,
            allowed_tools=list(tools),
            model=feature.model or self.config.agent.model,
            image_paths=[str(running.project / p) for p in feature.image_paths],
            max_turns=self.config.agent.max_turns,
        )
        stream = self.runner.run(request)
        try:
            async for message in stream:
                if message.kind == AgentMessageKind.TEXT:
                    transcript.append(message.text)
                    self._emit(
                        AutoModeEventType.PROGRESS,
                        feature_id=feature.id,
                        project=running.project,
                        phase=phase,
                        content=message.text,
                    )
                elif message.kind == AgentMessageKind.TOOL_USE:
                    self._emit(
                        AutoModeEventType.TOOL,
                        feature_id=feature.id,
                        project=running.project,
                        phase=phase,
                        tool=message.tool,
                        input=message.input,
                    )
                elif message.kind == AgentMessageKind.RESULT:
                    if message.text and not transcript:
                        transcript.append(message.text)
                elif message.kind == AgentMessageKind.ERROR:
                    raise AgentTaskError(
                        message.text or "Agent reported an error",
                        is_auth=is_auth_error(message.text),
                    )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return transcript

    async def _verify(self, running: RunningFeature) -> str | None:
        self._emit_phase(running, AgentPhase.VERIFICATION, "Verifying implementation")

        def on_check(check: CheckResult) -> None:
            self._emit(
                AutoModeEventType.PROGRESS,
                feature_id=running.feature_id,
                project=running.project,
                phase=AgentPhase.VERIFICATION,
                content=f"{'PASS' if check.passed else 'FAIL'}: {check.command}",
            )

        result = await self.verifier.run(running.work_dir, on_check)
        return result.failure

    async def _settle(
        self,
        running: RunningFeature,
        *,
        passes: bool,
        message: str | None = None,
        error: str | None = None,
        error_type: str | None = None,
    ) -> None:
        """Write the final status and emit the single terminal event."""
        project = running.project
        feature_id = running.feature_id
        if passes:
            status = (
                FeatureStatus.WAITING_APPROVAL
                if self.config.auto_mode.require_approval
                else FeatureStatus.VERIFIED
            )
            message = message or "Feature completed successfully"
        else:
            status = FeatureStatus.BACKLOG
            message = message or error

        try:
            await self.features.update_status(project, feature_id, status, error=error)
        except (ForemanError, OSError) as e:
            logger.warning("Could not record final status of feature %s: %s", feature_id, e)

        loop = self._loops.get(project)
        if loop is not None:
            if passes:
                loop.failed.discard(feature_id)
            elif running.is_auto and message != STOPPED_MESSAGE:
                loop.failed.add(feature_id)

        self._emit(
            AutoModeEventType.FEATURE_COMPLETE,
            feature_id=feature_id,
            project=project,
            passes=passes,
            message=message,
            error=error,
            error_type=error_type,
        )

    def _on_task_done(self, running: RunningFeature, ready: asyncio.Future[None]) -> None:
        # Only reached without settling when the task was cancelled before it started.
        if not ready.done():
            ready.set_exception(NotRunningError(STOPPED_MESSAGE))
        if running.settled:
            return
        running.settled = True
        self.running.discard(running)
        self._emit(
            AutoModeEventType.FEATURE_COMPLETE,
            feature_id=running.feature_id,
            project=running.project,
            passes=False,
            message=STOPPED_MESSAGE,
        )
        self._wake(running.project)

    async def _cancel(self, running: RunningFeature) -> None:
        task = running.task
        if task is None:
            return
        if not running.stopping:
            running.stopping = True
            task.cancel()
        await asyncio.wait({task})

    # ── Events ───────────────────────────────────────────────────────────

    def _emit_phase(self, running: RunningFeature, phase: AgentPhase, message: str) -> None:
        self._emit(
            AutoModeEventType.PHASE,
            feature_id=running.feature_id,
            project=running.project,
            phase=phase,
            message=message,
        )

    def _emit(
        self,
        event_type: AutoModeEventType,
        *,
        feature_id: str | None = None,
        project: Path | None = None,
        **fields: Any,
    ) -> None:
        event = AgentEvent(
            type=event_type,
            feature_id=feature_id,
            project_path=str(project) if project is not None else None,
            **fields,
        )
        self.bus.emit(AUTO_MODE_TOPIC, event.to_json_dict())


def check_dependencies(feature: Feature, by_id: dict[str, Feature]) -> None:
    """Raise DependencyUnsatisfiedError unless every dependency is verified.

    A dependency that no longer exists counts as satisfied.
    """
    unmet = [
        dep
        for dep in feature.dependencies
        if dep in by_id and by_id[dep].status != FeatureStatus.VERIFIED
    ]
    if unmet:
        raise DependencyUnsatisfiedError(feature.id, unmet)


def _normalize(project: Path) -> Path:
    return Path(project).resolve()
