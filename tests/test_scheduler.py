"""Tests for the auto-mode scheduler: admission, phases, stop and settle."""

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from conftest import eventually, git
from foreman.config import AutoModeConfig, ForemanConfig
from foreman.errors import (
    AlreadyRunningError,
    FeatureNotFoundError,
    ForemanError,
    NotRunningError,
    WorktreeCreationError,
)
from foreman.models import AUTO_MODE_TOPIC, AutoModeEventType, Feature, FeatureStatus
from foreman.scheduler import STOPPED_MESSAGE, check_dependencies
from foreman.server import ForemanServer
from foreman.worktree.git import Git


class Recorder:
    def __init__(self, bus):
        self.events: list[dict] = []
        bus.subscribe(AUTO_MODE_TOPIC, self.events.append)

    def of(self, event_type: AutoModeEventType, feature_id: str | None = None) -> list[dict]:
        return [
            e
            for e in self.events
            if e["type"] == event_type.value
            and (feature_id is None or e.get("featureId") == feature_id)
        ]

    def types(self, feature_id: str) -> list[str]:
        return [e["type"] for e in self.events if e.get("featureId") == feature_id]


class SlowAddGit(Git):
    """Holds every ``git worktree add`` until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.adding = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, cwd, *args, **kwargs):
        if args[:2] == ("worktree", "add"):
            self.adding.set()
            await self.release.wait()
        return await super().run(cwd, *args, **kwargs)


async def until(predicate, timeout: float = 5.0) -> None:
    async def check():
        return predicate()

    await eventually(check, timeout=timeout)


@pytest_asyncio.fixture
async def make_server(fake_runner):
    servers = []

    def factory(git=None, **auto_mode) -> ForemanServer:
        options = {"planning": False, "use_worktrees": False, "poll_interval": 0.05, **auto_mode}
        config = ForemanConfig(auto_mode=AutoModeConfig(**options))
        srv = ForemanServer(config, runner=fake_runner, git=git)
        servers.append(srv)
        return srv

    yield factory
    for srv in servers:
        await srv.stop()


@pytest.fixture
def server(make_server):
    return make_server()


@pytest.fixture
def scheduler(server):
    return server.scheduler


@pytest.fixture
def recorder(server):
    return Recorder(server.bus)


async def _add(server, project, feature_id, **fields) -> Feature:
    return await server.features.create(project, Feature(id=feature_id, **fields))


async def _status(server, project, feature_id) -> FeatureStatus:
    return (await server.features.require(project, feature_id)).status


class TestManualRun:
    async def test_event_order_and_final_status(self, server, scheduler, recorder, project):
        await _add(server, project, "f1", title="Add login")

        run = await scheduler.run_feature(project, "f1")
        assert run.work_dir == project
        assert await run.wait() is True

        assert recorder.types("f1") == [
            "auto_mode_feature_start",
            "auto_mode_phase",
            "auto_mode_progress",
            "auto_mode_tool",
            "auto_mode_phase",
            "auto_mode_feature_complete",
        ]
        start = recorder.of(AutoModeEventType.FEATURE_START, "f1")[0]
        assert start["feature"]["status"] == "in_progress"
        complete = recorder.of(AutoModeEventType.FEATURE_COMPLETE, "f1")[0]
        assert complete["passes"] is True
        assert complete["projectPath"] == str(project)
        assert await _status(server, project, "f1") == FeatureStatus.WAITING_APPROVAL
        assert "f1" not in scheduler.running

    async def test_planning_phase_runs_read_only_first(self, make_server, fake_runner, project):
        server = make_server(planning=True)
        recorder = Recorder(server.bus)
        await _add(server, project, "f1")

        run = await server.scheduler.run_feature(project, "f1")
        await run.wait()

        planning, action = fake_runner.requests
        assert planning.allowed_tools == ["Read", "Glob", "Grep"]
        assert "Do not modify any files" in planning.prompt
        assert "Write" in action.allowed_tools
        assert "## Implementation Plan\n\nworking on f1" in action.prompt
        phases = [e["phase"] for e in recorder.of(AutoModeEventType.PHASE, "f1")]
        assert phases == ["planning", "action", "verification"]

    async def test_agent_output_saved_as_context(self, server, scheduler, project):
        await _add(server, project, "f1")
        run = await scheduler.run_feature(project, "f1")
        await run.wait()

        assert await scheduler.context_exists(project, "f1")
        assert await server.features.read_context(project, "f1") == "working on f1"

    async def test_without_approval_goes_straight_to_verified(self, make_server, project):
        server = make_server(require_approval=False)
        await _add(server, project, "f1")
        run = await server.scheduler.run_feature(project, "f1")
        await run.wait()
        assert await _status(server, project, "f1") == FeatureStatus.VERIFIED

    async def test_already_running(self, server, scheduler, fake_runner, project):
        await _add(server, project, "f1")
        fake_runner.gates["f1"] = asyncio.Event()
        run = await scheduler.run_feature(project, "f1")

        with pytest.raises(AlreadyRunningError):
            await scheduler.run_feature(project, "f1")
        with pytest.raises(AlreadyRunningError):
            await scheduler.archive_feature(project, "f1")

        fake_runner.gates["f1"].set()
        assert await run.wait() is True

    async def test_unknown_feature(self, scheduler, project):
        with pytest.raises(FeatureNotFoundError):
            await scheduler.run_feature(project, "nope")

    async def test_status_and_running_agents(self, server, scheduler, fake_runner, project):
        await _add(server, project, "f1")
        fake_runner.gates["f1"] = asyncio.Event()
        run = await scheduler.run_feature(project, "f1")

        status = scheduler.get_status(project)
        assert status == {"isRunning": False, "runningFeatures": ["f1"], "runningCount": 1}
        agents = scheduler.get_running_agents()
        assert agents[0]["featureId"] == "f1"
        assert agents[0]["isAutoMode"] is False
        assert agents[0]["worktreePath"] == str(project)

        fake_runner.gates["f1"].set()
        await run.wait()
        assert scheduler.get_status()["runningCount"] == 0


class TestFailures:
    async def test_agent_error_returns_feature_to_backlog(self, server, scheduler, fake_runner, recorder, project):
        await _add(server, project, "f1")
        fake_runner.errors["f1"] = "tool crashed"

        run = await scheduler.run_feature(project, "f1")
        assert await run.wait() is False

        complete = recorder.of(AutoModeEventType.FEATURE_COMPLETE, "f1")
        assert len(complete) == 1
        assert complete[0]["passes"] is False
        assert complete[0]["errorType"] == "execution"
        feature = await server.features.require(project, "f1")
        assert feature.status == FeatureStatus.BACKLOG
        assert feature.error == "tool crashed"

    async def test_auth_error_is_classified(self, server, scheduler, fake_runner, recorder, project):
        await _add(server, project, "f1")
        fake_runner.errors["f1"] = "Invalid API key provided"

        run = await scheduler.run_feature(project, "f1")
        await run.wait()

        complete = recorder.of(AutoModeEventType.FEATURE_COMPLETE, "f1")[0]
        assert complete["errorType"] == "authentication"

    async def test_verification_failure(self, make_server, project):
        server = make_server(verification_commands=["true", "echo checking; exit 4", "touch never"])
        recorder = Recorder(server.bus)
        await _add(server, project, "f1")

        run = await server.scheduler.run_feature(project, "f1")
        assert await run.wait() is False

        complete = recorder.of(AutoModeEventType.FEATURE_COMPLETE, "f1")[0]
        assert complete["errorType"] == "verification"
        feature = await server.features.require(project, "f1")
        assert feature.status == FeatureStatus.BACKLOG
        assert feature.error.startswith("Verification failed: echo checking; exit 4")
        assert "checking" in feature.error
        assert not (project / "never").exists()
        progress = [
            e["content"]
            for e in recorder.of(AutoModeEventType.PROGRESS, "f1")
            if e["phase"] == "verification"
        ]
        assert progress == ["PASS: true", "FAIL: echo checking; exit 4"]

    async def test_verification_passes_in_work_dir(self, make_server, project):
        server = make_server(verification_commands=["test -f ready.txt"])
        (project / "ready.txt").write_text("")
        await _add(server, project, "f1")
        run = await server.scheduler.run_feature(project, "f1")
        assert await run.wait() is True

    async def test_worktree_failure_is_reported(self, make_server, project):
        server = make_server(use_worktrees=True)
        recorder = Recorder(server.bus)
        await _add(server, project, "f1")

        with pytest.raises(WorktreeCreationError):
            await server.scheduler.run_feature(project, "f1")

        await until(lambda: "f1" not in server.scheduler.running)
        errors = recorder.of(AutoModeEventType.ERROR, "f1")
        assert errors[0]["errorType"] == "worktree"
        assert await _status(server, project, "f1") == FeatureStatus.BACKLOG


class TestStop:
    async def test_stop_feature_settles_once(self, server, scheduler, fake_runner, recorder, project):
        await _add(server, project, "f1")
        fake_runner.gates["f1"] = asyncio.Event()
        run = await scheduler.run_feature(project, "f1")
        await until(lambda: fake_runner.active == 1)

        await scheduler.stop_feature("f1")

        assert await run.wait() is False
        complete = recorder.of(AutoModeEventType.FEATURE_COMPLETE, "f1")
        assert len(complete) == 1
        assert complete[0]["passes"] is False
        assert complete[0]["message"] == STOPPED_MESSAGE
        assert fake_runner.active == 0
        assert await _status(server, project, "f1") == FeatureStatus.BACKLOG
        # Partial output is kept for a later resume.
        assert await server.features.read_context(project, "f1") == "working on f1"

        with pytest.raises(NotRunningError):
            await scheduler.stop_feature("f1")

    async def test_concurrent_stops_share_one_cancellation(self, server, scheduler, fake_runner, recorder, project):
        await _add(server, project, "f1")
        fake_runner.gates["f1"] = asyncio.Event()
        await scheduler.run_feature(project, "f1")

        await asyncio.gather(scheduler.stop_feature("f1"), scheduler.stop_feature("f1"))

        assert len(recorder.of(AutoModeEventType.FEATURE_COMPLETE, "f1")) == 1

    async def test_stop_during_worktree_setup_manual(self, make_server, fake_runner, git_repo):
        slow_git = SlowAddGit()
        server = make_server(git=slow_git, use_worktrees=True)
        recorder = Recorder(server.bus)
        await _add(server, git_repo, "f1")

        launch = asyncio.create_task(server.scheduler.run_feature(git_repo, "f1"))
        await asyncio.wait_for(slow_git.adding.wait(), timeout=5)
        await server.scheduler.stop_feature("f1")

        with pytest.raises(NotRunningError, match=STOPPED_MESSAGE):
            await launch
        assert fake_runner.requests == []
        assert recorder.types("f1") == ["auto_mode_feature_complete"]
        assert recorder.of(AutoModeEventType.FEATURE_COMPLETE, "f1")[0]["message"] == STOPPED_MESSAGE
        assert await _status(server, git_repo, "f1") == FeatureStatus.BACKLOG
        assert "f1" not in server.scheduler.running

    async def test_stop_during_worktree_setup_keeps_auto_loop_alive(
        self, make_server, fake_runner, git_repo
    ):
        slow_git = SlowAddGit()
        server = make_server(git=slow_git, use_worktrees=True, max_concurrency=1)
        await _add(server, git_repo, "f1", priority=1)
        await _add(server, git_repo, "f2", priority=2)

        await server.scheduler.start(git_repo, 1)
        await asyncio.wait_for(slow_git.adding.wait(), timeout=5)
        await until(lambda: server.scheduler.get_status(git_repo)["runningFeatures"] == ["f1"])
        await server.scheduler.stop_feature("f1")
        slow_git.release.set()

        await until(lambda: "f2" in fake_runner.feature_ids())
        loop = server.scheduler._loops[git_repo]
        assert not loop.task.done()
        assert "f1" not in loop.failed
        status = server.scheduler.get_status(git_repo)
        assert status["isRunning"] is True
        assert status["maxConcurrency"] == 1


class TestModes:
    async def test_resume_uses_saved_context(self, server, scheduler, fake_runner, project):
        await _add(server, project, "f1")
        await server.features.write_context(project, "f1", "halfway there")

        run = await scheduler.resume_feature(project, "f1")
        await run.wait()

        prompt = fake_runner.requests[0].prompt
        assert "## Continuing Feature Implementation" in prompt
        assert "halfway there" in prompt

    async def test_resume_without_context_starts_fresh(self, server, scheduler, fake_runner, project):
        await _add(server, project, "f1")
        run = await scheduler.resume_feature(project, "f1")
        await run.wait()
        assert "Continuing" not in fake_runner.requests[0].prompt

    async def test_follow_up_appends_session(self, server, scheduler, fake_runner, project, tmp_path):
        await _add(server, project, "f1")
        await server.features.write_context(project, "f1", "first session")
        image = tmp_path / "shot.png"
        image.write_bytes(b"png")

        run = await scheduler.follow_up_feature(project, "f1", "fix the bug", image_paths=[str(image)])
        await run.wait()

        request = fake_runner.requests[0]
        assert "## Follow-up Instructions\nfix the bug" in request.prompt
        assert "first session" in request.prompt
        assert request.image_paths == [str(project / ".foreman/features/f1/images/shot.png")]
        context = await server.features.read_context(project, "f1")
        assert context == "first session\n\n---\n\n## Follow-up Session\n\nworking on f1"
        feature = await server.features.require(project, "f1")
        assert feature.image_paths == [".foreman/features/f1/images/shot.png"]

    async def test_verify_only_runs_checks(self, server, scheduler, fake_runner, recorder, project):
        await _add(server, project, "f1")
        run = await scheduler.verify_feature(project, "f1")
        assert await run.wait() is True

        assert fake_runner.requests == []
        phases = [e["phase"] for e in recorder.of(AutoModeEventType.PHASE, "f1")]
        assert phases == ["verification"]

    async def test_approve_and_archive(self, server, scheduler, project):
        await _add(server, project, "f1")
        with pytest.raises(ForemanError):
            await scheduler.approve_feature(project, "f1")

        run = await scheduler.run_feature(project, "f1")
        await run.wait()
        feature = await scheduler.approve_feature(project, "f1")
        assert feature.status == FeatureStatus.VERIFIED

        feature = await scheduler.archive_feature(project, "f1")
        assert feature.status == FeatureStatus.ARCHIVED


class TestWorktreeRuns:
    async def test_runs_in_feature_worktree_and_commits(self, make_server, fake_runner, git_repo):
        server = make_server(use_worktrees=True)
        recorder = Recorder(server.bus)
        await _add(server, git_repo, "f1", title="Add login")

        run = await server.scheduler.run_feature(git_repo, "f1")
        await run.wait()

        worktree = git_repo / ".worktrees" / "feature-f1"
        assert run.branch == "feature/f1"
        assert run.work_dir == worktree
        assert fake_runner.requests[0].cwd == worktree
        assert (await server.features.require(git_repo, "f1")).branch_name == "feature/f1"

        (worktree / "login.py").write_text("def login(): ...\n")
        commit = await server.scheduler.commit_feature(git_repo, "f1")

        assert commit == git(worktree, "rev-parse", "HEAD")
        assert git(worktree, "log", "-1", "--format=%B").startswith("feat: Add login")
        assert git(git_repo, "status", "--porcelain", "--untracked-files=no") == ""
        committed = [
            e
            for e in recorder.of(AutoModeEventType.FEATURE_COMPLETE, "f1")
            if e["message"].startswith("Changes committed")
        ]
        assert len(committed) == 1

    async def test_commit_without_changes(self, make_server, git_repo):
        server = make_server(use_worktrees=True)
        await _add(server, git_repo, "f1")
        run = await server.scheduler.run_feature(git_repo, "f1")
        await run.wait()
        assert await server.scheduler.commit_feature(git_repo, "f1") is None

    async def test_manual_run_can_skip_worktrees(self, make_server, fake_runner, git_repo):
        server = make_server(use_worktrees=True)
        await _add(server, git_repo, "f1")
        run = await server.scheduler.run_feature(git_repo, "f1", use_worktrees=False)
        await run.wait()
        assert fake_runner.requests[0].cwd == git_repo
        assert not (git_repo / ".worktrees").exists()


class TestAutoLoop:
    async def test_admits_in_priority_order(self, make_server, fake_runner, project):
        server = make_server(max_concurrency=1)
        await _add(server, project, "p3", priority=3)
        await _add(server, project, "p1", priority=1)
        await _add(server, project, "p2", priority=2)

        await server.scheduler.start(project)
        await until(lambda: len(fake_runner.requests) == 3)

        assert fake_runner.feature_ids() == ["p1", "p2", "p3"]
        assert fake_runner.max_active == 1

    async def test_respects_max_concurrency(self, make_server, fake_runner, project):
        server = make_server(max_concurrency=2)
        fake_runner.delay = 0.05
        for i in range(5):
            await _add(server, project, f"f{i}")

        await server.scheduler.start(project)

        async def all_done():
            features = await server.features.list_features(project)
            return all(f.status == FeatureStatus.WAITING_APPROVAL for f in features)

        await eventually(all_done)
        assert fake_runner.max_active == 2

    async def test_dependency_waits_for_verification(self, make_server, fake_runner, project):
        server = make_server(max_concurrency=2)
        await _add(server, project, "a", priority=1)
        await _add(server, project, "b", priority=2, dependencies=["a"])
        fake_runner.gates["a"] = asyncio.Event()

        await server.scheduler.start(project)
        await until(lambda: fake_runner.active == 1)
        await asyncio.sleep(0.2)
        assert fake_runner.feature_ids() == ["a"]

        fake_runner.gates["a"].set()
        async def a_waiting():
            return await _status(server, project, "a") == FeatureStatus.WAITING_APPROVAL

        await eventually(a_waiting)
        await asyncio.sleep(0.2)
        assert fake_runner.feature_ids() == ["a"]

        await server.scheduler.approve_feature(project, "a")
        await until(lambda: fake_runner.feature_ids() == ["a", "b"])

    async def test_missing_dependency_counts_as_satisfied(self, make_server, fake_runner, project):
        server = make_server()
        await _add(server, project, "f1", dependencies=["deleted-feature"])
        await server.scheduler.start(project)
        await until(lambda: fake_runner.feature_ids() == ["f1"])

    async def test_idle_reported_once(self, server, scheduler, recorder, project):
        await scheduler.start(project)
        await asyncio.sleep(0.3)
        assert len(recorder.of(AutoModeEventType.IDLE)) == 1
        assert len(recorder.of(AutoModeEventType.STARTED)) == 1

    async def test_failed_feature_not_retried_in_same_session(self, server, scheduler, fake_runner, recorder, project):
        await _add(server, project, "f1")
        fake_runner.errors["f1"] = "boom"

        await scheduler.start(project)
        await until(lambda: recorder.of(AutoModeEventType.FEATURE_COMPLETE, "f1"))
        await asyncio.sleep(0.3)

        assert fake_runner.feature_ids() == ["f1"]
        assert recorder.of(AutoModeEventType.IDLE)

    async def test_start_twice_and_stop(self, server, scheduler, fake_runner, recorder, project):
        await _add(server, project, "f1")
        fake_runner.gates["f1"] = asyncio.Event()

        await scheduler.start(project, max_concurrency=2)
        with pytest.raises(AlreadyRunningError):
            await scheduler.start(project)
        await until(lambda: fake_runner.active == 1)
        assert scheduler.get_status(project)["maxConcurrency"] == 2
        assert scheduler.get_running_agents()[0]["isAutoMode"] is True

        assert await scheduler.stop(project) == 1

        assert scheduler.get_status(project) == {
            "isRunning": False,
            "runningFeatures": [],
            "runningCount": 0,
        }
        complete = recorder.of(AutoModeEventType.FEATURE_COMPLETE, "f1")
        assert [e["message"] for e in complete] == [STOPPED_MESSAGE]
        assert recorder.of(AutoModeEventType.STOPPED)
        assert await _status(server, project, "f1") == FeatureStatus.BACKLOG

    async def test_raising_concurrency_admits_more(self, make_server, fake_runner, project):
        server = make_server(max_concurrency=1, poll_interval=30)
        for feature_id in ("f1", "f2"):
            await _add(server, project, feature_id)
            fake_runner.gates[feature_id] = asyncio.Event()

        await server.scheduler.start(project)
        await until(lambda: fake_runner.active == 1)

        await server.scheduler.set_max_concurrency(project, 2)
        await until(lambda: fake_runner.active == 2)

    async def test_set_concurrency_requires_loop(self, scheduler, project):
        with pytest.raises(NotRunningError):
            await scheduler.set_max_concurrency(project, 2)


def test_check_dependencies():
    done = Feature(id="a", status=FeatureStatus.VERIFIED)
    pending = Feature(id="b")
    feature = Feature(id="c", dependencies=["a", "b", "gone"])

    with pytest.raises(ForemanError) as excinfo:
        check_dependencies(feature, {"a": done, "b": pending})
    assert excinfo.value.unmet == ["b"]

    check_dependencies(Feature(id="d", dependencies=["a"]), {"a": done})
