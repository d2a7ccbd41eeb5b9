"""HTTP command surface: auto-mode and worktree commands, features, SSE events.

Routes reach the engine through ``request.app.state.server`` (a
:class:`foreman.server.ForemanServer`); there are no module-level globals.
Every project path is validated against the allowed roots before use.
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from foreman.errors import (
    AccessDeniedError,
    AlreadyRunningError,
    FeatureNotFoundError,
    ForemanError,
    InitScriptNotFoundError,
    MergeConflictError,
    NotRunningError,
    WorktreeNotFoundError,
)
from foreman.events import HEARTBEAT_TOPIC, EventBus
from foreman.models import FEATURE_ID_PATTERN, Complexity, Feature

if TYPE_CHECKING:
    from foreman.server import ForemanServer

logger = logging.getLogger(__name__)

_HEARTBEAT_SECONDS = 30.0

router = APIRouter(prefix="/api")


def _server(request: Request) -> ForemanServer:
    return request.app.state.server


def _project(request: Request, project_path: str) -> Path:
    return _server(request).files.validate(project_path)


# ── Error mapping ────────────────────────────────────────────────────────────

_STATUS_BY_ERROR: list[tuple[type[ForemanError], int]] = [
    (AccessDeniedError, 403),
    (FeatureNotFoundError, 404),
    (WorktreeNotFoundError, 404),
    (InitScriptNotFoundError, 404),
    (AlreadyRunningError, 409),
    (NotRunningError, 409),
    (MergeConflictError, 409),
]


async def foreman_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = 400
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": str(exc), "errorType": type(exc).__name__},
    )


# ── Request bodies ───────────────────────────────────────────────────────────


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProjectBody(_Body):
    project_path: str


class StartBody(ProjectBody):
    max_concurrency: int | None = None


class MaxConcurrencyBody(ProjectBody):
    max_concurrency: int


class FeatureBody(ProjectBody):
    feature_id: str


class RunFeatureBody(FeatureBody):
    use_worktrees: bool = True


class FollowUpBody(FeatureBody):
    prompt: str
    image_paths: list[str] = Field(default_factory=list)
    use_worktrees: bool = True


class StopFeatureBody(_Body):
    feature_id: str


class CreateWorktreeBody(ProjectBody):
    branch_name: str
    base_branch: str | None = None


class BranchBody(ProjectBody):
    branch_name: str


class MergeBody(BranchBody):
    squash: bool = False
    message: str | None = None


class DeleteWorktreeBody(BranchBody):
    delete_branch: bool = False
    delete_features: bool = False


class InitScriptBody(ProjectBody):
    content: str


class CreateFeatureBody(ProjectBody):
    id: str | None = Field(default=None, pattern=FEATURE_ID_PATTERN)
    title: str = ""
    description: str = ""
    category: str = ""
    complexity: Complexity = Complexity.MODERATE
    priority: int | None = None
    dependencies: list[str] = Field(default_factory=list)
    branch_name: str | None = None
    spec: str | None = None
    model: str | None = None
    image_paths: list[str] = Field(default_factory=list)


# ── Auto mode ────────────────────────────────────────────────────────────────


@router.post("/auto-mode/start")
async def start_auto_mode(body: StartBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    await _server(request).scheduler.start(project, body.max_concurrency)
    return {"success": True}


@router.post("/auto-mode/stop")
async def stop_auto_mode(body: ProjectBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    count = await _server(request).scheduler.stop(project)
    return {"success": True, "runningFeaturesCount": count}


@router.post("/auto-mode/max-concurrency")
async def set_max_concurrency(body: MaxConcurrencyBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    await _server(request).scheduler.set_max_concurrency(project, body.max_concurrency)
    return {"success": True}


@router.get("/auto-mode/status")
async def auto_mode_status(
    request: Request,
    project_path: str | None = Query(default=None, alias="projectPath"),
) -> dict[str, Any]:
    project = _project(request, project_path) if project_path else None
    return {"success": True, **_server(request).scheduler.get_status(project)}


@router.get("/auto-mode/running-agents")
async def running_agents(request: Request) -> dict[str, Any]:
    return {"success": True, "runningAgents": _server(request).scheduler.get_running_agents()}


@router.post("/auto-mode/run-feature")
async def run_feature(body: RunFeatureBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    run = await _server(request).scheduler.run_feature(project, body.feature_id, body.use_worktrees)
    return {"success": True, **run.to_json_dict()}


@router.post("/auto-mode/resume-feature")
async def resume_feature(body: RunFeatureBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    run = await _server(request).scheduler.resume_feature(project, body.feature_id, body.use_worktrees)
    return {"success": True, **run.to_json_dict()}


@router.post("/auto-mode/verify-feature")
async def verify_feature(body: RunFeatureBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    run = await _server(request).scheduler.verify_feature(project, body.feature_id, body.use_worktrees)
    return {"success": True, **run.to_json_dict()}


@router.post("/auto-mode/follow-up-feature")
async def follow_up_feature(body: FollowUpBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    run = await _server(request).scheduler.follow_up_feature(
        project, body.feature_id, body.prompt, body.image_paths, body.use_worktrees
    )
    return {"success": True, **run.to_json_dict()}


@router.post("/auto-mode/commit-feature")
async def commit_feature(body: FeatureBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    commit = await _server(request).scheduler.commit_feature(project, body.feature_id)
    return {"success": True, "commitHash": commit}


@router.post("/auto-mode/approve-feature")
async def approve_feature(body: FeatureBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    feature = await _server(request).scheduler.approve_feature(project, body.feature_id)
    return {"success": True, "feature": feature.to_json_dict()}


@router.post("/auto-mode/archive-feature")
async def archive_feature(body: FeatureBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    feature = await _server(request).scheduler.archive_feature(project, body.feature_id)
    return {"success": True, "feature": feature.to_json_dict()}


@router.post("/auto-mode/stop-feature")
async def stop_feature(body: StopFeatureBody, request: Request) -> dict[str, Any]:
    await _server(request).scheduler.stop_feature(body.feature_id)
    return {"success": True}


@router.post("/auto-mode/context-exists")
async def context_exists(body: FeatureBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    exists = await _server(request).scheduler.context_exists(project, body.feature_id)
    return {"success": True, "exists": exists}


# ── Worktrees ────────────────────────────────────────────────────────────────


@router.post("/worktree/create")
async def create_worktree(body: CreateWorktreeBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    info = await _server(request).worktrees.ensure_worktree(project, body.branch_name, body.base_branch)
    return {"success": True, "worktree": info.to_json_dict()}


@router.get("/worktree/list")
async def list_worktrees(
    request: Request,
    project_path: str = Query(alias="projectPath"),
) -> dict[str, Any]:
    project = _project(request, project_path)
    worktrees = await _server(request).worktrees.list_worktrees(project)
    return {"success": True, "worktrees": [w.to_json_dict() for w in worktrees]}


@router.post("/worktree/merge")
async def merge_worktree(body: MergeBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    head = await _server(request).worktrees.merge_feature(
        project, body.branch_name, squash=body.squash, commit_message=body.message
    )
    return {"success": True, "commitHash": head}


@router.post("/worktree/revert")
async def revert_worktree(body: BranchBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    result = await _server(request).worktrees.revert_feature(project, body.branch_name)
    return {"success": True, "deleted": result.to_json_dict()}


@router.post("/worktree/delete")
async def delete_worktree(body: DeleteWorktreeBody, request: Request) -> dict[str, Any]:
    server = _server(request)
    project = _project(request, body.project_path)
    deleted_features = 0
    if body.delete_features:
        deleted_features = await server.features.delete_features_on_branch(project, body.branch_name)
    result = await server.worktrees.delete_worktree(
        project, body.branch_name, delete_branch=body.delete_branch
    )
    return {"success": True, "deleted": result.to_json_dict(), "deletedFeatures": deleted_features}


@router.get("/worktree/init-script")
async def get_init_script(
    request: Request,
    project_path: str = Query(alias="projectPath"),
) -> dict[str, Any]:
    project = _project(request, project_path)
    info = await _server(request).worktrees.get_init_script(project)
    return {"success": True, **info.to_json_dict()}


@router.put("/worktree/init-script")
async def set_init_script(body: InitScriptBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    path = await _server(request).worktrees.set_init_script(project, body.content)
    return {"success": True, "path": str(path)}


@router.delete("/worktree/init-script")
async def delete_init_script(
    request: Request,
    project_path: str = Query(alias="projectPath"),
) -> dict[str, Any]:
    project = _project(request, project_path)
    await _server(request).worktrees.delete_init_script(project)
    return {"success": True}


@router.post("/worktree/run-init-script")
async def run_init_script(body: BranchBody, request: Request) -> dict[str, Any]:
    project = _project(request, body.project_path)
    status = await _server(request).worktrees.force_run_init_script(project, body.branch_name)
    return {"success": True, "status": status.value if status else None}


# ── Features ─────────────────────────────────────────────────────────────────


@router.get("/features")
async def list_features(
    request: Request,
    project_path: str = Query(alias="projectPath"),
) -> dict[str, Any]:
    project = _project(request, project_path)
    features = await _server(request).features.list_features(project)
    features.sort(key=lambda f: (f.priority, f.created_at))
    return {"success": True, "features": [f.to_json_dict() for f in features]}


@router.post("/features")
async def create_feature(body: CreateFeatureBody, request: Request) -> dict[str, Any]:
    server = _server(request)
    project = _project(request, body.project_path)
    fields = body.model_dump(exclude={"project_path", "id", "image_paths"}, exclude_none=True)
    feature = Feature(id=body.id or f"feature-{uuid.uuid4().hex[:12]}", **fields)
    if body.image_paths:
        feature.image_paths = await server.features.copy_images(project, feature.id, body.image_paths)
    await server.features.create(project, feature)
    return {"success": True, "feature": feature.to_json_dict()}


@router.delete("/features/{feature_id}")
async def delete_feature(
    feature_id: str,
    request: Request,
    project_path: str = Query(alias="projectPath"),
) -> dict[str, Any]:
    server = _server(request)
    project = _project(request, project_path)
    await server.features.require(project, feature_id)
    if feature_id in server.scheduler.running:
        raise AlreadyRunningError(f"Feature {feature_id} is running; stop it before deleting")
    await server.features.delete(project, feature_id)
    return {"success": True}


# ── Event stream ─────────────────────────────────────────────────────────────


async def sse_events(bus: EventBus, heartbeat: float = _HEARTBEAT_SECONDS):
    """Render the multiplexed event channel as server-sent events."""
    yield 'event: connected\ndata: {"status": "connected"}\n\n'
    events = bus.stream(heartbeat=heartbeat)
    try:
        async for topic, payload in events:
            if topic == HEARTBEAT_TOPIC:
                yield "event: heartbeat\ndata: {}\n\n"
                continue
            data = json.dumps({"type": topic, "payload": payload}, default=str)
            yield f"event: {topic}\ndata: {data}\n\n"
    finally:
        # Unsubscribe as soon as the client disconnects.
        await events.aclose()


@router.get("/events/stream")
async def stream_events(request: Request) -> StreamingResponse:
    """Stream every bus event via SSE.

    Connect with EventSource:
    ```javascript
    const es = new EventSource('/api/events/stream');
    es.addEventListener('auto-mode:event', (e) => console.log(JSON.parse(e.data)));
    ```
    """
    return StreamingResponse(
        sse_events(_server(request).bus),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
