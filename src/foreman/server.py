"""Foreman Server: composition root and FastAPI application.

Every service is constructed here and passed by constructor; nothing is
reached through a global accessor. Routes find the server on ``app.state``.

Shutdown:
1. Stop every auto-mode loop and running feature
2. Cancel pending worktree init scripts
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from foreman.agent import AgentTaskRunner, SubprocessAgentRunner
from foreman.api import foreman_error_handler
from foreman.api import router as api_router
from foreman.config import ForemanConfig, load_config
from foreman.errors import ForemanError
from foreman.events import EventBus
from foreman.features import FeatureStore
from foreman.file_store import SecureFileStore
from foreman.scheduler import AutoModeScheduler
from foreman.shell import ShellResolver
from foreman.verification import Verifier
from foreman.worktree.git import Git
from foreman.worktree.init_script import InitScriptRunner
from foreman.worktree.manager import WorktreeManager
from foreman.worktree.metadata import WorktreeMetadataStore

logger = logging.getLogger(__name__)


class ForemanServer:
    """Owns all engine components and their lifecycle."""

    def __init__(
        self,
        config: ForemanConfig,
        *,
        runner: AgentTaskRunner | None = None,
        shell_resolver: ShellResolver | None = None,
        git: Git | None = None,
    ):
        self.config = config
        self.bus = EventBus()
        self.files = SecureFileStore(config.security.allowed_roots)
        self.shell_resolver = shell_resolver or ShellResolver()
        self.metadata = WorktreeMetadataStore(self.files)
        self.init_runner = InitScriptRunner(self.files, self.metadata, self.shell_resolver, self.bus)
        self.features = FeatureStore(self.files)
        self.worktrees = WorktreeManager(
            config,
            self.files,
            self.metadata,
            self.init_runner,
            self.features,
            git=git,
        )
        self.runner = runner or SubprocessAgentRunner(config.agent)
        self.verifier = Verifier(config.auto_mode, self.shell_resolver)
        self.scheduler = AutoModeScheduler(
            config,
            self.features,
            self.worktrees,
            self.runner,
            self.bus,
            self.verifier,
        )

    async def start(self) -> None:
        shell = self.shell_resolver.resolve()
        if shell is None:
            logger.warning("No POSIX shell found; init scripts and verification will fail")
        else:
            logger.info("Using shell %s for init scripts", shell.shell)
        if self.files.allowed_roots:
            logger.info("Allowed roots: %s", ", ".join(str(r) for r in self.files.allowed_roots))
        logger.info("Foreman server started")

    async def stop(self) -> None:
        """Graceful shutdown: stop all components."""
        logger.info("Foreman server shutting down")
        await self.scheduler.shutdown()
        await self.worktrees.shutdown()
        logger.info("Foreman server stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: startup and shutdown."""
    server: ForemanServer = app.state.server
    await server.start()
    yield
    await server.stop()


def create_app(
    config: ForemanConfig | None = None,
    *,
    config_path: Path | None = None,
    server: ForemanServer | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    if server is None:
        server = ForemanServer(config or load_config(config_path))

    app = FastAPI(
        title="Foreman",
        description="Agent-driven feature orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.server = server
    app.add_exception_handler(ForemanError, foreman_error_handler)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check with scheduler counters."""
        status = server.scheduler.get_status()
        return {
            "status": "ok",
            "autoModeRunning": status["isRunning"],
            "runningFeatures": status["runningCount"],
        }

    return app
