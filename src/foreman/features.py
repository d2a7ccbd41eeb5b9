"""Feature State Store: durable record of each feature.

One directory per feature under ``<project>/.foreman/features/<id>/``:

- ``feature.json``     the Feature record
- ``agent-output.md``  the agent-context artifact (last agent output)
- ``images/``          context images attached to the feature

Each status change is a single atomic file write.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from foreman.config import state_dir
from foreman.errors import FeatureNotFoundError, InvalidFeatureIdError
from foreman.file_store import SecureFileStore
from foreman.models import Feature, FeatureStatus, is_valid_feature_id, utcnow

logger = logging.getLogger(__name__)

FEATURE_FILENAME = "feature.json"
CONTEXT_FILENAME = "agent-output.md"
IMAGES_DIRNAME = "images"


class FeatureStore:
    def __init__(self, files: SecureFileStore):
        self.files = files

    # ── Layout ───────────────────────────────────────────────────────────

    def features_dir(self, project: Path) -> Path:
        return state_dir(project) / "features"

    def feature_dir(self, project: Path, feature_id: str) -> Path:
        if not is_valid_feature_id(feature_id):
            raise InvalidFeatureIdError(f"Invalid feature id {feature_id!r}")
        return self.features_dir(project) / feature_id

    def feature_path(self, project: Path, feature_id: str) -> Path:
        return self.feature_dir(project, feature_id) / FEATURE_FILENAME

    def context_path(self, project: Path, feature_id: str) -> Path:
        return self.feature_dir(project, feature_id) / CONTEXT_FILENAME

    def images_dir(self, project: Path, feature_id: str) -> Path:
        return self.feature_dir(project, feature_id) / IMAGES_DIRNAME

    # ── CRUD ─────────────────────────────────────────────────────────────

    async def get(self, project: Path, feature_id: str) -> Feature | None:
        path = self.feature_path(project, feature_id)
        if not await self.files.exists(path):
            return None
        try:
            return Feature.model_validate_json(await self.files.read_text(path))
        except (ValidationError, ValueError):
            logger.warning("Skipping invalid feature file %s", path)
            return None

    async def require(self, project: Path, feature_id: str) -> Feature:
        feature = await self.get(project, feature_id)
        if feature is None:
            raise FeatureNotFoundError(feature_id)
        return feature

    async def list_features(self, project: Path) -> list[Feature]:
        features = []
        for entry in await self.files.listdir(self.features_dir(project)):
            if not await self.files.is_dir(entry) or not is_valid_feature_id(entry.name):
                continue
            feature = await self.get(project, entry.name)
            if feature is not None:
                features.append(feature)
        return features

    async def save(self, project: Path, feature: Feature) -> Feature:
        """Persist ``feature``, advancing its ``updated_at``."""
        feature.touch()
        path = self.feature_path(project, feature.id)
        await self.files.write_text(path, json.dumps(feature.to_json_dict(), indent=2))
        return feature

    async def create(self, project: Path, feature: Feature) -> Feature:
        await self.save(project, feature)
        logger.info("Created feature %s (priority=%d)", feature.id, feature.priority)
        return feature

    async def update_status(
        self,
        project: Path,
        feature_id: str,
        status: FeatureStatus,
        *,
        error: str | None = None,
        branch_name: str | None = None,
    ) -> Feature:
        """Set the status in one write; ``error`` replaces the previous error text."""
        feature = await self.require(project, feature_id)
        feature.status = status
        feature.error = error
        if branch_name is not None:
            feature.branch_name = branch_name
        # The UI shows a "just finished" badge for a while after this timestamp.
        feature.just_finished_at = utcnow() if status == FeatureStatus.WAITING_APPROVAL else None
        await self.save(project, feature)
        logger.info("Feature %s -> %s", feature_id, status.value)
        return feature

    async def delete(self, project: Path, feature_id: str) -> None:
        """Remove the record together with its agent context and images."""
        await self.files.rm(self.feature_dir(project, feature_id))
        logger.info("Deleted feature %s", feature_id)

    # ── Branch assignment ────────────────────────────────────────────────

    async def features_on_branch(self, project: Path, branch: str) -> list[Feature]:
        return [f for f in await self.list_features(project) if f.branch_name == branch]

    async def reassign_branch(self, project: Path, branch: str, to_branch: str) -> int:
        """Move every feature assigned to ``branch`` onto ``to_branch``."""
        moved = 0
        for feature in await self.features_on_branch(project, branch):
            feature.branch_name = to_branch
            await self.save(project, feature)
            moved += 1
        if moved:
            logger.info("Reassigned %d feature(s) from %s to %s", moved, branch, to_branch)
        return moved

    async def delete_features_on_branch(self, project: Path, branch: str) -> int:
        """Caller-driven batch delete of a branch's backlog."""
        doomed = await self.features_on_branch(project, branch)
        for feature in doomed:
            await self.delete(project, feature.id)
        return len(doomed)

    # ── Agent context ────────────────────────────────────────────────────

    async def context_exists(self, project: Path, feature_id: str) -> bool:
        return await self.files.exists(self.context_path(project, feature_id))

    async def read_context(self, project: Path, feature_id: str) -> str | None:
        path = self.context_path(project, feature_id)
        if not await self.files.exists(path):
            return None
        return await self.files.read_text(path)

    async def write_context(self, project: Path, feature_id: str, content: str) -> None:
        await self.files.write_text(self.context_path(project, feature_id), content)

    async def copy_images(self, project: Path, feature_id: str, image_paths: list[str]) -> list[str]:
        """Copy images into the feature's images dir; returns project-relative paths.

        Images that cannot be copied are logged and left out.
        """
        copied = []
        images_dir = self.images_dir(project, feature_id)
        for image in image_paths:
            source = Path(image)
            dest = images_dir / source.name
            try:
                await self.files.copy_file(source, dest)
            except OSError:
                logger.exception("Failed to copy image %s for feature %s", image, feature_id)
                continue
            copied.append(str(dest.relative_to(project)))
        return copied
