"""The only sanctioned write path into a project's feature list."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .core import FEATURE_STATUSES, Feature
from .errors import NotFound, ToolRejected, ValidationError
from .features import FeatureStore, feature_lock, parse_feature_list, serialize_feature_list

logger = logging.getLogger(__name__)

TOOL_NAME = "UpdateFeatureStatus"
_TOOL_ARGUMENTS = {"featureId", "status", "summary"}


@dataclass
class FeatureUpdateResult:
    feature: Feature
    feature_count: int
    restored_from_backup: bool = False

    def to_dict(self) -> dict:
        return {
            "success": True,
            "feature": self.feature.to_dict(),
            "featureCount": self.feature_count,
            "restoredFromBackup": self.restored_from_backup,
        }


class ToolGateway:
    """Single-feature status updates with backup and empty-write protection.

    Each update runs load, restore check, backup, mutate, validate and write
    inside the project's exclusive lock, so concurrent calls for one project
    never interleave their read and write phases.
    """

    def __init__(self, auto_restore: Optional[bool] = None):
        self.auto_restore = auto_restore

    def store_for(self, project_path: str | Path) -> FeatureStore:
        return FeatureStore(project_path, auto_restore=self.auto_restore)

    def list_features(self, project_path: str | Path) -> list[Feature]:
        """Read-only view of the current list."""
        return self.store_for(project_path).load()

    def update_feature_status(
        self,
        project_path: str | Path,
        feature_id: str,
        status: str,
        summary: Optional[str] = None,
    ) -> FeatureUpdateResult:
        if not isinstance(feature_id, str) or not feature_id.strip():
            raise ValidationError("featureId is required")
        if status not in FEATURE_STATUSES:
            raise ValidationError(
                f"Invalid status {status!r}; expected one of {', '.join(FEATURE_STATUSES)}"
            )
        if summary is not None and not isinstance(summary, str):
            raise ValidationError("summary must be a string")

        store = self.store_for(project_path)
        with feature_lock(project_path):
            raw = store.read_raw()
            features = parse_feature_list(raw, store.path) if raw is not None else []

            restored = False
            if not features and store.auto_restore:
                backup = store.load_backup()
                if backup:
                    logger.warning(
                        "Feature list %s is empty but its backup holds %d feature(s); "
                        "restoring from backup before applying update",
                        store.path, len(backup),
                    )
                    features = backup
                    restored = True

            if restored:
                store.write_backup(serialize_feature_list(features))
            elif features:
                store.write_backup(raw)

            target = next((f for f in features if f.feature_id == feature_id), None)
            if target is None:
                raise NotFound(f"Feature {feature_id!r} not found in {store.path}")

            target.status = status
            if summary is not None:
                target.summary = summary

            store.write(features)

        logger.info("Feature %s -> %s (%s)", feature_id, status, project_path)
        return FeatureUpdateResult(
            feature=target,
            feature_count=len(features),
            restored_from_backup=restored,
        )

    def call_tool(self, name: str, arguments: dict[str, Any], project_path: str | Path) -> dict:
        """Dispatch a tool call. Anything but UpdateFeatureStatus is rejected."""
        if name != TOOL_NAME:
            raise ToolRejected(f"Tool {name!r} is not available; only {TOOL_NAME} may modify features")
        if not isinstance(arguments, dict):
            raise ValidationError("Tool arguments must be an object")

        unexpected = set(arguments) - _TOOL_ARGUMENTS
        if unexpected:
            raise ToolRejected(f"Unsupported arguments for {TOOL_NAME}: {', '.join(sorted(unexpected))}")

        result = self.update_feature_status(
            project_path,
            arguments.get("featureId"),
            arguments.get("status"),
            arguments.get("summary"),
        )
        return result.to_dict()
