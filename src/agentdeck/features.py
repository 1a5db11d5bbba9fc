"""Protected feature-list storage.

The feature list is the project's single planning record. This module owns
reading, validating, backing up and writing it; mutation goes through
`agentdeck.gateway.ToolGateway`, which wraps these primitives in the
project lock.

Layout under `<project>/.agentdeck/`:
- feature_list.json: ordered list of {"featureId", "status", "summary", ...}
- feature_list.backup.json: the content as it was before the newest write
- feature_list.lock: flock target serializing writers across processes
"""

import fcntl
import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from .config import (
    feature_auto_restore_enabled,
    get_feature_backup_path,
    get_feature_list_path,
    get_feature_lock_path,
)
from .core import FEATURE_STATUSES, Feature
from .errors import CorruptState, EmptyWriteRefused
from .fileio import atomic_write_text

logger = logging.getLogger(__name__)

_KNOWN_KEYS = {"featureId", "status", "summary"}

_project_locks: dict[str, threading.Lock] = {}
_project_locks_guard = threading.Lock()


@contextmanager
def feature_lock(project_path: str | Path) -> Iterator[None]:
    """Hold the project's feature-list lock.

    A per-path threading.Lock serializes threads in this process; flock on
    the lock file serializes the tool server processes spawned by agents.
    """
    key = str(Path(project_path).resolve())
    with _project_locks_guard:
        thread_lock = _project_locks.setdefault(key, threading.Lock())

    with thread_lock:
        lock_path = get_feature_lock_path(project_path)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(lock_path, "a+") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def parse_feature_list(text: str, source: str | Path = "<memory>") -> list[Feature]:
    """Parse serialized feature-list content, raising CorruptState on any shape error."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptState(f"{source} is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise CorruptState(f"{source} must hold a list of features, got {type(data).__name__}")

    features = []
    seen = set()
    for index, record in enumerate(data):
        features.append(_parse_record(record, index, source))
        if features[-1].feature_id in seen:
            raise CorruptState(f"{source}: duplicate featureId {features[-1].feature_id!r}")
        seen.add(features[-1].feature_id)
    return features


def serialize_feature_list(features: list[Feature]) -> str:
    return json.dumps([f.to_dict() for f in features], indent=2, ensure_ascii=False) + "\n"


def _parse_record(record: Any, index: int, source: str | Path) -> Feature:
    if not isinstance(record, dict):
        raise CorruptState(f"{source}[{index}] is not an object")

    feature_id = record.get("featureId")
    if not isinstance(feature_id, str) or not feature_id:
        raise CorruptState(f"{source}[{index}] has no featureId")

    status = record.get("status")
    if status not in FEATURE_STATUSES:
        raise CorruptState(f"{source}[{index}] has invalid status {status!r}")

    summary = record.get("summary")
    if summary is not None and not isinstance(summary, str):
        raise CorruptState(f"{source}[{index}] has a non-string summary")

    extra = {k: v for k, v in record.items() if k not in _KNOWN_KEYS}
    return Feature(feature_id=feature_id, status=status, summary=summary, extra=extra)


class FeatureStore:
    """Primary file, backup snapshot and write-time guard for one project.

    Callers must hold `feature_lock(project_path)` around any read-modify-write.
    """

    def __init__(self, project_path: str | Path, auto_restore: Optional[bool] = None):
        self.project_path = Path(project_path)
        self.path = get_feature_list_path(project_path)
        self.backup_path = get_feature_backup_path(project_path)
        self.auto_restore = feature_auto_restore_enabled() if auto_restore is None else auto_restore

    def read_raw(self) -> Optional[str]:
        """Return the primary file's text, or None if it does not exist."""
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def load(self) -> list[Feature]:
        """Load the primary list. A missing file reads as an empty list."""
        raw = self.read_raw()
        if raw is None:
            return []
        return parse_feature_list(raw, self.path)

    def load_backup(self) -> list[Feature]:
        """Load the backup snapshot; missing or unreadable backups count as empty."""
        try:
            raw = self.backup_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        try:
            return parse_feature_list(raw, self.backup_path)
        except CorruptState as e:
            logger.error("Ignoring unusable feature backup: %s", e)
            return []

    def write_backup(self, raw: str) -> None:
        atomic_write_text(self.backup_path, raw)

    def write(self, features: list[Feature]) -> None:
        """Replace the primary list after re-validating the candidate.

        An empty candidate is refused and the file on disk is left untouched.
        """
        if not features:
            logger.error("CRITICAL: refusing empty write to %s", self.path)
            raise EmptyWriteRefused(str(self.path))

        content = serialize_feature_list(features)
        # Re-parse the exact bytes about to land on disk.
        parse_feature_list(content, self.path)
        atomic_write_text(self.path, content)
