"""Manifest storage for VTM.

The manifest is loaded fully into memory, changed, and rewritten wholesale
on every commit. Writes go through a temporary file in the same directory
followed by a rename, so the canonical path only ever holds a complete
document.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .errors import ManifestNotFoundError, PersistenceError, SchemaError, TaskNotFoundError
from .models import (
    TASK_STATUSES,
    Manifest,
    Task,
    TaskContext,
    TaskUpdate,
    compute_stats,
    utc_now,
)
from .vtm_logging import (
    log_error_with_context,
    log_manifest_committed,
    log_performance,
    log_task_updated,
)

logger = logging.getLogger("vtm.store")


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON atomically via temp file + rename.

    The payload is serialized before any file is touched. The temporary file
    is removed on every failure path.
    """
    content = json.dumps(data, indent=2) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_json(path: Path) -> Any:
    """Load a JSON document, mapping read and parse failures to PersistenceError."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise
    except OSError as e:
        raise PersistenceError(f"Could not read {path}: {e}") from e
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise PersistenceError(f"Invalid JSON in {path}: {e}") from e


class ManifestStore:
    """Own the on-disk manifest and a cached in-memory copy of it."""

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser().resolve()
        self._cache: Optional[Manifest] = None

    def exists(self) -> bool:
        return self.path.exists()

    # ------------------------------------------------------------------
    # Load and commit
    # ------------------------------------------------------------------

    def load(self) -> Manifest:
        """Return the manifest, reading it from disk on first use.

        The returned object is a copy; changing it does not affect the store.
        """
        if self._cache is None:
            return self.reload()
        return self._cache.copy()

    def reload(self) -> Manifest:
        """Read the manifest from disk, replacing the cached copy."""
        try:
            data = read_json(self.path)
        except FileNotFoundError:
            raise ManifestNotFoundError(
                f"Manifest not found at {self.path}. Run init_manifest to create one."
            ) from None

        if not isinstance(data, dict):
            raise PersistenceError(f"Manifest at {self.path} must be a JSON object")
        try:
            manifest = Manifest.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Manifest at {self.path} is malformed: {e}") from e

        self._cache = manifest
        logger.debug(f"Loaded manifest {self.path} ({len(manifest.tasks)} tasks)")
        return manifest.copy()

    def initialize(self, project_name: str, description: str = "") -> Manifest:
        """Create an empty manifest; an existing file is never overwritten."""
        if self.exists():
            raise PersistenceError(f"Manifest already exists at {self.path}")
        manifest = Manifest.empty(project_name, description)
        self._write(manifest)
        logger.info(f"Initialized manifest at {self.path}")
        return manifest.copy()

    @log_performance("manifest_commit")
    def commit(self, tasks: Sequence[Task], *, id_high_water: Optional[int] = None) -> Manifest:
        """Replace the task sequence and persist the whole manifest.

        ``stats`` is recomputed from ``tasks``. The high-water mark never
        moves backwards. On failure the file on disk and the cache are left
        as they were and PersistenceError is raised.
        """
        try:
            base = self.load()
        except ManifestNotFoundError:
            base = Manifest.empty()

        manifest = Manifest(
            project_name=base.project_name,
            project_description=base.project_description,
            tasks=[Task.from_dict(task.to_dict()) for task in tasks],
            id_high_water=max(base.id_high_water, id_high_water or 0),
            version=base.version,
        )
        manifest.stats = compute_stats(manifest.tasks)

        self._write(manifest)
        log_manifest_committed(str(self.path), manifest.stats.total_tasks)
        return manifest.copy()

    def restore(self, manifest: Manifest) -> None:
        """Write ``manifest`` back exactly as given, high-water mark included."""
        self._write(manifest.copy())
        logger.warning(f"Restored manifest {self.path} to {len(manifest.tasks)} tasks")

    def discard(self) -> None:
        """Remove a manifest file this process created."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            log_error_with_context(e, {"operation": "manifest_discard", "path": str(self.path)})
            raise PersistenceError(f"Could not remove manifest {self.path}: {e}") from e
        finally:
            self._cache = None
        logger.warning(f"Removed manifest {self.path}")

    def _write(self, manifest: Manifest) -> None:
        try:
            atomic_write_json(self.path, manifest.to_dict())
        except (OSError, TypeError, ValueError) as e:
            log_error_with_context(e, {"operation": "manifest_write", "path": str(self.path)})
            raise PersistenceError(f"Could not write manifest {self.path}: {e}") from e
        self._cache = manifest.copy()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.load().get_task(task_id)

    def get_ready_tasks(self) -> List[Task]:
        """Pending tasks whose dependencies are all completed."""
        manifest = self.load()
        completed = {task.id for task in manifest.tasks if task.is_completed()}
        return [
            task for task in manifest.tasks
            if task.status == "pending" and all(dep in completed for dep in task.dependencies)
        ]

    def get_task_context(self, task_id: str) -> TaskContext:
        """A task with its dependency tasks and the pending tasks waiting on it."""
        manifest = self.load()
        task = manifest.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")

        dependencies = [dep for dep in (manifest.get_task(d) for d in task.dependencies) if dep is not None]
        blocked = [t for t in manifest.tasks if task_id in t.dependencies and t.status == "pending"]
        return TaskContext(task=task, dependencies=dependencies, blocked_tasks=blocked)

    def get_blocked_tasks(self) -> List[Task]:
        return [task for task in self.load().tasks if task.status == "blocked"]

    def get_in_progress_tasks(self) -> List[Task]:
        return [task for task in self.load().tasks if task.status == "in-progress"]

    def effective_status(self, task_id: str) -> str:
        """Status with ``blocked`` derived from unmet dependencies.

        Completed and in-progress tasks keep their stored status.
        """
        manifest = self.load()
        task = manifest.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.status in ("completed", "in-progress"):
            return task.status
        unmet = [
            dep for dep in task.dependencies
            if (manifest.get_task(dep) is None or not manifest.get_task(dep).is_completed())
        ]
        return "blocked" if unmet else "pending"

    def stats_by_source(self) -> Dict[str, Dict[str, int]]:
        """Total and completed task counts grouped by ``adr_source``."""
        stats: Dict[str, Dict[str, int]] = {}
        for task in self.load().tasks:
            entry = stats.setdefault(task.adr_source, {"total": 0, "completed": 0})
            entry["total"] += 1
            if task.is_completed():
                entry["completed"] += 1
        return stats

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        """Merge an update into one task and commit."""
        if update.status is not None and update.status not in TASK_STATUSES:
            raise SchemaError(
                f"Invalid status {update.status!r}. Must be one of: {', '.join(TASK_STATUSES)}",
                field="status",
            )

        manifest = self.reload()
        task = manifest.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")

        update.apply(task)
        self.commit(manifest.tasks)
        logger.info(f"Updated task {task_id}")
        log_task_updated(task_id, update.status)
        return task

    def start_task(self, task_id: str) -> Task:
        """Mark a task as in-progress."""
        return self.update_task(task_id, TaskUpdate(status="in-progress", started_at=utc_now()))

    def complete_task(
        self,
        task_id: str,
        *,
        commits: Optional[List[str]] = None,
        files_created: Optional[List[str]] = None,
        tests_pass: bool = False,
    ) -> Task:
        """Mark a task as completed, recording commits, created files and test results."""
        return self.update_task(task_id, TaskUpdate(
            status="completed",
            completed_at=utc_now(),
            commits=commits,
            files_created=files_created,
            tests_pass=tests_pass,
        ))
