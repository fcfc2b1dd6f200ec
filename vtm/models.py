"""Data models for VTM manifest management.

This module contains the core data structures used throughout the VTM system,
representing tasks, the persisted manifest, its derived statistics, and the
transaction records written by ingestion.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union


MANIFEST_VERSION = "2.0.0"

TASK_STATUSES = ("pending", "in-progress", "completed", "blocked")
TEST_STRATEGIES = ("TDD", "Unit", "Integration", "Direct")
RISK_LEVELS = ("low", "medium", "high")

TRANSACTION_ACTIVE = "active"
TRANSACTION_REVERTED = "reverted"


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _empty_files() -> Dict[str, List[str]]:
    return {"create": [], "modify": [], "delete": []}


def _empty_validation() -> Dict[str, Any]:
    return {"tests_pass": False, "ac_verified": []}


# ---------------------------------------------------------------------------
# Dependency references
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BatchIndex:
    """Zero-based position of another task in the same batch."""

    index: int

    def __str__(self) -> str:
        return f"index {self.index}"


@dataclass(frozen=True, slots=True)
class TaskRef:
    """Reference to a task by canonical identifier."""

    task_id: str

    def __str__(self) -> str:
        return self.task_id


DependencyRef = Union[BatchIndex, TaskRef]


def parse_dependency_ref(value: Any) -> Optional[DependencyRef]:
    """Build a dependency reference from a raw batch entry.

    Returns None when the value is neither a non-negative integer nor a
    non-empty string. Booleans are rejected even though they are ints.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return BatchIndex(value) if value >= 0 else None
    if isinstance(value, str) and value.strip():
        return TaskRef(value.strip())
    return None


# ---------------------------------------------------------------------------
# Tasks and manifest
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Task:
    """A unit of work stored in the manifest."""

    id: str
    title: str
    description: str
    status: str = "pending"
    dependencies: List[str] = field(default_factory=list)
    blocks: List[str] = field(default_factory=list)
    acceptance_criteria: List[str] = field(default_factory=list)
    test_strategy: str = "TDD"
    test_strategy_rationale: str = ""
    risk: str = "medium"
    estimated_hours: float = 0
    adr_source: str = ""
    spec_source: str = ""
    files: Dict[str, List[str]] = field(default_factory=_empty_files)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    commits: List[str] = field(default_factory=list)
    validation: Dict[str, Any] = field(default_factory=_empty_validation)
    context: Any = None  # opaque, stored as given

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data = {
            "id": self.id,
            "adr_source": self.adr_source,
            "spec_source": self.spec_source,
            "title": self.title,
            "description": self.description,
            "acceptance_criteria": list(self.acceptance_criteria),
            "dependencies": list(self.dependencies),
            "blocks": list(self.blocks),
            "test_strategy": self.test_strategy,
            "test_strategy_rationale": self.test_strategy_rationale,
            "estimated_hours": self.estimated_hours,
            "risk": self.risk,
            "files": {key: list(value) for key, value in self.files.items()},
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "commits": list(self.commits),
            "validation": copy.deepcopy(self.validation),
        }
        if self.context is not None:
            data["context"] = copy.deepcopy(self.context)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create from dictionary representation."""
        for name in ("files", "validation"):
            if not isinstance(data.get(name) or {}, dict):
                raise TypeError(f"Task field '{name}' must be an object")
        files = _empty_files()
        files.update({key: list(value) for key, value in (data.get("files") or {}).items()})
        validation = _empty_validation()
        validation.update(data.get("validation") or {})
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            status=data.get("status", "pending"),
            dependencies=[str(dep) for dep in data.get("dependencies", [])],
            blocks=list(data.get("blocks", [])),
            acceptance_criteria=list(data.get("acceptance_criteria", [])),
            test_strategy=data.get("test_strategy", "TDD"),
            test_strategy_rationale=data.get("test_strategy_rationale", ""),
            risk=data.get("risk", "medium"),
            estimated_hours=data.get("estimated_hours", 0),
            adr_source=data.get("adr_source", ""),
            spec_source=data.get("spec_source", ""),
            files=files,
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            commits=list(data.get("commits", [])),
            validation=validation,
            context=copy.deepcopy(data.get("context")),
        )

    def is_completed(self) -> bool:
        """Check if task is completed."""
        return self.status == "completed"


@dataclass(slots=True)
class TaskUpdate:
    """Partial update applied to a task by a status transition."""

    status: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    commits: Optional[List[str]] = None
    files_created: Optional[List[str]] = None
    files_modified: Optional[List[str]] = None
    tests_pass: Optional[bool] = None
    ac_verified: Optional[List[str]] = None

    def apply(self, task: Task) -> None:
        """Merge this update into the task in place."""
        if self.status is not None:
            task.status = self.status
        if self.started_at is not None:
            task.started_at = self.started_at
        if self.completed_at is not None:
            task.completed_at = self.completed_at
        if self.commits:
            task.commits = list(task.commits) + [c for c in self.commits if c not in task.commits]
        if self.files_created:
            task.files["create"] = list(task.files.get("create", [])) + list(self.files_created)
        if self.files_modified:
            task.files["modify"] = list(task.files.get("modify", [])) + list(self.files_modified)
        if self.tests_pass is not None:
            task.validation["tests_pass"] = self.tests_pass
        if self.ac_verified is not None:
            task.validation["ac_verified"] = list(self.ac_verified)


@dataclass(slots=True)
class TaskContext:
    """A task together with the tasks it depends on and the tasks waiting on it."""

    task: Task
    dependencies: List[Task] = field(default_factory=list)
    blocked_tasks: List[Task] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "task": self.task.to_dict(),
            "dependencies": [task.to_dict() for task in self.dependencies],
            "blocked_tasks": [task.to_dict() for task in self.blocked_tasks],
        }


@dataclass(slots=True)
class ManifestStats:
    """Task counts per status, derived from the task sequence."""

    total_tasks: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    blocked: int = 0

    def to_dict(self) -> Dict[str, int]:
        """Convert to dictionary representation."""
        return {
            "total_tasks": self.total_tasks,
            "completed": self.completed,
            "in_progress": self.in_progress,
            "pending": self.pending,
            "blocked": self.blocked,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestStats":
        """Create from dictionary representation."""
        return cls(
            total_tasks=data.get("total_tasks", 0),
            completed=data.get("completed", 0),
            in_progress=data.get("in_progress", 0),
            pending=data.get("pending", 0),
            blocked=data.get("blocked", 0),
        )

    def get_completion_rate(self) -> float:
        """Get task completion rate as percentage."""
        if self.total_tasks == 0:
            return 0.0
        return (self.completed / self.total_tasks) * 100


def compute_stats(tasks: List[Task]) -> ManifestStats:
    """Aggregate task counts per status."""
    return ManifestStats(
        total_tasks=len(tasks),
        completed=sum(1 for task in tasks if task.status == "completed"),
        in_progress=sum(1 for task in tasks if task.status == "in-progress"),
        pending=sum(1 for task in tasks if task.status == "pending"),
        blocked=sum(1 for task in tasks if task.status == "blocked"),
    )


@dataclass(slots=True)
class Manifest:
    """The persisted task manifest."""

    project_name: str
    project_description: str = ""
    tasks: List[Task] = field(default_factory=list)
    stats: ManifestStats = field(default_factory=ManifestStats)
    id_high_water: int = 0
    version: str = MANIFEST_VERSION

    @classmethod
    def empty(cls, project_name: str = "VTM Project", project_description: str = "") -> "Manifest":
        """Create a manifest with no tasks."""
        return cls(project_name=project_name, project_description=project_description)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "version": self.version,
            "project": {
                "name": self.project_name,
                "description": self.project_description,
            },
            "stats": self.stats.to_dict(),
            "id_high_water": self.id_high_water,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        """Create from dictionary representation."""
        project = data.get("project") or {}
        return cls(
            project_name=project.get("name", "VTM Project"),
            project_description=project.get("description", ""),
            tasks=[Task.from_dict(task) for task in data.get("tasks", [])],
            stats=ManifestStats.from_dict(data.get("stats") or {}),
            id_high_water=int(data.get("id_high_water", 0) or 0),
            version=data.get("version", MANIFEST_VERSION),
        )

    def copy(self) -> "Manifest":
        """Deep copy, so callers can mutate without touching a cache."""
        return Manifest.from_dict(self.to_dict())

    def task_ids(self) -> List[str]:
        return [task.id for task in self.tasks]

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TransactionRecord:
    """Audit entry for one committed ingestion batch."""

    id: str
    timestamp: str
    source: str
    tasks_added: List[str] = field(default_factory=list)
    action: str = "ingest"
    files: Optional[Dict[str, str]] = None
    state: str = TRANSACTION_ACTIVE
    reverted_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data: Dict[str, Any] = {
            "id": self.id,
            "action": self.action,
            "timestamp": self.timestamp,
            "source": self.source,
            "tasks_added": list(self.tasks_added),
            "state": self.state,
            "reverted_at": self.reverted_at,
        }
        if self.files:
            data["files"] = dict(self.files)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionRecord":
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            timestamp=data.get("timestamp", ""),
            source=data.get("source", ""),
            tasks_added=list(data.get("tasks_added", [])),
            action=data.get("action", "ingest"),
            files=data.get("files"),
            state=data.get("state", TRANSACTION_ACTIVE),
            reverted_at=data.get("reverted_at"),
        )

    def is_active(self) -> bool:
        return self.state == TRANSACTION_ACTIVE
