"""Unit tests for VTM data models.

This module tests task, manifest and transaction record serialization,
dependency reference parsing and stats aggregation.
"""

import pytest

from vtm.models import (
    BatchIndex,
    Manifest,
    ManifestStats,
    Task,
    TaskRef,
    TaskUpdate,
    TransactionRecord,
    compute_stats,
    parse_dependency_ref,
    utc_now,
)


class TestDependencyRef:
    """Test cases for parsing raw dependency entries."""

    def test_integer_becomes_batch_index(self):
        """Test that a non-negative integer is a batch-local index."""
        assert parse_dependency_ref(0) == BatchIndex(0)
        assert parse_dependency_ref(7) == BatchIndex(7)

    def test_string_becomes_task_ref(self):
        """Test that a string is a canonical identifier reference."""
        assert parse_dependency_ref("TASK-050") == TaskRef("TASK-050")

    @pytest.mark.parametrize("value", [-1, True, False, "", "   ", None, 1.5, ["TASK-001"]])
    def test_rejected_values(self, value):
        """Test that negative numbers, booleans, blanks and other types are rejected."""
        assert parse_dependency_ref(value) is None

    def test_str_representation(self):
        assert str(BatchIndex(2)) == "index 2"
        assert str(TaskRef("TASK-001")) == "TASK-001"


class TestTask:
    """Test cases for Task."""

    def test_defaults(self):
        """Test that optional fields take their defaults."""
        task = Task(id="TASK-001", title="Title", description="Desc")

        assert task.status == "pending"
        assert task.dependencies == []
        assert task.test_strategy == "TDD"
        assert task.risk == "medium"
        assert task.files == {"create": [], "modify": [], "delete": []}
        assert task.validation == {"tests_pass": False, "ac_verified": []}
        assert task.context is None

    def test_to_dict_and_back(self):
        """Test serialization keeps every field, including the opaque context."""
        task = Task(
            id="TASK-004",
            title="Add login",
            description="Login endpoint",
            dependencies=["TASK-003"],
            estimated_hours=2.5,
            risk="high",
            files={"create": ["src/login.py"], "modify": [], "delete": []},
            context={"adr": {"excerpt": "Use JWT"}},
        )

        data = task.to_dict()
        restored = Task.from_dict(data)

        assert data["context"] == {"adr": {"excerpt": "Use JWT"}}
        assert restored == task

    def test_to_dict_omits_missing_context(self):
        task = Task(id="TASK-001", title="T", description="D")
        assert "context" not in task.to_dict()

    def test_from_dict_fills_partial_files(self):
        """Test that a files mapping missing keys is completed."""
        task = Task.from_dict({"id": "TASK-001", "title": "T", "description": "D", "files": {"create": ["a.py"]}})
        assert task.files == {"create": ["a.py"], "modify": [], "delete": []}

    def test_is_completed(self):
        assert Task(id="TASK-001", title="T", description="D", status="completed").is_completed()
        assert not Task(id="TASK-001", title="T", description="D").is_completed()


class TestTaskUpdate:
    """Test cases for applying status transition updates."""

    def test_apply_merges_fields(self):
        """Test that commits are appended without duplicates and files accumulate."""
        task = Task(id="TASK-001", title="T", description="D", commits=["abc"])
        update = TaskUpdate(
            status="completed",
            completed_at="2024-01-01T00:00:00Z",
            commits=["abc", "def"],
            files_created=["new.py"],
            tests_pass=True,
        )

        update.apply(task)

        assert task.status == "completed"
        assert task.completed_at == "2024-01-01T00:00:00Z"
        assert task.commits == ["abc", "def"]
        assert task.files["create"] == ["new.py"]
        assert task.validation["tests_pass"] is True

    def test_empty_update_changes_nothing(self):
        task = Task(id="TASK-001", title="T", description="D")
        before = task.to_dict()
        TaskUpdate().apply(task)
        assert task.to_dict() == before


class TestManifestStats:
    """Test cases for stats aggregation."""

    def test_compute_stats(self):
        """Test that every status is counted."""
        tasks = [
            Task(id="TASK-001", title="T", description="D", status="completed"),
            Task(id="TASK-002", title="T", description="D", status="pending"),
            Task(id="TASK-003", title="T", description="D", status="pending"),
            Task(id="TASK-004", title="T", description="D", status="in-progress"),
            Task(id="TASK-005", title="T", description="D", status="blocked"),
        ]

        stats = compute_stats(tasks)

        assert stats == ManifestStats(total_tasks=5, completed=1, in_progress=1, pending=2, blocked=1)

    def test_completion_rate(self):
        assert ManifestStats().get_completion_rate() == 0.0
        assert ManifestStats(total_tasks=4, completed=1).get_completion_rate() == 25.0


class TestManifest:
    """Test cases for Manifest."""

    def test_round_trip(self):
        """Test that the manifest document shape survives serialization."""
        manifest = Manifest(
            project_name="Demo",
            project_description="A demo",
            tasks=[Task(id="TASK-001", title="T", description="D")],
            stats=ManifestStats(total_tasks=1, pending=1),
            id_high_water=3,
        )

        data = manifest.to_dict()

        assert set(data) == {"version", "project", "stats", "id_high_water", "tasks"}
        assert data["project"] == {"name": "Demo", "description": "A demo"}
        assert Manifest.from_dict(data) == manifest

    def test_copy_is_independent(self):
        """Test that mutating a copy leaves the original alone."""
        manifest = Manifest(project_name="Demo", tasks=[Task(id="TASK-001", title="T", description="D")])
        clone = manifest.copy()

        clone.tasks[0].dependencies.append("TASK-999")

        assert manifest.tasks[0].dependencies == []

    def test_get_task(self):
        manifest = Manifest(project_name="Demo", tasks=[Task(id="TASK-001", title="T", description="D")])
        assert manifest.get_task("TASK-001").title == "T"
        assert manifest.get_task("TASK-002") is None
        assert manifest.task_ids() == ["TASK-001"]


class TestTransactionRecord:
    """Test cases for TransactionRecord."""

    def test_round_trip(self):
        record = TransactionRecord(
            id="2024-05-01-001",
            timestamp="2024-05-01T10:00:00Z",
            source="plan.json",
            tasks_added=["TASK-001", "TASK-002"],
            files={"tasks": "plan.json"},
        )

        assert TransactionRecord.from_dict(record.to_dict()) == record
        assert record.is_active()

    def test_files_omitted_when_empty(self):
        record = TransactionRecord(id="2024-05-01-001", timestamp="t", source="s")
        assert "files" not in record.to_dict()


def test_utc_now_format():
    """Test that timestamps are ISO-8601 UTC with a Z suffix."""
    value = utc_now()
    assert value.endswith("Z")
    assert "T" in value
