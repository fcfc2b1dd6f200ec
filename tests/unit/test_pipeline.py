"""Unit tests for the ingestion pipeline.

This module tests stage ordering, all-or-nothing ingestion, rollback
policies and result code mapping.
"""

from unittest.mock import patch

import pytest

from vtm.config import load_config
from vtm.errors import (
    BatchRejectedError,
    CircularDependencyError,
    DependencyError,
    PersistenceError,
    RollbackConflictError,
    SchemaError,
    TaskNotFoundError,
    TransactionNotFoundError,
    TransactionStateError,
)
from vtm.history import TransactionLog
from vtm.models import Task
from vtm.pipeline import IngestPipeline, ResultCode, result_code_for
from vtm.store import ManifestStore


def _candidate(title, dependencies=None, **extra):
    data = {"title": title, "description": f"{title} description", "dependencies": dependencies or []}
    data.update(extra)
    return data


@pytest.fixture
def pipeline(tmp_path):
    store = ManifestStore(tmp_path / "vtm.json")
    store.initialize("Demo")
    return IngestPipeline(store, TransactionLog(tmp_path / "vtm-history.json"))


class TestValidate:
    """Test cases for IngestPipeline.validate."""

    def test_valid_batch(self, pipeline):
        result = pipeline.validate([_candidate("A"), _candidate("B", [0])])

        assert result.valid
        assert [task.id for task in result.tasks] == ["TASK-001", "TASK-002"]
        assert result.tasks[1].dependencies == ["TASK-001"]
        assert result.next_available_id == "TASK-003"

    def test_validate_writes_nothing(self, pipeline):
        before = pipeline.store.path.read_text(encoding="utf-8")

        pipeline.validate([_candidate("A")])

        assert pipeline.store.path.read_text(encoding="utf-8") == before
        assert not pipeline.log.path.exists()

    def test_schema_errors_stop_before_dependencies(self, pipeline):
        """Test that a schema failure hides dependency problems in later stages."""
        result = pipeline.validate([{"title": "A", "dependencies": ["TASK-999"]}])

        assert not result.valid
        assert {error.kind for error in result.errors} == {"schema"}
        assert result.tasks == []
        assert result.next_available_id == "TASK-001"

    def test_dependency_errors_stop_before_cycles(self, pipeline):
        result = pipeline.validate([_candidate("A", [1, "TASK-999"]), _candidate("B", [0])])
        assert {error.kind for error in result.errors} == {"dependency"}

    def test_self_reference_by_index(self, pipeline):
        """Test that a task pointing at its own index is a cycle of length one."""
        result = pipeline.validate([_candidate("A", [0])])

        assert [error.kind for error in result.errors] == ["circular"]
        assert result.errors[0].cycle == ["TASK-001"]

    def test_cycle_through_existing_tasks(self, pipeline):
        """Test that existing and batch tasks are checked as one graph."""
        pipeline.store.commit([
            Task(id="TASK-001", title="Old", description="d", dependencies=["TASK-002"]),
        ], id_high_water=1)

        result = pipeline.validate([_candidate("New", ["TASK-001"])])

        assert [error.kind for error in result.errors] == ["circular"]
        assert set(result.errors[0].cycle) == {"TASK-001", "TASK-002"}

    def test_missing_manifest_validates_against_empty(self, tmp_path):
        pipeline = IngestPipeline(ManifestStore(tmp_path / "none.json"), TransactionLog(tmp_path / "h.json"))
        assert pipeline.validate([_candidate("A")]).valid

    def test_to_dict(self, pipeline):
        data = pipeline.validate([_candidate("A", ["TASK-404"])]).to_dict()

        assert data["valid"] is False
        assert data["errors"][0]["type"] == "dependency"
        assert data["errors"][0]["dependency_id"] == "TASK-404"


class TestIngest:
    """Test cases for IngestPipeline.ingest."""

    def test_ingest_commits_and_records(self, pipeline):
        tx_id = pipeline.ingest([_candidate("A"), _candidate("B", [0])], "plan.json")

        manifest = pipeline.store.reload()
        record = pipeline.log.require(tx_id)
        assert manifest.task_ids() == ["TASK-001", "TASK-002"]
        assert manifest.stats.pending == 2
        assert manifest.id_high_water == 2
        assert record.tasks_added == ["TASK-001", "TASK-002"]
        assert record.source == "plan.json"

    def test_rejected_batch_leaves_manifest(self, pipeline):
        before = pipeline.store.path.read_text(encoding="utf-8")

        with pytest.raises(BatchRejectedError) as exc_info:
            pipeline.ingest([_candidate("A"), _candidate("B", [7])], "plan.json")

        assert isinstance(exc_info.value.errors[0], DependencyError)
        assert pipeline.store.path.read_text(encoding="utf-8") == before
        assert pipeline.log.records() == []

    def test_record_failure_restores_manifest(self, pipeline):
        """Test that a manifest commit is undone when the transaction cannot be recorded."""
        pipeline.ingest([_candidate("A")], "first")
        before = pipeline.store.reload()

        with patch.object(pipeline.log, "record", side_effect=PersistenceError("log unwritable")):
            with pytest.raises(PersistenceError, match="manifest restored"):
                pipeline.ingest([_candidate("B")], "second")

        assert pipeline.store.reload() == before

    def test_record_failure_removes_created_manifest(self, tmp_path):
        """Test that a manifest created by a failed ingest does not outlive it."""
        pipeline = IngestPipeline(ManifestStore(tmp_path / "vtm.json"), TransactionLog(tmp_path / "vtm-history.json"))

        with patch.object(pipeline.log, "record", side_effect=PersistenceError("log unwritable")):
            with pytest.raises(PersistenceError, match="not recorded"):
                pipeline.ingest([_candidate("A")], "first")

        assert not (tmp_path / "vtm.json").exists()
        assert pipeline.validate([_candidate("B")]).tasks[0].id == "TASK-001"

    def test_restore_failure_is_logged_and_raised(self, pipeline):
        """Test that a failed compensation surfaces its own error."""
        pipeline.ingest([_candidate("A")], "first")

        with patch.object(pipeline.log, "record", side_effect=PersistenceError("log unwritable")), \
                patch.object(pipeline.store, "restore", side_effect=PersistenceError("disk gone")), \
                patch("vtm.pipeline.log_error_with_context") as log_error:
            with pytest.raises(PersistenceError, match="disk gone"):
                pipeline.ingest([_candidate("B")], "second")

        operations = [call.args[1]["operation"] for call in log_error.call_args_list]
        assert operations == ["ingest_batch", "ingest_compensation"]

    def test_supplied_ids_are_ignored(self, pipeline):
        tx_id = pipeline.ingest([_candidate("A", id="TASK-777")], "s")
        assert pipeline.log.require(tx_id).tasks_added == ["TASK-001"]

    def test_context_passes_through(self, pipeline):
        context = {"adr": {"file": "adr/001.md", "excerpt": "Use JWT"}}
        pipeline.ingest([_candidate("A", context=context)], "s")

        assert pipeline.store.reload().get_task("TASK-001").context == context


class TestRollback:
    """Test cases for IngestPipeline.rollback."""

    def test_rollback_removes_tasks(self, pipeline):
        first = pipeline.ingest([_candidate("A")], "first")
        pipeline.ingest([_candidate("B")], "second")

        result = pipeline.rollback(first)

        assert result.removed_ids == ["TASK-001"]
        assert pipeline.store.reload().task_ids() == ["TASK-002"]
        assert not pipeline.log.require(first).is_active()

    def test_rolled_back_ids_not_reissued(self, pipeline):
        """Test that the high-water mark survives removing the highest task."""
        tx_id = pipeline.ingest([_candidate("A")], "first")
        pipeline.rollback(tx_id)

        second = pipeline.ingest([_candidate("B")], "second")

        assert pipeline.log.require(second).tasks_added == ["TASK-002"]

    def test_conflict_blocks_and_leaves_manifest(self, pipeline):
        first = pipeline.ingest([_candidate("A")], "first")
        pipeline.ingest([_candidate("B", ["TASK-001"])], "second")
        before = pipeline.store.path.read_text(encoding="utf-8")

        with pytest.raises(RollbackConflictError) as exc_info:
            pipeline.rollback(first)

        assert exc_info.value.conflicting_ids == ["TASK-002"]
        assert pipeline.store.path.read_text(encoding="utf-8") == before
        assert pipeline.log.require(first).is_active()

    def test_force_detaches_dependencies(self, pipeline):
        """Test that a forced rollback leaves no survivor pointing at a removed task."""
        first = pipeline.ingest([_candidate("A")], "first")
        pipeline.ingest([_candidate("B", ["TASK-001"])], "second")

        result = pipeline.rollback(first, force=True)

        assert result.forced
        assert result.detached == [("TASK-002", "TASK-001")]
        assert pipeline.store.reload().get_task("TASK-002").dependencies == []

    def test_dry_run_writes_nothing(self, pipeline):
        tx_id = pipeline.ingest([_candidate("A")], "first")
        before = pipeline.store.path.read_text(encoding="utf-8")

        result = pipeline.rollback(tx_id, dry_run=True)

        assert result.dry_run
        assert result.removed_ids == ["TASK-001"]
        assert pipeline.store.path.read_text(encoding="utf-8") == before
        assert pipeline.log.require(tx_id).is_active()

    def test_second_rollback_rejected(self, pipeline):
        tx_id = pipeline.ingest([_candidate("A")], "first")
        pipeline.rollback(tx_id)

        with pytest.raises(TransactionStateError):
            pipeline.rollback(tx_id)

    def test_unknown_transaction(self, pipeline):
        with pytest.raises(TransactionNotFoundError):
            pipeline.rollback("2000-01-01-001")


class TestResultCodes:
    """Test cases for result_code_for."""

    @pytest.mark.parametrize("error, expected", [
        (None, ResultCode.SUCCESS),
        (BatchRejectedError([SchemaError("bad")]), ResultCode.VALIDATION_FAILURE),
        (CircularDependencyError(["TASK-001"]), ResultCode.VALIDATION_FAILURE),
        (TaskNotFoundError("TASK-404"), ResultCode.VALIDATION_FAILURE),
        (RollbackConflictError("2024-01-01-001", [("TASK-002", "TASK-001")]), ResultCode.ROLLBACK_BLOCKED),
        (PersistenceError("disk"), ResultCode.IO_FAILURE),
        (OSError("disk"), ResultCode.IO_FAILURE),
    ])
    def test_mapping(self, error, expected):
        assert result_code_for(error) is expected

    def test_unclassified_error(self):
        with pytest.raises(ValueError):
            result_code_for(KeyError("x"))


def test_from_config(tmp_path):
    """Test that the pipeline is wired to the configured paths."""
    pipeline = IngestPipeline.from_config(load_config(tmp_path, env={}))

    assert pipeline.store.path == (tmp_path / "vtm.json").resolve()
    assert pipeline.log.path == (tmp_path / "vtm-history.json").resolve()
