"""Unit tests for dependency resolution and cycle detection."""

import pytest

from vtm.dependencies import CycleDetector, DependencyResolver, build_graph
from vtm.errors import CircularDependencyError, DependencyError
from vtm.models import Task
from vtm.validation import normalize_batch


def _task(task_id, status="pending", dependencies=None):
    return Task(id=task_id, title=task_id, description=task_id, status=status, dependencies=dependencies or [])


def _batch(*dependency_lists, status="pending"):
    return normalize_batch([
        {"title": f"T{i}", "description": "d", "status": status, "dependencies": deps}
        for i, deps in enumerate(dependency_lists)
    ])


class TestDependencyResolver:
    """Test cases for DependencyResolver."""

    def setup_method(self):
        self.existing = [_task("TASK-001", status="completed"), _task("TASK-002")]
        self.resolver = DependencyResolver(self.existing)

    def test_batch_indices_become_ids(self):
        """Test that batch-local indices resolve to the speculative ids."""
        result = self.resolver.resolve(_batch([], [0]), ["TASK-003", "TASK-004"])

        assert result.valid
        assert result.dependencies == [[], ["TASK-003"]]

    def test_mixed_references(self):
        """Test a batch mixing indices and canonical ids."""
        result = self.resolver.resolve(_batch([], [0, "TASK-002"]), ["TASK-003", "TASK-004"])
        assert result.dependencies[1] == ["TASK-003", "TASK-002"]

    def test_reference_to_batch_id(self):
        result = self.resolver.resolve(_batch([], ["TASK-003"]), ["TASK-003", "TASK-004"])
        assert result.dependencies[1] == ["TASK-003"]

    def test_duplicates_collapse(self):
        """Test that an index and the id it resolves to count once."""
        result = self.resolver.resolve(_batch([], [0, "TASK-003", 0]), ["TASK-003", "TASK-004"])
        assert result.dependencies[1] == ["TASK-003"]

    def test_missing_dependency(self):
        result = self.resolver.resolve(_batch(["TASK-999"]), ["TASK-003"])

        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.reason == DependencyError.MISSING
        assert error.dependency == "TASK-999"
        assert "TASK-999" in error.message

    def test_completed_dependency(self):
        result = self.resolver.resolve(_batch(["TASK-001"]), ["TASK-003"])

        assert [error.reason for error in result.errors] == [DependencyError.COMPLETED]
        assert "already completed" in result.errors[0].message

    def test_completed_batch_dependency(self):
        """Test that depending on a batch task submitted as completed is also rejected."""
        candidates = normalize_batch([
            {"title": "A", "description": "d", "status": "completed"},
            {"title": "B", "description": "d", "dependencies": [0]},
        ])
        result = self.resolver.resolve(candidates, ["TASK-003", "TASK-004"])

        assert [error.reason for error in result.errors] == [DependencyError.COMPLETED]

    def test_out_of_bounds_index(self):
        result = self.resolver.resolve(_batch([5]), ["TASK-003"])

        error = result.errors[0]
        assert error.reason == DependencyError.OUT_OF_BOUNDS
        assert error.dependency == 5
        assert error.task_index == 0
        assert "5" in error.message

    def test_collects_errors_across_batch(self):
        """Test that every dependency problem in the batch is reported."""
        result = self.resolver.resolve(_batch(["TASK-999"], [9], ["TASK-001"]), ["TASK-003", "TASK-004", "TASK-005"])
        assert [error.reason for error in result.errors] == ["missing", "out_of_bounds", "completed"]

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            self.resolver.resolve(_batch([]), [])


class TestCycleDetector:
    """Test cases for CycleDetector."""

    def setup_method(self):
        self.detector = CycleDetector()

    def test_acyclic_graph(self):
        graph = {"A": ["B"], "B": ["C"], "C": []}
        assert self.detector.detect_cycles(graph) == []
        assert self.detector.find_cycle(graph) is None

    def test_injected_cycle_found_then_removed(self):
        """Test that a known cycle is found and disappears once the edge is removed."""
        graph = {"A": ["B"], "B": ["C"], "C": ["A"], "D": ["A"]}
        cycle = self.detector.find_cycle(graph)
        assert set(cycle) == {"A", "B", "C"}

        graph["C"] = []
        assert self.detector.find_cycle(graph) is None

    def test_self_loop(self):
        assert self.detector.detect_cycles({"A": ["A"]}) == [["A"]]

    def test_shortest_cycle_first(self):
        """Test that the smallest cycle is reported first."""
        graph = {"A": ["B"], "B": ["C"], "C": ["A", "B"]}
        cycles = self.detector.detect_cycles(graph)

        assert cycles[0] == ["B", "C"]
        assert ["A", "B", "C"] in cycles

    def test_edges_outside_graph_ignored(self):
        assert self.detector.detect_cycles({"A": ["Z"]}) == []

    def test_check_returns_errors(self):
        errors = self.detector.check({"A": ["B"], "B": ["A"]})

        assert len(errors) == 1
        assert isinstance(errors[0], CircularDependencyError)
        assert errors[0].cycle == ["A", "B"]
        assert errors[0].message == "Circular dependency detected: A -> B -> A"

    def test_deterministic(self):
        graph = {"A": ["B"], "B": ["A"], "C": ["D"], "D": ["C"]}
        assert self.detector.detect_cycles(graph) == self.detector.detect_cycles(dict(graph))


def test_build_graph_unions_groups():
    """Test that later groups are added after earlier ones."""
    graph = build_graph([_task("TASK-001")], [_task("TASK-002", dependencies=["TASK-001"])])
    assert graph == {"TASK-001": [], "TASK-002": ["TASK-001"]}
    assert list(graph) == ["TASK-001", "TASK-002"]
