"""Dependency resolution and cycle detection.

Batch candidates may reference each other by position (``BatchIndex``) or any
task by canonical identifier (``TaskRef``). Resolution turns both into
canonical identifiers; cycle detection then runs over the union of the
existing manifest and the resolved batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import CircularDependencyError, DependencyError
from .models import BatchIndex, Task, TaskRef, parse_dependency_ref

logger = logging.getLogger("vtm.dependencies")


@dataclass(slots=True)
class ResolutionResult:
    """Resolved dependency lists, one per candidate, plus any errors."""

    dependencies: List[List[str]] = field(default_factory=list)
    errors: List[DependencyError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class DependencyResolver:
    """Translate batch dependency references into canonical identifiers."""

    def __init__(self, existing_tasks: Iterable[Task]):
        self.existing_status: Dict[str, str] = {task.id: task.status for task in existing_tasks}

    def resolve(self, candidates: Sequence[Mapping[str, Any]], batch_ids: Sequence[str]) -> ResolutionResult:
        """Resolve every candidate's dependencies against existing and batch ids.

        ``batch_ids`` are the speculative identifiers for the candidates, in
        batch order. All problems across the batch are collected.
        """
        if len(batch_ids) != len(candidates):
            raise ValueError("batch_ids must have one identifier per candidate")

        batch_status = {batch_ids[i]: candidates[i].get("status", "pending") for i in range(len(candidates))}
        result = ResolutionResult()

        for index, candidate in enumerate(candidates):
            task_id = batch_ids[index]
            resolved: List[str] = []

            for raw in candidate.get("dependencies", []):
                ref = parse_dependency_ref(raw)
                if ref is None:
                    raise ValueError(f"Unvalidated dependency entry {raw!r} on task {task_id}")

                if isinstance(ref, BatchIndex):
                    if ref.index >= len(candidates):
                        result.errors.append(DependencyError(
                            f"Task {task_id} (index {index}): Dependency index {ref.index} out of bounds "
                            f"(batch has {len(candidates)} tasks)",
                            task_id=task_id,
                            dependency=ref.index,
                            reason=DependencyError.OUT_OF_BOUNDS,
                            task_index=index,
                        ))
                        continue
                    target_id = batch_ids[ref.index]
                    target_status = batch_status[target_id]
                elif isinstance(ref, TaskRef):
                    target_id = ref.task_id
                    if target_id in self.existing_status:
                        target_status = self.existing_status[target_id]
                    elif target_id in batch_status:
                        target_status = batch_status[target_id]
                    else:
                        result.errors.append(DependencyError(
                            f"Task {task_id} (index {index}): Dependency {target_id} does not exist "
                            f"in the manifest or the current batch",
                            task_id=task_id,
                            dependency=target_id,
                            reason=DependencyError.MISSING,
                            task_index=index,
                        ))
                        continue
                else:
                    raise TypeError(f"Unknown dependency reference type: {type(ref).__name__}")

                if target_status == "completed":
                    result.errors.append(DependencyError(
                        f"Task {task_id} (index {index}): Dependency {target_id} is already completed. "
                        f"Tasks should only depend on incomplete tasks.",
                        task_id=task_id,
                        dependency=target_id,
                        reason=DependencyError.COMPLETED,
                        task_index=index,
                    ))
                    continue

                if target_id not in resolved:
                    resolved.append(target_id)

            result.dependencies.append(resolved)

        if result.errors:
            logger.debug(f"Dependency resolution found {len(result.errors)} error(s)")
        return result


def build_graph(*task_groups: Iterable[Task]) -> Dict[str, List[str]]:
    """Adjacency map of task id -> dependency ids, in insertion order."""
    graph: Dict[str, List[str]] = {}
    for tasks in task_groups:
        for task in tasks:
            graph[task.id] = list(task.dependencies)
    return graph


class CycleDetector:
    """Find cycles in a dependency graph with an iterative depth-first search."""

    def detect_cycles(self, graph: Mapping[str, Sequence[str]]) -> List[List[str]]:
        """Return distinct cycles, shortest first.

        Each cycle is the stack slice from the re-entered node to the node
        holding the back edge. Ties keep discovery order. Edges to nodes
        outside the graph are ignored.
        """
        cycles: List[List[str]] = []
        seen: set[frozenset[str]] = set()
        visited: set[str] = set()

        for start in graph:
            if start in visited:
                continue

            visited.add(start)
            path: List[str] = [start]
            on_stack: Dict[str, int] = {start: 0}
            pending = [iter(graph.get(start, ()))]

            while pending:
                dep = next(pending[-1], None)
                if dep is None:
                    pending.pop()
                    del on_stack[path.pop()]
                    continue
                if dep not in graph:
                    continue
                if dep in on_stack:
                    cycle = path[on_stack[dep]:]
                    key = frozenset(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(list(cycle))
                    continue
                if dep in visited:
                    continue
                visited.add(dep)
                on_stack[dep] = len(path)
                path.append(dep)
                pending.append(iter(graph.get(dep, ())))

        cycles.sort(key=len)
        return cycles

    def find_cycle(self, graph: Mapping[str, Sequence[str]]) -> Optional[List[str]]:
        """Smallest cycle found, or None when the graph is acyclic."""
        cycles = self.detect_cycles(graph)
        return cycles[0] if cycles else None

    def check(self, graph: Mapping[str, Sequence[str]]) -> List[CircularDependencyError]:
        return [CircularDependencyError(cycle) for cycle in self.detect_cycles(graph)]
