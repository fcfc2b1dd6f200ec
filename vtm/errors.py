"""Error taxonomy for VTM manifest operations.

Batch validation problems (schema, dependency, circular) are collected and
reported together; the remaining errors abort the current operation.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple


class VTMError(Exception):
    """Base class for all VTM errors."""


class BatchValidationError(VTMError):
    """A single problem found while validating an ingestion batch."""

    kind = "validation"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"type": self.kind, "message": self.message}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BatchValidationError):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self) -> int:
        return hash((self.kind, self.message))


class SchemaError(BatchValidationError):
    """A candidate task failed a required-field or enumeration check."""

    kind = "schema"

    def __init__(self, message: str, *, task_index: Optional[int] = None, field: Optional[str] = None):
        super().__init__(message)
        self.task_index = task_index
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "task_index": self.task_index,
            "field": self.field,
            "message": self.message,
        }


class DependencyError(BatchValidationError):
    """A dependency reference did not resolve to a usable task."""

    kind = "dependency"

    MISSING = "missing"
    COMPLETED = "completed"
    OUT_OF_BOUNDS = "out_of_bounds"

    def __init__(
        self,
        message: str,
        *,
        task_id: str,
        dependency: Any,
        reason: str,
        task_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.task_id = task_id
        self.dependency = dependency
        self.reason = reason
        self.task_index = task_index

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "reason": self.reason,
            "task_index": self.task_index,
            "task_id": self.task_id,
            "dependency_id": self.dependency,
            "message": self.message,
        }


class CircularDependencyError(BatchValidationError):
    """The resolved dependency graph contains a cycle."""

    kind = "circular"

    def __init__(self, cycle: List[str]):
        path = " -> ".join(list(cycle) + cycle[:1])
        super().__init__(f"Circular dependency detected: {path}")
        self.cycle = list(cycle)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "cycle": list(self.cycle), "message": self.message}


class BatchRejectedError(VTMError):
    """An ingestion batch failed validation; nothing was written."""

    def __init__(self, errors: List[BatchValidationError]):
        self.errors = list(errors)
        kinds = sorted({error.kind for error in self.errors})
        super().__init__(
            f"Batch rejected with {len(self.errors)} error(s) ({', '.join(kinds)})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"message": str(self), "errors": [error.to_dict() for error in self.errors]}


class RollbackConflictError(VTMError):
    """Surviving tasks depend on tasks a rollback would remove."""

    def __init__(self, transaction_id: str, conflicts: List[Tuple[str, str]]):
        self.transaction_id = transaction_id
        self.conflicts = list(conflicts)
        super().__init__(
            f"Cannot rollback {transaction_id}: {len(self.conflicts)} task(s) depend on removed tasks "
            f"({', '.join(self.conflicting_ids)}). Use force to rollback anyway."
        )

    @property
    def conflicting_ids(self) -> List[str]:
        """Surviving task ids that hold a dependency on a removed task."""
        seen: List[str] = []
        for task_id, _ in self.conflicts:
            if task_id not in seen:
                seen.append(task_id)
        return seen


class PersistenceError(VTMError):
    """Storage could not be read or atomically replaced."""


class ManifestNotFoundError(PersistenceError):
    """The manifest file does not exist yet."""


class TransactionNotFoundError(VTMError):
    """No transaction with the requested id exists."""


class TransactionStateError(VTMError):
    """A transaction is not in a state that allows the requested change."""


class TaskNotFoundError(VTMError):
    """No task with the requested id exists in the manifest."""
