"""Validation, ingestion and rollback entry points.

Stages always run in the same order: normalize, schema, dependency
resolution, cycle detection, allocation, commit, transaction record. A stage
that reports errors stops the run; nothing before the commit touches disk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .config import VTMConfig
from .dependencies import CycleDetector, DependencyResolver, build_graph
from .errors import (
    BatchRejectedError,
    BatchValidationError,
    ManifestNotFoundError,
    PersistenceError,
    RollbackConflictError,
    TransactionStateError,
    VTMError,
)
from .history import TransactionLog
from .ids import IdAllocator
from .models import Manifest, Task
from .store import ManifestStore
from .validation import SchemaValidator, normalize_batch
from .vtm_logging import (
    log_batch_ingested,
    log_batch_validated,
    log_error_with_context,
    log_operation,
    log_transaction_reverted,
)

logger = logging.getLogger("vtm.pipeline")


class ResultCode(Enum):
    """Outcome of a command, independent of how a caller reports it."""

    SUCCESS = "success"
    VALIDATION_FAILURE = "validation_failure"
    ROLLBACK_BLOCKED = "rollback_blocked"
    IO_FAILURE = "io_failure"


def result_code_for(error: Optional[BaseException]) -> ResultCode:
    """Map an exception raised by a pipeline operation onto a ResultCode.

    Errors caused by caller input (unknown ids, reverted transactions,
    rejected batches) map to VALIDATION_FAILURE.
    """
    if error is None:
        return ResultCode.SUCCESS
    if isinstance(error, RollbackConflictError):
        return ResultCode.ROLLBACK_BLOCKED
    if isinstance(error, (PersistenceError, OSError)):
        return ResultCode.IO_FAILURE
    if isinstance(error, VTMError):
        return ResultCode.VALIDATION_FAILURE
    raise ValueError(f"No result code for {type(error).__name__}")


@dataclass(slots=True)
class ValidationResult:
    """Outcome of validating a batch against the current manifest."""

    valid: bool
    tasks: List[Task] = field(default_factory=list)
    next_available_id: Optional[str] = None
    errors: List[BatchValidationError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "valid": self.valid,
            "tasks": [task.to_dict() for task in self.tasks],
            "next_available_id": self.next_available_id,
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass(slots=True)
class RollbackResult:
    """What a rollback removed, or would remove for a dry run."""

    transaction_id: str
    removed_ids: List[str] = field(default_factory=list)
    conflicts: List[Tuple[str, str]] = field(default_factory=list)
    detached: List[Tuple[str, str]] = field(default_factory=list)
    forced: bool = False
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "transaction_id": self.transaction_id,
            "removed_ids": list(self.removed_ids),
            "conflicts": [{"task_id": task_id, "depends_on": dep} for task_id, dep in self.conflicts],
            "detached": [{"task_id": task_id, "depends_on": dep} for task_id, dep in self.detached],
            "forced": self.forced,
            "dry_run": self.dry_run,
        }


class IngestPipeline:
    """Run batches through validation into the manifest, and revert them."""

    def __init__(self, store: ManifestStore, log: TransactionLog):
        self.store = store
        self.log = log
        self.schema = SchemaValidator()
        self.cycles = CycleDetector()

    @classmethod
    def from_config(cls, config: VTMConfig) -> "IngestPipeline":
        return cls(ManifestStore(config.manifest_path), TransactionLog(config.history_path))

    def _current_manifest(self) -> Manifest:
        try:
            return self.store.load()
        except ManifestNotFoundError:
            logger.debug(f"No manifest at {self.store.path}; validating against an empty one")
            return Manifest.empty()

    def _check(self, batch: Any, manifest: Manifest) -> Tuple[ValidationResult, IdAllocator]:
        allocator = IdAllocator(manifest.task_ids(), manifest.id_high_water)
        next_id = allocator.preview(1)[0]

        candidates = normalize_batch(batch) if isinstance(batch, list) else batch
        report = self.schema.validate_batch(candidates)
        if not report.valid:
            return ValidationResult(valid=False, next_available_id=next_id, errors=list(report.errors)), allocator

        batch_ids = allocator.preview(len(candidates))
        resolution = DependencyResolver(manifest.tasks).resolve(candidates, batch_ids)
        if not resolution.valid:
            return ValidationResult(valid=False, next_available_id=next_id, errors=list(resolution.errors)), allocator

        tasks = [
            Task.from_dict({**candidate, "id": batch_ids[index], "dependencies": resolution.dependencies[index]})
            for index, candidate in enumerate(candidates)
        ]

        cycle_errors = self.cycles.check(build_graph(manifest.tasks, tasks))
        if cycle_errors:
            return ValidationResult(valid=False, next_available_id=next_id, errors=list(cycle_errors)), allocator

        after_batch = allocator.preview(len(tasks) + 1)[-1]
        return ValidationResult(valid=True, tasks=tasks, next_available_id=after_batch), allocator

    def validate(self, batch: Any) -> ValidationResult:
        """Validate a batch without writing anything."""
        size = len(batch) if isinstance(batch, list) else 0
        with log_operation("validate_batch", task_count=size):
            result, _ = self._check(batch, self._current_manifest())
        log_batch_validated(size, result.valid, len(result.errors))
        return result

    def ingest(self, batch: Any, source: str, files: Optional[Dict[str, str]] = None) -> str:
        """Validate, commit and record a batch. Returns the transaction id."""
        size = len(batch) if isinstance(batch, list) else 0
        with log_operation("ingest_batch", task_count=size, source=source):
            existed = self.store.exists()
            manifest = self._current_manifest()
            result, allocator = self._check(batch, manifest)
            log_batch_validated(size, result.valid, len(result.errors))
            if not result.valid:
                raise BatchRejectedError(result.errors)

            allocation = allocator.allocate(len(result.tasks))
            self.store.commit(manifest.tasks + result.tasks, id_high_water=allocation.high_water)

            try:
                transaction_id = self.log.record(allocation.ids, source, files)
            except PersistenceError as e:
                log_error_with_context(e, {"operation": "ingest_batch", "source": source})
                self._undo_commit(manifest, existed, source)
                raise PersistenceError(f"Transaction for {source} was not recorded; manifest restored: {e}") from e

        log_batch_ingested(transaction_id, allocation.ids, source)
        return transaction_id

    def _undo_commit(self, manifest: Manifest, existed: bool, source: str) -> None:
        # A manifest created by this ingest is removed, not reset to empty.
        try:
            if existed:
                self.store.restore(manifest)
            else:
                self.store.discard()
        except PersistenceError as e:
            log_error_with_context(e, {"operation": "ingest_compensation", "source": source, "path": str(self.store.path)})
            raise

    def rollback(self, transaction_id: str, force: bool = False, dry_run: bool = False) -> RollbackResult:
        """Remove the tasks a transaction added.

        Without ``force`` the rollback is refused when surviving tasks depend
        on removed ones. With ``force`` those dependency edges are dropped
        from the survivors and reported as ``detached``.
        """
        with log_operation("rollback_transaction", transaction_id=transaction_id, force=force, dry_run=dry_run):
            record = self.log.require(transaction_id)
            if not record.is_active():
                raise TransactionStateError(f"Transaction {transaction_id} is already reverted")

            manifest = self.store.load()
            safety = self.log.check_rollback_safety(transaction_id, manifest)
            if not safety.safe and not force:
                raise RollbackConflictError(transaction_id, safety.conflicts)

            removed = set(record.tasks_added)
            survivors = [task for task in manifest.tasks if task.id not in removed]
            detached: List[Tuple[str, str]] = []
            for task in survivors:
                dropped = [dep for dep in task.dependencies if dep in removed]
                if dropped:
                    detached.extend((task.id, dep) for dep in dropped)
                    task.dependencies = [dep for dep in task.dependencies if dep not in removed]

            result = RollbackResult(
                transaction_id=transaction_id,
                removed_ids=list(safety.removed_ids),
                conflicts=list(safety.conflicts),
                detached=detached,
                forced=force and not safety.safe,
                dry_run=dry_run,
            )
            if dry_run:
                return result

            self.store.commit(survivors, id_high_water=manifest.id_high_water)
            self.log.mark_reverted(transaction_id)

        if detached:
            logger.warning(f"Forced rollback of {transaction_id} detached {len(detached)} dependency edge(s)")
        log_transaction_reverted(transaction_id, result.removed_ids, result.forced)
        return result
