"""Transaction log for VTM ingestions.

Each successful ingestion appends one TransactionRecord to a JSON file kept
next to the manifest. Records are never removed; a rollback only marks its
record as reverted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import PersistenceError, TransactionNotFoundError, TransactionStateError
from .models import TRANSACTION_REVERTED, Manifest, TransactionRecord, utc_now
from .store import atomic_write_json, read_json
from .vtm_logging import log_error_with_context

logger = logging.getLogger("vtm.history")


@dataclass(slots=True)
class RollbackSafety:
    """Whether a transaction can be reverted without orphaning dependencies."""

    transaction_id: str
    removed_ids: List[str] = field(default_factory=list)
    conflicts: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def safe(self) -> bool:
        return not self.conflicts

    @property
    def conflicting_ids(self) -> List[str]:
        ids: List[str] = []
        for task_id, _ in self.conflicts:
            if task_id not in ids:
                ids.append(task_id)
        return ids

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "transaction_id": self.transaction_id,
            "safe": self.safe,
            "removed_ids": list(self.removed_ids),
            "conflicting_ids": self.conflicting_ids,
            "conflicts": [{"task_id": task_id, "depends_on": dep} for task_id, dep in self.conflicts],
        }


class TransactionLog:
    """Append-ordered record of ingestion transactions.

    Transaction ids have the form ``YYYY-MM-DD-NNN``: the UTC date followed
    by a per-day counter that continues from the highest id already logged
    for that date.
    """

    def __init__(self, path: Path | str, *, clock: Optional[Callable[[], datetime]] = None):
        self.path = Path(path).expanduser().resolve()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _read(self) -> List[TransactionRecord]:
        try:
            data = read_json(self.path)
        except FileNotFoundError:
            return []
        if not isinstance(data, dict) or not isinstance(data.get("transactions", []), list):
            raise PersistenceError(f"Transaction log at {self.path} is malformed")
        try:
            return [TransactionRecord.from_dict(entry) for entry in data.get("transactions", [])]
        except (KeyError, TypeError) as e:
            raise PersistenceError(f"Transaction log at {self.path} is malformed: {e}") from e

    def _write(self, records: List[TransactionRecord]) -> None:
        try:
            atomic_write_json(self.path, {"transactions": [record.to_dict() for record in records]})
        except (OSError, TypeError, ValueError) as e:
            log_error_with_context(e, {"operation": "history_write", "path": str(self.path)})
            raise PersistenceError(f"Could not write transaction log {self.path}: {e}") from e

    def records(self) -> List[TransactionRecord]:
        """All records in the order they were appended."""
        return self._read()

    def _next_id(self, records: List[TransactionRecord], now: datetime) -> str:
        date = now.astimezone(timezone.utc).strftime("%Y-%m-%d")
        prefix = f"{date}-"
        sequence = 0
        for record in records:
            if record.id.startswith(prefix) and record.id[len(prefix):].isdigit():
                sequence = max(sequence, int(record.id[len(prefix):]))
        return f"{prefix}{sequence + 1:03d}"

    def record(self, added_ids: List[str], source: str, files: Optional[Dict[str, str]] = None) -> str:
        """Append a record for a committed ingestion and return its id."""
        records = self._read()
        now = self._clock()
        record = TransactionRecord(
            id=self._next_id(records, now),
            timestamp=now.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
            source=source,
            tasks_added=list(added_ids),
            files=dict(files) if files else None,
        )
        records.append(record)
        self._write(records)
        logger.info(f"Recorded transaction {record.id} ({len(record.tasks_added)} tasks from {source})")
        return record.id

    def lookup(self, transaction_id: str) -> Optional[TransactionRecord]:
        for record in self._read():
            if record.id == transaction_id:
                return record
        return None

    def require(self, transaction_id: str) -> TransactionRecord:
        record = self.lookup(transaction_id)
        if record is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return record

    def check_rollback_safety(self, transaction_id: str, manifest: Manifest) -> RollbackSafety:
        """List surviving tasks that directly depend on tasks the transaction added."""
        record = self.require(transaction_id)
        added = set(record.tasks_added)
        present = set(manifest.task_ids())

        safety = RollbackSafety(
            transaction_id=transaction_id,
            removed_ids=[task_id for task_id in record.tasks_added if task_id in present],
        )
        for task in manifest.tasks:
            if task.id in added:
                continue
            for dep in task.dependencies:
                if dep in added:
                    safety.conflicts.append((task.id, dep))
        return safety

    def mark_reverted(self, transaction_id: str) -> TransactionRecord:
        """Move a record from active to reverted. There is no way back."""
        records = self._read()
        for record in records:
            if record.id != transaction_id:
                continue
            if not record.is_active():
                raise TransactionStateError(f"Transaction {transaction_id} is already reverted")
            record.state = TRANSACTION_REVERTED
            record.reverted_at = utc_now()
            self._write(records)
            logger.info(f"Marked transaction {transaction_id} as reverted")
            return record
        raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

    # ------------------------------------------------------------------
    # History queries
    # ------------------------------------------------------------------

    def history(self, limit: Optional[int] = None) -> List[TransactionRecord]:
        """Records newest first."""
        records = sorted(self._read(), key=lambda record: (record.timestamp, record.id), reverse=True)
        return records[:limit] if limit is not None else records

    def search(self, query: str) -> List[TransactionRecord]:
        needle = query.lower()
        return [record for record in self.history() if needle in record.source.lower()]

    def stats(self) -> Dict[str, Any]:
        records = self._read()
        by_state: Dict[str, int] = {}
        for record in records:
            by_state[record.state] = by_state.get(record.state, 0) + 1
        timestamps = sorted(record.timestamp for record in records)
        return {
            "total": len(records),
            "by_state": by_state,
            "oldest": timestamps[0] if timestamps else None,
            "newest": timestamps[-1] if timestamps else None,
        }
