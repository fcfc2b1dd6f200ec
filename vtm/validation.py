"""Candidate normalization and schema validation for ingestion batches.

``normalize_candidate`` is the only place defaults are filled in. The
validator then checks the normalized candidates and never mutates them.
"""

from __future__ import annotations

import copy
import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .errors import PersistenceError, SchemaError
from .models import RISK_LEVELS, TASK_STATUSES, TEST_STRATEGIES, parse_dependency_ref

logger = logging.getLogger("vtm.validation")

LIST_FIELDS = ("acceptance_criteria", "blocks", "commits")
FILE_KEYS = ("create", "modify", "delete")

_DEFAULTS: Dict[str, Any] = {
    "status": "pending",
    "test_strategy": "TDD",
    "test_strategy_rationale": "",
    "risk": "medium",
    "estimated_hours": 0,
    "adr_source": "",
    "spec_source": "",
}


def _canonical_choice(value: Any, choices: Sequence[str]) -> Any:
    """Map a case-insensitive match onto its canonical spelling."""
    if isinstance(value, str):
        for choice in choices:
            if value.strip().lower() == choice.lower():
                return choice
    return value


def normalize_candidate(raw: Any) -> Any:
    """Fill defaults on a raw candidate task.

    Invalid values are left in place for the validator to report. A value
    that is not a mapping is returned unchanged.
    """
    if not isinstance(raw, Mapping):
        return raw

    candidate: Dict[str, Any] = copy.deepcopy(dict(raw))
    if "id" in candidate:
        logger.debug(f"Ignoring supplied id {candidate['id']!r}; ids are allocated on ingest")
        candidate.pop("id")

    risk_level = candidate.pop("risk_level", None)
    if candidate.get("risk") is None and risk_level is not None:
        candidate["risk"] = risk_level

    for key, default in _DEFAULTS.items():
        if candidate.get(key) is None:
            candidate[key] = default

    candidate["risk"] = _canonical_choice(candidate["risk"], RISK_LEVELS)
    candidate["test_strategy"] = _canonical_choice(candidate["test_strategy"], TEST_STRATEGIES)

    if candidate.get("dependencies") is None:
        candidate["dependencies"] = []
    for key in LIST_FIELDS:
        if candidate.get(key) is None:
            candidate[key] = []
    if candidate.get("files") is None:
        candidate["files"] = {key: [] for key in FILE_KEYS}
    elif isinstance(candidate["files"], Mapping):
        candidate["files"] = {**{key: [] for key in FILE_KEYS}, **candidate["files"]}
    if candidate.get("validation") is None:
        candidate["validation"] = {"tests_pass": False, "ac_verified": []}

    return candidate


def normalize_batch(batch: Sequence[Any]) -> List[Any]:
    return [normalize_candidate(raw) for raw in batch]


@dataclass(slots=True)
class SchemaReport:
    """Outcome of schema validation over a batch."""

    errors: List[SchemaError] = field(default_factory=list)
    failed_index: Optional[int] = None

    @property
    def valid(self) -> bool:
        return not self.errors


class SchemaValidator:
    """Check normalized candidates against the task schema."""

    def validate_candidate(self, candidate: Any, index: int) -> List[SchemaError]:
        """Return every schema violation for one candidate."""
        if not isinstance(candidate, Mapping):
            return [SchemaError(
                f"Task {index}: expected an object, got {type(candidate).__name__}",
                task_index=index,
            )]

        errors: List[SchemaError] = []

        def fail(field_name: str, message: str) -> None:
            errors.append(SchemaError(f"Task {index}: {message}", task_index=index, field=field_name))

        for required in ("title", "description"):
            value = candidate.get(required)
            if not isinstance(value, str) or not value.strip():
                fail(required, f"Missing required field '{required}' (non-empty string)")

        for field_name, choices in (
            ("status", TASK_STATUSES),
            ("test_strategy", TEST_STRATEGIES),
            ("risk", RISK_LEVELS),
        ):
            value = candidate.get(field_name)
            if value not in choices:
                fail(field_name, f"Invalid {field_name} {value!r}. Must be one of: {', '.join(choices)}")

        dependencies = candidate.get("dependencies")
        if not isinstance(dependencies, list):
            fail("dependencies", "Field 'dependencies' must be an array")
        else:
            for position, dep in enumerate(dependencies):
                if parse_dependency_ref(dep) is None:
                    fail(
                        "dependencies",
                        f"Dependency at position {position} must be a non-negative batch index "
                        f"or a task identifier, got {dep!r}",
                    )

        for field_name in LIST_FIELDS:
            if not isinstance(candidate.get(field_name), list):
                fail(field_name, f"Field '{field_name}' must be an array")

        hours = candidate.get("estimated_hours")
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or not math.isfinite(hours) or hours < 0:
            fail("estimated_hours", f"Field 'estimated_hours' must be a non-negative number, got {hours!r}")

        files = candidate.get("files")
        if not isinstance(files, Mapping):
            fail("files", "Field 'files' must be an object with create/modify/delete arrays")
        else:
            for key in FILE_KEYS:
                if not isinstance(files.get(key), list):
                    fail("files", f"Field 'files.{key}' must be an array")

        if not isinstance(candidate.get("validation"), Mapping):
            fail("validation", "Field 'validation' must be an object")

        return errors

    def validate_batch(self, candidates: Any) -> SchemaReport:
        """Validate candidates in order, stopping at the first failing record."""
        if not isinstance(candidates, list):
            return SchemaReport(errors=[SchemaError(
                f"Tasks data must be an array, got {type(candidates).__name__}"
            )])
        if not candidates:
            return SchemaReport(errors=[SchemaError("Task list cannot be empty")])

        for index, candidate in enumerate(candidates):
            errors = self.validate_candidate(candidate, index)
            if errors:
                return SchemaReport(errors=errors, failed_index=index)
        return SchemaReport()


def load_batch_file(path: Path | str) -> List[Any]:
    """Read a JSON array of candidate tasks from disk."""
    file_path = Path(path)
    if not file_path.exists():
        raise PersistenceError(f"Tasks file not found: {file_path}")
    try:
        content = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise PersistenceError(f"Could not read tasks file {file_path}: {e}") from e

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as e:
        raise SchemaError(f"Invalid JSON in tasks file: {e}") from e

    if not isinstance(parsed, list):
        raise SchemaError("Tasks file must be an array of tasks")
    return parsed
