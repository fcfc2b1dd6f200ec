"""VTM: task manifest validation and transactional ingestion.

Batches of candidate tasks are normalized, schema-checked, resolved against
the existing manifest, checked for dependency cycles, assigned ``TASK-###``
identifiers and committed atomically. Every ingestion is recorded as a
transaction that can later be rolled back.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "dependencies",
    "errors",
    "history",
    "ids",
    "models",
    "pipeline",
    "store",
    "summary",
    "validation",
    "vtm_logging",
]
