"""Canonical task identifier allocation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

TASK_ID_PREFIX = "TASK-"
TASK_ID_PATTERN = re.compile(r"^TASK-(\d+)$")
DEFAULT_WIDTH = 3


def parse_task_number(task_id: str) -> Optional[int]:
    """Numeric part of a ``TASK-###`` identifier, or None if it does not conform."""
    match = TASK_ID_PATTERN.match(task_id or "")
    return int(match.group(1)) if match else None


def format_task_id(number: int, width: int = DEFAULT_WIDTH) -> str:
    """Zero-pad to ``width``; larger numbers widen rather than truncate."""
    return f"{TASK_ID_PREFIX}{number:0{width}d}"


@dataclass(slots=True)
class Allocation:
    """Identifiers issued for one batch and the high-water mark after issuing them."""

    ids: List[str] = field(default_factory=list)
    high_water: int = 0


class IdAllocator:
    """Issue sequential task identifiers after the highest number seen so far.

    The starting point is the larger of the persisted high-water mark and the
    highest number among present tasks, so identifiers removed by a rollback
    are not issued again.
    """

    def __init__(self, existing_ids: Iterable[str] = (), high_water: int = 0):
        self.width = DEFAULT_WIDTH
        present_max = 0
        for task_id in existing_ids:
            number = parse_task_number(task_id)
            if number is None:
                continue
            present_max = max(present_max, number)
            self.width = max(self.width, len(task_id) - len(TASK_ID_PREFIX))
        self.current_max = max(present_max, high_water or 0)

    @property
    def next_number(self) -> int:
        return self.current_max + 1

    def preview(self, count: int) -> List[str]:
        """The next ``count`` identifiers, without reserving them."""
        return [format_task_id(self.current_max + offset, self.width) for offset in range(1, count + 1)]

    def allocate(self, count: int) -> Allocation:
        """Reserve the next ``count`` identifiers."""
        ids = self.preview(count)
        self.current_max += count
        return Allocation(ids=ids, high_water=self.current_max)
