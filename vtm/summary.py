"""Compact manifest summaries and ingestion previews."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .models import Manifest, Task

RULE = "=" * 60


def build_summary(manifest: Manifest) -> Dict[str, Any]:
    """Incomplete tasks in full plus the titles of completed ones.

    Gives an agent the open work without replaying finished task detail.
    """
    incomplete: List[Dict[str, Any]] = []
    for task in manifest.tasks:
        if task.is_completed():
            continue
        entry: Dict[str, Any] = {
            "id": task.id,
            "title": task.title,
            "description": task.description,
            "status": task.status,
            "estimated_hours": task.estimated_hours,
            "risk": task.risk,
            "test_strategy": task.test_strategy,
        }
        if task.dependencies:
            entry["dependencies"] = list(task.dependencies)
        incomplete.append(entry)

    return {
        "incomplete_tasks": incomplete,
        "completed_capabilities": [task.title for task in manifest.tasks if task.is_completed()],
    }


def render_preview(tasks: Sequence[Task], manifest: Manifest) -> str:
    """Plain-text preview of a validated batch before it is ingested."""
    batch_ids = {task.id for task in tasks}
    lines = [RULE, f"Generated {len(tasks)} task(s)", RULE, ""]

    for task in tasks:
        lines.append(f"{task.id}: {task.title}")

        waiting_on: List[str] = []
        if task.dependencies:
            labels = []
            for dep in task.dependencies:
                if dep in batch_ids:
                    labels.append(f"{dep} (new)")
                    waiting_on.append(dep)
                    continue
                existing = manifest.get_task(dep)
                if existing is None:
                    labels.append(f"{dep} (missing)")
                    waiting_on.append(dep)
                else:
                    labels.append(f"{dep} ({existing.status})")
                    if not existing.is_completed():
                        waiting_on.append(dep)
            lines.append(f"  Dependencies: {', '.join(labels)}")
        else:
            lines.append("  Dependencies: none")

        if waiting_on:
            lines.append(f"  Ready when: {', '.join(waiting_on)} complete{'s' if len(waiting_on) == 1 else ''}")
        else:
            lines.append("  Ready when: immediately")
        lines.append("")

    lines.append(RULE)
    return "\n".join(lines) + "\n"
