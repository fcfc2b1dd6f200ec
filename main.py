"""MCP server exposing VTM task manifest tools."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from vtm.config import VTMConfig, load_config
from vtm.errors import BatchRejectedError, RollbackConflictError, VTMError
from vtm.models import Manifest
from vtm.pipeline import IngestPipeline, ResultCode, result_code_for
from vtm.store import ManifestStore
from vtm.summary import build_summary, render_preview
from vtm.validation import load_batch_file
from vtm.vtm_logging import setup_logging

mcp = FastMCP("vtm")


def _config(root: Optional[str]) -> VTMConfig:
    return load_config(root)


def _pipeline(root: Optional[str]) -> IngestPipeline:
    return IngestPipeline.from_config(_config(root))


def _store(root: Optional[str]) -> ManifestStore:
    return ManifestStore(_config(root).manifest_path)


def _failure(error: VTMError) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "error": str(error),
        "result_code": result_code_for(error).value,
    }
    if isinstance(error, BatchRejectedError):
        payload["errors"] = [item.to_dict() for item in error.errors]
    if isinstance(error, RollbackConflictError):
        payload["conflicting_ids"] = error.conflicting_ids
        payload["conflicts"] = [{"task_id": task_id, "depends_on": dep} for task_id, dep in error.conflicts]
        payload["workflow_tip"] = "Roll back the dependent transactions first, or pass force=True"
    return payload


@mcp.tool()
def init_manifest(project_name: str, description: str = "", root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 1: Create an empty task manifest for the project.
    Refuses to overwrite an existing manifest."""

    store = _store(root)
    try:
        manifest = store.initialize(project_name, description)
    except VTMError as e:
        return _failure(e)

    return {
        "success": True,
        "manifest_path": str(store.path),
        "project": manifest.to_dict()["project"],
        "result_code": ResultCode.SUCCESS.value,
        "next_suggested_action": "validate_tasks",
    }


@mcp.tool()
def validate_tasks(tasks: List[Dict[str, Any]], root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 2: Dry-run a batch of candidate tasks against the manifest.

    Dependencies may be zero-based indices into the batch or TASK-### ids.
    Nothing is written; every schema, dependency and cycle problem is reported.
    """

    pipeline = _pipeline(root)
    try:
        result = pipeline.validate(tasks)
    except VTMError as e:
        return _failure(e)

    payload = result.to_dict()
    payload["result_code"] = (ResultCode.SUCCESS if result.valid else ResultCode.VALIDATION_FAILURE).value
    payload["next_suggested_action"] = "ingest_tasks" if result.valid else "validate_tasks"
    return payload


@mcp.tool()
def preview_tasks(tasks: List[Dict[str, Any]], root: Optional[str] = None) -> Dict[str, Any]:
    """Render a plain-text preview of the ids and dependencies a batch would receive."""

    pipeline = _pipeline(root)
    try:
        result = pipeline.validate(tasks)
        if not result.valid:
            return _failure(BatchRejectedError(result.errors))
        manifest = pipeline.store.load() if pipeline.store.exists() else None
    except VTMError as e:
        return _failure(e)

    return {
        "valid": True,
        "preview": render_preview(result.tasks, manifest or Manifest.empty()),
        "result_code": ResultCode.SUCCESS.value,
    }


@mcp.tool()
def ingest_tasks(
    tasks: List[Dict[str, Any]],
    source: str = "mcp",
    files: Optional[Dict[str, str]] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 3: Validate and commit a batch of tasks as one transaction.

    The batch is all-or-nothing. The returned transaction id can be passed to
    rollback_transaction to undo the ingestion.
    """

    pipeline = _pipeline(root)
    try:
        transaction_id = pipeline.ingest(tasks, source, files)
        record = pipeline.log.require(transaction_id)
    except VTMError as e:
        return _failure(e)

    return {
        "success": True,
        "transaction_id": transaction_id,
        "task_ids": record.tasks_added,
        "result_code": ResultCode.SUCCESS.value,
        "message": f"Ingested {len(record.tasks_added)} task(s) as {transaction_id}",
        "next_suggested_action": "get_ready_tasks",
    }


@mcp.tool()
def ingest_tasks_file(path: str, source: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Ingest a JSON file containing an array of candidate tasks.

    Relative paths are resolved against the project root.
    """

    config = _config(root)
    file_path = Path(path).expanduser()
    if not file_path.is_absolute():
        file_path = config.project_root / file_path

    pipeline = IngestPipeline.from_config(config)
    try:
        batch = load_batch_file(file_path)
        transaction_id = pipeline.ingest(batch, source or str(file_path), {"tasks": str(file_path)})
        record = pipeline.log.require(transaction_id)
    except VTMError as e:
        return _failure(e)

    return {
        "success": True,
        "transaction_id": transaction_id,
        "task_ids": record.tasks_added,
        "result_code": ResultCode.SUCCESS.value,
        "message": f"Ingested {len(record.tasks_added)} task(s) from {file_path}",
    }


@mcp.tool()
def rollback_transaction(
    transaction_id: str,
    force: bool = False,
    dry_run: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Remove the tasks added by an ingestion transaction.

    Refused while other tasks depend on them unless force=True, in which case
    those dependency edges are dropped and reported as detached.
    """

    pipeline = _pipeline(root)
    try:
        result = pipeline.rollback(transaction_id, force=force, dry_run=dry_run)
    except VTMError as e:
        return _failure(e)

    payload = result.to_dict()
    payload["success"] = True
    payload["result_code"] = ResultCode.SUCCESS.value
    return payload


@mcp.tool()
def rollback_details(transaction_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Show a transaction and whether it can be rolled back safely."""

    pipeline = _pipeline(root)
    try:
        record = pipeline.log.require(transaction_id)
        safety = pipeline.log.check_rollback_safety(transaction_id, pipeline.store.load())
    except VTMError as e:
        return _failure(e)

    return {
        "transaction": record.to_dict(),
        "rollback": safety.to_dict(),
        "can_rollback": record.is_active() and safety.safe,
    }


@mcp.tool()
def list_history(limit: Optional[int] = None, query: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """List ingestion transactions, newest first, optionally filtered by source."""

    pipeline = _pipeline(root)
    try:
        records = pipeline.log.search(query) if query else pipeline.log.history()
        stats = pipeline.log.stats()
    except VTMError as e:
        return _failure(e)

    if limit is not None:
        records = records[:limit]
    return {
        "transactions": [record.to_dict() for record in records],
        "total_count": len(records),
        "stats": stats,
    }


@mcp.tool()
def get_ready_tasks(root: Optional[str] = None) -> Dict[str, Any]:
    """Pending tasks whose dependencies are all completed."""

    store = _store(root)
    try:
        ready = store.get_ready_tasks()
    except VTMError as e:
        return _failure(e)

    return {
        "ready_tasks": [task.to_dict() for task in ready],
        "count": len(ready),
        "workflow_tip": f"{len(ready)} task(s) ready to start" if ready else "No tasks ready - complete in-progress work or ingest new tasks",
    }


@mcp.tool()
def get_task(task_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Fetch one task with its status derived from its dependencies."""

    store = _store(root)
    try:
        task = store.get_task(task_id)
        if task is None:
            return {"error": f"Task '{task_id}' not found", "result_code": ResultCode.VALIDATION_FAILURE.value}
        effective = store.effective_status(task_id)
    except VTMError as e:
        return _failure(e)

    return {"task": task.to_dict(), "effective_status": effective}


@mcp.tool()
def get_task_context(task_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Fetch a task with the tasks it depends on and the pending tasks it blocks."""

    try:
        context = _store(root).get_task_context(task_id)
    except VTMError as e:
        return _failure(e)
    return context.to_dict()


@mcp.tool()
def start_task(task_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Mark a task as in-progress."""

    store = _store(root)
    try:
        if store.effective_status(task_id) == "blocked":
            return {
                "error": f"Task '{task_id}' has incomplete dependencies",
                "result_code": ResultCode.VALIDATION_FAILURE.value,
            }
        task = store.start_task(task_id)
    except VTMError as e:
        return _failure(e)

    return {"success": True, "task": task.to_dict(), "message": f"Started task {task_id}"}


@mcp.tool()
def complete_task(
    task_id: str,
    commits: Optional[List[str]] = None,
    files_created: Optional[List[str]] = None,
    tests_pass: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Mark a task completed and report what became ready."""

    store = _store(root)
    try:
        task = store.complete_task(task_id, commits=commits, files_created=files_created, tests_pass=tests_pass)
        ready = store.get_ready_tasks()
    except VTMError as e:
        return _failure(e)

    return {
        "success": True,
        "task": task.to_dict(),
        "ready_tasks": [item.id for item in ready],
        "next_suggested_action": "start_task" if ready else "ingest_tasks",
    }


@mcp.tool()
def manifest_stats(root: Optional[str] = None) -> Dict[str, Any]:
    """Task counts per status and per source document."""

    store = _store(root)
    try:
        manifest = store.load()
        by_source = store.stats_by_source()
    except VTMError as e:
        return _failure(e)

    return {
        "project": manifest.to_dict()["project"],
        "stats": manifest.stats.to_dict(),
        "completion_rate": round(manifest.stats.get_completion_rate(), 1),
        "by_source": by_source,
    }


@mcp.tool()
def manifest_summary(root: Optional[str] = None) -> Dict[str, Any]:
    """Incomplete tasks plus completed capabilities, sized for agent context."""

    try:
        manifest = _store(root).load()
    except VTMError as e:
        return _failure(e)
    return build_summary(manifest)


@mcp.resource("vtm://summary")
def resource_summary() -> str:
    """Resource view of the manifest summary for the default project root."""

    try:
        manifest = _store(None).load()
    except (ValueError, VTMError) as e:
        return f"No manifest available: {e}"

    summary = build_summary(manifest)
    lines = [f"VTM: {manifest.project_name}", ""]
    for task in summary["incomplete_tasks"]:
        lines.append(f"- {task['id']} [{task['status']}] {task['title']}")
    if summary["completed_capabilities"]:
        lines.append("")
        lines.append("Completed:")
        lines.extend(f"- {title}" for title in summary["completed_capabilities"])
    return "\n".join(lines)


if __name__ == "__main__":
    startup = load_config()
    setup_logging(startup.log_level, startup.log_file)
    mcp.run(transport="stdio")
