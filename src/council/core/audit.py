"""
Audit snapshots of finished runs.
"""

from typing import Any

from ..models import Run
from ..observability.logging import get_logger
from ..observability.probe import get_trace_metrics

logger = get_logger(__name__)


def create_run_snapshot(
    run: Run,
    artifact_versions: dict[str, int] | None = None,
    additional_data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Create an audit snapshot of a run.

    Args:
        run: The run, normally in a terminal state
        artifact_versions: Latest version number per artifact path
        additional_data: Any additional data to include

    Returns:
        Snapshot dictionary suitable for JSON persistence
    """
    timings = {
        op: {
            "duration_ms": data["duration_ms"],
            "success": data["success"],
            "error": data.get("error_type"),
        }
        for op, data in get_trace_metrics(run.run_id).items()
    }

    snapshot = {
        "run_id": run.run_id,
        "feature_description": run.feature_description,
        "target_languages": sorted(run.target_languages),
        "status": run.status.value,
        "state_history": list(run.state_history),
        "attempts": run.attempts_by_language(),
        "change_set_id": run.change_set_id,
        "config_sha256": run.config_hash,
        "artifact_versions": dict(sorted((artifact_versions or {}).items())),
        "diagnostics": run.diagnostics(),
        "timings_ms": timings,
        "metadata": {
            "total_operations": len(timings),
            "total_duration_ms": sum(t["duration_ms"] for t in timings.values()),
            "failed_operations": sum(1 for t in timings.values() if not t["success"]),
        },
    }
    if additional_data:
        snapshot.update(additional_data)
    return snapshot
