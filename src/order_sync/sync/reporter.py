"""Sync report formatting functions.

- ``format_sync_report`` -- full post-sync summary.
- ``format_queue_status`` -- pending and failed outbox entries.
- ``report_to_json`` -- structured dict for machine-readable output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..models import PendingOperation, SyncReport

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_report(report: SyncReport) -> str:
    """Format a complete sync report as human-readable text.

    Sections are only included when they contain at least one result.
    Unchanged orders are summarised by count only.

    Args:
        report: The completed sync report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    lines.append(f"Sync report for user '{report.user_id}'")
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    lines.append(
        f"Reconciled {len(report.results)} orders: "
        f"{len(report.uploaded)} uploaded, "
        f"{len(report.downloaded)} downloaded, "
        f"{len(report.deleted_remote)} deleted remotely, "
        f"{len(report.purged_local)} purged, "
        f"{len(report.errors)} errors"
    )
    lines.append("")

    sections = [
        ("Uploaded:", report.uploaded),
        ("Downloaded:", report.downloaded),
        ("Deleted remotely:", report.deleted_remote),
        ("Purged locally:", report.purged_local),
    ]
    for title, results in sections:
        if not results:
            continue
        lines.append(title)
        for r in results:
            suffix = " (pending)" if r.pending else ""
            lines.append(f"  {r.business_key}{suffix}")
        lines.append("")

    if report.errors:
        lines.append("Errors:")
        for r in report.errors:
            lines.append(f"  {r.business_key}: {r.error}")
        lines.append("")

    if report.failed_operations:
        lines.append(
            "Gave up after repeated failures: "
            + ", ".join(report.failed_operations)
        )
        lines.append("")

    unchanged = len(report.unchanged)
    if unchanged > 0:
        lines.append(f"Unchanged: {unchanged} orders")
        lines.append("")

    return "\n".join(lines).rstrip()


def format_queue_status(
    pending: list[PendingOperation], failed: list[PendingOperation]
) -> str:
    """Format the outbox contents for display."""
    lines = [f"Pending operations: {len(pending)}"]
    for op in pending:
        line = f"  [{op.kind.value}] {op.target_id}"
        if op.retry_count:
            line += f" (retry {op.retry_count}: {op.last_error})"
        lines.append(line)

    lines.append(f"Failed operations: {len(failed)}")
    for op in failed:
        lines.append(f"  [{op.kind.value}] {op.target_id}: {op.last_error}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict:
    """Convert a sync report to a structured dict for JSON serialisation.

    Args:
        report: The sync report.

    Returns:
        Dict with user, counts, and per-result details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "business_key": r.business_key,
            "action": r.action.value,
            "success": r.success,
            "pending": r.pending,
        }
        if r.error:
            entry["error"] = r.error
        results_list.append(entry)

    return {
        "user_id": report.user_id,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "counts": {
            "total": len(report.results),
            "uploaded": len(report.uploaded),
            "downloaded": len(report.downloaded),
            "deleted_remote": len(report.deleted_remote),
            "purged_local": len(report.purged_local),
            "unchanged": len(report.unchanged),
            "pending": len(report.pending),
            "errors": len(report.errors),
        },
        "failed_operations": list(report.failed_operations),
        "results": results_list,
    }
