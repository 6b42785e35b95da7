"""Report formatting for comparisons, plans and runs.

Provides human-readable and machine-readable output:

- ``format_comparison`` -- per content type state counts.
- ``format_plan`` -- batches, deletions and dependency findings.
- ``format_run_report`` -- post-run summary.
- ``report_to_json`` / ``plan_to_json`` -- structured dicts for ``--json``.
"""

from __future__ import annotations

from collections import defaultdict

from .models import (
    CompareState,
    ComparisonSnapshot,
    ExecutionPlan,
    OutcomeStatus,
    RunReport,
)

# ------------------------------------------------------------------
# Comparison
# ------------------------------------------------------------------


def format_comparison(snapshot: ComparisonSnapshot) -> str:
    """Format comparison counts as a table, one content type per line.

    Content types where every record is identical are summarised by
    count only.
    """
    lines: list[str] = []
    lines.append(f"Comparison ({snapshot.compared_at or 'unknown time'})")
    lines.append("")

    unchanged = 0
    for table, counts in sorted(snapshot.counts().items()):
        changed = sum(
            n for state, n in counts.items() if state != CompareState.IDENTICAL.value
        )
        if not changed:
            unchanged += 1
            continue
        lines.append(
            f"  {table}: "
            f"{counts[CompareState.ONLY_IN_SOURCE.value]} only in source, "
            f"{counts[CompareState.ONLY_IN_TARGET.value]} only in target, "
            f"{counts[CompareState.DIFFERENT.value]} different, "
            f"{counts[CompareState.IDENTICAL.value]} identical"
        )

    if unchanged:
        lines.append(f"  ({unchanged} content type(s) identical)")
    if snapshot.proposed_mappings:
        lines.append("")
        lines.append(
            f"Proposed file mappings: {len(snapshot.proposed_mappings)}"
        )
    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Plan
# ------------------------------------------------------------------


def format_plan(plan: ExecutionPlan) -> str:
    """Format an execution plan as a numbered list of batches."""
    lines: list[str] = []
    lines.append(
        f"Execution plan: {plan.total_items} item(s) in "
        f"{len(plan.batches)} batch(es)"
    )
    lines.append("")

    for number, batch in enumerate(plan.batches):
        lines.append(f"Batch {number + 1}:")
        for item in batch:
            lines.append(f"  [{item.selection.direction.value}] {item.item_key}")
        lines.append("")

    if plan.deletions:
        lines.append("Deletions:")
        for item in plan.deletions:
            lines.append(f"  {item.item_key}")
        lines.append("")

    if plan.circular_edges:
        lines.append("Circular relations (applied in a second pass):")
        for edge in plan.circular_edges:
            lines.append(
                f"  {edge.from_table}:{edge.from_document_id} "
                f"--{edge.via_link.field}--> "
                f"{edge.to_table}:{edge.to_document_id}"
            )
        lines.append("")

    if plan.missing_dependencies:
        lines.append("Missing dependencies (relations omitted):")
        for missing in plan.missing_dependencies:
            target = missing.target_document_id or f"#{missing.target_id}"
            lines.append(
                f"  {missing.table}:{missing.document_id} {missing.field} -> "
                f"{missing.target_table}:{target}: {missing.reason}"
            )
        lines.append("")

    if plan.unresolved:
        lines.append("Not in comparison:")
        for selection in plan.unresolved:
            lines.append(f"  {selection.table}:{selection.document_id}")
        lines.append("")

    if not plan.total_items:
        lines.append("Nothing selected.")

    return "\n".join(lines).rstrip()


def plan_to_json(plan: ExecutionPlan) -> dict:
    """Convert a plan to a structured dict for JSON serialisation."""
    return {
        "total_items": plan.total_items,
        "batches": [[item.item_key for item in batch] for batch in plan.batches],
        "deletions": [item.item_key for item in plan.deletions],
        "circular_edges": [
            {
                "from": f"{e.from_table}:{e.from_document_id}",
                "to": f"{e.to_table}:{e.to_document_id}",
                "field": e.via_link.field,
            }
            for e in plan.circular_edges
        ],
        "missing_dependencies": [
            m.model_dump(mode="json") for m in plan.missing_dependencies
        ],
        "unresolved": [f"{s.table}:{s.document_id}" for s in plan.unresolved],
    }


# ------------------------------------------------------------------
# Run report
# ------------------------------------------------------------------


def format_run_report(report: RunReport) -> str:
    """Format a complete run report as human-readable text.

    Sections are only included when they contain at least one outcome.
    """
    lines: list[str] = []

    header = f"Sync report for merge request '{report.merge_request_id}'"
    if report.cancelled:
        header += " (CANCELLED)"
    lines.append(header)
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append(f"Status: {report.status.value}")
    lines.append("")

    lines.append(
        f"{len(report.outcomes)} item(s): "
        f"{len(report.succeeded)} succeeded, {len(report.failed)} failed, "
        f"{len(report.skipped)} skipped, "
        f"{len(report.not_attempted)} not attempted"
    )
    lines.append("")

    groups = defaultdict(list)
    for outcome in report.outcomes:
        groups[outcome.status].append(outcome)

    if groups[OutcomeStatus.SUCCESS]:
        lines.append("Synced:")
        for o in groups[OutcomeStatus.SUCCESS]:
            arrow = f" -> {o.target_document_id}" if o.target_document_id else ""
            lines.append(f"  [{o.direction.value}] {o.item_key}{arrow}")
        lines.append("")

    if groups[OutcomeStatus.FAILED]:
        lines.append("Failed:")
        for o in groups[OutcomeStatus.FAILED]:
            lines.append(f"  {o.item_key}: {o.error}")
        lines.append("")

    if groups[OutcomeStatus.SKIPPED]:
        lines.append("Skipped:")
        for o in groups[OutcomeStatus.SKIPPED]:
            lines.append(f"  {o.item_key}: {o.error}")
        lines.append("")

    if groups[OutcomeStatus.CANCELLED]:
        lines.append(
            f"Not attempted: {len(groups[OutcomeStatus.CANCELLED])} item(s)"
        )
        lines.append("")

    if report.warnings:
        lines.append("Warnings:")
        for warning in report.warnings:
            lines.append(f"  {warning}")
        lines.append("")

    return "\n".join(lines).rstrip()


def report_to_json(report: RunReport) -> dict:
    """Convert a run report to a structured dict for JSON serialisation.

    Events are left out; they are streamed while the run is going.
    """
    outcomes = []
    for o in report.outcomes:
        entry: dict = {
            "table": o.table,
            "document_id": o.document_id,
            "direction": o.direction.value,
            "status": o.status.value,
        }
        if o.target_document_id:
            entry["target_document_id"] = o.target_document_id
        if o.error:
            entry["error"] = o.error
        outcomes.append(entry)

    return {
        "merge_request_id": report.merge_request_id,
        "status": report.status.value,
        "cancelled": report.cancelled,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "counts": {
            "total": len(report.outcomes),
            "succeeded": len(report.succeeded),
            "failed": len(report.failed),
            "skipped": len(report.skipped),
            "not_attempted": len(report.not_attempted),
        },
        "outcomes": outcomes,
        "warnings": list(report.warnings),
        "circular_edges": len(report.circular_edges),
        "missing_dependencies": len(report.missing_dependencies),
    }
