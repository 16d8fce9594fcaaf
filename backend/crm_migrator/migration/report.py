"""
Markdown report of a migration run.
"""
from collections import Counter
from datetime import datetime
from typing import List

from crm_migrator.migration.session import MigrationSession

COMMON_ERRORS_LIMIT = 5


def render_migration_report(session: MigrationSession, generated_at: datetime = None) -> str:
    """
    Render the outcome of a session as Markdown.

    Args:
        session: Approved session, usually finished
        generated_at: Timestamp to print (defaults to now)

    Returns:
        Markdown document with per-entity counts, the pre-migration sample
        results and the most common errors per entity
    """
    generated_at = generated_at or datetime.now()
    lines: List[str] = [
        f"# Migration Report: {session.dataset_id}",
        "",
        f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Session: {session.id}",
        f"Status: {session.status.value}",
    ]
    if session.duration_ms() is not None:
        lines.append(f"Duration: {session.duration_ms()}ms")
    if session.message:
        lines.append(f"Message: {session.message}")

    lines += [
        "",
        "## Summary",
        "",
        "| Entity | Total | Processed | Errors | Duplicates | Skipped | Status |",
        "|---|---|---|---|---|---|---|",
    ]
    for e in session.entities:
        lines.append(
            f"| {e.name} | {e.total} | {e.processed} | {e.errors} | {e.duplicates} | "
            f"{e.total - e.done} | {e.status.value} |"
        )

    if session.sample_checks:
        lines += [
            "",
            "## Pre-migration sample",
            "",
            "| Entity | Sampled | Errors | Error rate | Estimated errors |",
            "|---|---|---|---|---|",
        ]
        for check in session.sample_checks:
            lines.append(
                f"| {check.entity} | {check.sampled} | {check.errors} | "
                f"{check.error_rate:.1%} | {check.estimated_errors} |"
            )

    if session.errors:
        lines += ["", "## Common errors"]
        for e in session.entities:
            counts = Counter(
                (err.field or "-", err.code) for err in session.errors if err.entity == e.name
            )
            if not counts:
                continue
            lines += ["", f"### {e.name}", ""]
            # Ties keep first-seen order
            for (field_name, code), count in counts.most_common(COMMON_ERRORS_LIMIT):
                share = count / e.total if e.total else 0.0
                lines.append(f"- {field_name}: {code} ({count} rows, {share:.1%})")

    if session.duplicates:
        lines += ["", f"Duplicates skipped: {len(session.duplicates)}"]

    return "\n".join(lines) + "\n"
