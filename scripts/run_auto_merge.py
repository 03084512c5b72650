#!/usr/bin/env python3
"""CLI script to auto-merge queued high-confidence duplicate candidates."""

from __future__ import annotations

import structlog
import typer

from contactgraph.config import AutoMergeConfig, get_settings
from contactgraph.db import get_connection
from contactgraph.resolution.duplicates import run_auto_merge

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def main(
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Report what would be merged without merging"
    ),
    max_merges: int | None = typer.Option(
        None, "--max-merges", help="Maximum candidates to process this run"
    ),
    min_confidence: float | None = typer.Option(
        None, "--min-confidence", help="Only merge candidates at or above this confidence"
    ),
    entity_type: list[str] = typer.Option(
        ["company", "person"], "--entity-type", help="Entity types to process (company, person)"
    ),
) -> None:
    """Merge pending duplicate candidates whose confidence clears the auto-merge floor."""
    settings = get_settings()
    config = AutoMergeConfig.from_settings(
        settings,
        max_merges_per_run=max_merges,
        min_confidence=min_confidence,
        entity_types=tuple(entity_type),
        dry_run=dry_run or settings.auto_merge_dry_run,
    )
    conn = get_connection(settings)

    try:
        summary = run_auto_merge(
            conn,
            settings.system_actor_id,
            config,
            actor_email=settings.system_actor_email,
        )
        conn.commit()
        logger.info(
            "auto_merge_finished",
            run_id=summary.run_id,
            dry_run=summary.dry_run,
            processed=summary.processed,
            merged=summary.merged,
            skipped=summary.skipped,
        )
        for error in summary.errors:
            logger.warning("auto_merge_error", **error)
        if not summary.success:
            raise typer.Exit(code=1)
    finally:
        conn.close()


if __name__ == "__main__":
    app()
