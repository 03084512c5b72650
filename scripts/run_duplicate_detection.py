#!/usr/bin/env python3
"""CLI script to scan canonical companies and people for duplicates."""

from __future__ import annotations

import structlog
import typer

from contactgraph.config import get_settings
from contactgraph.db import get_connection
from contactgraph.resolution.duplicates import run_duplicate_detection

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def main(
    min_confidence: float | None = typer.Option(
        None, "--min-confidence", help="Confidence floor for queued pairs (default from settings)"
    ),
) -> None:
    """Run a duplicate detection pass and queue new candidates for review."""
    settings = get_settings()
    conn = get_connection(settings)

    try:
        summary = run_duplicate_detection(
            conn,
            min_confidence if min_confidence is not None else settings.duplicate_min_confidence,
            actor_id=settings.system_actor_id,
            actor_email=settings.system_actor_email,
        )
        conn.commit()
        logger.info(
            "duplicate_detection_finished",
            run_id=summary.run_id,
            saved=summary.new_candidates_saved,
            success=summary.success,
        )
        for error in summary.errors:
            logger.warning("duplicate_detection_error", error=error)
        if not summary.success:
            raise typer.Exit(code=1)
    finally:
        conn.close()


if __name__ == "__main__":
    app()
