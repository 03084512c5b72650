#!/usr/bin/env python3
"""CLI script to drop stale duplicate candidates and print queue statistics."""

from __future__ import annotations

import structlog
import typer

from contactgraph.config import get_settings
from contactgraph.db import get_connection
from contactgraph.resolution.duplicates import cleanup_stale_candidates, get_duplicate_stats

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def main(
    stats_only: bool = typer.Option(False, "--stats-only", help="Skip cleanup, only print stats"),
) -> None:
    """Remove candidates whose entities were merged or deleted, then report the queue."""
    settings = get_settings()
    conn = get_connection(settings)

    try:
        if not stats_only:
            result = cleanup_stale_candidates(conn)
            conn.commit()
            logger.info("cleanup_finished", removed=result.removed, errors=len(result.errors))

        stats = get_duplicate_stats(conn)
        typer.echo(f"Pending:  {stats.pending['companies']} companies, {stats.pending['people']} people")
        typer.echo(
            f"Resolved: {stats.resolved['companies']} companies, {stats.resolved['people']} people"
        )
        typer.echo(f"Average pending confidence: {stats.avg_confidence:.3f}")
        oldest = stats.oldest_pending.isoformat() if stats.oldest_pending else "n/a"
        typer.echo(f"Oldest pending candidate:   {oldest}")
    finally:
        conn.close()


if __name__ == "__main__":
    app()
