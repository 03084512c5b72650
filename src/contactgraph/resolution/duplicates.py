"""Background duplicate management: detection runs, auto-merge, cleanup, stats.

These functions are meant to run as scheduled jobs (see ``scripts/``), not
inline with user requests, and are not designed to overlap with themselves.
Each job isolates per-item failures into its summary's ``errors`` list and
writes one audit record per run.

No statement runs outside a ``conn.transaction()`` block.  On a
non-autocommit connection each block is then a top-level transaction, so
every merge commits and releases its row locks when its block exits.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import psycopg
import structlog

from contactgraph.config import AutoMergeConfig
from contactgraph.resolution.errors import (
    CandidateAlreadyResolvedError,
    CandidateNotFoundError,
    MergeValidationError,
    ResolutionError,
)
from contactgraph.resolution.merge import merge_entities
from contactgraph.resolution.models import (
    AutoMergeRunSummary,
    CandidatePage,
    CandidateStatus,
    CanonicalCompany,
    CanonicalPerson,
    CleanupResult,
    DetectionRunSummary,
    DuplicateCandidate,
    DuplicateStats,
    EntityType,
    Found,
    MergeResult,
    Resolution,
)
from contactgraph.resolution.repository import (
    candidate_counts_by_status,
    count_live_companies,
    count_live_people,
    delete_candidate,
    fetch_pending_candidates,
    find_stale_candidates,
    get_candidate,
    insert_audit_log,
    list_candidates as _list_candidates,
    lookup_entity,
    mark_candidate_resolved,
    pending_confidence_summary,
)
from contactgraph.resolution.scanner import (
    DEFAULT_MIN_CONFIDENCE,
    find_duplicate_companies,
    find_duplicate_people,
    persist_candidates,
)

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"
MAX_PAGE_SIZE = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _run_id(prefix: str) -> str:
    return f"{prefix}-{_now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def run_duplicate_detection(
    conn: psycopg.Connection,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    *,
    actor_id: str = SYSTEM_ACTOR,
    actor_email: str | None = None,
) -> DetectionRunSummary:
    """Scan companies and people for duplicates and queue new candidates.

    The company and person phases fail independently; a failure in one is
    recorded in ``errors`` and the other still runs.
    """
    summary = DetectionRunSummary(
        run_id=_run_id("dup"),
        started_at=_now(),
        completed_at=_now(),
    )

    try:
        with conn.transaction():
            summary.companies_scanned = count_live_companies(conn)
            summary.people_scanned = count_live_people(conn)
    except psycopg.Error as e:
        summary.errors.append(f"Detection run error: {e}")

    try:
        with conn.transaction():
            company_pairs = find_duplicate_companies(conn, min_confidence)
        summary.company_candidates_found = len(company_pairs)
        saved, errors = persist_candidates(conn, EntityType.COMPANY, company_pairs)
        summary.new_candidates_saved += saved
        summary.errors.extend(errors)
    except psycopg.Error as e:
        logger.warning("company_detection_failed", run_id=summary.run_id, error=str(e))
        summary.errors.append(f"Company detection error: {e}")

    try:
        with conn.transaction():
            person_pairs = find_duplicate_people(conn, min_confidence)
        summary.person_candidates_found = len(person_pairs)
        saved, errors = persist_candidates(conn, EntityType.PERSON, person_pairs)
        summary.new_candidates_saved += saved
        summary.errors.extend(errors)
    except psycopg.Error as e:
        logger.warning("person_detection_failed", run_id=summary.run_id, error=str(e))
        summary.errors.append(f"Person detection error: {e}")

    summary.completed_at = _now()
    with conn.transaction():
        insert_audit_log(
            conn,
            actor_id=actor_id,
            actor_email=actor_email,
            action="DUPLICATE_DETECTION_RUN",
            target_type="System",
            target_id=summary.run_id,
            metadata={
                "run_id": summary.run_id,
                "min_confidence": min_confidence,
                "started_at": summary.started_at.isoformat(),
                "completed_at": summary.completed_at.isoformat(),
                "companies_scanned": summary.companies_scanned,
                "people_scanned": summary.people_scanned,
                "company_candidates_found": summary.company_candidates_found,
                "person_candidates_found": summary.person_candidates_found,
                "new_candidates_saved": summary.new_candidates_saved,
                "errors": summary.errors,
            },
        )

    logger.info(
        "duplicate_detection_complete",
        run_id=summary.run_id,
        companies_scanned=summary.companies_scanned,
        people_scanned=summary.people_scanned,
        company_candidates=summary.company_candidates_found,
        person_candidates=summary.person_candidates_found,
        saved=summary.new_candidates_saved,
        errors=len(summary.errors),
    )
    return summary


# ---------------------------------------------------------------------------
# Survivor selection
# ---------------------------------------------------------------------------

def choose_survivor(
    a: CanonicalCompany | CanonicalPerson,
    b: CanonicalCompany | CanonicalPerson,
) -> tuple[CanonicalCompany | CanonicalPerson, CanonicalCompany | CanonicalPerson]:
    """Return ``(primary, duplicate)`` for a candidate pair.

    Higher data quality wins (VERIFIED > ENRICHED > SUGGESTED > PROVISIONAL);
    on equal quality the earlier-created record wins, then *a*.
    """
    if a.data_quality.rank != b.data_quality.rank:
        return (a, b) if a.data_quality.rank > b.data_quality.rank else (b, a)
    if a.created_at is not None and b.created_at is not None and b.created_at < a.created_at:
        return b, a
    if a.created_at is None and b.created_at is not None:
        return b, a
    return a, b


# ---------------------------------------------------------------------------
# Auto-merge
# ---------------------------------------------------------------------------

def _auto_merge_candidate(
    conn: psycopg.Connection,
    candidate: DuplicateCandidate,
    actor: str,
    actor_email: str | None,
    dry_run: bool,
) -> bool:
    """Process one candidate. Returns True when a merge happened."""
    with conn.transaction():
        outcome_a = lookup_entity(conn, candidate.entity_type, candidate.entity_a_id)
        outcome_b = lookup_entity(conn, candidate.entity_type, candidate.entity_b_id)

        if not (isinstance(outcome_a, Found) and isinstance(outcome_b, Found)):
            logger.info(
                "auto_merge_candidate_stale",
                candidate_id=candidate.id,
                dry_run=dry_run,
            )
            if not dry_run:
                mark_candidate_resolved(conn, candidate.id, Resolution.SKIPPED, actor)
            return False

        primary, duplicate = choose_survivor(outcome_a.entity, outcome_b.entity)

        if dry_run:
            logger.info(
                "auto_merge_dry_run",
                candidate_id=candidate.id,
                entity_type=candidate.entity_type.value,
                confidence=candidate.confidence,
                primary_id=primary.id,
                duplicate_id=duplicate.id,
            )
            return False

        merge_entities(
            conn,
            candidate.entity_type,
            primary.id,
            [duplicate.id],
            actor,
            actor_email=actor_email,
        )
        if mark_candidate_resolved(conn, candidate.id, Resolution.MERGED, actor) == 0:
            msg = f"Candidate {candidate.id} was resolved concurrently"
            raise CandidateAlreadyResolvedError(msg)
    return True


def run_auto_merge(
    conn: psycopg.Connection,
    system_actor: str,
    config: AutoMergeConfig | None = None,
    *,
    actor_email: str | None = None,
) -> AutoMergeRunSummary:
    """Merge queued high-confidence duplicate candidates without review.

    At most ``config.max_merges_per_run`` candidates are examined, highest
    confidence first; the rest stay pending for the next run.  In dry-run
    mode nothing but the run's audit record is written.
    """
    if config is None:
        config = AutoMergeConfig()

    summary = AutoMergeRunSummary(
        run_id=_run_id("auto-merge"),
        started_at=_now(),
        completed_at=_now(),
        dry_run=config.dry_run,
    )

    entity_types = [EntityType.parse(t) for t in config.entity_types]
    with conn.transaction():
        candidates = fetch_pending_candidates(
            conn,
            config.min_confidence,
            entity_types,
            config.max_merges_per_run,
        )

    for candidate in candidates[: config.max_merges_per_run]:
        summary.processed += 1
        try:
            merged = _auto_merge_candidate(conn, candidate, system_actor, actor_email, config.dry_run)
        except (ResolutionError, psycopg.Error) as e:
            logger.warning("auto_merge_candidate_failed", candidate_id=candidate.id, error=str(e))
            summary.errors.append({"candidate_id": candidate.id, "error": str(e)})
            continue
        if merged:
            summary.merged += 1
        else:
            summary.skipped += 1

    summary.completed_at = _now()
    with conn.transaction():
        insert_audit_log(
            conn,
            actor_id=system_actor,
            actor_email=actor_email,
            action="AUTO_MERGE_RUN",
            target_type="System",
            target_id=summary.run_id,
            metadata={
                "run_id": summary.run_id,
                "config": config.as_dict(),
                "started_at": summary.started_at.isoformat(),
                "completed_at": summary.completed_at.isoformat(),
                "processed": summary.processed,
                "merged": summary.merged,
                "skipped": summary.skipped,
                "errors": summary.errors,
            },
        )

    logger.info(
        "auto_merge_complete",
        run_id=summary.run_id,
        dry_run=summary.dry_run,
        processed=summary.processed,
        merged=summary.merged,
        skipped=summary.skipped,
        errors=len(summary.errors),
    )
    return summary


# ---------------------------------------------------------------------------
# Cleanup and stats
# ---------------------------------------------------------------------------

def cleanup_stale_candidates(conn: psycopg.Connection) -> CleanupResult:
    """Delete pending candidates whose endpoints are missing or merged.

    Safe to re-run after a partial failure.
    """
    result = CleanupResult()
    with conn.transaction():
        stale = find_stale_candidates(conn)

    for candidate in stale:
        try:
            with conn.transaction():
                result.removed += delete_candidate(conn, candidate.id)
        except psycopg.Error as e:
            logger.warning("stale_candidate_delete_failed", candidate_id=candidate.id, error=str(e))
            result.errors.append(f"Failed to remove candidate {candidate.id}: {e}")

    logger.info("stale_candidates_cleaned", removed=result.removed, errors=len(result.errors))
    return result


def get_duplicate_stats(conn: psycopg.Connection) -> DuplicateStats:
    """Pending/resolved counts per entity type plus pending confidence summary."""
    pending = {"companies": 0, "people": 0}
    resolved = {"companies": 0, "people": 0}

    with conn.transaction():
        counts = candidate_counts_by_status(conn)
        avg_confidence, oldest_pending = pending_confidence_summary(conn)

    for row in counts:
        key = "companies" if row["entity_type"] == EntityType.COMPANY.value else "people"
        if row["status"] == CandidateStatus.PENDING.value:
            pending[key] = int(row["n"])
        elif row["status"] == CandidateStatus.RESOLVED.value:
            resolved[key] = int(row["n"])

    return DuplicateStats(
        pending=pending,
        resolved=resolved,
        avg_confidence=avg_confidence,
        oldest_pending=oldest_pending,
    )


# ---------------------------------------------------------------------------
# Review queue
# ---------------------------------------------------------------------------

def list_candidates(
    conn: psycopg.Connection,
    entity_type: str | EntityType | None = None,
    status: str | None = "PENDING",
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    page: int = 1,
    limit: int = 20,
) -> CandidatePage:
    """Page through queued candidates for human review.

    ``entity_type`` and ``status`` accept ``"all"`` (or ``None``) to disable
    the filter.
    """
    page = max(page, 1)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    type_filter = None if entity_type in (None, "all") else EntityType.parse(entity_type)
    status_filter = None if status in (None, "all") else CandidateStatus(status.upper())

    with conn.transaction():
        candidates, total = _list_candidates(
            conn,
            entity_type=type_filter,
            status=status_filter,
            min_confidence=min_confidence,
            offset=(page - 1) * limit,
            limit=limit,
        )
    return CandidatePage(candidates=candidates, total=total, page=page, limit=limit)


def resolve_candidate(
    conn: psycopg.Connection,
    candidate_id: str,
    action: str,
    actor: str,
    *,
    primary_id: str | None = None,
    actor_email: str | None = None,
) -> MergeResult | None:
    """Close a candidate from the review queue.

    ``action`` is ``"merge"`` (the survivor is *primary_id*, or picked by
    :func:`choose_survivor`) or ``"not_duplicate"``.  Returns the merge
    result, or ``None`` when the pair was dismissed.
    """
    action = action.strip().lower()
    if action not in ("merge", "not_duplicate"):
        msg = f"Unknown review action: {action!r}"
        raise ValueError(msg)

    with conn.transaction():
        candidate = get_candidate(conn, candidate_id)
    if candidate is None:
        msg = f"Duplicate candidate {candidate_id} not found"
        raise CandidateNotFoundError(msg)
    if candidate.status is not CandidateStatus.PENDING:
        msg = f"Duplicate candidate {candidate_id} is already {candidate.status.value.lower()}"
        raise CandidateAlreadyResolvedError(msg)

    with conn.transaction():
        if action == "not_duplicate":
            if mark_candidate_resolved(conn, candidate.id, Resolution.NOT_DUPLICATE, actor) == 0:
                msg = f"Duplicate candidate {candidate_id} was resolved concurrently"
                raise CandidateAlreadyResolvedError(msg)
            logger.info("candidate_dismissed", candidate_id=candidate.id, actor=actor)
            return None

        outcome_a = lookup_entity(conn, candidate.entity_type, candidate.entity_a_id)
        outcome_b = lookup_entity(conn, candidate.entity_type, candidate.entity_b_id)
        if not (isinstance(outcome_a, Found) and isinstance(outcome_b, Found)):
            failures = [o for o in (outcome_a, outcome_b) if not isinstance(o, Found)]
            raise MergeValidationError("Cannot merge candidate", failures)

        if primary_id is None:
            primary, duplicate = choose_survivor(outcome_a.entity, outcome_b.entity)
            primary_id, duplicate_id = primary.id, duplicate.id
        elif primary_id == candidate.entity_a_id:
            duplicate_id = candidate.entity_b_id
        elif primary_id == candidate.entity_b_id:
            duplicate_id = candidate.entity_a_id
        else:
            msg = f"Primary {primary_id} is not part of candidate {candidate_id}"
            raise MergeValidationError(msg)

        result = merge_entities(
            conn,
            candidate.entity_type,
            primary_id,
            [duplicate_id],
            actor,
            actor_email=actor_email,
        )
        if mark_candidate_resolved(conn, candidate.id, Resolution.MERGED, actor) == 0:
            msg = f"Duplicate candidate {candidate_id} was resolved concurrently"
            raise CandidateAlreadyResolvedError(msg)

    logger.info("candidate_merged", candidate_id=candidate.id, survivor=primary_id, actor=actor)
    return result
