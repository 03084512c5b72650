"""SQL access to the canonical layer.

Every function takes an open psycopg connection, runs raw SQL through
:mod:`contactgraph.db` and converts rows into the dataclasses from
:mod:`contactgraph.resolution.models`.  "Live" always means
``merged_into_id IS NULL``.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

import psycopg

from contactgraph.db import execute_query, execute_update
from contactgraph.resolution.models import (
    AlreadyMerged,
    CandidateStatus,
    CanonicalCompany,
    CanonicalPerson,
    DataQuality,
    DomainRecord,
    DuplicateCandidate,
    EntityType,
    Found,
    LookupOutcome,
    NotFound,
    Resolution,
)

PREFIX_SCAN_LIMIT = 100

_COMPANY_COLUMNS = """
    c.id, c.name, c.normalized_name, c.website, c.linkedin_url,
    c.data_quality, c.merged_into_id, c.merged_at, c.created_at
"""

_PERSON_COLUMNS = """
    p.id, p.first_name, p.last_name, p.normalized_name, p.email, p.phone,
    p.linkedin_url, p.current_company_id, p.current_title, p.data_quality,
    p.merged_into_id, p.merged_at, p.created_at
"""

_CANDIDATE_COLUMNS = """
    id, entity_type,
    COALESCE(company_a_id, person_a_id) AS entity_a_id,
    COALESCE(company_b_id, person_b_id) AS entity_b_id,
    confidence, match_reasons, status, resolution,
    created_at, resolved_at, resolved_by_user_id
"""

# Which columns of duplicate_candidates hold the pair for each entity type.
_PAIR_COLUMNS = {
    EntityType.COMPANY: ("company_a_id", "company_b_id"),
    EntityType.PERSON: ("person_a_id", "person_b_id"),
}


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _quality(value: Any) -> DataQuality:
    if value is None:
        return DataQuality.PROVISIONAL
    return DataQuality(str(value))


def company_from_row(row: dict, domains: Iterable[str] | None = None) -> CanonicalCompany:
    """Build a CanonicalCompany from a row of ``canonical_companies``."""
    if domains is None:
        domains = row.get("domains") or ()
    return CanonicalCompany(
        id=str(row["id"]),
        name=row["name"],
        normalized_name=row["normalized_name"],
        website=row.get("website"),
        linkedin_url=row.get("linkedin_url"),
        domains=tuple(sorted(set(domains))),
        data_quality=_quality(row.get("data_quality")),
        merged_into_id=row.get("merged_into_id"),
        merged_at=row.get("merged_at"),
        created_at=row.get("created_at"),
    )


def person_from_row(row: dict) -> CanonicalPerson:
    """Build a CanonicalPerson from a row of ``canonical_people``."""
    return CanonicalPerson(
        id=str(row["id"]),
        first_name=row["first_name"],
        last_name=row["last_name"],
        normalized_name=row["normalized_name"],
        email=row.get("email"),
        phone=row.get("phone"),
        linkedin_url=row.get("linkedin_url"),
        current_company_id=row.get("current_company_id"),
        current_title=row.get("current_title"),
        data_quality=_quality(row.get("data_quality")),
        merged_into_id=row.get("merged_into_id"),
        merged_at=row.get("merged_at"),
        created_at=row.get("created_at"),
    )


def candidate_from_row(row: dict) -> DuplicateCandidate:
    """Build a DuplicateCandidate from a row of ``duplicate_candidates``."""
    reasons = row.get("match_reasons") or []
    if isinstance(reasons, str):
        reasons = json.loads(reasons)
    resolution = row.get("resolution")
    return DuplicateCandidate(
        id=str(row["id"]),
        entity_type=EntityType(str(row["entity_type"])),
        entity_a_id=row["entity_a_id"],
        entity_b_id=row["entity_b_id"],
        confidence=float(row["confidence"]),
        match_reasons=list(reasons),
        status=CandidateStatus(str(row["status"])),
        resolution=Resolution(str(resolution)) if resolution else None,
        created_at=row.get("created_at"),
        resolved_at=row.get("resolved_at"),
        resolved_by=row.get("resolved_by_user_id"),
    )


def _lookup(entity_id: str, entity: CanonicalCompany | CanonicalPerson | None) -> LookupOutcome:
    if entity is None:
        return NotFound(entity_id)
    if entity.merged_into_id is not None:
        return AlreadyMerged(entity_id, entity.merged_into_id)
    return Found(entity)


# ---------------------------------------------------------------------------
# Companies
# ---------------------------------------------------------------------------

def get_company(conn: psycopg.Connection, company_id: str) -> CanonicalCompany | None:
    """Fetch a company by id, tombstones included."""
    rows = execute_query(
        conn,
        f"SELECT {_COMPANY_COLUMNS} FROM canonical_companies c WHERE c.id = %s",
        (company_id,),
    )
    return company_from_row(rows[0]) if rows else None


def find_live_company_by_id(conn: psycopg.Connection, company_id: str) -> CanonicalCompany | None:
    company = get_company(conn, company_id)
    if company is None or company.is_tombstone:
        return None
    return company


def lookup_company(conn: psycopg.Connection, company_id: str) -> LookupOutcome:
    """Resolve a company id to ``Found``, ``NotFound`` or ``AlreadyMerged``."""
    return _lookup(company_id, get_company(conn, company_id))


def find_domain_record(conn: psycopg.Connection, domain: str) -> DomainRecord | None:
    """Look up the verified owner of *domain*."""
    rows = execute_query(
        conn,
        """
        SELECT domain, company_id, is_primary
        FROM canonical_domains
        WHERE domain = %s
        LIMIT 1
        """,
        (domain.lower(),),
    )
    if not rows:
        return None
    row = rows[0]
    return DomainRecord(
        domain=row["domain"],
        company_id=str(row["company_id"]),
        is_primary=bool(row.get("is_primary", True)),
    )


def find_live_company_by_normalized_name(
    conn: psycopg.Connection,
    normalized_name: str,
) -> CanonicalCompany | None:
    rows = execute_query(
        conn,
        f"""
        SELECT {_COMPANY_COLUMNS}
        FROM canonical_companies c
        WHERE c.normalized_name = %s AND c.merged_into_id IS NULL
        ORDER BY c.created_at
        LIMIT 1
        """,
        (normalized_name,),
    )
    return company_from_row(rows[0]) if rows else None


def find_live_company_by_linkedin(
    conn: psycopg.Connection,
    linkedin_url: str,
) -> CanonicalCompany | None:
    rows = execute_query(
        conn,
        f"""
        SELECT {_COMPANY_COLUMNS}
        FROM canonical_companies c
        WHERE c.linkedin_url = %s AND c.merged_into_id IS NULL
        ORDER BY c.created_at
        LIMIT 1
        """,
        (linkedin_url,),
    )
    return company_from_row(rows[0]) if rows else None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def find_company_name_prefix_candidates(
    conn: psycopg.Connection,
    prefix: str,
    limit: int = PREFIX_SCAN_LIMIT,
) -> list[CanonicalCompany]:
    """Return up to *limit* live companies whose normalised name starts with *prefix*."""
    rows = execute_query(
        conn,
        f"""
        SELECT {_COMPANY_COLUMNS}
        FROM canonical_companies c
        WHERE c.merged_into_id IS NULL
          AND c.normalized_name LIKE %s ESCAPE '\\'
        ORDER BY c.created_at
        LIMIT %s
        """,
        (_escape_like(prefix) + "%", min(limit, PREFIX_SCAN_LIMIT)),
    )
    return [company_from_row(r) for r in rows]


def list_live_companies_with_domains(conn: psycopg.Connection) -> list[CanonicalCompany]:
    """Enumerate every live company together with the domains it owns."""
    rows = execute_query(
        conn,
        f"""
        SELECT {_COMPANY_COLUMNS},
               COALESCE(
                   array_agg(d.domain) FILTER (WHERE d.domain IS NOT NULL),
                   '{{}}'
               ) AS domains
        FROM canonical_companies c
        LEFT JOIN canonical_domains d ON d.company_id = c.id
        WHERE c.merged_into_id IS NULL
        GROUP BY c.id
        ORDER BY c.created_at, c.id
        """,
    )
    return [company_from_row(r) for r in rows]


def count_live_companies(conn: psycopg.Connection) -> int:
    rows = execute_query(
        conn,
        "SELECT count(*) AS n FROM canonical_companies WHERE merged_into_id IS NULL",
    )
    return int(rows[0]["n"]) if rows else 0


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------

def get_person(conn: psycopg.Connection, person_id: str) -> CanonicalPerson | None:
    """Fetch a person by id, tombstones included."""
    rows = execute_query(
        conn,
        f"SELECT {_PERSON_COLUMNS} FROM canonical_people p WHERE p.id = %s",
        (person_id,),
    )
    return person_from_row(rows[0]) if rows else None


def lookup_person(conn: psycopg.Connection, person_id: str) -> LookupOutcome:
    """Resolve a person id to ``Found``, ``NotFound`` or ``AlreadyMerged``."""
    return _lookup(person_id, get_person(conn, person_id))


def lookup_entity(
    conn: psycopg.Connection,
    entity_type: EntityType,
    entity_id: str,
) -> LookupOutcome:
    if entity_type is EntityType.COMPANY:
        return lookup_company(conn, entity_id)
    return lookup_person(conn, entity_id)


def find_person_by_email(conn: psycopg.Connection, email: str) -> CanonicalPerson | None:
    """Exact (case-insensitive) email lookup.  Tombstones are returned too."""
    rows = execute_query(
        conn,
        f"""
        SELECT {_PERSON_COLUMNS}
        FROM canonical_people p
        WHERE lower(p.email) = %s
        ORDER BY p.merged_into_id NULLS FIRST, p.created_at
        LIMIT 1
        """,
        (email.strip().lower(),),
    )
    return person_from_row(rows[0]) if rows else None


def find_live_person_by_linkedin(
    conn: psycopg.Connection,
    linkedin_url: str,
) -> CanonicalPerson | None:
    rows = execute_query(
        conn,
        f"""
        SELECT {_PERSON_COLUMNS}
        FROM canonical_people p
        WHERE p.linkedin_url = %s AND p.merged_into_id IS NULL
        ORDER BY p.created_at
        LIMIT 1
        """,
        (linkedin_url,),
    )
    return person_from_row(rows[0]) if rows else None


def find_live_person_by_name(
    conn: psycopg.Connection,
    normalized_name: str,
    company_id: str | None = None,
) -> CanonicalPerson | None:
    """Find a live person by normalised name, optionally at a given current company."""
    if company_id is None:
        rows = execute_query(
            conn,
            f"""
            SELECT {_PERSON_COLUMNS}
            FROM canonical_people p
            WHERE p.normalized_name = %s AND p.merged_into_id IS NULL
            ORDER BY p.created_at
            LIMIT 1
            """,
            (normalized_name,),
        )
    else:
        rows = execute_query(
            conn,
            f"""
            SELECT {_PERSON_COLUMNS}
            FROM canonical_people p
            WHERE p.normalized_name = %s
              AND p.current_company_id = %s
              AND p.merged_into_id IS NULL
            ORDER BY p.created_at
            LIMIT 1
            """,
            (normalized_name, company_id),
        )
    return person_from_row(rows[0]) if rows else None


def list_live_people(conn: psycopg.Connection) -> list[CanonicalPerson]:
    rows = execute_query(
        conn,
        f"""
        SELECT {_PERSON_COLUMNS}
        FROM canonical_people p
        WHERE p.merged_into_id IS NULL
        ORDER BY p.created_at, p.id
        """,
    )
    return [person_from_row(r) for r in rows]


def count_live_people(conn: psycopg.Connection) -> int:
    rows = execute_query(
        conn,
        "SELECT count(*) AS n FROM canonical_people WHERE merged_into_id IS NULL",
    )
    return int(rows[0]["n"]) if rows else 0


# ---------------------------------------------------------------------------
# Duplicate candidates
# ---------------------------------------------------------------------------

def find_pending_candidate(
    conn: psycopg.Connection,
    entity_type: EntityType,
    entity_a_id: str,
    entity_b_id: str,
) -> DuplicateCandidate | None:
    """Return the pending candidate for the unordered pair, if one exists."""
    col_a, col_b = _PAIR_COLUMNS[entity_type]
    rows = execute_query(
        conn,
        f"""
        SELECT {_CANDIDATE_COLUMNS}
        FROM duplicate_candidates
        WHERE entity_type = %s
          AND status = 'PENDING'
          AND (({col_a} = %s AND {col_b} = %s) OR ({col_a} = %s AND {col_b} = %s))
        LIMIT 1
        """,
        (entity_type.value, entity_a_id, entity_b_id, entity_b_id, entity_a_id),
    )
    return candidate_from_row(rows[0]) if rows else None


def insert_candidate(
    conn: psycopg.Connection,
    entity_type: EntityType,
    entity_a_id: str,
    entity_b_id: str,
    confidence: float,
    match_reasons: Sequence[str],
) -> str:
    """Insert a new PENDING candidate and return its id."""
    candidate_id = str(uuid.uuid4())
    col_a, col_b = _PAIR_COLUMNS[entity_type]
    execute_query(
        conn,
        f"""
        INSERT INTO duplicate_candidates
            (id, entity_type, {col_a}, {col_b}, confidence, match_reasons, status)
        VALUES (%s, %s, %s, %s, %s, %s::jsonb, 'PENDING')
        """,
        (
            candidate_id,
            entity_type.value,
            entity_a_id,
            entity_b_id,
            confidence,
            json.dumps(list(match_reasons)),
        ),
    )
    return candidate_id


def get_candidate(conn: psycopg.Connection, candidate_id: str) -> DuplicateCandidate | None:
    rows = execute_query(
        conn,
        f"SELECT {_CANDIDATE_COLUMNS} FROM duplicate_candidates WHERE id = %s",
        (candidate_id,),
    )
    return candidate_from_row(rows[0]) if rows else None


def fetch_pending_candidates(
    conn: psycopg.Connection,
    min_confidence: float,
    entity_types: Sequence[EntityType],
    limit: int,
) -> list[DuplicateCandidate]:
    """Pending candidates at or above *min_confidence*, highest confidence first."""
    if not entity_types or limit <= 0:
        return []
    rows = execute_query(
        conn,
        f"""
        SELECT {_CANDIDATE_COLUMNS}
        FROM duplicate_candidates
        WHERE status = 'PENDING'
          AND confidence >= %s
          AND entity_type::text = ANY(%s)
        ORDER BY confidence DESC, created_at
        LIMIT %s
        """,
        (min_confidence, [t.value for t in entity_types], limit),
    )
    return [candidate_from_row(r) for r in rows]


def list_candidates(
    conn: psycopg.Connection,
    *,
    entity_type: EntityType | None = None,
    status: CandidateStatus | None = CandidateStatus.PENDING,
    min_confidence: float = 0.0,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[DuplicateCandidate], int]:
    """Page through candidates, pending first then by confidence.

    Returns the page and the total number of matching rows.
    """
    clauses = ["confidence >= %s"]
    params: list[Any] = [min_confidence]
    if entity_type is not None:
        clauses.append("entity_type = %s")
        params.append(entity_type.value)
    if status is not None:
        clauses.append("status = %s")
        params.append(status.value)
    where = " AND ".join(clauses)

    count_rows = execute_query(
        conn,
        f"SELECT count(*) AS n FROM duplicate_candidates WHERE {where}",
        tuple(params),
    )
    total = int(count_rows[0]["n"]) if count_rows else 0

    rows = execute_query(
        conn,
        f"""
        SELECT {_CANDIDATE_COLUMNS}
        FROM duplicate_candidates
        WHERE {where}
        ORDER BY (status = 'PENDING') DESC, confidence DESC, created_at
        OFFSET %s LIMIT %s
        """,
        (*params, offset, limit),
    )
    return [candidate_from_row(r) for r in rows], total


def mark_candidate_resolved(
    conn: psycopg.Connection,
    candidate_id: str,
    resolution: Resolution,
    resolved_by: str,
) -> int:
    """Close a pending candidate. Returns the number of rows updated (0 or 1)."""
    return execute_update(
        conn,
        """
        UPDATE duplicate_candidates
        SET status = 'RESOLVED',
            resolution = %s,
            resolved_at = now(),
            resolved_by_user_id = %s
        WHERE id = %s AND status = 'PENDING'
        """,
        (resolution.value, resolved_by, candidate_id),
    )


def delete_candidate(conn: psycopg.Connection, candidate_id: str) -> int:
    return execute_update(
        conn,
        "DELETE FROM duplicate_candidates WHERE id = %s",
        (candidate_id,),
    )


def find_stale_candidates(conn: psycopg.Connection) -> list[DuplicateCandidate]:
    """Pending candidates where either endpoint is missing or already merged."""
    rows = execute_query(
        conn,
        f"""
        SELECT {_CANDIDATE_COLUMNS}
        FROM duplicate_candidates dc
        WHERE dc.status = 'PENDING'
          AND (
            (dc.entity_type = 'COMPANY' AND (
                NOT EXISTS (
                    SELECT 1 FROM canonical_companies c
                    WHERE c.id = dc.company_a_id AND c.merged_into_id IS NULL)
                OR NOT EXISTS (
                    SELECT 1 FROM canonical_companies c
                    WHERE c.id = dc.company_b_id AND c.merged_into_id IS NULL)))
            OR
            (dc.entity_type = 'PERSON' AND (
                NOT EXISTS (
                    SELECT 1 FROM canonical_people p
                    WHERE p.id = dc.person_a_id AND p.merged_into_id IS NULL)
                OR NOT EXISTS (
                    SELECT 1 FROM canonical_people p
                    WHERE p.id = dc.person_b_id AND p.merged_into_id IS NULL)))
          )
        ORDER BY dc.created_at
        """,
    )
    return [candidate_from_row(r) for r in rows]


def candidate_counts_by_status(conn: psycopg.Connection) -> list[dict]:
    """Rows of ``{"status", "entity_type", "n"}``."""
    return execute_query(
        conn,
        """
        SELECT status::text AS status, entity_type::text AS entity_type, count(*) AS n
        FROM duplicate_candidates
        GROUP BY status, entity_type
        """,
    )


def pending_confidence_summary(conn: psycopg.Connection) -> tuple[float, datetime | None]:
    """Average confidence and oldest creation time over pending candidates."""
    rows = execute_query(
        conn,
        """
        SELECT avg(confidence) AS avg_confidence, min(created_at) AS oldest_pending
        FROM duplicate_candidates
        WHERE status = 'PENDING'
        """,
    )
    if not rows:
        return 0.0, None
    avg = rows[0].get("avg_confidence")
    return (float(avg) if avg is not None else 0.0), rows[0].get("oldest_pending")


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

def insert_audit_log(
    conn: psycopg.Connection,
    *,
    actor_id: str,
    action: str,
    target_type: str,
    target_id: str,
    metadata: dict[str, Any],
    actor_email: str | None = None,
) -> str:
    """Append an audit record and return its id."""
    audit_id = str(uuid.uuid4())
    execute_query(
        conn,
        """
        INSERT INTO audit_logs
            (id, actor_id, actor_email, action, target_type, target_id, metadata)
        VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
        """,
        (
            audit_id,
            actor_id,
            actor_email or actor_id,
            action,
            target_type,
            target_id,
            json.dumps(metadata, default=str),
        ),
    )
    return audit_id
