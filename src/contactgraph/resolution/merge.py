"""Transactional merging of duplicate canonical entities into a survivor.

The set of tables that reference a company or a person is declared as data
(:data:`COMPANY_REFERENCES`, :data:`PERSON_REFERENCES`); the merge routine
walks that list generically.  Adding a referencing table means adding a
``ReferenceSpec`` here, nothing else.

A merge either fully happens or leaves no trace:
  1. Lock the primary and every duplicate row and re-check they exist and
     are live.
  2. Repoint every reference from each duplicate to the primary, including
     older tombstones that pointed at a duplicate.  A duplicate's row that
     would collide with the primary's on a unique key is dropped instead.
  3. Tombstone each duplicate (``merged_into_id``, ``merged_at``).
  4. Append one audit record.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

import psycopg
import structlog

from contactgraph.db import execute_query, execute_update
from contactgraph.resolution.errors import MergeValidationError
from contactgraph.resolution.models import (
    AlreadyMerged,
    EntityType,
    LookupOutcome,
    MergeResult,
    NotFound,
)
from contactgraph.resolution.repository import insert_audit_log

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReferenceSpec:
    """A foreign-key column pointing at a canonical entity.

    ``unique_with`` names the sibling column that forms a unique key together
    with ``column``.  When the primary already holds a row for the same
    sibling value, the duplicate's row is dropped instead of repointed.
    """

    table: str
    column: str
    unique_with: str | None = None

    @property
    def key(self) -> str:
        return f"{self.table}.{self.column}"


# deal_buyers carries (deal_id, canonical_company_id) uniqueness too, but its
# rows own activities, documents and meetings; a collision there aborts the
# merge rather than deleting them.
COMPANY_REFERENCES: tuple[ReferenceSpec, ...] = (
    ReferenceSpec("canonical_domains", "company_id"),
    ReferenceSpec("canonical_people", "current_company_id"),
    ReferenceSpec("person_employment", "company_id"),
    ReferenceSpec("company_group_members", "company_id", unique_with="group_id"),
    ReferenceSpec("deal_buyers", "canonical_company_id"),
    ReferenceSpec("canonical_companies", "merged_into_id"),
)

PERSON_REFERENCES: tuple[ReferenceSpec, ...] = (
    ReferenceSpec("person_employment", "person_id"),
    ReferenceSpec("deal_contacts", "canonical_person_id", unique_with="deal_buyer_id"),
    ReferenceSpec("deal_activities_v2", "person_id"),
    ReferenceSpec("email_attempts", "person_id"),
    ReferenceSpec("canonical_people", "merged_into_id"),
)


@dataclass(frozen=True)
class _EntityKind:
    entity_type: EntityType
    table: str
    references: tuple[ReferenceSpec, ...]
    audit_action: str
    audit_target: str


_COMPANY = _EntityKind(
    EntityType.COMPANY,
    "canonical_companies",
    COMPANY_REFERENCES,
    "COMPANY_MERGE",
    "CanonicalCompany",
)
_PERSON = _EntityKind(
    EntityType.PERSON,
    "canonical_people",
    PERSON_REFERENCES,
    "PERSON_MERGE",
    "CanonicalPerson",
)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _check_arguments(primary_id: str, duplicate_ids: Sequence[str]) -> list[str]:
    dups = list(duplicate_ids)
    if not dups:
        raise MergeValidationError("At least one duplicate id is required")
    if primary_id in dups:
        raise MergeValidationError(f"Primary {primary_id} cannot also be a duplicate")
    if len(set(dups)) != len(dups):
        raise MergeValidationError("Duplicate ids must be unique")
    return dups


def _lock_and_validate(
    conn: psycopg.Connection,
    kind: _EntityKind,
    ids: list[str],
) -> None:
    """Row-lock every id and fail unless all of them exist and are live.

    Runs inside the merge transaction so a concurrent merge that tombstoned
    one of the rows after the caller last looked is caught here.
    """
    rows = execute_query(
        conn,
        f"""
        SELECT id, merged_into_id
        FROM {kind.table}
        WHERE id = ANY(%s)
        ORDER BY id
        FOR UPDATE
        """,
        (ids,),
    )
    by_id = {str(r["id"]): r.get("merged_into_id") for r in rows}

    failures: list[LookupOutcome] = []
    for entity_id in ids:
        if entity_id not in by_id:
            failures.append(NotFound(entity_id))
        elif by_id[entity_id] is not None:
            failures.append(AlreadyMerged(entity_id, by_id[entity_id]))

    if failures:
        label = kind.entity_type.value.lower()
        raise MergeValidationError(f"Cannot merge {label} records", failures)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _merge(
    conn: psycopg.Connection,
    kind: _EntityKind,
    primary_id: str,
    duplicate_ids: Sequence[str],
    actor: str,
    actor_email: str | None = None,
) -> MergeResult:
    dups = _check_arguments(primary_id, duplicate_ids)

    with conn.transaction():
        _lock_and_validate(conn, kind, [primary_id, *dups])

        merged_at = datetime.now(timezone.utc)
        rewritten = {ref.key: 0 for ref in kind.references}
        dropped = {ref.key: 0 for ref in kind.references if ref.unique_with}

        for dup_id in dups:
            for ref in kind.references:
                if ref.unique_with:
                    dropped[ref.key] += execute_update(
                        conn,
                        f"""
                        DELETE FROM {ref.table} AS d
                        WHERE d.{ref.column} = %s
                          AND EXISTS (
                            SELECT 1 FROM {ref.table} AS p
                            WHERE p.{ref.column} = %s
                              AND p.{ref.unique_with} = d.{ref.unique_with}
                          )
                        """,
                        (dup_id, primary_id),
                    )
                rewritten[ref.key] += execute_update(
                    conn,
                    f"UPDATE {ref.table} SET {ref.column} = %s WHERE {ref.column} = %s",
                    (primary_id, dup_id),
                )

            execute_update(
                conn,
                f"""
                UPDATE {kind.table}
                SET merged_into_id = %s, merged_at = %s, updated_at = %s
                WHERE id = %s AND merged_into_id IS NULL
                """,
                (primary_id, merged_at, merged_at, dup_id),
            )

        audit_id = insert_audit_log(
            conn,
            actor_id=actor,
            actor_email=actor_email,
            action=kind.audit_action,
            target_type=kind.audit_target,
            target_id=primary_id,
            metadata={
                "primary_id": primary_id,
                "merged_ids": dups,
                "merged_at": merged_at.isoformat(),
                "rewritten": rewritten,
                "dropped": dropped,
            },
        )

    logger.info(
        "merge_complete",
        entity_type=kind.entity_type.value,
        survivor=primary_id,
        absorbed=dups,
        audit_id=audit_id,
        rewritten=rewritten,
        dropped=dropped,
    )
    return MergeResult(
        surviving_id=primary_id,
        merged_ids=dups,
        audit_log_id=audit_id,
        merged_at=merged_at,
        rewritten=rewritten,
        dropped=dropped,
    )


def merge_companies(
    conn: psycopg.Connection,
    primary_id: str,
    duplicate_ids: Sequence[str],
    actor: str,
    *,
    actor_email: str | None = None,
) -> MergeResult:
    """Fold every duplicate company into *primary_id*.

    Raises
    ------
    MergeValidationError
        If an id is missing or already tombstoned, or the arguments are
        inconsistent.  Nothing is written.
    psycopg.Error
        On database failure; the transaction is rolled back.
    """
    return _merge(conn, _COMPANY, primary_id, duplicate_ids, actor, actor_email)


def merge_people(
    conn: psycopg.Connection,
    primary_id: str,
    duplicate_ids: Sequence[str],
    actor: str,
    *,
    actor_email: str | None = None,
) -> MergeResult:
    """Fold every duplicate person into *primary_id*.  See :func:`merge_companies`."""
    return _merge(conn, _PERSON, primary_id, duplicate_ids, actor, actor_email)


def merge_entities(
    conn: psycopg.Connection,
    entity_type: EntityType,
    primary_id: str,
    duplicate_ids: Sequence[str],
    actor: str,
    *,
    actor_email: str | None = None,
) -> MergeResult:
    """Dispatch to :func:`merge_companies` or :func:`merge_people`."""
    if entity_type is EntityType.COMPANY:
        return merge_companies(conn, primary_id, duplicate_ids, actor, actor_email=actor_email)
    return merge_people(conn, primary_id, duplicate_ids, actor, actor_email=actor_email)
