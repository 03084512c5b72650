"""Batch duplicate scanning over all live canonical entities.

Companies are compared pairwise (O(n^2)); people are first bucketed by exact
normalised name so only same-name pairs are compared.  Scanning is read-only;
:func:`persist_candidates` is the only writer and only inserts review rows.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence

import psycopg
import structlog

from contactgraph.resolution.models import (
    CanonicalCompany,
    CanonicalPerson,
    DuplicatePair,
    EntityType,
)
from contactgraph.resolution.repository import (
    find_pending_candidate,
    insert_candidate,
    list_live_companies_with_domains,
    list_live_people,
)
from contactgraph.resolution.similarity import similarity

logger = structlog.get_logger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.70

SHARED_DOMAIN_CONFIDENCE = 0.95
SHARED_LINKEDIN_CONFIDENCE = 0.95
NAME_SIMILARITY_MIN = 0.90
NAME_SIMILARITY_DISCOUNT = 0.85

PERSON_SAME_NAME_CONFIDENCE = 0.60
PERSON_SAME_COMPANY_CONFIDENCE = 0.85
PERSON_SAME_LINKEDIN_CONFIDENCE = 0.95


# ---------------------------------------------------------------------------
# Pair scoring
# ---------------------------------------------------------------------------

def score_company_pair(a: CanonicalCompany, b: CanonicalCompany) -> tuple[float, list[str]]:
    """Score two companies; the strongest signal wins."""
    confidence = 0.0
    reasons: list[str] = []

    if set(a.domains) & set(b.domains):
        confidence = max(confidence, SHARED_DOMAIN_CONFIDENCE)
        reasons.append("Shared domain")

    name_similarity = similarity(a.normalized_name, b.normalized_name)
    if name_similarity >= NAME_SIMILARITY_MIN:
        confidence = max(confidence, name_similarity * NAME_SIMILARITY_DISCOUNT)
        reasons.append(f"Name similarity: {name_similarity * 100:.0f}%")

    if a.linkedin_url and a.linkedin_url == b.linkedin_url:
        confidence = max(confidence, SHARED_LINKEDIN_CONFIDENCE)
        reasons.append("Same LinkedIn URL")

    return confidence, reasons


def score_person_pair(a: CanonicalPerson, b: CanonicalPerson) -> tuple[float, list[str]]:
    """Score two people already known to share a normalised name."""
    confidence = PERSON_SAME_NAME_CONFIDENCE
    reasons = ["Same normalized name"]

    if a.current_company_id and a.current_company_id == b.current_company_id:
        confidence = max(confidence, PERSON_SAME_COMPANY_CONFIDENCE)
        reasons.append("Same current company")

    if a.linkedin_url and a.linkedin_url == b.linkedin_url:
        confidence = max(confidence, PERSON_SAME_LINKEDIN_CONFIDENCE)
        reasons.append("Same LinkedIn URL")

    return confidence, reasons


# ---------------------------------------------------------------------------
# Scans
# ---------------------------------------------------------------------------

def scan_companies(
    companies: Sequence[CanonicalCompany],
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
) -> list[DuplicatePair[CanonicalCompany]]:
    """Compare every unordered pair of *companies*.

    Returns pairs at or above *min_confidence*, highest confidence first.
    """
    duplicates: list[DuplicatePair[CanonicalCompany]] = []
    live = [c for c in companies if not c.is_tombstone]
    for i in range(len(live)):
        for j in range(i + 1, len(live)):
            confidence, reasons = score_company_pair(live[i], live[j])
            if reasons and confidence >= min_confidence:
                duplicates.append(DuplicatePair(live[i], live[j], confidence, reasons))

    duplicates.sort(key=lambda p: p.confidence, reverse=True)
    return duplicates


def scan_people(
    people: Sequence[CanonicalPerson],
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
) -> list[DuplicatePair[CanonicalPerson]]:
    """Compare people within exact normalised-name buckets."""
    by_name: dict[str, list[CanonicalPerson]] = defaultdict(list)
    for person in people:
        if person.is_tombstone or not person.normalized_name:
            continue
        by_name[person.normalized_name].append(person)

    duplicates: list[DuplicatePair[CanonicalPerson]] = []
    for group in by_name.values():
        if len(group) < 2:
            continue
        for i in range(len(group)):
            for j in range(i + 1, len(group)):
                confidence, reasons = score_person_pair(group[i], group[j])
                if confidence >= min_confidence:
                    duplicates.append(DuplicatePair(group[i], group[j], confidence, reasons))

    duplicates.sort(key=lambda p: p.confidence, reverse=True)
    return duplicates


def find_duplicate_companies(
    conn: psycopg.Connection,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
) -> list[DuplicatePair[CanonicalCompany]]:
    """Load all live companies with their domains and scan them for duplicates."""
    companies = list_live_companies_with_domains(conn)
    pairs = scan_companies(companies, min_confidence)
    logger.info("company_duplicate_scan", companies=len(companies), pairs=len(pairs))
    return pairs


def find_duplicate_people(
    conn: psycopg.Connection,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
) -> list[DuplicatePair[CanonicalPerson]]:
    """Load all live people and scan them for duplicates."""
    people = list_live_people(conn)
    pairs = scan_people(people, min_confidence)
    logger.info("person_duplicate_scan", people=len(people), pairs=len(pairs))
    return pairs


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def persist_candidates(
    conn: psycopg.Connection,
    entity_type: EntityType,
    pairs: Sequence[DuplicatePair],
) -> tuple[int, list[str]]:
    """Queue *pairs* for review, skipping pairs that already have a pending row.

    Returns ``(saved, errors)``; a failure on one pair does not stop the rest.
    """
    saved = 0
    errors: list[str] = []
    label = entity_type.value.lower()

    for pair in pairs:
        a_id, b_id = pair.entity_a.id, pair.entity_b.id
        try:
            with conn.transaction():
                if find_pending_candidate(conn, entity_type, a_id, b_id) is not None:
                    continue
                insert_candidate(
                    conn,
                    entity_type,
                    a_id,
                    b_id,
                    pair.confidence,
                    pair.match_reasons,
                )
            saved += 1
        except psycopg.Error as e:
            logger.warning("candidate_save_failed", entity_type=label, a=a_id, b=b_id, error=str(e))
            errors.append(f"Failed to save {label} candidate {a_id}/{b_id}: {e}")

    return saved, errors
