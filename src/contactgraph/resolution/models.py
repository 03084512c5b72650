"""Typed records for canonical entities, match results and job summaries.

Rows coming out of the repository are converted into these dataclasses at the
boundary, so required and optional fields are explicit everywhere else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Generic, TypeVar


class DataQuality(str, Enum):
    PROVISIONAL = "PROVISIONAL"
    SUGGESTED = "SUGGESTED"
    ENRICHED = "ENRICHED"
    VERIFIED = "VERIFIED"

    @property
    def rank(self) -> int:
        return _QUALITY_RANK[self]


_QUALITY_RANK = {
    DataQuality.VERIFIED: 4,
    DataQuality.ENRICHED: 3,
    DataQuality.SUGGESTED: 2,
    DataQuality.PROVISIONAL: 1,
}


class EntityType(str, Enum):
    COMPANY = "COMPANY"
    PERSON = "PERSON"

    @classmethod
    def parse(cls, value: str | EntityType) -> EntityType:
        """Accept ``company``/``person`` as well as the enum values."""
        if isinstance(value, EntityType):
            return value
        return cls(value.upper())


class CandidateStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class Resolution(str, Enum):
    MERGED = "MERGED"
    SKIPPED = "SKIPPED"
    NOT_DUPLICATE = "NOT_DUPLICATE"


class MatchType(str, Enum):
    EXACT = "EXACT"
    HIGH_CONFIDENCE = "HIGH_CONFIDENCE"
    POSSIBLE = "POSSIBLE"
    NO_MATCH = "NO_MATCH"


class SuggestedAction(str, Enum):
    AUTO_LINK = "AUTO_LINK"
    SUGGEST_MERGE = "SUGGEST_MERGE"
    SAVE_PROVISIONAL = "SAVE_PROVISIONAL"
    CREATE_NEW = "CREATE_NEW"


# ---------------------------------------------------------------------------
# Canonical entities
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CanonicalCompany:
    id: str
    name: str
    normalized_name: str
    website: str | None = None
    linkedin_url: str | None = None
    domains: tuple[str, ...] = ()
    data_quality: DataQuality = DataQuality.PROVISIONAL
    merged_into_id: str | None = None
    merged_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_tombstone(self) -> bool:
        return self.merged_into_id is not None


@dataclass(frozen=True)
class CanonicalPerson:
    id: str
    first_name: str
    last_name: str
    normalized_name: str
    email: str | None = None
    phone: str | None = None
    linkedin_url: str | None = None
    current_company_id: str | None = None
    current_title: str | None = None
    data_quality: DataQuality = DataQuality.PROVISIONAL
    merged_into_id: str | None = None
    merged_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_tombstone(self) -> bool:
        return self.merged_into_id is not None


@dataclass(frozen=True)
class DomainRecord:
    """A verified domain; each domain belongs to exactly one company."""

    domain: str
    company_id: str
    is_primary: bool = True


@dataclass(frozen=True)
class DuplicateCandidate:
    id: str
    entity_type: EntityType
    entity_a_id: str
    entity_b_id: str
    confidence: float
    match_reasons: list[str] = field(default_factory=list)
    status: CandidateStatus = CandidateStatus.PENDING
    resolution: Resolution | None = None
    created_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None


# ---------------------------------------------------------------------------
# Lookup outcomes
# ---------------------------------------------------------------------------

EntityT = TypeVar("EntityT", CanonicalCompany, CanonicalPerson)


@dataclass(frozen=True)
class Found(Generic[EntityT]):
    entity: EntityT


@dataclass(frozen=True)
class NotFound:
    entity_id: str


@dataclass(frozen=True)
class AlreadyMerged:
    entity_id: str
    merged_into_id: str


LookupOutcome = Found | NotFound | AlreadyMerged


def describe_outcome(outcome: LookupOutcome) -> str:
    """Human-readable one-liner for a failed lookup."""
    if isinstance(outcome, NotFound):
        return f"{outcome.entity_id} not found"
    if isinstance(outcome, AlreadyMerged):
        return f"{outcome.entity_id} already merged into {outcome.merged_into_id}"
    return f"{outcome.entity.id} is live"


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompanyMatchInput:
    name: str
    website: str | None = None
    linkedin_url: str | None = None
    domain: str | None = None  # usually extracted from an email address


@dataclass(frozen=True)
class PersonMatchInput:
    first_name: str
    last_name: str
    email: str | None = None
    linkedin_url: str | None = None
    company_name: str | None = None
    title: str | None = None


@dataclass(frozen=True)
class Signal:
    """One piece of matching evidence and its confidence weight."""

    name: str
    weight: float
    details: str


@dataclass
class MatchResult(Generic[EntityT]):
    match_type: MatchType
    confidence: float
    matched_entity: EntityT | None
    match_reasons: list[str]
    suggested_action: SuggestedAction
    signals: list[Signal] = field(default_factory=list)


@dataclass
class DuplicatePair(Generic[EntityT]):
    entity_a: EntityT
    entity_b: EntityT
    confidence: float
    match_reasons: list[str]


# ---------------------------------------------------------------------------
# Merge and job results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MergeResult:
    surviving_id: str
    merged_ids: list[str]
    audit_log_id: str
    merged_at: datetime
    rewritten: dict[str, int] = field(default_factory=dict)
    dropped: dict[str, int] = field(default_factory=dict)


@dataclass
class DetectionRunSummary:
    run_id: str
    started_at: datetime
    completed_at: datetime
    companies_scanned: int = 0
    people_scanned: int = 0
    company_candidates_found: int = 0
    person_candidates_found: int = 0
    new_candidates_saved: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class AutoMergeRunSummary:
    run_id: str
    started_at: datetime
    completed_at: datetime
    processed: int = 0
    merged: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class CleanupResult:
    removed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class DuplicateStats:
    pending: dict[str, int]
    resolved: dict[str, int]
    avg_confidence: float
    oldest_pending: datetime | None


@dataclass
class CandidatePage:
    candidates: list[DuplicateCandidate]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return -(-self.total // self.limit)
