"""Identity resolution layer: matching, duplicate detection and merging."""

from __future__ import annotations

from contactgraph.resolution.duplicates import (
    choose_survivor,
    cleanup_stale_candidates,
    get_duplicate_stats,
    list_candidates,
    resolve_candidate,
    run_auto_merge,
    run_duplicate_detection,
)
from contactgraph.resolution.errors import (
    CandidateAlreadyResolvedError,
    CandidateNotFoundError,
    MergeValidationError,
    ResolutionError,
)
from contactgraph.resolution.matching import (
    find_company_matches,
    find_person_matches,
    route_confidence,
)
from contactgraph.resolution.merge import (
    COMPANY_REFERENCES,
    PERSON_REFERENCES,
    ReferenceSpec,
    merge_companies,
    merge_people,
)
from contactgraph.resolution.normalize import (
    extract_domain_from_email,
    extract_domain_from_url,
    normalize_company_name,
    normalize_person_name,
)
from contactgraph.resolution.scanner import (
    find_duplicate_companies,
    find_duplicate_people,
)
from contactgraph.resolution.similarity import levenshtein, similarity

__all__ = [
    # Normalisation and scoring
    "extract_domain_from_email",
    "extract_domain_from_url",
    "levenshtein",
    "normalize_company_name",
    "normalize_person_name",
    "similarity",
    # Interactive matching
    "find_company_matches",
    "find_person_matches",
    "route_confidence",
    # Batch scanning
    "find_duplicate_companies",
    "find_duplicate_people",
    # Merging
    "COMPANY_REFERENCES",
    "PERSON_REFERENCES",
    "ReferenceSpec",
    "merge_companies",
    "merge_people",
    # Background jobs and review
    "choose_survivor",
    "cleanup_stale_candidates",
    "get_duplicate_stats",
    "list_candidates",
    "resolve_candidate",
    "run_auto_merge",
    "run_duplicate_detection",
    # Errors
    "CandidateAlreadyResolvedError",
    "CandidateNotFoundError",
    "MergeValidationError",
    "ResolutionError",
]
