"""Interactive matching of new company/person records against canonical entities.

Each matcher probes independent evidence channels, keeps the single strongest
signal (weights do not stack) and routes the resulting confidence to an
action:

- confidence >= auto-link threshold: ``AUTO_LINK``
- confidence >= suggest threshold: ``SUGGEST_MERGE``
- confidence >= provisional threshold: ``SAVE_PROVISIONAL``
- otherwise: ``CREATE_NEW``

Matching only reads from the database.
"""

from __future__ import annotations

import psycopg
import structlog

from contactgraph.config import DEFAULT_MATCH_CONFIG, MatchConfig
from contactgraph.resolution.models import (
    CanonicalCompany,
    CanonicalPerson,
    CompanyMatchInput,
    EntityT,
    MatchResult,
    MatchType,
    PersonMatchInput,
    Signal,
    SuggestedAction,
)
from contactgraph.resolution.normalize import (
    extract_domain_from_email,
    extract_domain_from_url,
    normalize_company_name,
    normalize_person_name,
)
from contactgraph.resolution.repository import (
    PREFIX_SCAN_LIMIT,
    find_company_name_prefix_candidates,
    find_domain_record,
    find_live_company_by_id,
    find_live_company_by_linkedin,
    find_live_company_by_normalized_name,
    find_live_person_by_linkedin,
    find_live_person_by_name,
    find_person_by_email,
)
from contactgraph.resolution.similarity import similarity

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Signal weights
# ---------------------------------------------------------------------------

COMPANY_DOMAIN_WEIGHT = 0.95
COMPANY_LINKEDIN_WEIGHT = 0.90
COMPANY_NAME_WEIGHT = 0.85
COMPANY_FUZZY_DISCOUNT = 0.75
COMPANY_FUZZY_MIN_SIMILARITY = 0.80
FUZZY_PREFIX_LENGTH = 4

PERSON_EMAIL_WEIGHT = 0.99
PERSON_LINKEDIN_WEIGHT = 0.95
PERSON_NAME_COMPANY_WEIGHT = 0.85
PERSON_NAME_DOMAIN_WEIGHT = 0.80
PERSON_NAME_ONLY_WEIGHT = 0.50


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

def route_confidence(
    confidence: float,
    config: MatchConfig = DEFAULT_MATCH_CONFIG,
) -> tuple[MatchType, SuggestedAction]:
    """Map a confidence score to a match type and suggested action."""
    if confidence >= config.auto_link_threshold:
        return MatchType.EXACT, SuggestedAction.AUTO_LINK
    if confidence >= config.suggest_threshold:
        return MatchType.HIGH_CONFIDENCE, SuggestedAction.SUGGEST_MERGE
    if confidence >= config.provisional_threshold:
        return MatchType.POSSIBLE, SuggestedAction.SAVE_PROVISIONAL
    return MatchType.NO_MATCH, SuggestedAction.CREATE_NEW


def build_match_result(
    matched_entity: EntityT | None,
    best_score: float,
    signals: list[Signal],
    config: MatchConfig = DEFAULT_MATCH_CONFIG,
) -> MatchResult[EntityT]:
    """Aggregate collected signals into a routed MatchResult."""
    confidence = min(1.0, best_score) if matched_entity is not None else 0.0
    match_type, action = route_confidence(confidence, config)
    return MatchResult(
        match_type=match_type,
        confidence=confidence,
        matched_entity=matched_entity,
        match_reasons=[s.details or s.name for s in signals],
        suggested_action=action,
        signals=list(signals),
    )


class _BestMatch:
    """Tracks the strongest signal seen so far; a weaker one never replaces it."""

    def __init__(self) -> None:
        self.entity: CanonicalCompany | CanonicalPerson | None = None
        self.score = 0.0
        self.signals: list[Signal] = []

    def offer(self, entity: CanonicalCompany | CanonicalPerson, signal: Signal) -> bool:
        self.signals.append(signal)
        if self.entity is None or signal.weight > self.score:
            self.entity = entity
            self.score = signal.weight
            return True
        return False

    def below(self, threshold: float) -> bool:
        return self.entity is None or self.score < threshold


# ---------------------------------------------------------------------------
# Company matching
# ---------------------------------------------------------------------------

def find_company_matches(
    conn: psycopg.Connection,
    match_input: CompanyMatchInput,
    config: MatchConfig = DEFAULT_MATCH_CONFIG,
) -> MatchResult[CanonicalCompany]:
    """Find the canonical company a new company record most likely refers to.

    Signals, in probe order:
      1. Verified domain (explicit, else derived from the website): 0.95.
      2. Exact normalised name: 0.85.
      3. Exact LinkedIn URL: 0.90.
      4. Fuzzy name over a prefix-filtered candidate set, only while the best
         match is still below auto-link: ``similarity * 0.75`` for
         similarity >= 0.80.
    """
    normalized_name = normalize_company_name(match_input.name)
    best = _BestMatch()

    domain = match_input.domain.strip().lower() if match_input.domain else None
    if not domain and match_input.website:
        domain = extract_domain_from_url(match_input.website)

    # 1. Domain
    if domain:
        record = find_domain_record(conn, domain)
        if record is not None:
            owner = find_live_company_by_id(conn, record.company_id)
            if owner is not None:
                best.offer(
                    owner,
                    Signal("DOMAIN_EXACT", COMPANY_DOMAIN_WEIGHT, f'Domain "{domain}" matches exactly'),
                )

    # 2. Exact normalised name
    if normalized_name:
        by_name = find_live_company_by_normalized_name(conn, normalized_name)
        if by_name is not None:
            best.offer(
                by_name,
                Signal(
                    "NAME_EXACT",
                    COMPANY_NAME_WEIGHT,
                    f'Normalized name "{normalized_name}" matches exactly',
                ),
            )

    # 3. LinkedIn URL
    if match_input.linkedin_url:
        by_linkedin = find_live_company_by_linkedin(conn, match_input.linkedin_url)
        if by_linkedin is not None:
            best.offer(
                by_linkedin,
                Signal("LINKEDIN_EXACT", COMPANY_LINKEDIN_WEIGHT, "LinkedIn URL matches exactly"),
            )

    # 4. Fuzzy name
    if normalized_name and best.below(config.auto_link_threshold):
        candidates = find_company_name_prefix_candidates(
            conn,
            normalized_name[:FUZZY_PREFIX_LENGTH],
            limit=PREFIX_SCAN_LIMIT,
        )
        for candidate in candidates:
            score = similarity(normalized_name, candidate.normalized_name)
            if score < COMPANY_FUZZY_MIN_SIMILARITY:
                continue
            weight = score * COMPANY_FUZZY_DISCOUNT
            if best.entity is None or weight > best.score:
                best.offer(
                    candidate,
                    Signal("NAME_FUZZY", weight, f"Name similarity: {score * 100:.0f}%"),
                )

    result = build_match_result(best.entity, best.score, best.signals, config)
    logger.debug(
        "company_match",
        normalized_name=normalized_name,
        confidence=result.confidence,
        action=result.suggested_action.value,
        matched_id=result.matched_entity.id if result.matched_entity else None,
    )
    return result


# ---------------------------------------------------------------------------
# Person matching
# ---------------------------------------------------------------------------

def find_person_matches(
    conn: psycopg.Connection,
    match_input: PersonMatchInput,
    config: MatchConfig = DEFAULT_MATCH_CONFIG,
) -> MatchResult[CanonicalPerson]:
    """Find the canonical person a new person record most likely refers to.

    Signals, in probe order:
      1. Exact email: 0.99.  Email is treated as a near-unique identifier.
      2. Exact LinkedIn URL: 0.95 (only when email did not match).
      3. Name + employer resolved by exact company name: 0.85.
      4. Name + company owning the email's domain: 0.80.
      5. Name only: 0.50, used only when nothing stronger matched.
    """
    normalized_name = normalize_person_name(match_input.first_name, match_input.last_name)
    best = _BestMatch()

    # 1. Email
    if match_input.email:
        by_email = find_person_by_email(conn, match_input.email)
        if by_email is not None and not by_email.is_tombstone:
            best.offer(
                by_email,
                Signal(
                    "EMAIL_EXACT",
                    PERSON_EMAIL_WEIGHT,
                    f'Email "{match_input.email}" matches exactly',
                ),
            )

    # 2. LinkedIn URL
    if match_input.linkedin_url and best.entity is None:
        by_linkedin = find_live_person_by_linkedin(conn, match_input.linkedin_url)
        if by_linkedin is not None:
            best.offer(
                by_linkedin,
                Signal("LINKEDIN_EXACT", PERSON_LINKEDIN_WEIGHT, "LinkedIn URL matches exactly"),
            )

    # 3. Name + employer
    if normalized_name and match_input.company_name and best.below(config.auto_link_threshold):
        employer_name = normalize_company_name(match_input.company_name)
        employer = (
            find_live_company_by_normalized_name(conn, employer_name) if employer_name else None
        )
        if employer is not None:
            at_company = find_live_person_by_name(conn, normalized_name, company_id=employer.id)
            if at_company is not None:
                best.offer(
                    at_company,
                    Signal("NAME_COMPANY", PERSON_NAME_COMPANY_WEIGHT, "Name and company match"),
                )

    # 4. Name + email domain
    if normalized_name and match_input.email and best.below(config.auto_link_threshold):
        domain = extract_domain_from_email(match_input.email)
        record = find_domain_record(conn, domain) if domain else None
        if record is not None:
            at_domain = find_live_person_by_name(conn, normalized_name, company_id=record.company_id)
            if at_domain is not None:
                best.offer(
                    at_domain,
                    Signal(
                        "NAME_DOMAIN",
                        PERSON_NAME_DOMAIN_WEIGHT,
                        "Name matches person at same domain",
                    ),
                )

    # 5. Name only
    if normalized_name and best.below(config.suggest_threshold):
        by_name = find_live_person_by_name(conn, normalized_name)
        if by_name is not None:
            signal = Signal("NAME_ONLY", PERSON_NAME_ONLY_WEIGHT, "Name matches but no other signals")
            if best.entity is None:
                best.offer(by_name, signal)
            else:
                best.signals.append(signal)

    result = build_match_result(best.entity, best.score, best.signals, config)
    logger.debug(
        "person_match",
        normalized_name=normalized_name,
        confidence=result.confidence,
        action=result.suggested_action.value,
        matched_id=result.matched_entity.id if result.matched_entity else None,
    )
    return result
