"""Exceptions raised by the resolution engine."""

from __future__ import annotations

from contactgraph.resolution.models import LookupOutcome, describe_outcome


class ResolutionError(Exception):
    """Base class for identity resolution failures."""


class MergeValidationError(ResolutionError, ValueError):
    """A merge precondition failed; nothing was written."""

    def __init__(self, message: str, outcomes: list[LookupOutcome] | None = None) -> None:
        self.outcomes = outcomes or []
        if self.outcomes:
            message = f"{message}: " + "; ".join(describe_outcome(o) for o in self.outcomes)
        super().__init__(message)


class CandidateNotFoundError(ResolutionError, LookupError):
    """No duplicate candidate exists with the requested id."""


class CandidateAlreadyResolvedError(ResolutionError):
    """The duplicate candidate has already been closed."""
