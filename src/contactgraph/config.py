"""Application settings and matching configuration.

``Settings`` is loaded from environment variables; ``MatchConfig`` and
``AutoMergeConfig`` are immutable values passed into every matching or
auto-merge call so that thresholds never live in module-level state.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables prefixed with CG_."""

    # Database
    database_url: str = ""

    # Interactive matching thresholds
    auto_link_threshold: float = 0.95
    suggest_threshold: float = 0.70
    provisional_threshold: float = 0.50

    # Background jobs
    duplicate_min_confidence: float = 0.70
    auto_merge_min_confidence: float = 0.98
    auto_merge_max_per_run: int = 50
    auto_merge_dry_run: bool = False
    system_actor_id: str = "system"
    system_actor_email: str = "system@contactgraph.local"

    model_config = {"env_file": ".env", "env_prefix": "CG_"}


def get_settings() -> Settings:
    """Return a Settings instance."""
    return Settings()


@dataclass(frozen=True)
class MatchConfig:
    """Thresholds routing a match confidence to an action."""

    auto_link_threshold: float = 0.95
    suggest_threshold: float = 0.70
    provisional_threshold: float = 0.50

    def __post_init__(self) -> None:
        for name in ("auto_link_threshold", "suggest_threshold", "provisional_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                msg = f"{name} must be within [0, 1], got {value!r}"
                raise ValueError(msg)

    @classmethod
    def from_settings(cls, settings: Settings) -> MatchConfig:
        return cls(
            auto_link_threshold=settings.auto_link_threshold,
            suggest_threshold=settings.suggest_threshold,
            provisional_threshold=settings.provisional_threshold,
        )


DEFAULT_MATCH_CONFIG = MatchConfig()


@dataclass(frozen=True)
class AutoMergeConfig:
    """Safety limits for the unsupervised auto-merge job.

    ``min_confidence`` sits above the interactive auto-link threshold because
    nobody reviews these merges.
    """

    min_confidence: float = 0.98
    max_merges_per_run: int = 50
    dry_run: bool = False
    entity_types: tuple[str, ...] = field(default=("company", "person"))

    def __post_init__(self) -> None:
        object.__setattr__(self, "entity_types", tuple(self.entity_types))
        if self.max_merges_per_run < 0:
            msg = f"max_merges_per_run must be non-negative, got {self.max_merges_per_run}"
            raise ValueError(msg)
        unknown = [t for t in self.entity_types if t not in ("company", "person")]
        if unknown:
            msg = f"Unknown entity types: {unknown}"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: object) -> AutoMergeConfig:
        values: dict[str, object] = {
            "min_confidence": settings.auto_merge_min_confidence,
            "max_merges_per_run": settings.auto_merge_max_per_run,
            "dry_run": settings.auto_merge_dry_run,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]

    def as_dict(self) -> dict[str, object]:
        return {
            "min_confidence": self.min_confidence,
            "max_merges_per_run": self.max_merges_per_run,
            "dry_run": self.dry_run,
            "entity_types": list(self.entity_types),
        }
