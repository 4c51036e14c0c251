from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DifficultyProfile:
    """Generation targets for one difficulty tier."""

    name: str
    description: str
    suspects: tuple[int, int]
    documents: tuple[int, int]
    evidence: tuple[int, int]
    red_herrings: int
    gated_documents: int
    forensics_complexity: str
    complexity_factors: tuple[str, ...] = field(default_factory=tuple)
    estimated_minutes: tuple[int, int] | None = None

    def prompt_block(self) -> str:
        """Render the profile as the parameter block shared by every stage prompt."""
        lines = [
            f"difficulty: {self.name}",
            f"narrative_complexity: {self.description}",
            f"suspect_count_range: {self.suspects[0]}-{self.suspects[1]}",
            f"document_count_range: {self.documents[0]}-{self.documents[1]}",
            f"evidence_count_range: {self.evidence[0]}-{self.evidence[1]}",
            f"red_herring_count: {self.red_herrings}",
            f"gated_document_count: {self.gated_documents}",
            f"forensics_complexity: {self.forensics_complexity}",
        ]
        if self.complexity_factors:
            lines.append(f"complexity_factors: {', '.join(self.complexity_factors)}")
        return "\n".join(lines)


def within(value: int, bounds: tuple[int, int]) -> bool:
    return bounds[0] <= value <= bounds[1]


PROFILES: dict[str, DifficultyProfile] = {
    profile.name: profile
    for profile in (
        DifficultyProfile(
            name="Rookie",
            description="very low; straight line; minimal jargon",
            suspects=(2, 3),
            documents=(6, 8),
            evidence=(3, 5),
            red_herrings=0,
            gated_documents=0,
            forensics_complexity="basic",
            complexity_factors=("linear_investigation", "clear_evidence", "simple_motive"),
            estimated_minutes=(30, 60),
        ),
        DifficultyProfile(
            name="Detective",
            description="low; basic cross-checks; a couple red herrings",
            suspects=(3, 4),
            documents=(8, 12),
            evidence=(4, 7),
            red_herrings=2,
            gated_documents=1,
            forensics_complexity="standard",
        ),
        DifficultyProfile(
            name="Detective2",
            description="medium; branching; some misdirection",
            suspects=(4, 5),
            documents=(10, 14),
            evidence=(6, 9),
            red_herrings=3,
            gated_documents=2,
            forensics_complexity="intermediate",
        ),
        DifficultyProfile(
            name="Sergeant",
            description="medium-high; multi-source correlation",
            suspects=(5, 6),
            documents=(12, 16),
            evidence=(8, 12),
            red_herrings=4,
            gated_documents=3,
            forensics_complexity="advanced",
        ),
        DifficultyProfile(
            name="Lieutenant",
            description="high; layered timeline; multiple gates",
            suspects=(6, 8),
            documents=(14, 18),
            evidence=(10, 15),
            red_herrings=5,
            gated_documents=4,
            forensics_complexity="expert",
        ),
        DifficultyProfile(
            name="Captain",
            description="very high; deep inference; adversarial noise",
            suspects=(7, 10),
            documents=(16, 22),
            evidence=(12, 18),
            red_herrings=6,
            gated_documents=5,
            forensics_complexity="specialized",
        ),
        DifficultyProfile(
            name="Commander",
            description="extreme; serial/global arcs; chained cases",
            suspects=(8, 12),
            documents=(18, 25),
            evidence=(15, 22),
            red_herrings=8,
            gated_documents=6,
            forensics_complexity="cutting_edge",
        ),
    )
}

_PROFILES_BY_KEY = {name.lower(): profile for name, profile in PROFILES.items()}


def resolve_difficulty(name: str | None, *, rng: random.Random | None = None) -> DifficultyProfile:
    """Look up a difficulty profile by name, picking one at random when absent or unknown.

    Args:
        name: Difficulty level name, matched case-insensitively.
        rng: Optional random source, used only when a profile must be chosen.

    Returns:
        The matching or randomly chosen DifficultyProfile.
    """
    if name is not None and name.strip():
        profile = _PROFILES_BY_KEY.get(name.strip().lower())
        if profile is not None:
            return profile
        logger.warning("Unknown difficulty %r; choosing a random profile", name)
    chooser = rng if rng is not None else random
    return chooser.choice(list(PROFILES.values()))
