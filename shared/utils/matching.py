"""
shared/utils/matching.py
Seeker ↔ guide compatibility scoring.

Each attribute contributes a score in [0, 1] multiplied by its weight; the
total is normalised to 0–100. The breakdown reports a display-only
"matched" flag per attribute, in a fixed order the UI relies on.
"""

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, List, Optional, Sequence, Tuple


AGE_RANGES = ("teens", "20s", "30s", "40s", "50s", "60s", "70s+")

# Index distance → proximity score
AGE_PROXIMITY = {0: 1.0, 1: 0.7, 2: 0.3}

AGE_MATCH_THRESHOLD = 0.7
GENDER_MATCH_THRESHOLD = 0.5
OVERLAP_MATCH_THRESHOLD = 0.5

NEUTRAL_GENDER = "OTHER"


@dataclass(frozen=True)
class MatchWeights:
    """Attribute weights. Tuning happens here, not in the scorer."""
    procedure_type: int = 30
    procedure_details: int = 10
    age_range: int = 10
    gender: int = 10
    activity_level: int = 15
    recovery_goals: int = 15
    complicating_factors: int = 5
    lifestyle_context: int = 5

    @property
    def total(self) -> int:
        return sum(asdict(self).values())


DEFAULT_WEIGHTS = MatchWeights()


@dataclass
class MatchProfile:
    """The attributes of one side of a match."""
    procedure_type: str
    age_range: str
    activity_level: str
    procedure_types: List[str] = field(default_factory=list)
    procedure_details: Optional[str] = None
    gender: Optional[str] = None
    recovery_goals: List[str] = field(default_factory=list)
    complicating_factors: List[str] = field(default_factory=list)
    lifestyle_context: List[str] = field(default_factory=list)


@dataclass
class BreakdownItem:
    attribute: str
    matched: bool
    weight: int


@dataclass
class MatchResult:
    score: int
    breakdown: List[BreakdownItem]

    def to_dict(self) -> dict:
        return asdict(self)


# ── Attribute scores ──────────────────────────────────────────

def age_proximity(a: Optional[str], b: Optional[str]) -> float:
    """1.0 for the same bracket, 0.7 one apart, 0.3 two apart, else 0."""
    if not a or not b:
        return 0.0
    try:
        diff = abs(AGE_RANGES.index(a.lower()) - AGE_RANGES.index(b.lower()))
    except ValueError:
        return 0.0
    return AGE_PROXIMITY.get(diff, 0.0)


def array_overlap(a: Sequence[str], b: Sequence[str]) -> float:
    """
    Case-insensitive overlap ratio |a ∩ b| / max(|a|, |b|).
    Two empty lists match vacuously (1.0); one empty list scores 0.
    """
    a = a or []
    b = b or []
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    lowered = {s.lower() for s in a}
    matches = sum(1 for s in b if s.lower() in lowered)
    return matches / max(len(a), len(b))


def gender_score(a: Optional[str], b: Optional[str]) -> float:
    # Missing or OTHER on either side is neutral
    a = _enum_value(a)
    b = _enum_value(b)
    if not a or not b or a == NEUTRAL_GENDER or b == NEUTRAL_GENDER:
        return 0.5
    return 1.0 if a == b else 0.0


def procedure_matches(seeker: MatchProfile, guide: MatchProfile) -> bool:
    wanted = seeker.procedure_type.lower()
    if guide.procedure_types:
        offered = [p.lower() for p in guide.procedure_types]
    else:
        offered = [guide.procedure_type.lower()]
    return wanted in offered


def details_match(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (matches UI rounding)."""
    return int(math.floor(value + 0.5))


# ── Scorer ────────────────────────────────────────────────────

def calculate_match_score(
    seeker: MatchProfile,
    guide: MatchProfile,
    weights: MatchWeights = DEFAULT_WEIGHTS,
) -> MatchResult:
    """
    Score a guide for a seeker. Pure: identical inputs give identical results.

    The continuous per-attribute scores feed the total; the breakdown's
    `matched` flags are presentation thresholds only.
    """
    proc = 1.0 if procedure_matches(seeker, guide) else 0.0
    details = 1.0 if details_match(seeker.procedure_details, guide.procedure_details) else 0.0
    age = age_proximity(seeker.age_range, guide.age_range)
    activity = 1.0 if _enum_value(seeker.activity_level) == _enum_value(guide.activity_level) else 0.0
    gender = gender_score(seeker.gender, guide.gender)
    goals = array_overlap(seeker.recovery_goals, guide.recovery_goals)
    factors = array_overlap(seeker.complicating_factors, guide.complicating_factors)
    lifestyle = array_overlap(seeker.lifestyle_context, guide.lifestyle_context)

    # (label, score, matched, weight) in display order
    rows: List[Tuple[str, float, bool, int]] = [
        ("Procedure type", proc, proc == 1.0, weights.procedure_type),
        ("Procedure details", details, details == 1.0, weights.procedure_details),
        ("Age range", age, age >= AGE_MATCH_THRESHOLD, weights.age_range),
        ("Activity level", activity, activity == 1.0, weights.activity_level),
        ("Gender", gender, gender >= GENDER_MATCH_THRESHOLD, weights.gender),
        ("Recovery goals", goals, goals >= OVERLAP_MATCH_THRESHOLD, weights.recovery_goals),
        ("Complicating factors", factors, factors >= OVERLAP_MATCH_THRESHOLD, weights.complicating_factors),
        ("Lifestyle context", lifestyle, lifestyle >= OVERLAP_MATCH_THRESHOLD, weights.lifestyle_context),
    ]

    earned = sum(score * weight for _, score, _, weight in rows)
    total = weights.total
    score = round_half_up(100 * earned / total) if total else 0

    return MatchResult(
        score=score,
        breakdown=[BreakdownItem(attribute=label, matched=matched, weight=weight)
                   for label, _, matched, weight in rows],
    )


def rank_by_match(
    seeker: MatchProfile,
    candidates: Iterable[Tuple[Any, MatchProfile]],
    weights: MatchWeights = DEFAULT_WEIGHTS,
) -> List[Tuple[Any, MatchResult]]:
    """Score (key, profile) pairs and sort by score descending. Ties keep input order."""
    scored = [(key, calculate_match_score(seeker, profile, weights)) for key, profile in candidates]
    return sorted(scored, key=lambda pair: pair[1].score, reverse=True)


# ── Profile adapters ──────────────────────────────────────────

def seeker_match_profile(profile: Any, procedure: Optional[str] = None) -> MatchProfile:
    """
    Build the seeker side from a RecoveryProfile.

    Procedure resolution: explicit override → active procedure → primary
    procedure. Per-procedure goals, factors and details stored under
    `procedure_profiles[procedure]` take precedence over the flat fields;
    a stored empty list means "none for this procedure".
    """
    active = procedure or profile.active_procedure_type or profile.procedure_type
    per_procedure = (profile.procedure_profiles or {}).get(active) or {}

    return MatchProfile(
        procedure_type=active,
        procedure_details=per_procedure.get("procedure_details") or profile.procedure_details,
        age_range=profile.age_range,
        gender=_enum_value(profile.gender),
        activity_level=profile.activity_level,
        recovery_goals=list(_stored_or(per_procedure, "recovery_goals", profile.recovery_goals) or []),
        complicating_factors=list(
            _stored_or(per_procedure, "complicating_factors", profile.complicating_factors) or []
        ),
        lifestyle_context=list(profile.lifestyle_context or []),
    )


def guide_match_profile(profile: Any) -> MatchProfile:
    """Build the guide side from a RecoveryProfile."""
    return MatchProfile(
        procedure_type=profile.procedure_type,
        procedure_types=list(profile.procedure_types or []),
        procedure_details=profile.procedure_details,
        age_range=profile.age_range,
        gender=_enum_value(profile.gender),
        activity_level=profile.activity_level,
        recovery_goals=list(profile.recovery_goals or []),
        complicating_factors=list(profile.complicating_factors or []),
        lifestyle_context=list(profile.lifestyle_context or []),
    )


def _enum_value(value: Any) -> Optional[str]:
    return getattr(value, "value", value)


def _stored_or(per_procedure: dict, key: str, fallback: Any) -> Any:
    """The per-procedure value when stored, even an empty list; else the flat field."""
    value = per_procedure.get(key)
    return fallback if value is None else value
