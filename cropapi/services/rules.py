"""
Agronomic expert rules.

Each rule is a conjunction of range tests over the raw (unnormalised)
measurements, optionally restricted to a set of soil types, and names one crop
with the confidence its author assigned. Rules do not depend on the trained
model or on the reference dataset.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Sequence, Tuple

from cropapi.services.domain import FeatureVector, Recommendation, Source


@dataclass(frozen=True)
class Bound:
    lo: Optional[float] = None
    hi: Optional[float] = None
    lo_open: bool = False
    hi_open: bool = False

    def holds(self, value: float) -> bool:
        if value is None or not math.isfinite(value):
            return False
        if self.lo is not None:
            if value < self.lo or (self.lo_open and value == self.lo):
                return False
        if self.hi is not None:
            if value > self.hi or (self.hi_open and value == self.hi):
                return False
        return True


def between(lo: float, hi: float) -> Bound:
    return Bound(lo=lo, hi=hi)


def above(lo: float) -> Bound:
    return Bound(lo=lo, lo_open=True)


def at_least(lo: float) -> Bound:
    return Bound(lo=lo)


def below(hi: float) -> Bound:
    return Bound(hi=hi, hi_open=True)


@dataclass(frozen=True)
class Rule:
    crop: str
    confidence: float
    bounds: Tuple[Tuple[str, Bound], ...]
    soil_types: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"rule for {self.crop}: confidence must be within [0, 100]")
        for name, _ in self.bounds:
            if name not in FeatureVector.__dataclass_fields__ or name == "soil_type":
                raise ValueError(f"rule for {self.crop}: unknown feature {name!r}")

    def matches(self, raw: FeatureVector) -> bool:
        if self.soil_types:
            soil = (raw.soil_type or "").strip().lower()
            if soil not in self.soil_types:
                return False
        return all(bound.holds(getattr(raw, name)) for name, bound in self.bounds)


def rule(crop: str, confidence: float, soils: Sequence[str] = (), **bounds: Bound) -> Rule:
    return Rule(
        crop=crop,
        confidence=float(confidence),
        bounds=tuple(bounds.items()),
        soil_types=frozenset(s.lower() for s in soils),
    )


# rainfall in mm, temperature in °C, humidity in %
DEFAULT_RULES: Tuple[Rule, ...] = (
    # high water requirement
    rule("Rice", 85, rainfall=above(150), humidity=above(70)),
    rule("Rice", 90, soils=("Clay", "Silt"), rainfall=above(150), humidity=above(70), temperature=between(20, 35)),
    rule("Maize", 80, temperature=between(18, 32), rainfall=above(60)),
    rule("Cotton", 75, temperature=between(21, 30), rainfall=above(60)),
    rule("Cotton", 78, soils=("Clay", "Loamy"), temperature=between(21, 30), rainfall=above(60), ph=between(5.8, 8.0)),
    # cool season
    rule("Chickpea", 78, temperature=between(20, 30), rainfall=below(100)),
    rule("Banana", 72, temperature=at_least(25), humidity=above(75), rainfall=above(100)),
    rule("Mango", 70, temperature=between(24, 30), rainfall=above(80)),
    rule("Grapes", 68, temperature=between(15, 25), ph=at_least(6)),
    rule("Watermelon", 66, temperature=between(24, 32), rainfall=above(40)),
    rule("Coffee", 65, temperature=between(15, 28), rainfall=above(150)),
    rule("Coconut", 63, temperature=at_least(27), humidity=above(70), rainfall=above(150)),
    rule("Coconut", 74, soils=("Sandy", "Saline"), temperature=at_least(25), humidity=above(85), rainfall=above(130)),
    rule("Jute", 70, soils=("Silt", "Clay"), temperature=between(23, 30), humidity=at_least(70), rainfall=above(150)),
    rule("Mothbeans", 64, soils=("Sandy",), temperature=between(24, 32), rainfall=below(75)),
)


class RuleEngine:
    def __init__(self, rules: Sequence[Rule] = DEFAULT_RULES) -> None:
        self._rules: Tuple[Rule, ...] = tuple(rules)

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return self._rules

    def evaluate(self, raw: FeatureVector) -> List[Recommendation]:
        """Every matching rule in declaration order; duplicates are kept."""
        return [
            Recommendation(crop_name=r.crop, confidence=r.confidence, source=Source.RULE)
            for r in self._rules
            if r.matches(raw)
        ]

