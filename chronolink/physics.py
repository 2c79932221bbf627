import math
import random
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from .eras import ERA_PROFILES, Era, EraProfile, profile_for

"""
physics.py — per-message delay/drop planning and era content handling.

Nothing in here touches the network. All randomness goes through a
`random.Random` the caller can seed, so tests get repeatable plans.
"""

NOISE_GLYPH = "#"

_default_rng = random.Random()


@dataclass(frozen=True)
class DeliveryPlan:
    delay_ms: int
    should_drop: bool


@dataclass(frozen=True)
class ProcessedContent:
    content: str
    secured: bool


class DelayPlanner:
    """Samples an era profile into a concrete DeliveryPlan."""

    def __init__(self, profiles: Optional[Mapping[Era, EraProfile]] = None,
                 rng: Optional[random.Random] = None) -> None:
        self.profiles = ERA_PROFILES if profiles is None else profiles
        self.rng = rng or _default_rng

    def profile_for(self, era: Union[Era, str, None]) -> EraProfile:
        return profile_for(era, self.profiles)

    def plan(self, era: Union[Era, str, None]) -> DeliveryPlan:
        """
        delay = base + floor(U(0,1) * jitter); drop = U(0,1) < drop_probability.
        The two draws are independent.
        """
        profile = self.profile_for(era)
        delay = profile.base_latency_ms + math.floor(self.rng.random() * profile.jitter_ms)
        return DeliveryPlan(
            delay_ms=int(delay),
            should_drop=self.rng.random() < profile.drop_probability,
        )


def process_content(text: str, era: Union[Era, str, None]) -> ProcessedContent:
    """Apply the era's cosmetic transform. The "secured" flag is only a label."""
    parsed = Era.parse(era)
    if parsed is Era.TELEGRAPH:
        # Telegraph offices sent everything in capitals, and in the clear.
        return ProcessedContent(content=text.upper(), secured=False)
    if parsed is Era.DIALUP:
        # Plain HTTP days.
        return ProcessedContent(content=text, secured=False)
    if parsed is Era.MODERN:
        return ProcessedContent(content=text, secured=True)
    return ProcessedContent(content=text, secured=False)


def corrupt(text: str, severity: float, rng: Optional[random.Random] = None) -> str:
    """
    Simulate line noise: each character becomes NOISE_GLYPH with probability
    `severity`. Severity 0 hands the text back untouched.
    """
    if not 0.0 <= severity <= 1.0:
        raise ValueError(f"severity must be within [0, 1], got {severity}")
    if severity == 0:
        return text
    rng = rng or _default_rng
    return "".join(NOISE_GLYPH if rng.random() < severity else ch for ch in text)
