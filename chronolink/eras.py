from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Union

"""
eras.py — the five eras and their network "physics".

Each era gets one immutable profile:
- base_latency_ms:  minimum time a message spends on the wire
- jitter_ms:        upper bound of the random extra delay on top of that
- drop_probability: chance a message never makes it
- bandwidth_cap:    chars/sec, advisory only (shown by clients, not enforced)

Labels coming off the wire are free text. Clients use both the era names and
the year labels of the three-era demo ("1840", "1990", "2025"), so both map
here. Anything we don't recognize is treated as modern.
"""


class Era(str, Enum):
    TELEGRAPH = "telegraph"
    SWITCHBOARD = "switchboard"
    DIALUP = "dialup"
    SMS = "sms"
    MODERN = "modern"

    @classmethod
    def parse(cls, label: Union["Era", str, None]) -> Optional["Era"]:
        """Map a wire label to an Era, or None if it isn't one we know."""
        if isinstance(label, Era):
            return label
        if not isinstance(label, str):
            return None
        return _LABELS.get(label.strip().lower())


_LABELS: Dict[str, Era] = {era.value: era for era in Era}
_LABELS.update({
    "1840": Era.TELEGRAPH,
    "1990": Era.DIALUP,
    "internet": Era.DIALUP,
    "dial-up": Era.DIALUP,
    "2025": Era.MODERN,
})


@dataclass(frozen=True)
class EraProfile:
    base_latency_ms: int
    jitter_ms: int
    drop_probability: float
    bandwidth_cap: int

    def __post_init__(self) -> None:
        if self.base_latency_ms < 0 or self.jitter_ms < 0:
            raise ValueError("latency and jitter must be non-negative")
        if not 0.0 <= self.drop_probability <= 1.0:
            raise ValueError(f"drop_probability out of range: {self.drop_probability}")
        if self.bandwidth_cap <= 0:
            raise ValueError("bandwidth_cap must be positive")

    @property
    def max_delay_ms(self) -> int:
        return self.base_latency_ms + self.jitter_ms


ERA_PROFILES: Mapping[Era, EraProfile] = {
    # Operator keying dots and dashes; weather takes lines down now and then.
    Era.TELEGRAPH: EraProfile(base_latency_ms=2000, jitter_ms=500, drop_probability=0.05, bandwidth_cap=5),
    Era.SWITCHBOARD: EraProfile(base_latency_ms=1200, jitter_ms=600, drop_probability=0.08, bandwidth_cap=20),
    # Very unstable ping, 15% of messages time out.
    Era.DIALUP: EraProfile(base_latency_ms=800, jitter_ms=1200, drop_probability=0.15, bandwidth_cap=100),
    Era.SMS: EraProfile(base_latency_ms=300, jitter_ms=400, drop_probability=0.02, bandwidth_cap=160),
    Era.MODERN: EraProfile(base_latency_ms=20, jitter_ms=10, drop_probability=0.0, bandwidth_cap=10000),
}

DEFAULT_ERA = Era.MODERN


def profile_for(era: Union[Era, str, None], profiles: Optional[Mapping[Era, EraProfile]] = None) -> EraProfile:
    """
    Look up the profile for an era (or wire label).

    Unknown or missing eras get the modern profile. With a custom table, its
    own modern entry is the fallback, then the built-in one.
    """
    table = ERA_PROFILES if profiles is None else profiles
    parsed = Era.parse(era)
    if parsed is not None and parsed in table:
        return table[parsed]
    return table.get(DEFAULT_ERA, ERA_PROFILES[DEFAULT_ERA])
