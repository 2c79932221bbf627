import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from .eras import Era

"""
config.py — relay settings, with CHRONOS_* environment overrides.

allowed_origin is only carried through for whatever serves the web clients;
the relay itself never looks at it.
"""

DROP_MODES = ("drop", "corrupt")


def _parse_lossy_eras(raw: str) -> Tuple[Era, ...]:
    eras = []
    for label in raw.split(","):
        if not label.strip():
            continue
        era = Era.parse(label)
        if era is None:
            raise ValueError(f"Unknown era in CHRONOS_LOSSY_ERAS: {label.strip()!r}")
        eras.append(era)
    return tuple(eras)


@dataclass
class RelayConfig:
    host: str = "0.0.0.0"
    port: int = 3001
    allowed_origin: str = "http://localhost:3000"
    log_level: str = "INFO"
    lossy_eras: Tuple[Era, ...] = field(default_factory=lambda: (Era.DIALUP,))
    drop_mode: str = "drop"
    line_noise: float = 0.3

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Invalid port: {self.port}")
        if self.drop_mode not in DROP_MODES:
            raise ValueError(f"drop_mode must be one of {DROP_MODES}, got {self.drop_mode!r}")
        if not 0.0 <= self.line_noise <= 1.0:
            raise ValueError(f"line_noise must be within [0, 1], got {self.line_noise}")
        self.log_level = self.log_level.upper()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        """Defaults, overridden by whichever CHRONOS_* variables are set."""
        env = os.environ if environ is None else environ
        defaults = cls()
        try:
            port = int(env.get("CHRONOS_PORT", defaults.port))
            line_noise = float(env.get("CHRONOS_LINE_NOISE", defaults.line_noise))
        except ValueError as exc:
            raise ValueError(f"Bad numeric setting: {exc}") from exc

        lossy_raw = env.get("CHRONOS_LOSSY_ERAS")
        return cls(
            host=env.get("CHRONOS_HOST", defaults.host),
            port=port,
            allowed_origin=env.get("CHRONOS_ALLOWED_ORIGIN", defaults.allowed_origin),
            log_level=env.get("CHRONOS_LOG_LEVEL", defaults.log_level),
            lossy_eras=_parse_lossy_eras(lossy_raw) if lossy_raw is not None else defaults.lossy_eras,
            drop_mode=env.get("CHRONOS_DROP_MODE", defaults.drop_mode).strip().lower(),
            line_noise=line_noise,
        )
