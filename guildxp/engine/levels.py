"""
guildxp.engine.levels — Level Curve
=====================================

Maps cumulative XP to a level.  The curve is configured per deployment in
``config.yaml`` (``levels:`` block)::

    levels:
      curve: exponential      # linear | exponential | polynomial | logarithmic
      params: {base: 2, factor: 50}
      max_level: 100
      overrides: {1: 25}      # exact XP totals for specific levels

XP is unbounded, so :meth:`LevelCurve.level_for_xp` searches instead of
walking level by level.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

__all__ = ["CURVES", "DEFAULT_CURVE", "LevelCurve"]

CURVES: frozenset[str] = frozenset({"linear", "exponential", "polynomial", "logarithmic"})

# Default parameters per curve type
_DEFAULT_PARAMS: dict[str, dict[str, float]] = {
    "linear": {"rate": 100},
    "exponential": {"base": 2, "factor": 50},
    "polynomial": {"degree": 2, "factor": 100},
    "logarithmic": {"base": 2, "factor": 200},
}

# Upper bound for the search when no max_level is configured
_SEARCH_CEILING = 1 << 62


@dataclass(frozen=True, slots=True)
class LevelCurve:
    """XP-to-level curve."""

    curve: str = "exponential"
    params: Mapping[str, float] = field(default_factory=dict)
    max_level: int | None = None
    overrides: Mapping[int, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.curve not in CURVES:
            raise ValueError(
                f"Unknown level curve {self.curve!r}; expected one of {sorted(CURVES)}"
            )
        if self.max_level is not None and self.max_level < 0:
            raise ValueError("max_level must not be negative")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> LevelCurve:
        """Build a curve from the ``levels:`` config block."""
        if not raw:
            return cls()
        max_level = raw.get("max_level")
        return cls(
            curve=str(raw.get("curve", "exponential")),
            params={str(k): float(v) for k, v in (raw.get("params") or {}).items()},
            max_level=int(max_level) if max_level is not None else None,
            overrides={int(k): int(v) for k, v in (raw.get("overrides") or {}).items()},
        )

    def _param(self, name: str) -> float:
        return self.params.get(name, _DEFAULT_PARAMS[self.curve][name])

    def _required(self, level: int) -> float:
        """Total XP needed for *level*; ``inf`` when the curve overflows."""
        if level <= 0:
            return 0
        override = self.overrides.get(level)
        if override is not None:
            return override
        try:
            if self.curve == "linear":
                return self._param("rate") * level
            if self.curve == "exponential":
                return math.floor(self._param("factor") * self._param("base") ** (level - 1))
            if self.curve == "polynomial":
                return math.floor(self._param("factor") * level ** self._param("degree"))
            # logarithmic
            return math.floor(
                self._param("factor") * math.log(level + 1) / math.log(self._param("base"))
            )
        except OverflowError:
            return math.inf

    def total_xp_for_level(self, level: int) -> int:
        """Cumulative XP required to reach *level*.

        Raises
        ------
        OverflowError
            If the requirement is too large to represent.
        """
        required = self._required(level)
        if required == math.inf:
            raise OverflowError(f"XP requirement for level {level} overflows")
        return int(required)

    def level_for_xp(self, xp: int) -> int:
        """Highest level whose requirement *xp* meets, capped at ``max_level``."""
        if xp <= 0:
            return 0
        ceiling = self.max_level if self.max_level is not None else _SEARCH_CEILING
        if ceiling == 0:
            return 0

        # Grow an upper bound, then binary-search below it.
        hi = 1
        while hi < ceiling and self._required(hi) <= xp:
            hi = min(hi * 2, ceiling)
        if self._required(hi) <= xp:
            return hi

        lo = 0  # invariant: _required(lo) <= xp < _required(hi)
        while hi - lo > 1:
            mid = (lo + hi) // 2
            if self._required(mid) <= xp:
                lo = mid
            else:
                hi = mid
        return lo


DEFAULT_CURVE = LevelCurve()
