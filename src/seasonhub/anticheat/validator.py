"""
Anti-cheat validation of client-submitted progression.

``validate_submission`` is a pure function of the server's prior state,
the submission, the elapsed time and the policy. It never raises: any
implausible value is clamped and an event describing the correction is
returned for the caller to append to the account's audit log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from seasonhub.anticheat.policy import AntiCheatPolicy
from seasonhub.ledger.levels import level_for_xp


@dataclass
class PriorState:
    """Stored values, plus the baseline the allowance is measured from when it differs."""

    xp: int
    level: int
    stats: dict[str, float] = field(default_factory=dict)
    baseline_xp: int | None = None
    baseline_stats: dict[str, float] | None = None


@dataclass
class Submission:
    xp: int
    level: int
    stats: dict[str, float] = field(default_factory=dict)
    signed: bool = False


@dataclass
class ValidationResult:
    xp: int
    level: int
    stats: dict[str, float]
    events: list[dict[str, Any]] = field(default_factory=list)
    sample: dict[str, Any] | None = None

    @property
    def clamped(self) -> bool:
        return any(e["type"] in ("xp_clamped", "stat_clamped") for e in self.events)


def validate_submission(
    prior: PriorState,
    submission: Submission,
    elapsed_hours: float,
    policy: AntiCheatPolicy,
) -> ValidationResult:
    """Clamp a submission to what is plausible since the baseline was taken.

    Values already stored are never clamped, so resubmitting them is a no-op.
    """
    window = min(max(elapsed_hours, 0.0), policy.max_window_hours)
    events: list[dict[str, Any]] = []

    # XP
    base_xp = prior.xp if prior.baseline_xp is None else prior.baseline_xp
    ceiling = max(base_xp + policy.xp_allowance(window), prior.xp)
    xp = submission.xp
    if xp > ceiling:
        xp = ceiling
        events.append({
            "type": "xp_clamped",
            "submitted": submission.xp,
            "allowed": xp,
            "elapsed_hours": round(window, 4),
        })

    # Stats
    base_stats = prior.stats if prior.baseline_stats is None else prior.baseline_stats
    stats: dict[str, float] = {}
    for key, value in submission.stats.items():
        cap = policy.stat_caps.get(key)
        if cap is None:
            stats[key] = value
            continue
        limit = max(base_stats.get(key, 0.0) + cap.allowance(window), prior.stats.get(key, 0.0))
        if value > limit:
            stats[key] = limit
            events.append({
                "type": "stat_clamped",
                "stat": key,
                "submitted": value,
                "allowed": limit,
                "elapsed_hours": round(window, 4),
            })
        else:
            stats[key] = value

    # Level must agree with the curve; XP wins
    level = level_for_xp(xp)
    if submission.level != level:
        events.append({
            "type": "level_mismatch",
            "submitted": submission.level,
            "expected": level,
            "xp": xp,
        })

    sample = None
    gained = xp - prior.xp
    if gained > 0:
        sample = {
            "rate": round(gained / window, 2) if window > 0 else None,
            "elapsed": round(window, 4),
            "signed": submission.signed,
        }

    return ValidationResult(xp=xp, level=level, stats=stats, events=events, sample=sample)
