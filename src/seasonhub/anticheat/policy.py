"""Anti-cheat ceilings as an immutable value passed into the validator."""

from __future__ import annotations

from dataclasses import dataclass, field

from seasonhub.config import Settings


@dataclass(frozen=True)
class StatCap:
    """Ceiling for one counter: a flat per-sync allowance or hourly rate, whichever is larger."""

    per_sync: float
    hourly: float

    def allowance(self, elapsed_hours: float) -> float:
        return max(self.per_sync, self.hourly * elapsed_hours)


@dataclass(frozen=True)
class AntiCheatPolicy:
    per_sync_xp_ceiling: int = 5_000
    hourly_xp_ceiling: int = 10_000
    max_window_hours: float = 24.0
    stat_caps: dict[str, StatCap] = field(default_factory=dict)

    def xp_allowance(self, elapsed_hours: float) -> int:
        window = min(max(elapsed_hours, 0.0), self.max_window_hours)
        return int(max(self.per_sync_xp_ceiling, self.hourly_xp_ceiling * window))

    @classmethod
    def from_settings(cls, settings: Settings) -> AntiCheatPolicy:
        return cls(
            per_sync_xp_ceiling=settings.anticheat_per_sync_xp_ceiling,
            hourly_xp_ceiling=settings.anticheat_hourly_xp_ceiling,
            max_window_hours=settings.anticheat_max_window_hours,
            stat_caps={
                key: StatCap(per_sync=float(caps[0]), hourly=float(caps[1]))
                for key, caps in settings.anticheat_stat_caps.items()
                if len(caps) >= 2
            },
        )
