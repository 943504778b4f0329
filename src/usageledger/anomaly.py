"""
Anomaly detection and duration adjustment.

- DurationAdjuster discounts reported durations of background-resident apps
  using an ordered (threshold, multiplier) table per filter level.
- clamp_hour enforces the per-bucket hour cap.
- detect_duplicate_sessions finds overlapping sessions of one package.
- SuspiciousSessionDetector flags sessions that look like screen-off time.
"""

import logging
from itertools import groupby
from typing import Iterable, Optional

from .models import (
    FilterLevel, HOUR_CAP_SECONDS, RawUsageSession, DuplicateSessionInfo,
    SuspiciousSessionInfo, hour_of,
)
from .residency import ResidencyPolicy

log = logging.getLogger("usageledger.anomaly")

# Threshold None stands for the package's max continuous duration.
# Bands are checked in order; the first band whose threshold is >= the
# duration applies. Above every band the max itself is scaled by the
# last multiplier.
ADJUSTMENT_TABLE = {
    FilterLevel.HIGH: [
        (60, 1.0),
        (300, 0.9),
        (1800, 0.7),
        (None, 0.5),
    ],
    FilterLevel.MEDIUM: [
        (300, 1.0),
        (1800, 0.9),
        (3600, 0.8),
        (None, 0.7),
    ],
    FilterLevel.LOW: [],
}

NIGHT_REASON = 'night-time long session'
EXTREME_REASON = 'extreme duration'


class DurationAdjuster:
    """Compute the adjusted duration of a session from its filter level."""

    def __init__(self, residency: ResidencyPolicy, table: dict = None):
        self.residency = residency
        self.table = table if table is not None else ADJUSTMENT_TABLE

    def adjust_seconds(self, package_name: str, duration_sec: int,
                       level: FilterLevel = None) -> int:
        if level is None:
            level = self.residency.filter_level(package_name)
        bands = self.table.get(level) or []
        if not bands:
            return duration_sec

        max_sec = self.residency.max_continuous_sec(package_name)
        for threshold, multiplier in bands:
            limit = max_sec if threshold is None else threshold
            if duration_sec <= limit:
                return int(duration_sec * multiplier)
        return int(max_sec * bands[-1][1])

    def adjust(self, session: RawUsageSession, level: FilterLevel = None) -> int:
        """Adjusted duration in whole seconds for a stored session."""
        adjusted = self.adjust_seconds(session.package_name, session.duration_sec, level)
        if adjusted != session.duration_sec:
            log.debug(f"Adjusted {session.package_name} ({level or 'auto'}): "
                      f"{session.duration_sec}s -> {adjusted}s")
        return adjusted


def clamp_hour(duration_sec: int, cap: int = HOUR_CAP_SECONDS, context: str = "") -> int:
    """Clamp an hourly bucket value into 0..cap, warning when it had to."""
    if duration_sec > cap:
        log.warning(f"Hour cap exceeded{' for ' + context if context else ''}: "
                    f"{duration_sec}s clamped to {cap}s")
        return cap
    if duration_sec < 0:
        log.warning(f"Negative bucket value{' for ' + context if context else ''}: "
                    f"{duration_sec}s clamped to 0")
        return 0
    return duration_sec


def overlap_ms(a: RawUsageSession, b: RawUsageSession) -> int:
    return min(a.end_time, b.end_time) - max(a.start_time, b.start_time)


def detect_duplicate_sessions(sessions: Iterable[RawUsageSession],
                              threshold_sec: int = 30) -> list[DuplicateSessionInfo]:
    """Find adjacent sessions of the same package and date overlapping too much.

    Sessions are grouped by (package, date) and sorted by start time (ties
    broken by id), so the result does not depend on input order.
    """
    def group_key(s):
        return (s.package_name, s.date)

    ordered = sorted(sessions, key=lambda s: (s.package_name, s.date, s.start_time,
                                              s.id if s.id is not None else 0))
    duplicates = []
    for (package, _), group in groupby(ordered, key=group_key):
        group = list(group)
        for first, second in zip(group, group[1:]):
            overlap = overlap_ms(first, second)
            if overlap > threshold_sec * 1000:
                duplicates.append(DuplicateSessionInfo(
                    session_id1=first.id,
                    session_id2=second.id,
                    package_name=package,
                    start_time1=first.start_time,
                    start_time2=second.start_time,
                    overlap_seconds=overlap // 1000,
                ))
    return duplicates


class SuspiciousSessionDetector:
    """Flag sessions that probably include screen-off or background time."""

    def __init__(self, residency: ResidencyPolicy, night_hours: Iterable[int] = (0, 1, 2, 3, 4, 5, 23),
                 extreme_duration_sec: int = 7200, package_rules: list = None):
        self.residency = residency
        self.night_hours = set(night_hours)
        self.extreme_duration_sec = extreme_duration_sec
        self.package_rules = {r.package: r for r in (package_rules or [])}

    @classmethod
    def from_config(cls, config, residency: ResidencyPolicy) -> "SuspiciousSessionDetector":
        return cls(residency, config.night_hours, config.extreme_duration_sec,
                   config.suspicious_packages)

    def reasons(self, session: RawUsageSession) -> list[str]:
        reasons = []
        duration = session.duration_sec
        if (hour_of(session.start_time) in self.night_hours
                and duration > self.residency.max_continuous_sec(session.package_name)):
            reasons.append(NIGHT_REASON)
        if duration > self.extreme_duration_sec:
            reasons.append(EXTREME_REASON)
        rule = self.package_rules.get(session.package_name)
        if rule is not None and duration > rule.max_sec:
            reasons.append(rule.reason)
        return reasons

    def package_rule(self, package_name: str) -> Optional[object]:
        return self.package_rules.get(package_name)

    def detect(self, sessions: Iterable[RawUsageSession]) -> list[SuspiciousSessionInfo]:
        suspicious = []
        for session in sessions:
            reasons = self.reasons(session)
            if reasons:
                suspicious.append(SuspiciousSessionInfo(
                    session_id=session.id,
                    package_name=session.package_name,
                    start_time=session.start_time,
                    end_time=session.end_time,
                    duration_seconds=session.duration_sec,
                    reason=', '.join(reasons),
                ))
        return suspicious
