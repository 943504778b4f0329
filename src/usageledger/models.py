"""
Data model for usageledger.

Raw sessions are the only entities with an external origin. Everything else
(hourly buckets, daily/weekly/monthly summaries) is derived from them and is
built through the constructors here so the derived invariants hold at
construction time.
"""

from dataclasses import dataclass, field
from datetime import datetime, date, timedelta
from enum import Enum
from typing import Iterable, Optional

HOUR_CAP_SECONDS = 3600


class FilterLevel(str, Enum):
    """Background-residency tier for a package."""
    LOW = 'LOW'
    MEDIUM = 'MEDIUM'
    HIGH = 'HIGH'


class MigrationState(str, Enum):
    NOT_STARTED = 'not_started'
    SCANNING = 'scanning'
    MIGRATING = 'migrating'
    COMPLETED = 'completed'
    FAILED = 'failed'


# --- Time helpers ---

def local_datetime(millis: int) -> datetime:
    """Convert epoch milliseconds to a naive local datetime."""
    return datetime.fromtimestamp(millis / 1000)


def to_millis(dt: datetime) -> int:
    """Convert a (naive local) datetime to epoch milliseconds."""
    return int(round(dt.timestamp() * 1000))


def date_of(millis: int) -> str:
    return local_datetime(millis).date().isoformat()


def hour_of(millis: int) -> int:
    return local_datetime(millis).hour


def week_start(day: str) -> str:
    """Monday of the week containing day (YYYY-MM-DD)."""
    d = date.fromisoformat(day)
    return (d - timedelta(days=d.weekday())).isoformat()


def month_start(day: str) -> str:
    """First day of the month containing day."""
    return date.fromisoformat(day).replace(day=1).isoformat()


def week_dates(start: str) -> list[str]:
    d = date.fromisoformat(start)
    return [(d + timedelta(days=i)).isoformat() for i in range(7)]


def month_dates(start: str) -> list[str]:
    d = date.fromisoformat(start)
    days = []
    current = d
    while current.month == d.month:
        days.append(current.isoformat())
        current += timedelta(days=1)
    return days


def duration_seconds(start_ms: int, end_ms: int) -> int:
    """Reported duration in whole seconds, rounded half up."""
    return (end_ms - start_ms + 500) // 1000


# --- Reference entities ---

@dataclass
class Category:
    id: int
    name: str
    display_order: int = 0

    @classmethod
    def from_row(cls, row) -> "Category":
        return cls(id=row['id'], name=row['name'], display_order=row['display_order'])


@dataclass
class RawUsageSession:
    """One continuous foreground interval for one package on one date."""
    package_name: str
    category_id: int
    start_time: int  # epoch ms
    end_time: int  # epoch ms
    duration_sec: int = -1
    date: str = ""
    id: Optional[int] = None
    updated_at: str = ""

    def __post_init__(self):
        if not self.package_name:
            raise ValueError("package_name is required")
        if self.end_time <= self.start_time:
            raise ValueError(
                f"Session for {self.package_name} ends before it starts "
                f"({self.start_time} >= {self.end_time})")
        if self.duration_sec < 0:
            self.duration_sec = duration_seconds(self.start_time, self.end_time)
        if not self.date:
            self.date = date_of(self.start_time)

    @classmethod
    def from_row(cls, row) -> "RawUsageSession":
        return cls(
            id=row['id'],
            package_name=row['package_name'],
            category_id=row['category_id'],
            start_time=row['start_time'],
            end_time=row['end_time'],
            duration_sec=row['duration_sec'],
            date=row['date'],
            updated_at=row['updated_at'] or "",
        )

    @property
    def start_hour(self) -> int:
        return hour_of(self.start_time)


@dataclass
class TimerSession:
    """Offline activity interval recorded by a timer, already categorized."""
    category_id: int
    start_time: int
    end_time: int
    program_name: str = "offline activity"
    duration_sec: int = -1
    date: str = ""
    id: Optional[int] = None
    updated_at: str = ""

    def __post_init__(self):
        if self.end_time <= self.start_time:
            raise ValueError("Timer session ends before it starts")
        if self.duration_sec < 0:
            self.duration_sec = duration_seconds(self.start_time, self.end_time)
        if not self.date:
            self.date = date_of(self.start_time)

    @classmethod
    def from_row(cls, row) -> "TimerSession":
        return cls(
            id=row['id'],
            category_id=row['category_id'],
            program_name=row['program_name'],
            start_time=row['start_time'],
            end_time=row['end_time'],
            duration_sec=row['duration_sec'],
            date=row['date'],
            updated_at=row['updated_at'] or "",
        )


# --- Derived entities ---

@dataclass(frozen=True)
class HourlyUsageBucket:
    """Usage seconds for one (date, category, hour, online/offline) slot.

    Use HourlyUsageBucket.capped() to build one from an arbitrary value;
    the constructor itself rejects values outside 0..3600.
    """
    date: str
    category_id: int
    hour: int
    is_offline: bool
    duration_sec: int

    def __post_init__(self):
        if not 0 <= self.hour <= 23:
            raise ValueError(f"hour out of range: {self.hour}")
        if not 0 <= self.duration_sec <= HOUR_CAP_SECONDS:
            raise ValueError(f"bucket duration out of range: {self.duration_sec}")

    @classmethod
    def capped(cls, date: str, category_id: int, hour: int,
               is_offline: bool, duration_sec: int) -> "HourlyUsageBucket":
        value = max(0, min(int(duration_sec), HOUR_CAP_SECONDS))
        return cls(date, category_id, hour, bool(is_offline), value)

    @property
    def key(self) -> tuple:
        return (self.date, self.category_id, self.hour, int(self.is_offline))

    @classmethod
    def from_row(cls, row) -> "HourlyUsageBucket":
        return cls.capped(row['date'], row['category_id'], row['hour'],
                          bool(row['is_offline']), row['duration_sec'])


@dataclass(frozen=True)
class DailySummary:
    date: str
    category_id: int
    total_sec: int

    @classmethod
    def from_buckets(cls, date: str, category_id: int,
                     buckets: Iterable[HourlyUsageBucket]) -> "DailySummary":
        total = 0
        for bucket in buckets:
            if bucket.date != date or bucket.category_id != category_id:
                raise ValueError(
                    f"bucket {bucket.key} does not belong to ({date}, {category_id})")
            total += bucket.duration_sec
        return cls(date, category_id, total)

    @property
    def key(self) -> tuple:
        return (self.date, self.category_id)


@dataclass(frozen=True)
class PeriodSummary:
    """Weekly or monthly rollup keyed by the first day of the period."""
    period_start: str
    category_id: int
    total_sec: int
    day_count: int

    @property
    def avg_daily_sec(self) -> int:
        return self.total_sec // self.day_count if self.day_count else 0

    @property
    def key(self) -> tuple:
        return (self.period_start, self.category_id)

    @classmethod
    def from_day_totals(cls, period_start: str, category_id: int,
                        day_totals: dict[str, int]):
        """Build from {date: total_sec} for the days that have children."""
        return cls(period_start, category_id,
                   sum(day_totals.values()), len(day_totals))


class WeeklySummary(PeriodSummary):
    pass


class MonthlySummary(PeriodSummary):
    pass


# --- Diagnostics ---

@dataclass
class DuplicateSessionInfo:
    session_id1: int
    session_id2: int
    package_name: str
    start_time1: int
    start_time2: int
    overlap_seconds: int


@dataclass
class SuspiciousSessionInfo:
    session_id: int
    package_name: str
    start_time: int
    end_time: int
    duration_seconds: int
    reason: str

    @property
    def reasons(self) -> list[str]:
        return self.reason.split(', ') if self.reason else []


@dataclass
class ValidationReport:
    date: str
    category_id: int
    category_name: str
    pie_chart_total: int
    detail_total: int
    duplicate_sessions: list[DuplicateSessionInfo] = field(default_factory=list)
    suspicious_sessions: list[SuspiciousSessionInfo] = field(default_factory=list)
    is_consistent: bool = True  # set by the validator from its tolerance

    @property
    def time_difference_seconds(self) -> int:
        return abs(self.pie_chart_total - self.detail_total)

    def is_consistent_within(self, tolerance_sec: int) -> bool:
        return self.time_difference_seconds <= tolerance_sec

    def to_dict(self) -> dict:
        return {
            'date': self.date,
            'category_id': self.category_id,
            'category_name': self.category_name,
            'pie_chart_total': self.pie_chart_total,
            'detail_total': self.detail_total,
            'is_consistent': self.is_consistent,
            'time_difference_seconds': self.time_difference_seconds,
            'duplicate_sessions': [vars(d) for d in self.duplicate_sessions],
            'suspicious_sessions': [vars(s) for s in self.suspicious_sessions],
        }


@dataclass
class MigrationResult:
    success: bool = False
    state: MigrationState = MigrationState.NOT_STARTED
    per_table_migrated: dict[str, int] = field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def total_migrated(self) -> int:
        return sum(self.per_table_migrated.values())


@dataclass
class MigrationReport:
    rows_by_category: dict[str, dict[int, int]] = field(default_factory=dict)
    invalid_category_ids: list[int] = field(default_factory=list)
    category_names: dict[int, str] = field(default_factory=dict)


@dataclass
class RepairAction:
    session_id: int
    package_name: str
    action: str  # 'delete_duplicate', 'delete', 'truncate', 'shrink'
    before_sec: int
    after_sec: int
    date: str = ""


@dataclass
class RepairResult:
    actions: list[RepairAction] = field(default_factory=list)

    def count(self, action: str) -> int:
        return sum(1 for a in self.actions if a.action == action)

    @property
    def duplicates_removed(self) -> int:
        return self.count('delete_duplicate')

    @property
    def sessions_deleted(self) -> int:
        return self.count('delete')

    @property
    def sessions_truncated(self) -> int:
        return self.count('truncate')

    @property
    def sessions_shrunk(self) -> int:
        return self.count('shrink')

    @property
    def total(self) -> int:
        return len(self.actions)

    @property
    def dates(self) -> set[str]:
        return {a.date for a in self.actions if a.date}
