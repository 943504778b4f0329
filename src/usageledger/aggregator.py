"""
Aggregation of raw sessions into hourly buckets and rollups.

Hourly buckets are built from sessions; every coarser level is a plain sum
of the level below it:

    raw/timer sessions -> hourly_usage -> daily_summary
                                       -> weekly_summary (Monday-keyed)
                                       -> monthly_summary (1st-keyed)
"""

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Optional

from .anomaly import DurationAdjuster, clamp_hour
from .categorizer import Categorizer
from .db import UsageDB
from .models import (
    HOUR_CAP_SECONDS, HourlyUsageBucket, DailySummary, WeeklySummary, MonthlySummary,
    local_datetime, to_millis, week_start, month_start, week_dates, month_dates,
)

log = logging.getLogger("usageledger.aggregator")


def hour_slices(start_ms: int, end_ms: int) -> list[tuple[str, int, int]]:
    """Split [start, end) at local hour boundaries.

    Returns (date, hour, wall_ms) for every hour the interval touches.
    """
    slices = []
    cursor = start_ms
    while cursor < end_ms:
        dt = local_datetime(cursor)
        boundary = to_millis(dt.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1))
        piece_end = min(boundary, end_ms)
        slices.append((dt.date().isoformat(), dt.hour, piece_end - cursor))
        cursor = piece_end
    return slices


def distribute(start_ms: int, end_ms: int, seconds: int) -> list[tuple[str, int, int]]:
    """Spread seconds over the hours of [start, end) in proportion to wall time.

    Shares are taken from cumulative floors so they sum exactly to seconds.
    """
    slices = hour_slices(start_ms, end_ms)
    total_wall = sum(wall for _, _, wall in slices)
    if total_wall <= 0:
        return []

    shares = []
    cumulative = 0
    given = 0
    for day, hour, wall in slices:
        cumulative += wall
        upto = seconds * cumulative // total_wall
        shares.append((day, hour, upto - given))
        given = upto
    return shares


class Aggregator:
    """Build and maintain derived aggregates in the store."""

    def __init__(self, db: UsageDB, categorizer: Categorizer, adjuster: DurationAdjuster,
                 total_category: str = 'total', hour_cap: int = HOUR_CAP_SECONDS):
        self.db = db
        self.categorizer = categorizer
        self.adjuster = adjuster
        self.total_category = total_category
        self.hour_cap = hour_cap

    def total_category_id(self) -> Optional[int]:
        category = self.db.get_category_by_name(self.total_category)
        return category.id if category else None

    # --- Single-level writes ---

    def upsert_hourly(self, day: str, category_id: int, hour: int,
                      is_offline: bool, duration_sec: int) -> HourlyUsageBucket:
        """Write one bucket, clamping its value to the hour cap."""
        value = clamp_hour(duration_sec, self.hour_cap,
                           context=f"{day} cat={category_id} hour={hour}")
        bucket = HourlyUsageBucket.capped(day, category_id, hour, is_offline, value)
        self.db.upsert_hourly(bucket)
        return bucket

    def build_daily(self, day: str, category_id: int) -> DailySummary:
        return DailySummary.from_buckets(day, category_id, self.db.get_hourly(day, category_id))

    def recompute_daily(self, day: str, category_id: int) -> DailySummary:
        summary = self.build_daily(day, category_id)
        self.db.upsert_daily(summary)
        return summary

    def _day_totals(self, dates: list[str], category_id: int) -> dict[str, int]:
        # Daily rows win; a day with buckets but no daily row falls back to the buckets
        totals = self.db.get_hourly_totals(dates, category_id)
        totals.update(self.db.get_daily_totals(dates, category_id))
        return totals

    def build_weekly(self, day: str, category_id: int) -> WeeklySummary:
        start = week_start(day)
        return WeeklySummary.from_day_totals(
            start, category_id, self._day_totals(week_dates(start), category_id))

    def build_monthly(self, day: str, category_id: int) -> MonthlySummary:
        start = month_start(day)
        return MonthlySummary.from_day_totals(
            start, category_id, self._day_totals(month_dates(start), category_id))

    def recompute_weekly(self, day: str, category_id: int) -> WeeklySummary:
        summary = self.build_weekly(day, category_id)
        self.db.upsert_period('weekly', summary)
        return summary

    def recompute_monthly(self, day: str, category_id: int) -> MonthlySummary:
        summary = self.build_monthly(day, category_id)
        self.db.upsert_period('monthly', summary)
        return summary

    # --- Whole-date rebuild ---

    def _session_buckets(self, day: str) -> tuple[dict, dict]:
        """Accumulate bucket seconds for a date from its sessions."""
        acc = defaultdict(int)
        stats = {'sessions': 0, 'excluded': 0, 'timer_sessions': 0}

        for session in self.db.get_raw_sessions(day):
            if self.categorizer.is_excluded(session.package_name):
                stats['excluded'] += 1
                log.debug(f"Skipping excluded package {session.package_name} (id={session.id})")
                continue
            stats['sessions'] += 1
            adjusted = self.adjuster.adjust(session)
            for slice_day, hour, seconds in distribute(session.start_time, session.end_time, adjusted):
                if slice_day == day:
                    acc[(session.category_id, hour, False)] += seconds

        for timer in self.db.get_timer_sessions(day):
            stats['timer_sessions'] += 1
            for slice_day, hour, seconds in distribute(timer.start_time, timer.end_time,
                                                       timer.duration_sec):
                if slice_day == day:
                    acc[(timer.category_id, hour, True)] += seconds

        return acc, stats

    def aggregate_date(self, day: str) -> dict:
        """Rebuild every aggregate touched by one date.

        Idempotent: running it twice leaves the store unchanged. Dates whose
        sessions were removed by retention keep their summaries untouched.
        """
        if self.db.is_pruned(day):
            log.warning(f"Sessions for {day} were removed by retention, keeping its summaries")
            return {'sessions': 0, 'excluded': 0, 'timer_sessions': 0, 'buckets': 0,
                    'daily': {}, 'pruned': True}

        acc, stats = self._session_buckets(day)
        total_id = self.total_category_id()

        self.db.delete_hourly_for_date(day)
        totals = defaultdict(int)
        for (category_id, hour, is_offline), seconds in sorted(acc.items()):
            if category_id == total_id:
                log.warning(f"Session assigned to total category on {day}, ignored")
                continue
            bucket = self.upsert_hourly(day, category_id, hour, is_offline, seconds)
            totals[(hour, is_offline)] += bucket.duration_sec

        if total_id is not None:
            for (hour, is_offline), seconds in sorted(totals.items()):
                self.upsert_hourly(day, total_id, hour, is_offline, seconds)

        category_ids = {c.id for c in self.db.get_categories()}
        category_ids |= self.db.get_hourly_category_ids(day)
        category_ids |= self.db.get_daily_category_ids(day)
        daily = {}
        for category_id in sorted(category_ids):
            daily[category_id] = self.recompute_daily(day, category_id).total_sec
            self.recompute_weekly(day, category_id)
            self.recompute_monthly(day, category_id)

        stats['buckets'] = len(acc)
        stats['daily'] = daily
        stats['pruned'] = False
        log.info(f"Aggregated {day}: {stats['sessions']} sessions, "
                 f"{stats['timer_sessions']} timer sessions, {stats['excluded']} excluded, "
                 f"{stats['buckets']} buckets")
        return stats

