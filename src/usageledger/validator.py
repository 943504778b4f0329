"""
Read-only consistency checks between stored summaries and session detail.

For each (date, category) the stored DailySummary total (what a pie chart
shows) is compared with the sum of adjusted session durations (what the
detail list shows). Duplicate and suspicious sessions are attached so a
caller can decide whether to repair.
"""

import logging

from .anomaly import DurationAdjuster, SuspiciousSessionDetector, detect_duplicate_sessions
from .categorizer import Categorizer
from .db import UsageDB
from .models import ValidationReport

log = logging.getLogger("usageledger.validator")


def format_duration(seconds: int) -> str:
    """Format seconds as a short duration (e.g. '1h 5m', '42s')."""
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m {seconds % 60}s" if seconds % 60 else f"{minutes}m"
    return f"{minutes // 60}h {minutes % 60}m"


class Validator:
    """Compare summaries with session detail. Never writes."""

    def __init__(self, db: UsageDB, categorizer: Categorizer, adjuster: DurationAdjuster,
                 detector: SuspiciousSessionDetector, tolerance_sec: int = 10,
                 overlap_threshold_sec: int = 30, total_category: str = 'total'):
        self.db = db
        self.categorizer = categorizer
        self.adjuster = adjuster
        self.detector = detector
        self.tolerance_sec = tolerance_sec
        self.overlap_threshold_sec = overlap_threshold_sec
        self.total_category = total_category

    def validate(self, day: str) -> list[ValidationReport]:
        """One report per category for a date (the total category is skipped).

        A date whose sessions were removed by retention has no detail left to
        compare against, so it yields no reports.
        """
        if self.db.is_pruned(day):
            log.info(f"Skipping validation of {day}: sessions removed by retention")
            return []

        reports = []
        for category in self.db.get_categories():
            if category.name == self.total_category:
                continue

            summary = self.db.get_daily(day, category.id)
            pie_chart_total = summary.total_sec if summary else 0

            sessions = [s for s in self.db.get_raw_sessions(day, category_id=category.id)
                        if not self.categorizer.is_excluded(s.package_name)]
            detail_total = sum(self.adjuster.adjust(s) for s in sessions)
            detail_total += sum(t.duration_sec for t in
                                self.db.get_timer_sessions(day, category_id=category.id))

            report = ValidationReport(
                date=day,
                category_id=category.id,
                category_name=category.name,
                pie_chart_total=pie_chart_total,
                detail_total=detail_total,
                duplicate_sessions=detect_duplicate_sessions(sessions, self.overlap_threshold_sec),
                suspicious_sessions=self.detector.detect(sessions),
            )
            report.is_consistent = report.is_consistent_within(self.tolerance_sec)
            if not report.is_consistent:
                log.warning(f"Inconsistent {category.name} on {day}: summary "
                            f"{pie_chart_total}s vs detail {detail_total}s")
            reports.append(report)
        return reports

    def quality_report(self, day: str, reports: list[ValidationReport] = None) -> str:
        """Human-readable data quality summary for a date."""
        if reports is None:
            reports = self.validate(day)

        lines = [f"Data quality report for {day}", ""]
        if not reports and self.db.is_pruned(day):
            lines.append("  Sessions were removed by retention; summaries kept as stored.")
        issues = 0
        for report in reports:
            status = "OK" if report.is_consistent else "MISMATCH"
            lines.append(
                f"  {report.category_name:<15} summary {format_duration(report.pie_chart_total):>9}"
                f"  detail {format_duration(report.detail_total):>9}  [{status}]")
            if not report.is_consistent:
                lines.append(f"      difference: {report.time_difference_seconds}s")
                issues += 1
            for dup in report.duplicate_sessions:
                lines.append(f"      duplicate: {dup.package_name} sessions "
                             f"{dup.session_id1}/{dup.session_id2} overlap {dup.overlap_seconds}s")
                issues += 1
            for sus in report.suspicious_sessions:
                lines.append(f"      suspicious: {sus.package_name} session {sus.session_id} "
                             f"({format_duration(sus.duration_seconds)}): {sus.reason}")
                issues += 1

        lines.append("")
        lines.append("No issues found." if issues == 0 else f"{issues} issue(s) found.")
        return "\n".join(lines)
