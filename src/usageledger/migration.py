"""
Category-id migration.

Older data may carry category ids that no longer mean what they used to
(e.g. id 6 was 'fitness' before the ids were renumbered). The engine builds
a {wrong_id: live_id} mapping from the configured known-wrong ids and the
live Category table, then moves every affected row table by table:

    raw_sessions, timer_sessions   in-place category update
    hourly_usage                   rekey, merging into an existing bucket
    daily/weekly/monthly_summary   rekey, rebuilt from migrated children

Each row is committed on its own. Migrated rows no longer match the
mapping, so a second run performs no writes and an interrupted run picks
up where it stopped.
"""

import logging

from .aggregator import Aggregator
from .anomaly import clamp_hour
from .db import UsageDB, CATEGORY_TABLES
from .models import (
    MigrationResult, MigrationReport, MigrationState, HOUR_CAP_SECONDS,
)

log = logging.getLogger("usageledger.migration")


class MigrationEngine:

    def __init__(self, db: UsageDB, aggregator: Aggregator, known_wrong_ids: dict[int, str],
                 hour_cap: int = HOUR_CAP_SECONDS):
        self.db = db
        self.aggregator = aggregator
        self.known_wrong_ids = dict(known_wrong_ids)
        self.hour_cap = hour_cap
        self.state = MigrationState.NOT_STARTED

    def build_category_mapping(self) -> dict[int, int]:
        """Map each known-wrong id to the live id of the category it meant."""
        categories = self.db.get_categories()
        ids_by_name = {c.name: c.id for c in categories}
        live_ids = {c.id: c.name for c in categories}

        mapping = {}
        for wrong_id, name in sorted(self.known_wrong_ids.items()):
            target = ids_by_name.get(name)
            if target is None:
                log.warning(f"Cannot map category id {wrong_id}: no live category named {name!r}")
                continue
            if target == wrong_id:
                continue
            if wrong_id in live_ids:
                # Still a real category under another name; leave it alone
                log.warning(f"Category id {wrong_id} is live as {live_ids[wrong_id]!r}, "
                            f"not remapping to {name!r}")
                continue
            mapping[wrong_id] = target
        return mapping

    def needs_migration(self) -> bool:
        mapping = self.build_category_mapping()
        if not mapping:
            return False
        for table in CATEGORY_TABLES:
            counts = self.db.count_by_category(table)
            if any(counts.get(old_id) for old_id in mapping):
                return True
        return False

    def execute_full_migration(self) -> MigrationResult:
        result = MigrationResult()

        self.state = result.state = MigrationState.SCANNING
        mapping = self.build_category_mapping()
        log.info(f"Category mapping: {mapping or 'none'}")

        self.state = result.state = MigrationState.MIGRATING
        for table in CATEGORY_TABLES:
            result.per_table_migrated[table] = 0
            migrate_table = getattr(self, f"_migrate_{table}")
            for old_id, new_id in mapping.items():
                try:
                    for row in self.db.get_rows_with_category(table, old_id):
                        migrate_table(row, new_id)
                        result.per_table_migrated[table] += 1
                except Exception as e:
                    log.error(f"Migration failed in {table} ({old_id} -> {new_id}): {e}")
                    self.state = result.state = MigrationState.FAILED
                    result.success = False
                    result.error_message = f"{table}: {e}"
                    return result
            if result.per_table_migrated[table]:
                log.info(f"Migrated {result.per_table_migrated[table]} rows in {table}")

        self.state = result.state = MigrationState.COMPLETED
        result.success = True
        log.info(f"Migration complete: {result.total_migrated} rows")
        return result

    # --- Per-table row migrations ---

    def _migrate_raw_sessions(self, row: dict, new_id: int):
        self.db.set_raw_session_category(row['id'], new_id)
        log.debug(f"raw session {row['id']}: category {row['category_id']} -> {new_id}")

    def _migrate_timer_sessions(self, row: dict, new_id: int):
        self.db.set_timer_session_category(row['id'], new_id)

    def _migrate_hourly_usage(self, row: dict, new_id: int):
        old_key = {'date': row['date'], 'category_id': row['category_id'],
                   'hour': row['hour'], 'is_offline': row['is_offline']}
        new_key = dict(old_key, category_id=new_id)
        existing = self.db.get_row('hourly_usage', new_key)
        duration = row['duration_sec']
        if existing:
            duration = clamp_hour(existing['duration_sec'] + duration, self.hour_cap,
                                  context=f"merge into {new_key}")
        self.db.rekey('hourly_usage', old_key, new_key, {'duration_sec': duration})

    def _migrate_daily_summary(self, row: dict, new_id: int):
        old_key = {'date': row['date'], 'category_id': row['category_id']}
        new_key = dict(old_key, category_id=new_id)
        if self.db.get_hourly(row['date'], new_id):
            total = self.aggregator.build_daily(row['date'], new_id).total_sec
        else:
            existing = self.db.get_row('daily_summary', new_key)
            total = row['total_sec'] + (existing['total_sec'] if existing else 0)
        self.db.rekey('daily_summary', old_key, new_key, {'total_sec': total})

    def _migrate_period(self, table: str, key_column: str, build, row: dict, new_id: int):
        old_key = {key_column: row[key_column], 'category_id': row['category_id']}
        new_key = dict(old_key, category_id=new_id)
        summary = build(row[key_column], new_id)
        self.db.rekey(table, old_key, new_key, {
            'total_sec': summary.total_sec,
            'day_count': summary.day_count,
            'avg_daily_sec': summary.avg_daily_sec,
        })

    def _migrate_weekly_summary(self, row: dict, new_id: int):
        self._migrate_period('weekly_summary', 'week_start',
                             self.aggregator.build_weekly, row, new_id)

    def _migrate_monthly_summary(self, row: dict, new_id: int):
        self._migrate_period('monthly_summary', 'month_start',
                             self.aggregator.build_monthly, row, new_id)

    def migration_report(self) -> MigrationReport:
        """Diagnostic view of category ids across all tables."""
        categories = {c.id: c.name for c in self.db.get_categories()}
        report = MigrationReport(category_names=categories)
        seen = set()
        for table in CATEGORY_TABLES:
            counts = self.db.count_by_category(table)
            report.rows_by_category[table] = counts
            seen.update(counts)
        report.invalid_category_ids = sorted(i for i in seen if i not in categories)
        return report
