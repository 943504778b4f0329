"""
SQLite store for usageledger.

Holds raw foreground sessions, offline timer sessions and every derived
aggregate (hourly buckets, daily/weekly/monthly summaries). Composite-key
tables that embed a category id are never updated in place when the id
changes; use UsageDB.rekey() instead.
"""

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, date, timedelta
from pathlib import Path
from typing import Iterable, Optional

from .models import (
    Category, RawUsageSession, TimerSession, HourlyUsageBucket, DailySummary,
    PeriodSummary, WeeklySummary, MonthlySummary,
)

DEFAULT_DB_PATH = "/var/lib/usageledger/usageledger.db"

# Key columns of every table whose primary key embeds category_id
KEY_COLUMNS = {
    'hourly_usage': ('date', 'category_id', 'hour', 'is_offline'),
    'daily_summary': ('date', 'category_id'),
    'weekly_summary': ('week_start', 'category_id'),
    'monthly_summary': ('month_start', 'category_id'),
}

# Tables carrying a category_id, in migration order
CATEGORY_TABLES = [
    'raw_sessions',
    'timer_sessions',
    'hourly_usage',
    'daily_summary',
    'weekly_summary',
    'monthly_summary',
]

PERIOD_TABLES = {
    'weekly': ('weekly_summary', 'week_start', WeeklySummary),
    'monthly': ('monthly_summary', 'month_start', MonthlySummary),
}


def init_db(db_path: str = DEFAULT_DB_PATH) -> None:
    """Initialize database schema."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    with get_connection(db_path) as conn:
        conn.executescript("""
            -- Categories (ids may be renumbered between releases)
            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                display_order INTEGER NOT NULL DEFAULT 0
            );

            -- Raw foreground sessions (one row per package per interval per date)
            CREATE TABLE IF NOT EXISTS raw_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                package_name TEXT NOT NULL,
                category_id INTEGER NOT NULL,
                start_time INTEGER NOT NULL,  -- epoch ms
                end_time INTEGER NOT NULL,    -- epoch ms
                duration_sec INTEGER NOT NULL,
                date TEXT NOT NULL,
                updated_at TEXT
            );

            -- Offline activity recorded by a timer
            CREATE TABLE IF NOT EXISTS timer_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                category_id INTEGER NOT NULL,
                program_name TEXT NOT NULL DEFAULT 'offline activity',
                start_time INTEGER NOT NULL,
                end_time INTEGER NOT NULL,
                duration_sec INTEGER NOT NULL,
                date TEXT NOT NULL,
                updated_at TEXT
            );

            -- Hourly buckets, capped at 3600 seconds each
            CREATE TABLE IF NOT EXISTS hourly_usage (
                date TEXT NOT NULL,
                category_id INTEGER NOT NULL,
                hour INTEGER NOT NULL,
                is_offline INTEGER NOT NULL DEFAULT 0,
                duration_sec INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT,
                PRIMARY KEY (date, category_id, hour, is_offline)
            );

            CREATE TABLE IF NOT EXISTS daily_summary (
                date TEXT NOT NULL,
                category_id INTEGER NOT NULL,
                total_sec INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT,
                PRIMARY KEY (date, category_id)
            );

            -- week_start is the Monday of the week
            CREATE TABLE IF NOT EXISTS weekly_summary (
                week_start TEXT NOT NULL,
                category_id INTEGER NOT NULL,
                total_sec INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT,
                PRIMARY KEY (week_start, category_id)
            );

            -- month_start is the first day of the month
            CREATE TABLE IF NOT EXISTS monthly_summary (
                month_start TEXT NOT NULL,
                category_id INTEGER NOT NULL,
                total_sec INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT,
                PRIMARY KEY (month_start, category_id)
            );

            -- Dates whose sessions were removed by retention; their summaries are kept
            -- and are no longer rebuilt or validated
            CREATE TABLE IF NOT EXISTS pruned_dates (
                date TEXT PRIMARY KEY,
                pruned_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_raw_date ON raw_sessions(date);
            CREATE INDEX IF NOT EXISTS idx_raw_category ON raw_sessions(category_id);
            CREATE INDEX IF NOT EXISTS idx_raw_package ON raw_sessions(package_name, start_time);
            CREATE INDEX IF NOT EXISTS idx_timer_date ON timer_sessions(date);
            CREATE INDEX IF NOT EXISTS idx_hourly_category ON hourly_usage(category_id);
        """)


def migrate_db(db_path: str = DEFAULT_DB_PATH) -> None:
    """Run database migrations for schema updates."""
    with get_connection(db_path) as conn:
        # Period tables gained day_count/avg_daily_sec after the first release
        for table in ('weekly_summary', 'monthly_summary'):
            cursor = conn.execute(f"PRAGMA table_info({table})")
            columns = {row[1] for row in cursor.fetchall()}
            if 'day_count' not in columns:
                conn.execute(
                    f"ALTER TABLE {table} ADD COLUMN day_count INTEGER NOT NULL DEFAULT 0")
            if 'avg_daily_sec' not in columns:
                conn.execute(
                    f"ALTER TABLE {table} ADD COLUMN avg_daily_sec INTEGER NOT NULL DEFAULT 0")

        cursor = conn.execute("PRAGMA table_info(raw_sessions)")
        columns = {row[1] for row in cursor.fetchall()}
        if 'updated_at' not in columns:
            conn.execute("ALTER TABLE raw_sessions ADD COLUMN updated_at TEXT")

        conn.execute("CREATE INDEX IF NOT EXISTS idx_daily_category ON daily_summary(category_id)")


@contextmanager
def get_connection(db_path: str = DEFAULT_DB_PATH):
    """Context manager for database connections."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _now() -> str:
    return datetime.now().isoformat()


def _where(key: dict) -> tuple[str, tuple]:
    clause = ' AND '.join(f"{column} = ?" for column in key)
    return clause, tuple(key.values())


class UsageDB:
    """Database interface for usage sessions and aggregates."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        init_db(db_path)
        migrate_db(db_path)

    # --- Categories ---

    def seed_categories(self, categories: Iterable[dict]):
        """Insert configured categories that are not present yet."""
        with get_connection(self.db_path) as conn:
            for entry in categories:
                conn.execute("""
                    INSERT OR IGNORE INTO categories (id, name, display_order)
                    VALUES (?, ?, ?)
                """, (entry['id'], entry['name'], entry.get('display_order', 0)))

    def upsert_category(self, category_id: int, name: str, display_order: int = 0):
        with get_connection(self.db_path) as conn:
            conn.execute("""
                INSERT INTO categories (id, name, display_order) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    display_order = excluded.display_order
            """, (category_id, name, display_order))

    def delete_category(self, category_id: int):
        with get_connection(self.db_path) as conn:
            conn.execute("DELETE FROM categories WHERE id = ?", (category_id,))

    def get_categories(self) -> list[Category]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM categories ORDER BY display_order, id"
            ).fetchall()
            return [Category.from_row(row) for row in rows]

    def get_category_by_name(self, name: str) -> Optional[Category]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM categories WHERE name = ?", (name,)
            ).fetchone()
            return Category.from_row(row) if row else None

    # --- Raw sessions ---

    def insert_raw_session(self, session: RawUsageSession) -> int:
        """Store a raw session, return its id."""
        with get_connection(self.db_path) as conn:
            cursor = conn.execute("""
                INSERT INTO raw_sessions
                    (package_name, category_id, start_time, end_time, duration_sec, date, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (session.package_name, session.category_id, session.start_time,
                  session.end_time, session.duration_sec, session.date, _now()))
            session.id = cursor.lastrowid
            return session.id

    def raw_session_exists(self, package_name: str, start_time: int, end_time: int) -> bool:
        with get_connection(self.db_path) as conn:
            row = conn.execute("""
                SELECT 1 FROM raw_sessions
                WHERE package_name = ? AND start_time = ? AND end_time = ?
            """, (package_name, start_time, end_time)).fetchone()
            return row is not None

    def get_raw_session(self, session_id: int) -> Optional[RawUsageSession]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM raw_sessions WHERE id = ?", (session_id,)
            ).fetchone()
            return RawUsageSession.from_row(row) if row else None

    def get_raw_sessions(self, day: str = None, category_id: int = None,
                         package_name: str = None) -> list[RawUsageSession]:
        """Get raw sessions, optionally filtered by date/category/package."""
        conditions = []
        params = []
        if day is not None:
            conditions.append("date = ?")
            params.append(day)
        if category_id is not None:
            conditions.append("category_id = ?")
            params.append(category_id)
        if package_name is not None:
            conditions.append("package_name = ?")
            params.append(package_name)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM raw_sessions {where} ORDER BY start_time, id", params
            ).fetchall()
            return [RawUsageSession.from_row(row) for row in rows]

    def get_raw_sessions_range(self, start_date: str, end_date: str) -> list[RawUsageSession]:
        """Raw sessions with start_date <= date <= end_date."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute("""
                SELECT * FROM raw_sessions WHERE date >= ? AND date <= ?
                ORDER BY start_time, id
            """, (start_date, end_date)).fetchall()
            return [RawUsageSession.from_row(row) for row in rows]

    def update_raw_session_end(self, session_id: int, end_time: int, duration_sec: int):
        """Shorten a session (repair)."""
        with get_connection(self.db_path) as conn:
            conn.execute("""
                UPDATE raw_sessions SET end_time = ?, duration_sec = ?, updated_at = ?
                WHERE id = ?
            """, (end_time, duration_sec, _now(), session_id))

    def set_raw_session_category(self, session_id: int, category_id: int):
        with get_connection(self.db_path) as conn:
            conn.execute("""
                UPDATE raw_sessions SET category_id = ?, updated_at = ? WHERE id = ?
            """, (category_id, _now(), session_id))

    def delete_raw_session(self, session_id: int) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM raw_sessions WHERE id = ?", (session_id,))
            return cursor.rowcount > 0

    # --- Timer sessions ---

    def insert_timer_session(self, session: TimerSession) -> int:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute("""
                INSERT INTO timer_sessions
                    (category_id, program_name, start_time, end_time, duration_sec, date, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (session.category_id, session.program_name, session.start_time,
                  session.end_time, session.duration_sec, session.date, _now()))
            session.id = cursor.lastrowid
            return session.id

    def get_timer_sessions(self, day: str = None, category_id: int = None) -> list[TimerSession]:
        conditions = []
        params = []
        if day is not None:
            conditions.append("date = ?")
            params.append(day)
        if category_id is not None:
            conditions.append("category_id = ?")
            params.append(category_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM timer_sessions {where} ORDER BY start_time, id", params
            ).fetchall()
            return [TimerSession.from_row(row) for row in rows]

    def set_timer_session_category(self, session_id: int, category_id: int):
        with get_connection(self.db_path) as conn:
            conn.execute("""
                UPDATE timer_sessions SET category_id = ?, updated_at = ? WHERE id = ?
            """, (category_id, _now(), session_id))

    # --- Hourly buckets ---

    def upsert_hourly(self, bucket: HourlyUsageBucket):
        """Write a bucket, replacing any row with the same key."""
        with get_connection(self.db_path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO hourly_usage
                    (date, category_id, hour, is_offline, duration_sec, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (bucket.date, bucket.category_id, bucket.hour, int(bucket.is_offline),
                  bucket.duration_sec, _now()))

    def get_hourly_bucket(self, day: str, category_id: int, hour: int,
                          is_offline: bool) -> Optional[HourlyUsageBucket]:
        with get_connection(self.db_path) as conn:
            row = conn.execute("""
                SELECT * FROM hourly_usage
                WHERE date = ? AND category_id = ? AND hour = ? AND is_offline = ?
            """, (day, category_id, hour, int(is_offline))).fetchone()
            return HourlyUsageBucket.from_row(row) if row else None

    def get_hourly(self, day: str, category_id: int = None) -> list[HourlyUsageBucket]:
        with get_connection(self.db_path) as conn:
            if category_id is None:
                rows = conn.execute("""
                    SELECT * FROM hourly_usage WHERE date = ?
                    ORDER BY category_id, hour, is_offline
                """, (day,)).fetchall()
            else:
                rows = conn.execute("""
                    SELECT * FROM hourly_usage WHERE date = ? AND category_id = ?
                    ORDER BY hour, is_offline
                """, (day, category_id)).fetchall()
            return [HourlyUsageBucket.from_row(row) for row in rows]

    def get_hourly_category_ids(self, day: str) -> set[int]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT DISTINCT category_id FROM hourly_usage WHERE date = ?", (day,)
            ).fetchall()
            return {row[0] for row in rows}

    def get_daily_category_ids(self, day: str) -> set[int]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT DISTINCT category_id FROM daily_summary WHERE date = ?", (day,)
            ).fetchall()
            return {row[0] for row in rows}

    def delete_hourly_for_date(self, day: str) -> int:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM hourly_usage WHERE date = ?", (day,))
            return cursor.rowcount

    # --- Daily / weekly / monthly summaries ---

    def upsert_daily(self, summary: DailySummary):
        with get_connection(self.db_path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO daily_summary (date, category_id, total_sec, updated_at)
                VALUES (?, ?, ?, ?)
            """, (summary.date, summary.category_id, summary.total_sec, _now()))

    def get_daily(self, day: str, category_id: int) -> Optional[DailySummary]:
        with get_connection(self.db_path) as conn:
            row = conn.execute("""
                SELECT * FROM daily_summary WHERE date = ? AND category_id = ?
            """, (day, category_id)).fetchone()
            return DailySummary(row['date'], row['category_id'], row['total_sec']) if row else None

    def get_daily_totals(self, dates: list[str], category_id: int) -> dict[str, int]:
        """Return {date: total_sec} for the given dates that have a daily row."""
        if not dates:
            return {}
        placeholders = ', '.join('?' * len(dates))
        with get_connection(self.db_path) as conn:
            rows = conn.execute(f"""
                SELECT date, total_sec FROM daily_summary
                WHERE category_id = ? AND date IN ({placeholders})
            """, (category_id, *dates)).fetchall()
            return {row['date']: row['total_sec'] for row in rows}

    def get_hourly_totals(self, dates: list[str], category_id: int) -> dict[str, int]:
        """Return {date: Σ bucket seconds} for dates that have hourly buckets."""
        if not dates:
            return {}
        placeholders = ', '.join('?' * len(dates))
        with get_connection(self.db_path) as conn:
            rows = conn.execute(f"""
                SELECT date, SUM(duration_sec) AS total FROM hourly_usage
                WHERE category_id = ? AND date IN ({placeholders})
                GROUP BY date
            """, (category_id, *dates)).fetchall()
            return {row['date']: row['total'] for row in rows}

    def upsert_period(self, period: str, summary: PeriodSummary):
        table, key_column, _ = PERIOD_TABLES[period]
        with get_connection(self.db_path) as conn:
            conn.execute(f"""
                INSERT OR REPLACE INTO {table}
                    ({key_column}, category_id, total_sec, day_count, avg_daily_sec, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (summary.period_start, summary.category_id, summary.total_sec,
                  summary.day_count, summary.avg_daily_sec, _now()))

    def get_period(self, period: str, period_start: str,
                   category_id: int) -> Optional[PeriodSummary]:
        table, key_column, cls = PERIOD_TABLES[period]
        with get_connection(self.db_path) as conn:
            row = conn.execute(f"""
                SELECT * FROM {table} WHERE {key_column} = ? AND category_id = ?
            """, (period_start, category_id)).fetchone()
            if not row:
                return None
            return cls(row[key_column], row['category_id'], row['total_sec'], row['day_count'])

    # --- Category-id scans and rekeying ---

    def get_rows_with_category(self, table: str, category_id: int) -> list[dict]:
        """All rows of a category-bearing table that carry category_id."""
        if table not in CATEGORY_TABLES:
            raise ValueError(f"Unknown table: {table}")
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE category_id = ?", (category_id,)
            ).fetchall()
            return [dict(row) for row in rows]

    def count_by_category(self, table: str) -> dict[int, int]:
        if table not in CATEGORY_TABLES:
            raise ValueError(f"Unknown table: {table}")
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT category_id, COUNT(*) FROM {table} GROUP BY category_id"
            ).fetchall()
            return {row[0]: row[1] for row in rows}

    def get_row(self, table: str, key: dict) -> Optional[dict]:
        if table not in KEY_COLUMNS:
            raise ValueError(f"Not a composite-key table: {table}")
        clause, params = _where(key)
        with get_connection(self.db_path) as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE {clause}", params).fetchone()
            return dict(row) if row else None

    def rekey(self, table: str, old_key: dict, new_key: dict, new_row: dict):
        """Move a row to a new composite key in one transaction.

        The row at old_key is deleted and new_row is written at new_key,
        replacing whatever was there.
        """
        columns = KEY_COLUMNS.get(table)
        if columns is None:
            raise ValueError(f"Not a composite-key table: {table}")
        if set(old_key) != set(columns) or set(new_key) != set(columns):
            raise ValueError(f"Key for {table} must have columns {columns}")

        row = dict(new_row)
        row.update(new_key)
        row['updated_at'] = _now()
        clause, params = _where(old_key)
        column_list = ', '.join(row.keys())
        placeholders = ', '.join('?' * len(row))

        with get_connection(self.db_path) as conn:
            conn.execute(f"DELETE FROM {table} WHERE {clause}", params)
            conn.execute(
                f"INSERT OR REPLACE INTO {table} ({column_list}) VALUES ({placeholders})",
                tuple(row.values())
            )

    # --- Maintenance & Retention ---

    def cleanup_old_data(self, sessions_days: int = 90, buckets_days: int = 365,
                         keep_summaries: bool = True) -> dict:
        """Delete old data beyond retention period.

        Dates whose sessions are removed are recorded in pruned_dates so the
        summaries kept for them are not rebuilt to zero or reported as
        inconsistent.

        Args:
            sessions_days: Delete raw and timer sessions older than this many days
            buckets_days: Delete hourly buckets older than this many days
            keep_summaries: If True, never delete daily/weekly/monthly summaries

        Returns:
            Dict with counts of deleted rows, plus newly pruned dates
        """
        sessions_cutoff = (date.today() - timedelta(days=sessions_days)).isoformat()
        buckets_cutoff = (date.today() - timedelta(days=buckets_days)).isoformat()

        deleted = {}

        with get_connection(self.db_path) as conn:
            # Summaries of these dates can no longer be rebuilt from sessions
            cursor = conn.execute("""
                INSERT OR IGNORE INTO pruned_dates (date, pruned_at)
                SELECT date, ? FROM raw_sessions WHERE date < ?
                UNION
                SELECT date, ? FROM timer_sessions WHERE date < ?
            """, (_now(), sessions_cutoff, _now(), sessions_cutoff))
            deleted['pruned_dates'] = cursor.rowcount

            cursor = conn.execute("DELETE FROM raw_sessions WHERE date < ?", (sessions_cutoff,))
            deleted['raw_sessions'] = cursor.rowcount

            cursor = conn.execute("DELETE FROM timer_sessions WHERE date < ?", (sessions_cutoff,))
            deleted['timer_sessions'] = cursor.rowcount

            cursor = conn.execute("DELETE FROM hourly_usage WHERE date < ?", (buckets_cutoff,))
            deleted['hourly_usage'] = cursor.rowcount

            if not keep_summaries:
                cursor = conn.execute("DELETE FROM daily_summary WHERE date < ?", (buckets_cutoff,))
                deleted['daily_summary'] = cursor.rowcount

        return deleted

    def is_pruned(self, day: str) -> bool:
        """True if retention removed the sessions behind this date's summaries."""
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT 1 FROM pruned_dates WHERE date = ?", (day,)).fetchone()
            return row is not None

    def get_pruned_dates(self) -> list[str]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute("SELECT date FROM pruned_dates ORDER BY date").fetchall()
            return [row[0] for row in rows]

    def vacuum(self):
        """Compact the database file after deletions."""
        # VACUUM can't run inside a transaction
        conn = sqlite3.connect(self.db_path)
        conn.execute("VACUUM")
        conn.close()

    def get_db_stats(self) -> dict:
        """Get database statistics for monitoring."""
        stats = {
            'file_size_mb': os.path.getsize(self.db_path) / (1024 * 1024)
        }

        with get_connection(self.db_path) as conn:
            for table in CATEGORY_TABLES:
                stats[f'{table}_count'] = conn.execute(
                    f"SELECT COUNT(*) FROM {table}"
                ).fetchone()[0]

            stats['oldest_session'] = conn.execute(
                "SELECT MIN(date) FROM raw_sessions"
            ).fetchone()[0]

        return stats

    def maintenance(self, sessions_days: int = 90, buckets_days: int = 365) -> dict:
        """Run full maintenance cycle: cleanup + vacuum.

        Call this periodically (e.g., daily via cron).
        """
        result = {
            'before': self.get_db_stats(),
            'deleted': self.cleanup_old_data(sessions_days, buckets_days),
        }

        self.vacuum()

        result['after'] = self.get_db_stats()
        return result
