"""
Ingestion of usage-stats tuples and offline timer sessions.

A tuple is {package, start, end} (epoch milliseconds). Ingestion classifies
the package, drops excluded packages and sub-threshold noise, skips tuples
already stored, and splits sessions that cross local midnight into one row
per date.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from .categorizer import Categorizer
from .db import UsageDB
from .models import RawUsageSession, TimerSession, local_datetime, to_millis, duration_seconds
from .residency import ResidencyPolicy

log = logging.getLogger("usageledger.ingest")


@dataclass
class IngestStats:
    stored: int = 0
    excluded: int = 0
    noise: int = 0
    duplicate: int = 0
    rejected: int = 0
    dates: set = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            'stored': self.stored,
            'excluded': self.excluded,
            'noise': self.noise,
            'duplicate': self.duplicate,
            'rejected': self.rejected,
            'dates': sorted(self.dates),
        }


def split_at_midnight(start_ms: int, end_ms: int) -> list[tuple[int, int]]:
    """Split [start, end) at local midnights."""
    pieces = []
    cursor = start_ms
    while cursor < end_ms:
        day = local_datetime(cursor).date()
        midnight = to_millis(datetime.combine(day + timedelta(days=1), datetime.min.time()))
        piece_end = min(midnight, end_ms)
        pieces.append((cursor, piece_end))
        cursor = piece_end
    return pieces


def parse_records(text: str) -> list[dict]:
    """Parse a JSON array or JSON-lines document of session records."""
    stripped = text.strip()
    if not stripped:
        return []
    if stripped.startswith('['):
        return json.loads(stripped)
    return [json.loads(line) for line in stripped.splitlines() if line.strip()]


class Ingestor:

    def __init__(self, db: UsageDB, categorizer: Categorizer, residency: ResidencyPolicy):
        self.db = db
        self.categorizer = categorizer
        self.residency = residency

    def ingest_session(self, package_name: str, start_ms: int, end_ms: int,
                       stats: IngestStats = None) -> list[RawUsageSession]:
        """Store one foreground interval. Returns the rows written.

        Raises ValueError for malformed input.
        """
        stats = stats if stats is not None else IngestStats()
        if not package_name:
            raise ValueError("package name is required")
        if end_ms <= start_ms:
            raise ValueError(f"end ({end_ms}) must be after start ({start_ms})")

        category_id, excluded = self.categorizer.categorize(package_name)
        if excluded:
            stats.excluded += 1
            log.debug(f"Dropped excluded package {package_name}")
            return []

        duration = duration_seconds(start_ms, end_ms)
        min_valid = self.residency.min_valid_duration_sec(package_name)
        if duration < min_valid:
            stats.noise += 1
            log.debug(f"Dropped {duration}s session of {package_name} (< {min_valid}s)")
            return []

        stored = []
        for piece_start, piece_end in split_at_midnight(start_ms, end_ms):
            if self.db.raw_session_exists(package_name, piece_start, piece_end):
                stats.duplicate += 1
                continue
            session = RawUsageSession(package_name, category_id, piece_start, piece_end)
            self.db.insert_raw_session(session)
            stats.stored += 1
            stats.dates.add(session.date)
            stored.append(session)
        return stored

    def ingest_records(self, records: Iterable[dict]) -> IngestStats:
        """Ingest a batch of {package, start, end} dicts.

        Bad records are logged, counted as rejected and skipped.
        """
        stats = IngestStats()
        for record in records:
            try:
                package = record['package']
                start = int(record['start'])
                end = int(record['end'])
                self.ingest_session(package, start, end, stats)
            except (KeyError, TypeError, ValueError) as e:
                stats.rejected += 1
                log.warning(f"Rejected record {record!r}: {e}")
        log.info(f"Ingested {stats.stored} sessions ({stats.excluded} excluded, "
                 f"{stats.noise} noise, {stats.duplicate} duplicate, {stats.rejected} rejected)")
        return stats

    def record_timer_session(self, category: str, start_ms: int, end_ms: int,
                             program_name: str = "offline activity") -> list[TimerSession]:
        """Store an offline activity interval for a category name."""
        if end_ms <= start_ms:
            raise ValueError(f"end ({end_ms}) must be after start ({start_ms})")
        category_id = self.categorizer.resolve_category_id(category)
        stored = []
        for piece_start, piece_end in split_at_midnight(start_ms, end_ms):
            session = TimerSession(category_id, piece_start, piece_end, program_name)
            self.db.insert_timer_session(session)
            stored.append(session)
        log.info(f"Recorded timer session for {category}: "
                 f"{duration_seconds(start_ms, end_ms)}s in {len(stored)} piece(s)")
        return stored
