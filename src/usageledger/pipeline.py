"""
Caller-facing pipeline.

Wires the store, categorizer, residency policy, anomaly detection,
aggregation, validation, migration and repair together. Every writing
operation runs under one process-wide re-entrant lock; validation reads
without it.
"""

import logging
import threading
from typing import Iterable

from .aggregator import Aggregator
from .anomaly import DurationAdjuster, SuspiciousSessionDetector
from .categorizer import Categorizer
from .config import PipelineConfig
from .db import UsageDB
from .ingest import Ingestor, IngestStats
from .migration import MigrationEngine
from .models import MigrationResult, MigrationReport, RepairResult, ValidationReport, TimerSession
from .repair import RepairEngine
from .residency import ResidencyPolicy
from .rules import RuleTable, default_rule_table, load_rule_table
from .validator import Validator

log = logging.getLogger("usageledger.pipeline")

PIPELINE_LOCK = threading.RLock()


class UsagePipeline:

    def __init__(self, config: PipelineConfig = None, rules: RuleTable = None):
        self.config = config or PipelineConfig()
        self.lock = PIPELINE_LOCK

        self.db = UsageDB(self.config.db_path)
        self.db.seed_categories(self.config.categories)
        log.debug(f"Database ready at {self.config.db_path}")

        if rules is None:
            base = default_rule_table(set(self.config.app_packages))
            rules = load_rule_table(self.config.rules_file, base) if self.config.rules_file else base
        self.categorizer = Categorizer(rules, self.db.get_categories(),
                                       default_category=self.config.default_category)

        self.residency = ResidencyPolicy.from_config(self.config)
        self.adjuster = DurationAdjuster(self.residency)
        self.detector = SuspiciousSessionDetector.from_config(self.config, self.residency)
        self.aggregator = Aggregator(self.db, self.categorizer, self.adjuster,
                                     total_category=self.config.total_category,
                                     hour_cap=self.config.hour_cap_sec)
        self.validator = Validator(self.db, self.categorizer, self.adjuster, self.detector,
                                   tolerance_sec=self.config.consistency_tolerance_sec,
                                   overlap_threshold_sec=self.config.overlap_threshold_sec,
                                   total_category=self.config.total_category)
        self.migration = MigrationEngine(self.db, self.aggregator, self.config.known_wrong_ids,
                                         hour_cap=self.config.hour_cap_sec)
        self.repairer = RepairEngine(self.db, self.detector,
                                     night_session_cap_sec=self.config.night_session_cap_sec,
                                     extreme_duration_sec=self.config.extreme_duration_sec)
        self.ingestor = Ingestor(self.db, self.categorizer, self.residency)

    def refresh_categories(self):
        self.categorizer.set_categories(self.db.get_categories())

    # --- Writers (serialized) ---

    def ingest(self, records: Iterable[dict], aggregate: bool = True) -> IngestStats:
        """Ingest session records and re-aggregate the dates they touched."""
        with self.lock:
            stats = self.ingestor.ingest_records(records)
            if aggregate:
                for day in sorted(stats.dates):
                    self.aggregator.aggregate_date(day)
            return stats

    def record_timer(self, category: str, start_ms: int, end_ms: int,
                     program_name: str = "offline activity") -> list[TimerSession]:
        with self.lock:
            sessions = self.ingestor.record_timer_session(category, start_ms, end_ms, program_name)
            for day in sorted({s.date for s in sessions}):
                self.aggregator.aggregate_date(day)
            return sessions

    def run_aggregation(self, day: str) -> dict:
        with self.lock:
            return self.aggregator.aggregate_date(day)

    def run_migration(self) -> MigrationResult:
        with self.lock:
            result = self.migration.execute_full_migration()
            self.refresh_categories()
            return result

    def run_repair(self, day: str) -> RepairResult:
        """Validate a date, repair what was flagged and re-aggregate."""
        with self.lock:
            reports = self.validator.validate(day)
            result = self.repairer.repair(reports)
            for touched in sorted(result.dates | ({day} if result.total else set())):
                self.aggregator.aggregate_date(touched)
            return result

    # --- Readers ---

    def run_validation(self, day: str) -> list[ValidationReport]:
        return self.validator.validate(day)

    def needs_migration(self) -> bool:
        return self.migration.needs_migration()

    def migration_report(self) -> MigrationReport:
        return self.migration.migration_report()

    def summary(self, day: str) -> str:
        return self.validator.quality_report(day)

    def classify(self, package_name: str) -> dict:
        name, excluded = self.categorizer.classify(package_name)
        rule = self.categorizer.rules.match(package_name)
        info = self.residency.describe(package_name)
        info.update({
            'category': name,
            'category_id': self.categorizer.resolve_category_id(name),
            'excluded': excluded,
            'rule': rule.name if rule else 'default',
            'rules_version': self.categorizer.rules.version,
        })
        return info
