"""Tests for category-id migration.

Data written under the stale id 6 must end up under the live 'fitness'
category (id 3), with composite-key rows moved rather than updated.
"""

import os
import sqlite3
import tempfile
from datetime import datetime

import pytest

from usageledger.config import PipelineConfig
from usageledger.models import MigrationState, RawUsageSession, TimerSession, to_millis
from usageledger.pipeline import UsagePipeline

FITNESS, STALE = 3, 6
DAY = '2024-01-16'


def ms(day, hour, minute=0):
    return to_millis(datetime(2024, 1, day, hour, minute))


@pytest.fixture
def pipeline():
    """Create a pipeline on a temporary database."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    try:
        yield UsagePipeline(PipelineConfig(db_path=db_path))
    finally:
        os.unlink(db_path)


@pytest.fixture
def stale(pipeline):
    """A fitness session stored under the stale id and aggregated."""
    session = RawUsageSession('com.strava', STALE, ms(16, 10, 30), ms(16, 10, 50))
    pipeline.db.insert_raw_session(session)
    pipeline.run_aggregation(DAY)
    return session


class TestMapping:
    """Tests for building the id mapping."""

    def test_default_mapping(self, pipeline):
        assert pipeline.migration.build_category_mapping() == {STALE: FITNESS}

    def test_live_id_not_remapped(self, pipeline):
        pipeline.db.upsert_category(STALE, 'reading', 6)
        assert pipeline.migration.build_category_mapping() == {}

    def test_unknown_target_skipped(self, pipeline):
        pipeline.migration.known_wrong_ids = {7: 'gardening'}
        assert pipeline.migration.build_category_mapping() == {}

    def test_needs_migration(self, pipeline, stale):
        assert pipeline.needs_migration()

    def test_clean_database_needs_nothing(self, pipeline):
        assert not pipeline.needs_migration()


class TestExecution:
    """Tests for the full migration run."""

    def test_session_moves_to_live_category(self, pipeline, stale):
        assert pipeline.db.get_daily(DAY, STALE).total_sec == 1200

        result = pipeline.run_migration()

        assert result.success
        assert result.state == MigrationState.COMPLETED
        assert pipeline.db.get_raw_session(stale.id).category_id == FITNESS
        assert pipeline.db.get_daily(DAY, STALE) is None
        assert pipeline.db.get_daily(DAY, FITNESS).total_sec == 1200
        assert pipeline.db.get_period('weekly', '2024-01-15', STALE) is None
        assert pipeline.db.get_period('weekly', '2024-01-15', FITNESS).total_sec == 1200
        assert pipeline.db.get_period('monthly', '2024-01-01', FITNESS).total_sec == 1200

    def test_colliding_bucket_merged(self, pipeline, stale):
        pipeline.ingest([{'package': 'com.strava', 'start': ms(16, 10), 'end': ms(16, 10, 20)}])
        assert pipeline.db.get_hourly_bucket(DAY, FITNESS, 10, False).duration_sec == 1200

        pipeline.run_migration()

        assert pipeline.db.get_hourly_bucket(DAY, FITNESS, 10, False).duration_sec == 2400
        assert pipeline.db.get_hourly(DAY, STALE) == []
        assert pipeline.db.get_daily(DAY, FITNESS).total_sec == 2400

    def test_timer_sessions_migrated(self, pipeline):
        pipeline.db.insert_timer_session(TimerSession(STALE, ms(16, 7), ms(16, 7, 30)))
        result = pipeline.run_migration()
        assert result.per_table_migrated['timer_sessions'] == 1
        assert pipeline.db.get_timer_sessions(DAY)[0].category_id == FITNESS

    def test_counts_per_table(self, pipeline, stale):
        result = pipeline.run_migration()
        assert result.per_table_migrated['raw_sessions'] == 1
        assert result.per_table_migrated['hourly_usage'] == 1
        assert result.per_table_migrated['daily_summary'] == 1
        assert result.per_table_migrated['weekly_summary'] == 1
        assert result.per_table_migrated['monthly_summary'] == 1
        assert result.total_migrated == 5

    def test_second_run_is_a_no_op(self, pipeline, stale):
        pipeline.run_migration()
        hourly = pipeline.db.get_hourly(DAY)

        result = pipeline.run_migration()

        assert result.success
        assert result.total_migrated == 0
        assert pipeline.db.get_hourly(DAY) == hourly
        assert not pipeline.needs_migration()

    def test_aggregation_after_migration_agrees(self, pipeline, stale):
        pipeline.run_migration()
        pipeline.run_aggregation(DAY)
        assert pipeline.db.get_daily(DAY, FITNESS).total_sec == 1200
        assert all(r.is_consistent for r in pipeline.run_validation(DAY))


class TestFailure:
    """Tests for aborted and resumed runs."""

    def test_failure_keeps_committed_work_and_resumes(self, pipeline, stale, monkeypatch):
        def broken_rekey(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(pipeline.db, 'rekey', broken_rekey)
        result = pipeline.run_migration()

        assert not result.success
        assert result.state == MigrationState.FAILED
        assert 'hourly_usage' in result.error_message
        assert result.per_table_migrated['raw_sessions'] == 1
        assert 'daily_summary' not in result.per_table_migrated
        # Raw session committed before the failure
        assert pipeline.db.get_raw_session(stale.id).category_id == FITNESS
        assert pipeline.needs_migration()

        monkeypatch.undo()
        resumed = pipeline.run_migration()

        assert resumed.success
        assert resumed.per_table_migrated['raw_sessions'] == 0
        assert resumed.per_table_migrated['hourly_usage'] == 1
        assert pipeline.db.get_daily(DAY, FITNESS).total_sec == 1200


    def test_unexpected_error_reported_as_failure(self, pipeline, stale, monkeypatch):
        def broken_update(*args, **kwargs):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(pipeline.db, 'set_raw_session_category', broken_update)
        result = pipeline.run_migration()

        assert not result.success
        assert result.state == MigrationState.FAILED
        assert pipeline.migration.state == MigrationState.FAILED
        assert result.error_message == "raw_sessions: unexpected"
        assert pipeline.db.get_raw_session(stale.id).category_id == STALE


class TestReport:

    def test_report_lists_invalid_ids(self, pipeline, stale):
        report = pipeline.migration_report()
        assert report.invalid_category_ids == [STALE]
        assert report.rows_by_category['raw_sessions'] == {STALE: 1}
        assert report.category_names[FITNESS] == 'fitness'

        pipeline.run_migration()
        assert pipeline.migration_report().invalid_category_ids == []
