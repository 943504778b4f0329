"""Tests for ingestion and aggregation into hourly buckets and rollups."""

import os
import tempfile
from datetime import datetime

import pytest

from usageledger.aggregator import distribute, hour_slices
from usageledger.config import PipelineConfig
from usageledger.ingest import split_at_midnight, parse_records
from usageledger.models import DailySummary, RawUsageSession, to_millis
from usageledger.pipeline import UsagePipeline

ENTERTAINMENT, LEARNING, FITNESS, TOTAL = 1, 2, 3, 4
DAY = '2024-01-16'


def ms(day, hour, minute=0, second=0):
    return to_millis(datetime(2024, 1, day, hour, minute, second))


def record(package, start, end):
    return {'package': package, 'start': start, 'end': end}


@pytest.fixture
def pipeline():
    """Create a pipeline on a temporary database."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    try:
        yield UsagePipeline(PipelineConfig(db_path=db_path))
    finally:
        os.unlink(db_path)


def bucket_values(pipeline, day, category_id):
    return {(b.hour, b.is_offline): b.duration_sec
            for b in pipeline.db.get_hourly(day, category_id)}


class TestDistribution:
    """Tests for spreading seconds over hours."""

    def test_single_hour(self):
        assert distribute(ms(16, 10), ms(16, 10, 30), 1800) == [(DAY, 10, 1800)]

    def test_proportional_split(self):
        shares = distribute(ms(16, 10, 40), ms(16, 11, 20), 2400)
        assert shares == [(DAY, 10, 1200), (DAY, 11, 1200)]

    def test_shares_sum_exactly(self):
        """Integer shares always add up to the input."""
        shares = distribute(ms(16, 10, 17, 13), ms(16, 13, 2, 41), 997)
        assert sum(s for _, _, s in shares) == 997
        assert [h for _, h, _ in shares] == [10, 11, 12, 13]

    def test_hour_slices_wall_time(self):
        slices = hour_slices(ms(16, 10, 30), ms(16, 12))
        assert [(h, wall) for _, h, wall in slices] == [(10, 1_800_000), (11, 3_600_000)]

    def test_split_at_midnight(self):
        pieces = split_at_midnight(ms(16, 23, 30), ms(17, 0, 30))
        assert pieces == [(ms(16, 23, 30), ms(17, 0)), (ms(17, 0), ms(17, 0, 30))]


class TestIngestion:
    """Tests for turning tuples into raw sessions."""

    def test_excluded_package_dropped(self, pipeline):
        stats = pipeline.ingest([record('com.miui.home', ms(16, 10), ms(16, 11))])
        assert stats.excluded == 1
        assert stats.stored == 0
        assert pipeline.db.get_raw_sessions(DAY) == []

    def test_noise_dropped(self, pipeline):
        """A 5s session of a HIGH app is below its 10s minimum."""
        stats = pipeline.ingest([record('com.tencent.mm', ms(16, 10), ms(16, 10, 0, 5))])
        assert stats.noise == 1
        assert stats.stored == 0

    def test_bad_records_rejected(self, pipeline):
        stats = pipeline.ingest([
            record('org.example.game', ms(16, 11), ms(16, 10)),
            {'package': 'org.example.game'},
            record('org.example.game', ms(16, 10), ms(16, 10, 5)),
        ])
        assert stats.rejected == 2
        assert stats.stored == 1

    def test_reingest_is_skipped(self, pipeline):
        records = [record('org.example.game', ms(16, 10), ms(16, 10, 5))]
        pipeline.ingest(records)
        stats = pipeline.ingest(records)
        assert stats.duplicate == 1
        assert len(pipeline.db.get_raw_sessions(DAY)) == 1

    def test_midnight_session_split(self, pipeline):
        stats = pipeline.ingest([record('org.example.game', ms(16, 23, 30), ms(17, 0, 30))])
        assert stats.stored == 2
        assert stats.dates == {DAY, '2024-01-17'}
        assert pipeline.db.get_daily(DAY, ENTERTAINMENT).total_sec == 1800
        assert pipeline.db.get_daily('2024-01-17', ENTERTAINMENT).total_sec == 1800

    def test_parse_json_lines_and_array(self):
        lines = '{"package": "a", "start": 1, "end": 2}\n\n{"package": "b", "start": 3, "end": 4}\n'
        assert [r['package'] for r in parse_records(lines)] == ['a', 'b']
        assert parse_records('[{"package": "a", "start": 1, "end": 2}]')[0]['end'] == 2
        assert parse_records('  ') == []


class TestAggregation:
    """Tests for hourly buckets and rollups."""

    def test_basic_bucket_and_daily(self, pipeline):
        pipeline.ingest([record('org.example.game', ms(16, 10), ms(16, 10, 30))])
        assert bucket_values(pipeline, DAY, ENTERTAINMENT) == {(10, False): 1800}
        assert pipeline.db.get_daily(DAY, ENTERTAINMENT).total_sec == 1800
        assert pipeline.db.get_daily(DAY, LEARNING).total_sec == 0

    def test_adjusted_duration_spread(self, pipeline):
        """90 minutes of a HIGH app becomes 900s spread by wall time."""
        pipeline.ingest([record('com.tencent.mm', ms(16, 10), ms(16, 11, 30))])
        assert bucket_values(pipeline, DAY, ENTERTAINMENT) == {(10, False): 600, (11, False): 300}
        assert pipeline.db.get_daily(DAY, ENTERTAINMENT).total_sec == 900

    def test_hour_cap(self, pipeline):
        """Two full-hour sessions in one category still cap the bucket at 3600."""
        pipeline.ingest([
            record('org.example.a', ms(16, 10), ms(16, 11)),
            record('org.example.b', ms(16, 10), ms(16, 11)),
        ])
        assert bucket_values(pipeline, DAY, ENTERTAINMENT) == {(10, False): 3600}
        assert pipeline.db.get_daily(DAY, ENTERTAINMENT).total_sec == 3600

    def test_excluded_skipped_even_if_stored(self, pipeline):
        pipeline.db.insert_raw_session(RawUsageSession('com.miui.home', ENTERTAINMENT,
                                                       ms(16, 10), ms(16, 11)))
        stats = pipeline.run_aggregation(DAY)
        assert stats['excluded'] == 1
        assert pipeline.db.get_hourly(DAY, ENTERTAINMENT) == []
        assert pipeline.db.get_daily(DAY, ENTERTAINMENT).total_sec == 0

    def test_total_category(self, pipeline):
        pipeline.ingest([
            record('org.example.game', ms(16, 10), ms(16, 10, 20)),
            record('com.duolingo', ms(16, 10, 30), ms(16, 10, 50)),
        ])
        assert bucket_values(pipeline, DAY, TOTAL) == {(10, False): 2400}
        assert pipeline.db.get_daily(DAY, TOTAL).total_sec == 2400

    def test_timer_sessions_offline(self, pipeline):
        pipeline.record_timer('learning', ms(16, 15), ms(16, 15, 20), "reading")
        assert bucket_values(pipeline, DAY, LEARNING) == {(15, True): 1200}
        assert pipeline.db.get_daily(DAY, LEARNING).total_sec == 1200

    def test_daily_is_sum_of_hourly(self, pipeline):
        pipeline.ingest([
            record('org.example.game', ms(16, 8, 13), ms(16, 9, 47)),
            record('com.tencent.qqmusic', ms(16, 12), ms(16, 13, 10)),
            record('com.duolingo', ms(16, 19, 5), ms(16, 19, 55)),
            record('com.strava', ms(16, 6), ms(16, 7)),
        ])
        for category in pipeline.db.get_categories():
            buckets = pipeline.db.get_hourly(DAY, category.id)
            assert pipeline.db.get_daily(DAY, category.id).total_sec == \
                sum(b.duration_sec for b in buckets)

    def test_weekly_and_monthly_rollups(self, pipeline):
        pipeline.ingest([
            record('org.example.game', ms(16, 10), ms(16, 10, 30)),
            record('org.example.game', ms(18, 10), ms(18, 11)),
        ])
        weekly = pipeline.db.get_period('weekly', '2024-01-15', ENTERTAINMENT)
        assert weekly.total_sec == 5400
        assert weekly.day_count == 2
        assert weekly.avg_daily_sec == 2700

        monthly = pipeline.db.get_period('monthly', '2024-01-01', ENTERTAINMENT)
        assert monthly.total_sec == 5400

    def test_aggregation_idempotent(self, pipeline):
        pipeline.ingest([
            record('org.example.game', ms(16, 10), ms(16, 10, 30)),
            record('com.tencent.mm', ms(16, 11), ms(16, 11, 40)),
        ])
        before = pipeline.db.get_hourly(DAY)
        first = pipeline.run_aggregation(DAY)
        second = pipeline.run_aggregation(DAY)
        assert pipeline.db.get_hourly(DAY) == before
        assert first['daily'] == second['daily']

    def test_stale_daily_row_recomputed(self, pipeline):
        """A daily row under an unknown id with no buckets left is reset."""
        pipeline.db.upsert_daily(DailySummary(DAY, 9, 500))
        stats = pipeline.run_aggregation(DAY)
        assert stats['daily'][9] == 0
        assert pipeline.db.get_daily(DAY, 9).total_sec == 0


class TestRetention:
    """Tests for dates whose sessions were removed by maintenance."""

    @pytest.fixture
    def pruned(self, pipeline):
        pipeline.ingest([record('com.duolingo', ms(16, 10), ms(16, 10, 30))])
        assert pipeline.db.get_daily(DAY, LEARNING).total_sec == 1800
        # The session is years old, so default retention removes it
        result = pipeline.db.maintenance()
        assert result['deleted']['raw_sessions'] == 1
        assert result['deleted']['pruned_dates'] == 1
        return pipeline

    def test_summaries_survive_reaggregation(self, pruned):
        stats = pruned.run_aggregation(DAY)
        assert stats['pruned']
        assert pruned.db.get_daily(DAY, LEARNING).total_sec == 1800
        assert pruned.db.get_period('weekly', '2024-01-15', LEARNING).total_sec == 1800
        assert pruned.db.get_period('monthly', '2024-01-01', LEARNING).total_sec == 1800

    def test_validation_skips_pruned_date(self, pruned):
        assert pruned.run_validation(DAY) == []
        assert "removed by retention" in pruned.summary(DAY)
        assert pruned.run_repair(DAY).total == 0

    def test_neighbouring_date_keeps_pruned_totals(self, pruned):
        """Rebuilding another day of the week still counts the kept daily row."""
        pruned.ingest([record('com.duolingo', ms(17, 9), ms(17, 9, 10))])
        assert pruned.db.get_period('weekly', '2024-01-15', LEARNING).total_sec == 1800 + 600

    def test_pruned_dates_recorded(self, pruned):
        assert pruned.db.is_pruned(DAY)
        assert pruned.db.get_pruned_dates() == [DAY]
        assert not pruned.db.is_pruned('2024-01-17')
