"""Tests for the command line interface."""

import json
import os
import tempfile
from datetime import datetime

import pytest

from usageledger.main import main
from usageledger.models import to_millis

DAY = '2024-01-16'


def ms(hour, minute=0):
    return to_millis(datetime(2024, 1, 16, hour, minute))


@pytest.fixture
def workdir():
    with tempfile.TemporaryDirectory() as d:
        yield d


@pytest.fixture
def cli(workdir, capsys):
    """Run the CLI against a temporary database and return its stdout."""
    base = ['--db', os.path.join(workdir, 'ledger.db'),
            '-c', os.path.join(workdir, 'missing.yaml')]

    def run(*argv):
        main(base + list(argv))
        return capsys.readouterr().out

    return run


@pytest.fixture
def sessions_file(workdir):
    path = os.path.join(workdir, 'sessions.jsonl')
    with open(path, 'w') as f:
        for package, start, end in [
            ('org.example.game', ms(10), ms(10, 30)),
            ('com.duolingo', ms(9), ms(9, 10)),
            ('com.miui.home', ms(11), ms(12)),
        ]:
            f.write(json.dumps({'package': package, 'start': start, 'end': end}) + '\n')
    return path


class TestCommands:

    def test_ingest(self, cli, sessions_file):
        out = cli('ingest', sessions_file)
        assert 'Stored:    2' in out
        assert 'Excluded:  1' in out
        assert f'Dates:     {DAY}' in out

    def test_ingest_missing_file(self, cli, workdir):
        with pytest.raises(SystemExit) as exc:
            cli('ingest', os.path.join(workdir, 'nope.jsonl'))
        assert exc.value.code == 1

    def test_validate_json(self, cli, sessions_file):
        cli('ingest', sessions_file)
        reports = json.loads(cli('validate', DAY, '--json'))
        by_name = {r['category_name']: r for r in reports}
        assert by_name['entertainment']['pie_chart_total'] == 1800
        assert by_name['learning']['detail_total'] == 600
        assert all(r['is_consistent'] for r in reports)

    def test_validate_exits_nonzero_on_mismatch(self, cli, sessions_file):
        cli('ingest', sessions_file, '--no-aggregate')
        with pytest.raises(SystemExit) as exc:
            cli('validate', DAY)
        assert exc.value.code == 1

    def test_aggregate(self, cli, sessions_file):
        cli('ingest', sessions_file, '--no-aggregate')
        out = cli('aggregate', DAY)
        assert f'Aggregated {DAY}: 2 sessions' in out
        assert 'entertainment' in out

    def test_repair_nothing(self, cli, sessions_file):
        cli('ingest', sessions_file)
        assert 'Nothing to repair.' in cli('repair', DAY)

    def test_classify(self, cli):
        out = cli('classify', 'com.tencent.mm')
        assert 'filter_level' in out
        assert 'HIGH' in out
        assert 'entertainment' in out

    def test_migrate_check_clean(self, cli):
        with pytest.raises(SystemExit) as exc:
            cli('migrate', '--check')
        assert exc.value.code == 0

    def test_migrate_run(self, cli):
        out = cli('migrate')
        assert 'State: completed, 0 rows migrated' in out

    def test_categories_list(self, cli):
        out = cli('categories', 'list')
        for name in ('entertainment', 'learning', 'fitness', 'total'):
            assert name in out

    def test_maintenance(self, cli, sessions_file):
        cli('ingest', sessions_file)
        out = cli('maintenance', '--sessions-days', '36500')
        assert 'Sessions: 2' in out
