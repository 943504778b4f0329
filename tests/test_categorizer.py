"""Tests for the category rule table and categorizer."""

import logging

import pytest

from usageledger.categorizer import Categorizer
from usageledger.models import Category
from usageledger.rules import (
    MatchRule, RuleTable, default_rule_table, load_rule_table, OFFLINE_PREFIX,
)

CATEGORIES = [
    Category(1, 'entertainment', 1),
    Category(2, 'learning', 2),
    Category(3, 'fitness', 3),
    Category(4, 'total', 4),
]


@pytest.fixture
def categorizer():
    return Categorizer(default_rule_table(), CATEGORIES)


class TestDefaultRules:
    """Tests for classification with the built-in table."""

    def test_app_itself_never_excluded(self, categorizer):
        assert categorizer.classify('com.usageledger.app') == ('entertainment', False)

    def test_offline_token(self, categorizer):
        """Test that offline packages take the category from their token."""
        assert categorizer.classify(OFFLINE_PREFIX + 'learning') == ('learning', False)
        assert categorizer.classify(OFFLINE_PREFIX + 'fitness_run') == ('fitness', False)

    def test_offline_total_token_not_honoured(self, categorizer):
        """The derived total category can never be the target of a session."""
        assert categorizer.classify(OFFLINE_PREFIX + 'total') == ('entertainment', False)

    def test_launcher_excluded(self, categorizer):
        assert categorizer.classify('com.miui.home')[1] is True

    def test_vendor_system_excluded(self, categorizer):
        assert categorizer.is_excluded('com.huawei.systemmanager')
        assert categorizer.is_excluded('com.samsung.android.lool')

    def test_heuristic_excluded(self, categorizer):
        """Test that unlisted OS packages are caught by heuristics."""
        assert categorizer.is_excluded('com.android.providers.media')
        assert categorizer.is_excluded('com.google.android.gms.persistent')
        assert categorizer.is_excluded('com.google.mainline.telemetry')

    def test_inclusion_sets(self, categorizer):
        assert categorizer.classify('com.duolingo') == ('learning', False)
        assert categorizer.classify('com.strava') == ('fitness', False)
        assert categorizer.classify('com.google.android.youtube') == ('entertainment', False)

    def test_work_folds_into_learning(self, categorizer):
        assert categorizer.classify('com.slack') == ('learning', False)

    def test_unknown_defaults_to_entertainment(self, categorizer):
        assert categorizer.classify('org.example.unknown') == ('entertainment', False)

    def test_categorize_resolves_id(self, categorizer):
        assert categorizer.categorize('com.strava') == (3, False)


class TestRuleOrdering:
    """Tests for priority and first-match semantics."""

    def test_lower_priority_value_wins(self):
        table = RuleTable([
            MatchRule('prefix', 'com.example.', 'learning', False, priority=50),
            MatchRule('exact', 'com.example.app', 'fitness', True, priority=10),
        ])
        rule = table.match('com.example.app')
        assert rule.category == 'fitness'
        assert rule.excluded

    def test_insertion_order_breaks_ties(self):
        table = RuleTable([
            MatchRule('contains', 'example', 'learning', priority=20),
            MatchRule('contains', 'exam', 'fitness', priority=20),
        ])
        assert table.match('com.example').category == 'learning'

    def test_invalid_kind(self):
        with pytest.raises(ValueError):
            MatchRule('glob', 'com.*')

    def test_invalid_regex(self):
        with pytest.raises(ValueError):
            MatchRule('regex', '(unclosed')


class TestResolution:
    """Tests for name -> id resolution."""

    def test_miss_falls_back_to_default(self, caplog):
        """Test that an unknown category logs a warning and uses the default id."""
        categorizer = Categorizer(default_rule_table(), [Category(1, 'entertainment')])
        with caplog.at_level(logging.WARNING, logger="usageledger.categorizer"):
            assert categorizer.resolve_category_id('fitness') == 1
        assert categorizer.misses == 1
        assert "Classification miss" in caplog.text

    def test_swap_rules(self, categorizer):
        """Test hot-swapping the rule table."""
        assert categorizer.classify('org.example.study') == ('entertainment', False)
        categorizer.swap_rules(RuleTable(
            [MatchRule('exact', 'org.example.study', 'learning')], version="v2"))
        assert categorizer.classify('org.example.study') == ('learning', False)
        assert categorizer.rules.version == "v2"


class TestRuleFile:
    """Tests for YAML rule tables."""

    def test_replace_table(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            "version: custom-1\n"
            "rules:\n"
            "  - kind: suffix\n"
            "    pattern: .game\n"
            "    category: fitness\n"
        )
        table = load_rule_table(str(path))
        assert table.version == "custom-1"
        assert len(table) == 1
        assert table.match('org.example.game').category == 'fitness'
        # Not in the table: launcher no longer excluded
        assert table.match('com.miui.home') is None

    def test_extend_builtin(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            "version: ext-1\n"
            "extends_builtin: true\n"
            "rules:\n"
            "  - kind: prefix\n"
            "    pattern: com.example.\n"
            "    category: learning\n"
            "    priority: 5\n"
        )
        categorizer = Categorizer(load_rule_table(str(path)), CATEGORIES)
        assert categorizer.classify('com.example.app') == ('learning', False)
        assert categorizer.is_excluded('com.miui.home')

    def test_rule_without_pattern(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("rules:\n  - kind: exact\n")
        with pytest.raises(ValueError):
            load_rule_table(str(path))
