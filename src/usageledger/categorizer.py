"""
Categorizer: package identifier -> (category, excluded).

Wraps a RuleTable and resolves category names to the ids of the live
Category table.
"""

import logging
import threading
from typing import Optional

from .models import Category
from .rules import RuleTable, default_rule_table, DEFAULT_CATEGORY

log = logging.getLogger("usageledger.categorizer")


class Categorizer:
    """Apply a rule table to package names."""

    def __init__(self, rules: RuleTable = None, categories: list[Category] = None,
                 default_category: str = DEFAULT_CATEGORY):
        self._rules = rules if rules is not None else default_rule_table()
        self._lock = threading.Lock()
        self.default_category = default_category
        self.misses = 0
        self.set_categories(categories or [])

    @property
    def rules(self) -> RuleTable:
        return self._rules

    def swap_rules(self, rules: RuleTable):
        """Replace the rule table; later classifications use the new one."""
        with self._lock:
            old = self._rules.version
            self._rules = rules
        log.info(f"Rule table swapped: {old} -> {rules.version}")

    def set_categories(self, categories: list[Category]):
        self._ids_by_name = {c.name: c.id for c in categories}

    def classify(self, package_name: str) -> tuple[str, bool]:
        """Return (category_name, excluded) for a package."""
        rule = self._rules.match(package_name)
        if rule is None:
            return self._rules.default_category, False
        return rule.category_for(package_name), rule.excluded

    def is_excluded(self, package_name: str) -> bool:
        return self.classify(package_name)[1]

    def resolve_category_id(self, category_name: str) -> Optional[int]:
        """Map a category name to its id, falling back to the default category.

        A miss is logged and counted but never raised.
        """
        category_id = self._ids_by_name.get(category_name)
        if category_id is not None:
            return category_id
        self.misses += 1
        fallback = self._ids_by_name.get(self.default_category)
        log.warning(f"Classification miss: category {category_name!r} not found, "
                    f"using {self.default_category} ({fallback})")
        return fallback

    def categorize(self, package_name: str) -> tuple[Optional[int], bool]:
        """Return (category_id, excluded) for a package."""
        name, excluded = self.classify(package_name)
        return self.resolve_category_id(name), excluded
