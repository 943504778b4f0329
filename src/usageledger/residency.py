"""
Background-residency policy.

Some apps stay resident in the background and report foreground time they
did not really get. Each package gets a filter level; the level decides the
shortest session worth keeping and the longest believable continuous run.
"""

from typing import Iterable

from .models import FilterLevel

MIN_VALID_SEC = {
    FilterLevel.HIGH: 10,
    FilterLevel.MEDIUM: 5,
    FilterLevel.LOW: 2,
}
APP_MIN_VALID_SEC = 1

MAX_CONTINUOUS_SEC = {
    FilterLevel.HIGH: 30 * 60,
    FilterLevel.MEDIUM: 60 * 60,
    FilterLevel.LOW: 180 * 60,
}


class ResidencyPolicy:

    def __init__(self, high: Iterable[str] = (), medium: Iterable[str] = (),
                 app_packages: Iterable[str] = ()):
        self.high = set(high)
        # HIGH implies resident; keep the sets disjoint for lookups
        self.medium = set(medium) - self.high
        self.app_packages = set(app_packages)

    @classmethod
    def from_config(cls, config) -> "ResidencyPolicy":
        return cls(config.high_packages, config.medium_packages, config.app_packages)

    def filter_level(self, package_name: str) -> FilterLevel:
        if package_name in self.high:
            return FilterLevel.HIGH
        if package_name in self.medium:
            return FilterLevel.MEDIUM
        return FilterLevel.LOW

    def is_app_package(self, package_name: str) -> bool:
        return package_name in self.app_packages

    def min_valid_duration_sec(self, package_name: str) -> int:
        """Sessions shorter than this are noise and are dropped at ingestion."""
        if self.is_app_package(package_name):
            return APP_MIN_VALID_SEC
        return MIN_VALID_SEC[self.filter_level(package_name)]

    def max_continuous_sec(self, package_name: str) -> int:
        return MAX_CONTINUOUS_SEC[self.filter_level(package_name)]

    def describe(self, package_name: str) -> dict:
        """Diagnostic view of the policy for one package."""
        return {
            'package': package_name,
            'filter_level': self.filter_level(package_name).value,
            'min_valid_duration_sec': self.min_valid_duration_sec(package_name),
            'max_continuous_sec': self.max_continuous_sec(package_name),
            'is_app_package': self.is_app_package(package_name),
        }
