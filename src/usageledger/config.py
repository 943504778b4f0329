"""
Configuration loading for usageledger.

Configuration lives in a YAML file. A missing file means built-in defaults;
unknown keys are ignored and values of the wrong shape raise ValueError.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

log = logging.getLogger("usageledger.config")

DEFAULT_CONFIG = "/etc/usageledger/config.yaml"
DEFAULT_DB_PATH = "/var/lib/usageledger/usageledger.db"

DEFAULT_CATEGORIES = [
    {'id': 1, 'name': 'entertainment', 'display_order': 1},
    {'id': 2, 'name': 'learning', 'display_order': 2},
    {'id': 3, 'name': 'fitness', 'display_order': 3},
    {'id': 4, 'name': 'total', 'display_order': 4},
]

# Apps that stay resident in the background (messaging, payment, news,
# media, maps, input methods, cloud sync)
DEFAULT_MEDIUM_PACKAGES = [
    'com.tencent.mm', 'com.tencent.mobileqq', 'com.alibaba.android.rimet',
    'com.ss.android.lark', 'com.tencent.wework', 'com.whatsapp',
    'com.facebook.orca', 'com.telegram.messenger', 'com.viber.voip',
    'com.skype.raider', 'com.eg.android.AlipayGphone',
    'com.unionpay.mobile.android', 'com.chinamworld.bocmbci', 'com.icbc',
    'com.ccb.CCBMobile', 'cmb.pb', 'com.abc.mobile', 'com.netease.cloudmusic',
    'com.ss.android.article.news', 'com.tencent.news',
    'com.netease.newsreader.activity', 'com.sohu.newsclient', 'com.sina.news',
    'com.ifeng.news2', 'com.baidu.news', 'com.UCMobile', 'com.qihoo.browser',
    'com.ss.android.ugc.aweme', 'com.smile.gifmaker', 'com.baidu.tieba',
    'com.zhihu.android', 'com.tencent.qqmusic', 'com.kugou.android',
    'com.kuwo.kwmusic', 'com.spotify.music', 'com.apple.android.music',
    'com.baidu.BaiduMap', 'com.autonavi.minimap',
    'com.google.android.apps.maps', 'com.tencent.map',
    'com.miui.securitycenter', 'com.qihoo360.mobilesafe',
    'com.tencent.qqpimsecure', 'com.cleanmaster.mguard',
    'com.sohu.inputmethod.sogou', 'com.baidu.input',
    'com.iflytek.inputmethod', 'com.google.android.inputmethod.latin',
    'com.baidu.netdisk', 'com.tencent.weiyun',
    'com.alibaba.android.apps.yunpan', 'com.dropbox.android',
    'com.google.android.apps.docs',
]

# Resident apps with very frequent background wake-ups
DEFAULT_HIGH_PACKAGES = [
    'com.tencent.mm', 'com.eg.android.AlipayGphone', 'com.tencent.mobileqq',
    'com.miui.securitycenter', 'com.google.android.gms',
    'com.ss.android.article.news', 'com.ss.android.ugc.aweme',
    'com.tencent.news', 'com.UCMobile',
]

DEFAULT_SUSPICIOUS_PACKAGES = [
    {'package': 'com.ss.android.ugc.aweme', 'max_sec': 3600,
     'reason': 'short-form video unusually long', 'shrink_ratio': 0.6},
    {'package': 'com.tencent.mm', 'max_sec': 1800,
     'reason': 'chat app unusually long'},
]


@dataclass
class SuspiciousPackageRule:
    """Per-package duration ceiling that flags a session as suspicious."""
    package: str
    max_sec: int
    reason: str
    shrink_ratio: Optional[float] = None


@dataclass
class PipelineConfig:
    db_path: str = DEFAULT_DB_PATH
    overlap_threshold_sec: int = 30
    consistency_tolerance_sec: int = 10
    hour_cap_sec: int = 3600
    night_hours: list[int] = field(default_factory=lambda: [0, 1, 2, 3, 4, 5, 23])
    night_session_cap_sec: int = 1800
    extreme_duration_sec: int = 7200
    app_packages: list[str] = field(default_factory=lambda: [
        'com.usageledger.app', 'com.usageledger.app.gplay'])
    high_packages: list[str] = field(default_factory=lambda: list(DEFAULT_HIGH_PACKAGES))
    medium_packages: list[str] = field(default_factory=lambda: list(DEFAULT_MEDIUM_PACKAGES))
    suspicious_packages: list[SuspiciousPackageRule] = field(default_factory=lambda: [
        SuspiciousPackageRule(**entry) for entry in DEFAULT_SUSPICIOUS_PACKAGES])
    known_wrong_ids: dict[int, str] = field(default_factory=lambda: {6: 'fitness'})
    categories: list[dict] = field(default_factory=lambda: [dict(c) for c in DEFAULT_CATEGORIES])
    total_category: str = 'total'
    default_category: str = 'entertainment'
    rules_file: Optional[str] = None

    def __post_init__(self):
        for name in ('overlap_threshold_sec', 'consistency_tolerance_sec',
                     'hour_cap_sec', 'night_session_cap_sec', 'extreme_duration_sec'):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
        for hour in self.night_hours:
            if not isinstance(hour, int) or not 0 <= hour <= 23:
                raise ValueError(f"night_hours entries must be 0-23, got {hour!r}")
        for rule in self.suspicious_packages:
            if rule.shrink_ratio is not None and not 0 < rule.shrink_ratio <= 1:
                raise ValueError(
                    f"shrink_ratio for {rule.package} must be in (0, 1], got {rule.shrink_ratio}")
        names = [c.get('name') for c in self.categories]
        if self.default_category not in names:
            raise ValueError(f"default category {self.default_category!r} is not configured")

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Build a config from the parsed YAML mapping."""
        if not isinstance(data, dict):
            raise ValueError("Config root must be a mapping")

        kwargs = {}
        database = data.get('database') or {}
        if 'path' in database:
            kwargs['db_path'] = str(database['path'])

        pipeline = data.get('pipeline') or {}
        for key in ('overlap_threshold_sec', 'consistency_tolerance_sec', 'hour_cap_sec',
                    'night_hours', 'night_session_cap_sec', 'extreme_duration_sec',
                    'total_category', 'default_category'):
            if key in pipeline:
                kwargs[key] = pipeline[key]

        residency = data.get('residency') or {}
        if 'app_packages' in residency:
            kwargs['app_packages'] = list(residency['app_packages'])
        if 'high' in residency:
            kwargs['high_packages'] = list(residency['high'])
        if 'medium' in residency:
            kwargs['medium_packages'] = list(residency['medium'])

        if 'suspicious_packages' in data:
            try:
                kwargs['suspicious_packages'] = [
                    SuspiciousPackageRule(**entry) for entry in data['suspicious_packages'] or []]
            except TypeError as e:
                raise ValueError(f"Invalid suspicious_packages entry: {e}") from e

        migration = data.get('migration') or {}
        if 'known_wrong_ids' in migration:
            try:
                kwargs['known_wrong_ids'] = {
                    int(k): str(v) for k, v in (migration['known_wrong_ids'] or {}).items()}
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid migration.known_wrong_ids: {e}") from e

        if 'categories' in data:
            categories = data['categories'] or []
            for entry in categories:
                if 'id' not in entry or 'name' not in entry:
                    raise ValueError(f"Category needs id and name: {entry}")
            kwargs['categories'] = categories

        if data.get('rules_file'):
            kwargs['rules_file'] = str(data['rules_file'])

        return cls(**kwargs)


def load_config(path: str = DEFAULT_CONFIG) -> PipelineConfig:
    """Load configuration from YAML file, or defaults if it does not exist."""
    config_path = Path(path)
    if not config_path.exists():
        log.warning(f"Config not found at {path}, using defaults")
        return PipelineConfig()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    return PipelineConfig.from_dict(data)
