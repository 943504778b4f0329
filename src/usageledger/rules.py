"""
Category rule table for usageledger.

Maps a package identifier to a category name and an "excluded from
statistics" flag. The table is an ordered list of MatchRule entries: rules
are evaluated by ascending priority (then insertion order) and the first
match wins. The default table is built from the package sets below; a YAML
file can replace or extend it.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

log = logging.getLogger("usageledger.rules")

# Category names used by the default table
ENTERTAINMENT = 'entertainment'
LEARNING = 'learning'
FITNESS = 'fitness'

DEFAULT_CATEGORY = ENTERTAINMENT

# Priorities, most specific first
PRIORITY_SELF = 10
PRIORITY_OFFLINE = 20
PRIORITY_EXCLUDED_EXACT = 30
PRIORITY_EXCLUDED_HEURISTIC = 40
PRIORITY_INCLUDED_EXACT = 50

RULE_KINDS = ('exact', 'prefix', 'suffix', 'contains', 'regex', 'offline')

APP_PACKAGES = {
    'com.usageledger.app',
    'com.usageledger.app.gplay',
}

# Synthetic packages written for offline activities: <prefix><token>
OFFLINE_PREFIX = 'com.usageledger.offline.'
OFFLINE_TOKENS = {
    'entertainment': ENTERTAINMENT,
    'learning': LEARNING,
    'fitness': FITNESS,
}

LAUNCHER_APPS = {
    'com.google.android.apps.nexuslauncher',
    'com.android.launcher',
    'com.android.launcher3',
    'com.miui.home',
    'com.huawei.android.launcher',
    'com.oppo.launcher',
    'com.vivo.launcher',
    'com.oneplus.launcher',
    'com.sec.android.app.launcher',
    'com.sonymobile.home',
    'com.lge.launcher2',
    'com.asus.launcher',
    'com.bbk.launcher2',
}

SYSTEM_CORE_APPS = {
    'android',
    'com.android.settings',
    'com.android.systemui',
    'com.android.phone',
    'com.android.contacts',
    'com.android.mms',
    'com.android.dialer',
    'com.android.calculator2',
    'com.android.calendar',
    'com.android.camera',
    'com.android.camera2',
    'com.android.gallery3d',
    'com.android.music',
    'com.android.filemanager',
    'com.android.documentsui',
    'com.android.packageinstaller',
    'com.android.vending',
    'com.android.shell',
    'com.android.webview',
    'com.google.android.webview',
    'com.google.android.gms',
    'com.google.android.gsf',
    'com.google.android.permissioncontroller',
    'com.google.android.packageinstaller',
    'com.google.android.marvin.talkback',
    'com.google.android.apps.wellbeing',
    'com.google.android.calendar',
}

# Vendor system packages, enumerated per manufacturer
VENDOR_SYSTEM_APPS = {
    'xiaomi': {
        'com.miui.securitycenter',
        'com.miui.cleanmaster',
        'com.miui.analytics',
        'com.miui.backup',
        'com.miui.powerkeeper',
        'com.miui.systemAdSolution',
        'com.miui.personalassistant',
        'com.miui.voiceassist',
        'com.miui.notification',
        'com.xiaomi.account',
        'com.xiaomi.market',
        'com.xiaomi.xmsf',
        'com.xiaomi.joyose',
    },
    'huawei': {
        'com.huawei.systemmanager',
        'com.huawei.android.pushagent',
        'com.huawei.hwid',
        'com.huawei.appmarket',
        'com.huawei.intelligent',
        'com.huawei.search',
        'com.huawei.powergenie',
        'com.huawei.parentcontrol',
        'com.hihonor.intelligent',
        'com.hihonor.parentcontrol',
    },
    'samsung': {
        'com.samsung.android.app.spage',
        'com.samsung.android.bixby.agent',
        'com.samsung.android.bixby.service',
        'com.samsung.android.app.galaxyfinder',
        'com.samsung.android.lool',
        'com.samsung.android.wellbeing',
        'com.samsung.android.incallui',
        'com.samsung.android.messaging',
        'com.samsung.knox.securefolder',
    },
    'vivo': {
        'com.vivo.abe',
        'com.vivo.pushservice',
        'com.vivo.permissionmanager',
        'com.vivo.globalsearch',
        'com.vivo.hiboard',
        'com.iqoo.secure',
        'com.bbk.account',
    },
    'oppo': {
        'com.oppo.safe',
        'com.oppo.operationManual',
        'com.oppo.usercenter',
        'com.oppo.safecenter',
        'com.oppo.oppopush',
        'com.oppo.wellbeing',
        'com.oppo.usagestats',
        'com.oneplus.account',
    },
}

# OS-vendor heuristics for packages that are not individually enumerated.
# Each entry is a regex searched against the package name.
SYSTEM_HEURISTICS = [
    (r'^com\.android\.(internal|providers|server|bluetooth|dreams|wallpaper'
     r'|keychain|provision|cellbroadcast|inputmethod|printspooler|role|theme)\b',
     'Android platform component'),
    (r'^com\.google\.android\.(gms|gsf|ext\.|adservices|projection|networkstack'
     r'|bluetooth|hotspot2|onetimeinitializer|partnersetup|configupdater)',
     'Google system service'),
    (r'^com\.google\.mainline\.', 'Google mainline module'),
    (r'\.auto_generated_|\.overlay\.', 'runtime resource overlay'),
    (r'^com\.(android|google\.android)\..*(installer|resolver|manager)$',
     'platform installer or manager'),
    (r'^com\.android\..*\.(system|internal|config)', 'Android system keyword'),
]

ENTERTAINMENT_APPS = {
    'com.google.android.youtube',
    'tv.danmaku.bili',
    'com.ss.android.ugc.aweme',
    'com.smile.gifmaker',
    'com.tencent.qqmusic',
    'com.netease.cloudmusic',
    'com.spotify.music',
    'com.instagram.android',
    'com.facebook.katana',
    'com.twitter.android',
    'com.sina.weibo',
    'com.zhihu.android',
    'com.tencent.tmgp.sgame',
    'com.miHoYo.GenshinImpact',
    'com.taobao.taobao',
    'com.tencent.mm',
    'com.tencent.mobileqq',
    'com.whatsapp',
    'com.tencent.qqlive',
    'com.reddit.frontpage',
    'com.discord',
    'com.netflix.mediaclient',
}

LEARNING_APPS = {
    'com.duolingo',
    'com.youdao.dict',
    'com.chaoxing.mobile',
    'org.coursera.android',
    'com.udemy.android',
    'com.khanacademy.android',
    'org.edx.mobile',
    'com.anki.android',
    'com.android.chrome',
    'com.google.android.googlequicksearchbox',
    'com.google.android.apps.translate',
    'com.google.android.apps.classroom',
    'com.google.android.apps.books',
    'com.google.android.keep',
}

FITNESS_APPS = {
    'com.nike.ntc',
    'com.strava',
    'com.runtastic.android',
    'com.google.android.apps.fitness',
    'com.samsung.android.app.health',
    'com.xiaomi.hm.health',
    'com.huawei.health',
    'com.keep.app',
    'com.fitbit.FitbitMobile',
    'com.garmin.android.apps.connectmobile',
    'com.MyFitnessPal.Android',
}

# Work and office apps count as learning
WORK_APPS = {
    'com.microsoft.office.word',
    'com.microsoft.office.excel',
    'com.microsoft.office.powerpoint',
    'com.microsoft.teams',
    'com.wps.moffice',
    'com.notion.id',
    'com.evernote',
    'com.slack',
    'com.alibaba.android.rimet',
    'com.ss.android.lark',
    'com.tencent.wework',
    'com.google.android.apps.docs.editors.docs',
    'com.google.android.apps.docs.editors.sheets',
}


@dataclass
class MatchRule:
    """A single rule: when pattern matches, yield (category, excluded)."""
    kind: str
    pattern: str
    category: Optional[str] = DEFAULT_CATEGORY
    excluded: bool = False
    priority: int = 100
    name: str = ""
    _regex: Optional[re.Pattern] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.kind not in RULE_KINDS:
            raise ValueError(f"Unknown rule kind: {self.kind}")
        if self.kind == 'regex':
            try:
                self._regex = re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"Invalid regex pattern {self.pattern!r}: {e}") from e

    def matches(self, package_name: str) -> bool:
        if self.kind == 'exact':
            return package_name == self.pattern
        if self.kind in ('prefix', 'offline'):
            return package_name.startswith(self.pattern)
        if self.kind == 'suffix':
            return package_name.endswith(self.pattern)
        if self.kind == 'contains':
            return self.pattern in package_name
        return self._regex.search(package_name) is not None

    def category_for(self, package_name: str) -> str:
        """Category yielded for a matching package.

        Offline rules take the category from the token after the prefix.
        """
        if self.kind != 'offline':
            return self.category
        token = package_name[len(self.pattern):]
        for key, category in OFFLINE_TOKENS.items():
            if key in token:
                return category
        return self.category or DEFAULT_CATEGORY

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'pattern': self.pattern,
            'category': self.category,
            'excluded': self.excluded,
            'priority': self.priority,
            'name': self.name,
        }


@dataclass
class RuleTable:
    """Ordered, versioned set of match rules."""
    rules: list[MatchRule] = field(default_factory=list)
    version: str = "1"
    default_category: str = DEFAULT_CATEGORY

    def __post_init__(self):
        # Stable sort keeps insertion order within a priority
        self.rules = sorted(self.rules, key=lambda r: r.priority)

    def match(self, package_name: str) -> Optional[MatchRule]:
        """Return the first rule that matches package_name."""
        for rule in self.rules:
            if rule.matches(package_name):
                return rule
        return None

    def extended(self, rules: list[MatchRule], version: str = None) -> "RuleTable":
        """Return a new table with extra rules merged in."""
        return RuleTable(self.rules + list(rules),
                         version=version or self.version,
                         default_category=self.default_category)

    def __len__(self):
        return len(self.rules)


def _exact_rules(packages, category, excluded, priority, name) -> list[MatchRule]:
    return [MatchRule('exact', pkg, category, excluded, priority, name)
            for pkg in sorted(packages)]


def default_rule_table(app_packages: set = None) -> RuleTable:
    """Build the built-in rule table."""
    rules = []
    rules += _exact_rules(app_packages or APP_PACKAGES, DEFAULT_CATEGORY, False,
                          PRIORITY_SELF, 'tracking app')
    rules.append(MatchRule('offline', OFFLINE_PREFIX, DEFAULT_CATEGORY, False,
                           PRIORITY_OFFLINE, 'offline activity'))
    rules += _exact_rules(LAUNCHER_APPS, DEFAULT_CATEGORY, True,
                          PRIORITY_EXCLUDED_EXACT, 'launcher')
    rules += _exact_rules(SYSTEM_CORE_APPS, DEFAULT_CATEGORY, True,
                          PRIORITY_EXCLUDED_EXACT, 'system core')
    for vendor, packages in sorted(VENDOR_SYSTEM_APPS.items()):
        rules += _exact_rules(packages, DEFAULT_CATEGORY, True,
                              PRIORITY_EXCLUDED_EXACT, f'{vendor} system')
    for pattern, name in SYSTEM_HEURISTICS:
        rules.append(MatchRule('regex', pattern, DEFAULT_CATEGORY, True,
                               PRIORITY_EXCLUDED_HEURISTIC, name))
    rules += _exact_rules(ENTERTAINMENT_APPS, ENTERTAINMENT, False,
                          PRIORITY_INCLUDED_EXACT, 'entertainment')
    rules += _exact_rules(LEARNING_APPS, LEARNING, False,
                          PRIORITY_INCLUDED_EXACT, 'learning')
    rules += _exact_rules(FITNESS_APPS, FITNESS, False,
                          PRIORITY_INCLUDED_EXACT, 'fitness')
    rules += _exact_rules(WORK_APPS, LEARNING, False,
                          PRIORITY_INCLUDED_EXACT, 'work')
    return RuleTable(rules, version="builtin-1")


def rules_from_dicts(entries: list[dict]) -> list[MatchRule]:
    """Build MatchRules from plain dicts (as loaded from YAML)."""
    rules = []
    for entry in entries:
        if 'pattern' not in entry:
            raise ValueError(f"Rule without pattern: {entry}")
        rules.append(MatchRule(
            kind=entry.get('kind', 'exact'),
            pattern=str(entry['pattern']),
            category=entry.get('category', DEFAULT_CATEGORY),
            excluded=bool(entry.get('excluded', False)),
            priority=int(entry.get('priority', 100)),
            name=entry.get('name', ''),
        ))
    return rules


def load_rule_table(path: str, base: RuleTable = None) -> RuleTable:
    """Load a rule table from YAML.

    The file holds `version`, `rules` (list of rule dicts) and optionally
    `extends_builtin: true` to merge into the built-in table instead of
    replacing it.
    """
    rules_path = Path(path)
    with open(rules_path) as f:
        data = yaml.safe_load(f) or {}

    rules = rules_from_dicts(data.get('rules') or [])
    version = str(data.get('version', rules_path.stem))
    if data.get('extends_builtin', False):
        if base is None:
            base = default_rule_table()
        table = base.extended(rules, version=version)
    else:
        table = RuleTable(rules, version=version,
                          default_category=data.get('default_category', DEFAULT_CATEGORY))
    log.info(f"Loaded rule table {version} from {path} ({len(table)} rules)")
    return table
