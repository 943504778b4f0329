"""
Repair of sessions flagged by the validator.

- duplicate pair: delete the session with the larger id
- extreme duration: delete
- night-time long session: truncate to the night cap
- package override with a shrink ratio: shrink by that ratio

Aggregates are not touched here; callers re-aggregate RepairResult.dates.
"""

import logging

from .anomaly import NIGHT_REASON, EXTREME_REASON, SuspiciousSessionDetector
from .db import UsageDB
from .models import RepairAction, RepairResult, ValidationReport

log = logging.getLogger("usageledger.repair")


class RepairEngine:

    def __init__(self, db: UsageDB, detector: SuspiciousSessionDetector,
                 night_session_cap_sec: int = 1800, extreme_duration_sec: int = 7200):
        self.db = db
        self.detector = detector
        self.night_session_cap_sec = night_session_cap_sec
        self.extreme_duration_sec = extreme_duration_sec

    def repair(self, reports: list[ValidationReport]) -> RepairResult:
        result = RepairResult()
        handled = set()

        for report in reports:
            for dup in report.duplicate_sessions:
                victim = max(dup.session_id1, dup.session_id2)
                if victim in handled:
                    continue
                handled.add(victim)
                session = self.db.get_raw_session(victim)
                if session is None:
                    continue
                self.db.delete_raw_session(victim)
                self._record(result, RepairAction(
                    victim, session.package_name, 'delete_duplicate',
                    session.duration_sec, 0, session.date))

            for sus in report.suspicious_sessions:
                if sus.session_id in handled:
                    continue
                handled.add(sus.session_id)
                session = self.db.get_raw_session(sus.session_id)
                if session is None:
                    continue
                action = self._repair_suspicious(session, sus.reasons)
                if action:
                    self._record(result, action)

        log.info(f"Repair complete: {result.duplicates_removed} duplicates removed, "
                 f"{result.sessions_deleted} deleted, {result.sessions_truncated} truncated, "
                 f"{result.sessions_shrunk} shrunk")
        return result

    def _repair_suspicious(self, session, reasons: list[str]):
        duration = session.duration_sec

        if EXTREME_REASON in reasons or duration > self.extreme_duration_sec:
            self.db.delete_raw_session(session.id)
            return RepairAction(session.id, session.package_name, 'delete',
                                duration, 0, session.date)

        if NIGHT_REASON in reasons:
            capped = min(duration, self.night_session_cap_sec)
            if capped < duration:
                return self._shorten(session, capped, 'truncate')

        rule = self.detector.package_rule(session.package_name)
        if rule is not None and rule.shrink_ratio and duration > rule.max_sec:
            return self._shorten(session, int(duration * rule.shrink_ratio), 'shrink')

        log.debug(f"No repair rule applies to session {session.id} ({', '.join(reasons)})")
        return None

    def _shorten(self, session, new_duration: int, action: str) -> RepairAction:
        new_end = session.start_time + new_duration * 1000
        self.db.update_raw_session_end(session.id, new_end, new_duration)
        return RepairAction(session.id, session.package_name, action,
                            session.duration_sec, new_duration, session.date)

    def _record(self, result: RepairResult, action: RepairAction):
        result.actions.append(action)
        log.info(f"Repair {action.action}: {action.package_name} session {action.session_id} "
                 f"{action.before_sec}s -> {action.after_sec}s")
