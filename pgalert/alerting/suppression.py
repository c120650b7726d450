"""Suppression evaluator — silences and maintenance windows.

Evaluation is pure: it reads the alert and the rules it is handed and never
touches rule state, so it can run any number of times per cycle.
"""

from __future__ import annotations

import datetime
import functools
import regex
from collections.abc import Iterable

import structlog

from pgalert.core.config import RegexFailureMode, SuppressionConfig
from pgalert.core.types import (
    ActiveAlert,
    AlertSilence,
    MaintenanceWindow,
    Matcher,
    MatchKind,
)
from pgalert.alerting.types import SuppressionDecision

logger = structlog.get_logger(__name__)

# Accepted matcher field spellings (compared with "_" and "-" stripped, lower-case).
_FIELD_ALIASES: dict[str, str] = {
    "type": "alert_type",
    "alerttype": "alert_type",
    "severity": "severity",
    "alertseverity": "severity",
    "instance": "instance_name",
    "instancename": "instance_name",
    "message": "message",
    "alertmessage": "message",
    "alertid": "alert_id",
}


class RegexLimitError(ValueError):
    """A pattern or subject exceeds the configured evaluation bounds."""


def _field_key(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


def resolve_field(name: str) -> str | None:
    """Map a matcher field name to an ``ActiveAlert`` attribute, if known."""
    return _FIELD_ALIASES.get(_field_key(name))


def field_value(alert: ActiveAlert, name: str) -> str:
    attr = resolve_field(name)
    if attr is None:
        return ""
    return getattr(alert, attr) or ""


@functools.lru_cache(maxsize=512)
def _compile(pattern: str) -> regex.Pattern[str]:
    return regex.compile(pattern)


class SuppressionEvaluator:
    """Decides whether notifications for an alert must be withheld."""

    def __init__(self, config: SuppressionConfig | None = None) -> None:
        self._config = config or SuppressionConfig()

    @property
    def failure_mode(self) -> RegexFailureMode:
        return self._config.regex_failure_mode

    # ── Matchers ────────────────────────────────────────────────

    def _regex_fullmatch(self, pattern: str, subject: str) -> bool:
        if len(pattern) > self._config.max_regex_length:
            raise RegexLimitError(
                f"pattern length {len(pattern)} exceeds {self._config.max_regex_length}"
            )
        if len(subject) > self._config.max_subject_length:
            raise RegexLimitError(
                f"subject length {len(subject)} exceeds {self._config.max_subject_length}"
            )
        match = _compile(pattern).fullmatch(subject, timeout=self._config.regex_timeout_secs)
        return match is not None

    def matcher_matches(self, matcher: Matcher, alert: ActiveAlert) -> bool:
        actual = field_value(alert, matcher.field)
        expected = matcher.value
        try:
            if matcher.kind == MatchKind.EXACT:
                return actual == expected
            if matcher.kind == MatchKind.NOT_EQUALS:
                return actual != expected
            if matcher.kind == MatchKind.CONTAINS:
                return expected.lower() in actual.lower()
            return self._regex_fullmatch(expected, actual)
        except (regex.error, RegexLimitError, TimeoutError) as exc:
            logger.warning(
                "silence_matcher_error",
                field=matcher.field,
                pattern=expected[:100],
                error=str(exc),
                failure_mode=self.failure_mode.value,
            )
            return self.failure_mode == RegexFailureMode.SUPPRESSED

    def validate_matcher(self, matcher: Matcher) -> list[str]:
        """Problems that would make *matcher* misbehave at evaluation time."""
        errors: list[str] = []
        if resolve_field(matcher.field) is None:
            errors.append(f"unknown field {matcher.field!r}")
        if matcher.kind == MatchKind.REGEX:
            if len(matcher.value) > self._config.max_regex_length:
                errors.append(
                    f"regex longer than {self._config.max_regex_length} characters"
                )
            else:
                try:
                    _compile(matcher.value)
                except regex.error as exc:
                    errors.append(f"invalid regex {matcher.value!r}: {exc}")
        return errors

    # ── Rules ───────────────────────────────────────────────────

    def silence_matches(
        self, silence: AlertSilence, alert: ActiveAlert, now: datetime.datetime
    ) -> bool:
        if not silence.is_active(now):
            return False
        return all(self.matcher_matches(m, alert) for m in silence.matchers)

    @staticmethod
    def window_matches(
        window: MaintenanceWindow, alert: ActiveAlert, now: datetime.datetime
    ) -> bool:
        if not window.is_active(now):
            return False
        if window.instance_filter and alert.instance_name not in window.instance_filter:
            return False
        if window.alert_type_filter and alert.alert_type not in window.alert_type_filter:
            return False
        return True

    def matches_any_active_silence(
        self,
        alert: ActiveAlert,
        now: datetime.datetime,
        silences: Iterable[AlertSilence],
    ) -> AlertSilence | None:
        for silence in silences:
            if self.silence_matches(silence, alert, now):
                return silence
        return None

    def matches_any_active_maintenance_window(
        self,
        alert: ActiveAlert,
        now: datetime.datetime,
        windows: Iterable[MaintenanceWindow],
    ) -> MaintenanceWindow | None:
        for window in windows:
            if self.window_matches(window, alert, now):
                return window
        return None

    def evaluate(
        self,
        alert: ActiveAlert,
        now: datetime.datetime,
        silences: Iterable[AlertSilence] = (),
        windows: Iterable[MaintenanceWindow] = (),
    ) -> SuppressionDecision:
        silence = self.matches_any_active_silence(alert, now, silences)
        if silence is not None:
            return SuppressionDecision(suppressed=True, silence=silence)
        window = self.matches_any_active_maintenance_window(alert, now, windows)
        if window is not None:
            return SuppressionDecision(suppressed=True, window=window)
        return SuppressionDecision()

    def is_suppressed(
        self,
        alert: ActiveAlert,
        now: datetime.datetime,
        silences: Iterable[AlertSilence] = (),
        windows: Iterable[MaintenanceWindow] = (),
    ) -> bool:
        return self.evaluate(alert, now, silences, windows).suppressed
