"""Tests for SuppressionEvaluator — matcher semantics, windows, regex failure modes."""

from __future__ import annotations

import datetime
import time

import pytest

from pgalert.core.config import RegexFailureMode, SuppressionConfig
from pgalert.core.types import (
    ActiveAlert,
    AlertSilence,
    MaintenanceWindow,
    Matcher,
    MatchKind,
)
from pgalert.alerting import suppression
from pgalert.alerting.suppression import SuppressionEvaluator, field_value, resolve_field

T0 = datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.UTC)
HOUR = datetime.timedelta(hours=1)


# ── Helpers ─────────────────────────────────────────────────────


def _alert(**kw: object) -> ActiveAlert:
    defaults: dict[str, object] = {
        "alert_id": "REPLICATION_LAG-replica-2",
        "alert_type": "REPLICATION_LAG",
        "severity": "WARNING",
        "message": "Replica is 120s behind primary",
        "instance_name": "replica-2",
        "fired_at": T0,
    }
    defaults.update(kw)
    return ActiveAlert(**defaults)  # type: ignore[arg-type]


def _silence(*matchers: Matcher, **kw: object) -> AlertSilence:
    defaults: dict[str, object] = {
        "id": 1,
        "name": "test",
        "start_time": T0 - HOUR,
        "end_time": T0 + HOUR,
        "matchers": list(matchers),
    }
    defaults.update(kw)
    return AlertSilence(**defaults)  # type: ignore[arg-type]


def _window(**kw: object) -> MaintenanceWindow:
    defaults: dict[str, object] = {
        "id": 1,
        "name": "maint",
        "start_time": T0 - HOUR,
        "end_time": T0 + HOUR,
    }
    defaults.update(kw)
    return MaintenanceWindow(**defaults)  # type: ignore[arg-type]


def _m(field: str, value: str, kind: MatchKind = MatchKind.EXACT) -> Matcher:
    return Matcher(field=field, kind=kind, value=value)


# ── Field resolution ────────────────────────────────────────────


class TestFieldResolution:
    @pytest.mark.parametrize(
        "name", ["alert_type", "alertType", "type", "AlertType"]
    )
    def test_alert_type_aliases(self, name: str) -> None:
        assert resolve_field(name) == "alert_type"

    @pytest.mark.parametrize("name", ["instance", "instance_name", "instanceName"])
    def test_instance_aliases(self, name: str) -> None:
        assert resolve_field(name) == "instance_name"

    def test_unknown_field(self) -> None:
        assert resolve_field("colour") is None
        assert field_value(_alert(), "colour") == ""

    def test_missing_value_is_empty_string(self) -> None:
        assert field_value(_alert(instance_name=None), "instance") == ""


# ── Matchers ────────────────────────────────────────────────────


class TestMatchers:
    def test_exact_is_case_sensitive(self) -> None:
        ev = SuppressionEvaluator()
        assert ev.matcher_matches(_m("alert_type", "REPLICATION_LAG"), _alert())
        assert not ev.matcher_matches(_m("alert_type", "replication_lag"), _alert())

    def test_not_equals(self) -> None:
        ev = SuppressionEvaluator()
        assert ev.matcher_matches(_m("severity", "CRITICAL", MatchKind.NOT_EQUALS), _alert())
        assert not ev.matcher_matches(_m("severity", "WARNING", MatchKind.NOT_EQUALS), _alert())

    def test_contains_is_case_insensitive(self) -> None:
        ev = SuppressionEvaluator()
        assert ev.matcher_matches(_m("message", "BEHIND", MatchKind.CONTAINS), _alert())
        assert not ev.matcher_matches(_m("message", "ahead", MatchKind.CONTAINS), _alert())

    def test_regex_is_anchored(self) -> None:
        ev = SuppressionEvaluator()
        assert ev.matcher_matches(_m("instance", r"replica-\d+", MatchKind.REGEX), _alert())
        assert not ev.matcher_matches(_m("instance", r"replica", MatchKind.REGEX), _alert())

    def test_exact_against_missing_field(self) -> None:
        ev = SuppressionEvaluator()
        assert ev.matcher_matches(_m("instance", ""), _alert(instance_name=None))


# ── Silences ────────────────────────────────────────────────────


class TestSilences:
    def test_all_matchers_must_match(self) -> None:
        ev = SuppressionEvaluator()
        both = _silence(_m("alert_type", "REPLICATION_LAG"), _m("instance", "replica-2"))
        one = _silence(_m("alert_type", "REPLICATION_LAG"), _m("instance", "replica-3"))
        assert ev.silence_matches(both, _alert(), T0)
        assert not ev.silence_matches(one, _alert(), T0)

    def test_no_matchers_matches_everything(self) -> None:
        assert SuppressionEvaluator().silence_matches(_silence(), _alert(), T0)

    def test_inactive_silence_ignored(self) -> None:
        ev = SuppressionEvaluator()
        expired = _silence(end_time=T0)
        pending = _silence(start_time=T0 + datetime.timedelta(seconds=1))
        assert not ev.silence_matches(expired, _alert(), T0)
        assert not ev.silence_matches(pending, _alert(), T0)

    def test_matches_any_returns_first_hit(self) -> None:
        ev = SuppressionEvaluator()
        miss = _silence(_m("alert_type", "OTHER"), id=1)
        hit = _silence(_m("alert_type", "REPLICATION_LAG"), id=2)
        found = ev.matches_any_active_silence(_alert(), T0, [miss, hit])
        assert found is not None and found.id == 2


# ── Maintenance windows ─────────────────────────────────────────


class TestMaintenanceWindows:
    def test_empty_filters_match_all(self) -> None:
        assert SuppressionEvaluator.window_matches(_window(), _alert(), T0)

    def test_instance_filter(self) -> None:
        assert SuppressionEvaluator.window_matches(
            _window(instance_filter=["replica-2"]), _alert(), T0
        )
        assert not SuppressionEvaluator.window_matches(
            _window(instance_filter=["primary"]), _alert(), T0
        )

    def test_alert_type_filter(self) -> None:
        assert not SuppressionEvaluator.window_matches(
            _window(alert_type_filter=["HIGH_CPU"]), _alert(), T0
        )

    def test_inactive_window(self) -> None:
        assert not SuppressionEvaluator.window_matches(_window(end_time=T0), _alert(), T0)


# ── Evaluate ────────────────────────────────────────────────────


class TestEvaluate:
    def test_silence_reported(self) -> None:
        decision = SuppressionEvaluator().evaluate(_alert(), T0, [_silence(id=5)], [])
        assert decision.suppressed
        assert decision.reason == "silence:5"

    def test_window_reported(self) -> None:
        decision = SuppressionEvaluator().evaluate(_alert(), T0, [], [_window(id=3)])
        assert decision.suppressed
        assert decision.reason == "maintenance_window:3"

    def test_not_suppressed(self) -> None:
        ev = SuppressionEvaluator()
        silences = [_silence(_m("alert_type", "OTHER"))]
        assert not ev.is_suppressed(_alert(), T0, silences, [])
        assert ev.evaluate(_alert(), T0).reason == ""

    def test_evaluation_is_repeatable(self) -> None:
        ev = SuppressionEvaluator()
        silence = _silence(_m("instance", r"replica-\d", MatchKind.REGEX))
        first = ev.is_suppressed(_alert(), T0, [silence])
        second = ev.is_suppressed(_alert(), T0, [silence])
        assert first is second is True
        assert silence.end_time == T0 + HOUR


# ── Regex failures ──────────────────────────────────────────────


class TestRegexFailureModes:
    def test_malformed_regex_not_suppressed_by_default(self) -> None:
        ev = SuppressionEvaluator()
        silence = _silence(_m("alert_type", "([unclosed", MatchKind.REGEX))
        assert not ev.is_suppressed(_alert(), T0, [silence])

    def test_malformed_regex_suppressed_mode(self) -> None:
        ev = SuppressionEvaluator(SuppressionConfig(regex_failure_mode=RegexFailureMode.SUPPRESSED))
        silence = _silence(_m("alert_type", "([unclosed", MatchKind.REGEX))
        assert ev.is_suppressed(_alert(), T0, [silence])

    def test_overlong_pattern_is_an_error(self) -> None:
        ev = SuppressionEvaluator(SuppressionConfig(max_regex_length=8))
        silence = _silence(_m("alert_type", "REPLICATION_.*", MatchKind.REGEX))
        assert not ev.is_suppressed(_alert(), T0, [silence])

    def test_overlong_subject_is_an_error(self) -> None:
        ev = SuppressionEvaluator(
            SuppressionConfig(
                max_subject_length=10, regex_failure_mode=RegexFailureMode.SUPPRESSED
            )
        )
        silence = _silence(_m("message", "nomatch", MatchKind.REGEX))
        assert ev.is_suppressed(_alert(), T0, [silence])

    def test_catastrophic_pattern_is_bounded(self) -> None:
        ev = SuppressionEvaluator(SuppressionConfig(regex_timeout_secs=0.05))
        silence = _silence(_m("alert_type", "(a+)+", MatchKind.REGEX))
        started = time.monotonic()
        assert not ev.is_suppressed(_alert(alert_type="a" * 40 + "!"), T0, [silence])
        assert time.monotonic() - started < 5

    def test_timeout_follows_failure_mode(self, monkeypatch: pytest.MonkeyPatch) -> None:
        class SlowPattern:
            def fullmatch(self, subject: str, timeout: float | None = None) -> None:
                raise TimeoutError("regex timed out")

        monkeypatch.setattr(suppression, "_compile", lambda pattern: SlowPattern())
        silence = _silence(_m("alert_type", "REPLICATION_.*", MatchKind.REGEX))

        lenient = SuppressionEvaluator()
        strict = SuppressionEvaluator(
            SuppressionConfig(regex_failure_mode=RegexFailureMode.SUPPRESSED)
        )
        assert not lenient.is_suppressed(_alert(), T0, [silence])
        assert strict.is_suppressed(_alert(), T0, [silence])

    def test_validate_matcher(self) -> None:
        ev = SuppressionEvaluator()
        assert ev.validate_matcher(_m("type", "[a-z]+", MatchKind.REGEX)) == []
        assert ev.validate_matcher(_m("type", "([", MatchKind.REGEX))
        assert ev.validate_matcher(_m("colour", "red"))
