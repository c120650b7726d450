"""Tests for the catalog validation script."""

from __future__ import annotations

import datetime

from pgalert.alerting.suppression import SuppressionEvaluator
from pgalert.core.types import (
    AlertSilence,
    ChannelType,
    EscalationPolicy,
    EscalationTier,
    Matcher,
    MatchKind,
    NotificationChannel,
)
from pgalert.storage.catalog import Catalog

T0 = datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.UTC)


def _catalog(**kw: object) -> Catalog:
    defaults: dict[str, object] = {
        "channels": [
            NotificationChannel(
                id=1,
                name="ops",
                channel_type=ChannelType.SLACK,
                config={"webhook_url": "https://hooks.slack.com/services/T/B/X"},
            )
        ],
        "policies": [
            EscalationPolicy(
                id=1, name="default", tiers=[EscalationTier(tier_order=1, channel_ids=[1])]
            )
        ],
    }
    defaults.update(kw)
    return Catalog(**defaults)  # type: ignore[arg-type]


class TestFindProblems:
    def test_clean_catalog(self) -> None:
        from scripts.validate_catalog import find_problems

        assert find_problems(_catalog(), SuppressionEvaluator()) == []

    def test_reports_each_problem(self) -> None:
        from scripts.validate_catalog import find_problems

        catalog = _catalog(
            channels=[
                NotificationChannel(
                    id=1, name="pager", channel_type=ChannelType.PAGERDUTY,
                    config={"routing_key": "short"},
                )
            ],
            policies=[
                EscalationPolicy(
                    id=1,
                    name="gappy",
                    tiers=[
                        EscalationTier(tier_order=1, channel_ids=[1]),
                        EscalationTier(tier_order=3, channel_ids=[7]),
                    ],
                )
            ],
            silences=[
                AlertSilence(
                    name="broken",
                    start_time=T0,
                    end_time=T0,
                    matchers=[Matcher(field="type", kind=MatchKind.REGEX, value="([")],
                )
            ],
        )
        problems = find_problems(catalog, SuppressionEvaluator())
        assert any(p.startswith("channel 'pager'") for p in problems)
        assert "policy 1: unknown channel ids [7]" in problems
        assert any("have gaps" in p for p in problems)
        assert any("end_time is not after start_time" in p for p in problems)
        assert sum(1 for p in problems if p.startswith("silence 'broken'")) == 2
