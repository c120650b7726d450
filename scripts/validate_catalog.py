#!/usr/bin/env python3
"""Check a catalog file: channel configs, policy channel references, silence matchers.

Usage::

    python scripts/validate_catalog.py config/catalog.yaml

Exits non-zero when any problem is found.
"""

from __future__ import annotations

import argparse
import sys

from pydantic import ValidationError

from pgalert.alerting.dispatcher import NotificationDispatcher
from pgalert.alerting.suppression import SuppressionEvaluator
from pgalert.core.config import load_settings
from pgalert.storage.catalog import Catalog, load_catalog
from pgalert.storage.memory import InMemoryAlertStore


def find_problems(catalog: Catalog, evaluator: SuppressionEvaluator) -> list[str]:
    dispatcher = NotificationDispatcher(store=InMemoryAlertStore(), transports={})
    problems: list[str] = []

    for channel in catalog.channels:
        for error in dispatcher.validate_channel_config(channel):
            problems.append(f"channel {channel.name!r}: {error}")

    for policy_id, refs in catalog.dangling_channel_refs().items():
        problems.append(f"policy {policy_id}: unknown channel ids {refs}")

    for policy in catalog.policies:
        orders = [t.tier_order for t in policy.tiers]
        if orders and orders != list(range(1, len(orders) + 1)):
            problems.append(f"policy {policy.name!r}: tier orders {orders} have gaps")

    for silence in catalog.silences:
        if silence.end_time <= silence.start_time:
            problems.append(f"silence {silence.name!r}: end_time is not after start_time")
        for matcher in silence.matchers:
            for error in evaluator.validate_matcher(matcher):
                problems.append(f"silence {silence.name!r}: {error}")

    return problems


def main() -> None:
    parser = argparse.ArgumentParser(description="Validate an alerting catalog file.")
    parser.add_argument("catalog", help="Path to the catalog YAML")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    args = parser.parse_args()

    settings = load_settings(args.config)
    try:
        catalog = load_catalog(args.catalog)
    except ValidationError as exc:
        print(f"catalog does not parse:\n{exc}", file=sys.stderr)
        sys.exit(2)

    problems = find_problems(catalog, SuppressionEvaluator(settings.suppression))
    for problem in problems:
        print(problem)
    print(
        f"{len(catalog.channels)} channels, {len(catalog.policies)} policies, "
        f"{len(catalog.silences)} silences: {len(problems)} problem(s)"
    )
    sys.exit(1 if problems else 0)


if __name__ == "__main__":
    main()
