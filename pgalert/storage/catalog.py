"""Load administrator-owned configuration (policies, channels, rules) from YAML.

Example catalog::

    channels:
      - id: 1
        name: ops-slack
        channel_type: SLACK
        config: {webhook_url: "https://hooks.slack.com/services/T/B/X"}
        rate_limit_per_hour: 20
    policies:
      - id: 1
        name: default
        repeat_count: 2
        tiers:
          - {tier_order: 1, delay_minutes: 0, channel_ids: [1]}
          - {tier_order: 2, delay_minutes: 15, channel_ids: [1, 2]}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, Field

from pgalert.core.types import (
    AlertSilence,
    EscalationPolicy,
    MaintenanceWindow,
    NotificationChannel,
)
from pgalert.storage.interfaces import AlertStore

logger = structlog.get_logger(__name__)


class Catalog(BaseModel):
    """Everything the engine reads but does not own."""

    channels: list[NotificationChannel] = Field(default_factory=list)
    policies: list[EscalationPolicy] = Field(default_factory=list)
    silences: list[AlertSilence] = Field(default_factory=list)
    maintenance_windows: list[MaintenanceWindow] = Field(default_factory=list)

    def dangling_channel_refs(self) -> dict[int | None, list[int]]:
        """Policy id → channel ids referenced by a tier but not defined."""
        known = {c.id for c in self.channels}
        missing: dict[int | None, list[int]] = {}
        for policy in self.policies:
            refs = sorted(
                {cid for t in policy.tiers for cid in t.channel_ids if cid not in known}
            )
            if refs:
                missing[policy.id] = refs
        return missing


def load_catalog(path: str | Path) -> Catalog:
    """Parse a catalog YAML file. A missing or empty file yields an empty catalog."""
    catalog_path = Path(path)
    data: dict[str, Any] = {}
    if catalog_path.exists():
        with open(catalog_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw
    return Catalog(**data)


async def seed_store(store: AlertStore, catalog: Catalog) -> None:
    """Write every catalog entry into *store*."""
    for channel in catalog.channels:
        await store.save_channel(channel)
    for policy in catalog.policies:
        await store.save_policy(policy)
    for silence in catalog.silences:
        await store.save_silence(silence)
    for window in catalog.maintenance_windows:
        await store.save_window(window)

    for policy_id, refs in catalog.dangling_channel_refs().items():
        logger.warning("catalog_unknown_channels", policy_id=policy_id, channel_ids=refs)

    logger.info(
        "catalog_loaded",
        channels=len(catalog.channels),
        policies=len(catalog.policies),
        silences=len(catalog.silences),
        maintenance_windows=len(catalog.maintenance_windows),
    )
