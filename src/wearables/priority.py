"""Source priority resolution.

Several sources may report the same metric for the same day (a Whoop strap
and a Garmin watch via Terra, say).  Each row is stamped with its
(priority, confidence) at write time; at read time ``SourcePolicy.resolve``
picks one row per (metric, date):

1. Lowest ``priority`` wins.
2. Ties go to the higher ``confidence_score``.
3. Remaining ties use the metric's ``tie_break`` (latest write by default).
4. If the metric sets ``override_if_longer_by``, a lower-ranked row whose
   value exceeds the winner by at least that margin takes over.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Iterable

from src.wearables.base import UnifiedMetric
from src.wearables.config_loader import (
    SourcePolicyConfig,
    SourceRank,
    get_source_policy_config,
)

logger = logging.getLogger("pulsebridge.wearables.priority")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class SourcePolicy:
    """Rank and resolve unified metric rows across sources."""

    def __init__(self, config: SourcePolicyConfig | None = None) -> None:
        self._config = config or get_source_policy_config()

    @property
    def config(self) -> SourcePolicyConfig:
        return self._config

    def rank(self, metric_name: str, source: str) -> SourceRank:
        return self._config.rank(metric_name, source)

    def resolve(self, rows: list[UnifiedMetric]) -> UnifiedMetric | None:
        """Pick the winning row among candidates for a single (metric, date).

        Args:
            rows: Candidate rows, all for the same metric and date.

        Returns:
            The preferred row, or None if ``rows`` is empty.
        """
        if not rows:
            return None

        best_rank = min((r.priority, -r.confidence_score) for r in rows)
        contenders = [r for r in rows if (r.priority, -r.confidence_score) == best_rank]
        policy = self._config.metric_policy(rows[0].metric_name)

        if policy.tie_break == "max_value":
            winner = max(contenders, key=lambda r: r.value)
        elif policy.tie_break == "min_value":
            winner = min(contenders, key=lambda r: r.value)
        else:
            winner = max(contenders, key=lambda r: r.updated_at or _EPOCH)

        margin = policy.override_if_longer_by
        if margin is not None:
            longest = max(rows, key=lambda r: r.value)
            if longest.value - winner.value >= margin:
                logger.debug(
                    "%s on %s: %s (%.2f) overrides %s (%.2f)",
                    winner.metric_name,
                    winner.measurement_date,
                    longest.source,
                    longest.value,
                    winner.source,
                    winner.value,
                )
                winner = longest

        return winner

    def resolve_all(self, rows: Iterable[UnifiedMetric]) -> list[UnifiedMetric]:
        """Resolve a mixed batch into one row per (metric, date), ordered by date then name."""
        groups: dict[tuple[date, str], list[UnifiedMetric]] = defaultdict(list)
        for row in rows:
            groups[(row.measurement_date, row.metric_name)].append(row)

        resolved: list[UnifiedMetric] = []
        for key in sorted(groups):
            winner = self.resolve(groups[key])
            if winner is not None:
                resolved.append(winner)
        return resolved
