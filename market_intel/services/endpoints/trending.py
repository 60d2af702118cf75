from __future__ import annotations

import os
from typing import Any

from market_intel.services import analytics, enrichment
from market_intel.services.endpoints.base import BaseEndpointService
from market_intel.services.models import TrendingOptions
from market_intel.services.validation import TIMEFRAMES


class TrendingProtocolsService(BaseEndpointService):
    endpoint = "market_trending"
    label = "trending"
    methodology = "weighted_growth_momentum_volume_composite"
    ttl_seconds = float(os.getenv("MI_TRENDING_TTL_SECONDS", "900"))

    def compute(self, options: TrendingOptions) -> dict[str, Any]:
        protocols, fetched_at = self._protocols()
        chains, _ = self._chains()
        filtered = analytics.filter_protocols(protocols, options.categories, options.chains, options.min_tvl)

        # Shortest window first; cache keys ignore the order timeframes were requested in.
        timeframes = [tf for tf in TIMEFRAMES if tf in options.timeframes]
        tables = [analytics.calculate_trending_scores(filtered, tf, options.limit) for tf in timeframes]
        by_timeframe: dict[str, list[dict[str, Any]]] = {tf: [] for tf in TIMEFRAMES}
        for timeframe, table in zip(timeframes, tables):
            by_timeframe[timeframe] = self._rows(table)
        lead = tables[0] if tables else []

        data = {
            "by_timeframe": by_timeframe,
            "overall_trending": self._rows(analytics.calculate_overall_trending(tables)),
            "emerging_protocols": self._rows(analytics.identify_emerging_protocols(filtered)),
            "momentum": {
                "accelerating": self._rows(analytics.accelerating_protocols(lead)),
                "decelerating": self._rows(analytics.decelerating_protocols(lead)),
            },
        }
        return self._envelope(
            data,
            fetched_at,
            analytics.data_coverage(protocols),
            intelligence=enrichment.trending_insights(tables, timeframes[0] if timeframes else "7d"),
            benchmarks=self._benchmarks(filtered, chains, self._historical()),
        )
