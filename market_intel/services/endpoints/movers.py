from __future__ import annotations

import os
from typing import Any

from market_intel.services import analytics, enrichment
from market_intel.services.endpoints.base import BaseEndpointService
from market_intel.services.models import MoversData, MoversOptions


class MarketMoversService(BaseEndpointService):
    endpoint = "market_movers"
    label = "movers"
    methodology = "tvl_change_ranking_with_volatility_scoring"
    ttl_seconds = float(os.getenv("MI_MOVERS_TTL_SECONDS", "300"))

    def compute(self, options: MoversOptions) -> dict[str, Any]:
        protocols, fetched_at = self._protocols()
        movers = analytics.calculate_tvl_movers(protocols, options.timeframe, options.min_percent_change)
        limited = MoversData(gainers=movers.gainers[: options.limit], losers=movers.losers[: options.limit])
        high, low = analytics.volatility_protocols(protocols)

        data = {
            "timeframe": options.timeframe,
            "gainers": self._rows(limited.gainers),
            "losers": self._rows(limited.losers),
            "volatility": {"high": self._rows(high), "low": self._rows(low)},
        }
        coverage = analytics.data_coverage(protocols)
        if options.detail == "minimal":
            return self._envelope(data, fetched_at, coverage)
        chains, _ = self._chains()
        return self._envelope(
            data,
            fetched_at,
            coverage,
            intelligence=enrichment.movement_insights(limited),
            benchmarks=self._benchmarks(protocols, chains, self._historical()),
        )
