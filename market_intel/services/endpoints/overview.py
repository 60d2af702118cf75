from __future__ import annotations

import os
from typing import Any

from market_intel.services import analytics, enrichment
from market_intel.services.endpoints.base import BaseEndpointService
from market_intel.services.models import MarketOverviewOptions, Protocol


class MarketOverviewService(BaseEndpointService):
    endpoint = "market_overview"
    label = "market overview"
    methodology = "tvl_weighted_market_share_with_historical_growth"
    ttl_seconds = float(os.getenv("MI_OVERVIEW_TTL_SECONDS", "300"))

    def _top_protocol_row(self, protocol: Protocol, rank: int, total: float, full: bool) -> dict[str, Any]:
        row: dict[str, Any] = {
            "id": protocol.id,
            "name": protocol.name,
            "tvl": protocol.tvl,
            "market_share": protocol.tvl / total * 100 if total > 0 else 0.0,
            "rank": rank,
            "growth_1d": protocol.change_1d or 0.0,
            "growth_7d": protocol.change_7d or 0.0,
            "dominance_reason": enrichment.dominance_reason(protocol),
            "category": protocol.category,
            "chain": protocol.chain,
            "chains": list(protocol.chain_list),
            "logo": protocol.logo,
        }
        if full:
            row["chain_tvls"] = self._chain_tvl_breakdown(protocol)
        return row

    def compute(self, options: MarketOverviewOptions) -> dict[str, Any]:
        snapshot = self._snapshot()
        historical = self._historical()
        filtered = analytics.filter_protocols(snapshot.protocols, options.categories, options.chains)
        total = analytics.total_tvl(filtered)
        growth = analytics.growth_rate_from_history(historical, options.timeframe)

        top = sorted((p for p in filtered if p.tvl > 0), key=lambda p: p.tvl, reverse=True)[: options.limit]
        ranked_chains = sorted(snapshot.chains, key=lambda c: c.tvl, reverse=True)
        dominant_chain = ranked_chains[0].name if ranked_chains and ranked_chains[0].tvl > 0 else "Unknown"

        data = {
            "total_tvl": total,
            "total_protocols": len(filtered),
            "dominant_chain": dominant_chain,
            "top_protocols": [
                self._top_protocol_row(p, index + 1, total, options.detail == "full") for index, p in enumerate(top)
            ],
            "trends": {
                "timeframe": options.timeframe,
                "tvl_growth": growth,
                "protocols_added_7d": analytics.new_protocols_count(snapshot.protocols, "7d"),
                "dominance_shift": enrichment.dominance_shift(snapshot.chains),
            },
        }
        if options.detail == "minimal":
            return self._envelope(data, snapshot.fetched_at, analytics.data_coverage(snapshot.protocols))
        return self._envelope(
            data,
            snapshot.fetched_at,
            analytics.data_coverage(snapshot.protocols),
            intelligence=enrichment.market_insights(filtered, snapshot.chains, total, growth),
            benchmarks=self._benchmarks(filtered, snapshot.chains, historical),
        )
