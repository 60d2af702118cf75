from __future__ import annotations

import os
from typing import Any

from market_intel.services import analytics, enrichment
from market_intel.services.endpoints.base import BaseEndpointService
from market_intel.services.models import DominanceOptions


class MarketDominanceService(BaseEndpointService):
    endpoint = "market_dominance"
    label = "dominance"
    methodology = "herfindahl_hirschman_and_shannon_over_tvl_shares"
    ttl_seconds = float(os.getenv("MI_DOMINANCE_TTL_SECONDS", "600"))

    def compute(self, options: DominanceOptions) -> dict[str, Any]:
        snapshot = self._snapshot()
        protocol_table = analytics.calculate_dominance(snapshot.protocols)
        chain_table = analytics.calculate_chain_dominance(snapshot.chains, analytics.protocol_counts(snapshot.protocols))
        category_table = analytics.calculate_category_dominance(snapshot.protocols)
        percentages = [entry.dominance_percentage for entry in protocol_table]

        data = {
            "protocol_dominance": self._rows(protocol_table[: options.limit]),
            "chain_dominance": self._rows(chain_table[: options.limit]),
            "category_dominance": self._rows(category_table),
            "concentration_index": analytics.concentration_index(percentages),
            "diversity": analytics.diversity_metrics(protocol_table),
        }
        coverage = analytics.data_coverage(snapshot.protocols)
        if options.detail == "minimal":
            return self._envelope(data, snapshot.fetched_at, coverage)
        return self._envelope(
            data,
            snapshot.fetched_at,
            coverage,
            intelligence=enrichment.dominance_insights(protocol_table, chain_table, category_table),
            benchmarks=self._benchmarks(snapshot.protocols, snapshot.chains, self._historical()),
        )
