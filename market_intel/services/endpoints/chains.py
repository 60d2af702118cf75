from __future__ import annotations

import os
from typing import Any, Mapping, Sequence

from market_intel.services import analytics, enrichment
from market_intel.services.endpoints.base import BaseEndpointService
from market_intel.services.errors import NotFoundError
from market_intel.services.models import (
    Chain,
    ChainEcosystemOptions,
    ChainsOverviewOptions,
    HistoricalSeries,
    Protocol,
)
from market_intel.services.validation import SUPPORTED_CHAINS


def _find_chain(chains: Sequence[Chain], chain: str) -> Chain | None:
    return next((c for c in chains if analytics.canonical_chain(c.name) == chain), None)


class ChainEcosystemService(BaseEndpointService):
    endpoint = "chain_ecosystem"
    label = "chain ecosystem"
    methodology = "chain_scoped_tvl_share_and_category_diversity"
    ttl_seconds = float(os.getenv("MI_CHAIN_ECOSYSTEM_TTL_SECONDS", "900"))

    def _protocol_row(self, protocol: Protocol, rank: int, chain: str, chain_tvl: float, full: bool) -> dict[str, Any]:
        on_chain = analytics.protocol_tvl_on_chain(protocol, chain)
        row: dict[str, Any] = {
            "id": protocol.id,
            "name": protocol.name,
            "tvl": protocol.tvl,
            "chain_specific_tvl": on_chain,
            "chain_specific_rank": rank,
            "market_share": on_chain / chain_tvl * 100 if chain_tvl > 0 else 0.0,
            "cross_chain_tvl": max(0.0, protocol.tvl - on_chain),
            "growth_1d": protocol.change_1d or 0.0,
            "growth_7d": protocol.change_7d or 0.0,
            "dominance_reason": enrichment.dominance_reason(protocol),
            "category": protocol.category,
            "chains": list(protocol.chain_list),
            "logo": protocol.logo,
        }
        if full:
            row["chain_tvls"] = self._chain_tvl_breakdown(protocol)
        return row

    def _chain_benchmarks(
        self,
        chain_data: Chain,
        chains: Sequence[Chain],
        counts: Mapping[str, int],
        rank: int,
        historical: HistoricalSeries | None,
    ) -> dict[str, Any]:
        active = [c for c in chains if c.tvl > 0]
        average_tvl = analytics.total_tvl(active) / len(active) if active else 0.0
        average_growth = sum(c.change_7d or 0.0 for c in active) / len(active) if active else 0.0
        protocol_total = sum(analytics.chain_protocol_count(c, counts) for c in active)
        average_protocols = protocol_total / len(active) if active else 0.0
        growth_30d = analytics.growth_rate_from_history(historical, "30d") if historical else average_growth
        return {
            "sector_average": {
                "tvl": average_tvl,
                "growth_7d": average_growth,
                "protocols_per_chain": average_protocols,
            },
            "chain_comparison": analytics.chain_comparison(chains),
            "historical_context": {
                "all_time_high": max((tvl for _, tvl in historical.points), default=0.0)
                if historical
                else max((c.tvl for c in chains), default=0.0),
                "year_to_date": analytics.year_to_date_growth(historical),
                "market_cycle_phase": analytics.market_cycle_phase(growth_30d),
            },
            "chain_specific": {
                "protocol_density": chain_data.tvl / max(1, analytics.chain_protocol_count(chain_data, counts)),
                "tvl_efficiency": chain_data.tvl / average_tvl * 100 if average_tvl > 0 else 0.0,
                "growth_momentum": chain_data.change_7d or 0.0,
                "market_positioning": analytics.competitive_position(rank),
            },
        }

    def compute(self, options: ChainEcosystemOptions) -> dict[str, Any]:
        snapshot = self._snapshot()
        chain = options.chain
        chain_data = _find_chain(snapshot.chains, chain)
        if chain_data is None:
            raise NotFoundError(
                f"Chain '{chain}' not found. Supported chains: {', '.join(SUPPORTED_CHAINS)}"
            )

        chain_protocols = [p for p in snapshot.protocols if analytics.protocol_on_chain(p, chain)]
        if options.categories:
            chain_protocols = analytics.filter_protocols(chain_protocols, categories=options.categories)
        ranked = analytics.sort_protocols(chain_protocols, options.sort_by, chain)[: options.limit]

        chain_tvl = chain_data.tvl
        all_chains_tvl = analytics.total_tvl(snapshot.chains)
        rank = analytics.chain_rank(chain_data.name, snapshot.chains)
        full = options.detail == "full"

        data = {
            "chain_info": {
                "name": chain,
                "display_name": chain_data.name,
                "total_tvl": chain_tvl,
                "protocol_count": len(chain_protocols),
                "dominance_percentage": chain_tvl / all_chains_tvl * 100 if all_chains_tvl > 0 else 0.0,
                "native_token": chain_data.token_symbol or enrichment.native_token(chain),
                "explorer": enrichment.explorer_url(chain),
                "growth_1d": chain_data.change_1d or 0.0,
                "growth_7d": chain_data.change_7d or 0.0,
                "growth_30d": chain_data.change_30d or 0.0,
            },
            "protocols": [
                self._protocol_row(p, index + 1, chain, chain_tvl, full) for index, p in enumerate(ranked)
            ],
            "chain_metrics": analytics.calculate_chain_metrics(chain_protocols, chain, chain_tvl),
            "comparisons": {
                "rank_among_chains": rank,
                "tvl_vs_total": chain_tvl / all_chains_tvl * 100 if all_chains_tvl > 0 else 0.0,
                "protocols_vs_total": len(chain_protocols),
            },
        }
        coverage = analytics.data_coverage(chain_protocols)
        if options.detail == "minimal":
            return self._envelope(data, snapshot.fetched_at, coverage)
        return self._envelope(
            data,
            snapshot.fetched_at,
            coverage,
            intelligence=enrichment.chain_insights(chain_data, len(chain_protocols), rank),
            benchmarks=self._chain_benchmarks(
                chain_data,
                snapshot.chains,
                analytics.protocol_counts(snapshot.protocols),
                rank,
                self._historical(),
            ),
        )


class ChainsOverviewService(BaseEndpointService):
    endpoint = "chains_overview"
    label = "chains overview"
    methodology = "chain_tvl_distribution_with_shannon_diversity"
    ttl_seconds = float(os.getenv("MI_CHAINS_OVERVIEW_TTL_SECONDS", "1800"))

    def compute(self, options: ChainsOverviewOptions) -> dict[str, Any]:
        snapshot = self._snapshot()
        counts = analytics.protocol_counts(snapshot.protocols)
        by_name = {c.name: analytics.chain_protocol_count(c, counts) for c in snapshot.chains}
        total = analytics.total_tvl(snapshot.chains)
        ranked = analytics.sort_chains(snapshot.chains, options.sort_by, by_name)[: options.limit]

        data = {
            "chains": [
                {
                    "name": analytics.canonical_chain(c.name),
                    "display_name": c.name,
                    "tvl": c.tvl,
                    "protocol_count": by_name[c.name],
                    "dominance_percentage": c.tvl / total * 100 if total > 0 else 0.0,
                    "growth_1d": c.change_1d or 0.0,
                    "growth_7d": c.change_7d or 0.0,
                    "growth_30d": c.change_30d or 0.0,
                    "native_token": c.token_symbol or enrichment.native_token(c.name),
                }
                for c in ranked
            ],
            "total_tvl": total,
            "total_chains": len(snapshot.chains),
            "market_distribution": analytics.market_distribution(snapshot.chains),
        }
        return self._envelope(data, snapshot.fetched_at, analytics.data_coverage(snapshot.chains))
