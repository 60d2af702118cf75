from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any, Callable

from market_intel.services import analytics
from market_intel.services.errors import ProviderError
from market_intel.services.models import Chain, HistoricalSeries, Protocol, ProviderSnapshot
from market_intel.services.provider import ProviderClient
from market_intel.services.shared.cache_store import QueryCache

logger = logging.getLogger(__name__)


class BaseEndpointService:
    endpoint = ""
    label = ""
    methodology = ""
    ttl_seconds = 300.0

    _PROVIDER_TTL = float(os.getenv("MI_PROVIDER_TTL_SECONDS", "60"))

    def __init__(self, provider: ProviderClient, cache: QueryCache):
        self.provider = provider
        self.cache = cache

    def _cached(self, key: str, fn: Callable[[], Any], ttl_seconds: float | None = None) -> Any:
        return self.cache.cached(key, fn, ttl_seconds=self._PROVIDER_TTL if ttl_seconds is None else ttl_seconds)

    # ------------------------------------------------------------------
    # Shared provider loaders (cached)
    # ------------------------------------------------------------------

    def _protocols(self) -> tuple[tuple[Protocol, ...], float]:
        return self._cached(
            "provider::protocols",
            lambda: (tuple(self.provider.fetch_protocols()), datetime.now(UTC).timestamp()),
        )

    def _chains(self) -> tuple[tuple[Chain, ...], float]:
        return self._cached(
            "provider::chains",
            lambda: (tuple(self.provider.fetch_chains()), datetime.now(UTC).timestamp()),
        )

    def _snapshot(self) -> ProviderSnapshot:
        protocols, protocols_at = self._protocols()
        chains, chains_at = self._chains()
        return ProviderSnapshot(protocols=protocols, chains=chains, fetched_at=min(protocols_at, chains_at))

    def _load_historical(self) -> HistoricalSeries:
        try:
            series = self.provider.fetch_historical()
        except ProviderError as exc:
            logger.debug("Historical TVL fetch failed, treating as insufficient data: %s", exc)
            return HistoricalSeries(points=())
        return series or HistoricalSeries(points=())

    def _historical(self) -> HistoricalSeries | None:
        # An empty series stands in for "unavailable" so failures are cached too.
        series = self._cached("provider::historical", self._load_historical)
        return series if series.points else None

    # ------------------------------------------------------------------
    # Formatting helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _chain_tvl_breakdown(protocol: Protocol) -> list[dict[str, Any]]:
        if protocol.chain_tvls:
            total = sum(protocol.chain_tvls.values())
            rows = sorted(protocol.chain_tvls.items(), key=lambda item: item[1], reverse=True)
            return [
                {"chain": chain, "tvl": tvl, "percentage": tvl / total * 100 if total > 0 else 0.0}
                for chain, tvl in rows
            ]
        chains = protocol.chain_list
        if len(chains) == 1:
            return [{"chain": chains[0], "tvl": protocol.tvl, "percentage": 100.0}]
        return []

    @staticmethod
    def _rows(items: Any) -> list[dict[str, Any]]:
        return [asdict(item) for item in items]

    def _envelope(
        self,
        data: dict[str, Any],
        fetched_at: float,
        coverage: float,
        intelligence: dict[str, Any] | None = None,
        benchmarks: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "data": data,
            "intelligence": intelligence,
            "benchmarks": benchmarks,
            "fetched_at": fetched_at,
            "coverage": coverage,
        }

    def _benchmarks(
        self,
        protocols: tuple[Protocol, ...] | list[Protocol],
        chains: tuple[Chain, ...],
        historical: HistoricalSeries | None,
    ) -> dict[str, Any]:
        return analytics.calculate_benchmarks(protocols, chains, historical)

    def compute(self, options: Any) -> dict[str, Any]:
        raise NotImplementedError
