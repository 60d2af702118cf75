from __future__ import annotations

import logging
import os
import time
import uuid
from datetime import UTC, datetime
from typing import Any, Mapping

from market_intel.services.endpoints.base import BaseEndpointService
from market_intel.services.endpoints.chains import ChainEcosystemService, ChainsOverviewService
from market_intel.services.endpoints.dominance import MarketDominanceService
from market_intel.services.endpoints.movers import MarketMoversService
from market_intel.services.endpoints.overview import MarketOverviewService
from market_intel.services.endpoints.trending import TrendingProtocolsService
from market_intel.services.errors import ProviderError, UnknownError
from market_intel.services.provider import DefiLlamaClient, ProviderClient
from market_intel.services.shared.cache_store import QueryCache, make_cache_key
from market_intel.services.validation import validate_query

logger = logging.getLogger(__name__)

DATA_SOURCE = "defillama"


def _request_id() -> str:
    return f"market-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class DataService:
    """Runs validation, caching and computation for every market endpoint."""

    def __init__(self, provider: ProviderClient | None = None, cache: QueryCache | None = None):
        self.provider = provider if provider is not None else DefiLlamaClient()
        self.cache = cache if cache is not None else QueryCache(
            ttl_seconds=float(os.getenv("MI_PROVIDER_TTL_SECONDS", "60")),
            max_entries=int(os.getenv("MI_CACHE_MAX_ENTRIES", "256")),
        )
        services: list[BaseEndpointService] = [
            MarketOverviewService(self.provider, self.cache),
            MarketDominanceService(self.provider, self.cache),
            TrendingProtocolsService(self.provider, self.cache),
            MarketMoversService(self.provider, self.cache),
            ChainEcosystemService(self.provider, self.cache),
            ChainsOverviewService(self.provider, self.cache),
        ]
        self._endpoints = {service.endpoint: service for service in services}
        self._log_slow_requests = os.getenv("MI_LOG_SLOW_REQUESTS", "0") == "1"
        self._slow_request_threshold_ms = float(os.getenv("MI_SLOW_REQUEST_THRESHOLD_MS", "500"))

    def close(self) -> None:
        logger.info("DataService shutting down with cache stats %s", self.cache.stats())
        self.cache.clear()

    def warmup(self) -> None:
        """Prime default queries so the first user request skips the provider round trip."""
        if os.getenv("MI_PREWARM_ENABLED", "1") != "1":
            return
        started = time.perf_counter()
        max_seconds = float(os.getenv("MI_PREWARM_MAX_SECONDS", "30"))
        warmup_jobs: list[tuple[str, dict[str, Any]]] = [
            ("market_overview", {}),
            ("market_dominance", {}),
            ("market_movers", {}),
            ("chains_overview", {}),
            ("market_trending", {}),
        ]
        chains = [
            item.strip()
            for item in os.getenv("MI_PREWARM_CHAINS", "ethereum").split(",")
            if item.strip()
        ]
        warmup_jobs.extend(("chain_ecosystem", {"chain": chain}) for chain in chains)

        failures = 0
        completed = 0
        for endpoint, query in warmup_jobs:
            if max_seconds > 0 and (time.perf_counter() - started) >= max_seconds:
                logger.info(
                    "Warmup budget reached after %s jobs in %.2fs (limit %.2fs)",
                    completed,
                    time.perf_counter() - started,
                    max_seconds,
                )
                break
            try:
                self.get_endpoint_data(endpoint, query)
                completed += 1
            except Exception as exc:  # pragma: no cover - startup best effort
                failures += 1
                logger.warning("Warmup failed for %s: %s", endpoint, exc)
        logger.info("Warmup complete: %s/%s jobs, %s failures", completed, len(warmup_jobs), failures)

    def list_endpoints(self) -> list[str]:
        return list(self._endpoints.keys())

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "endpoints": self.list_endpoints(),
            "cache": self.cache.stats(),
            "timestamp": datetime.now(UTC),
        }

    def get_endpoint_data(self, endpoint: str, query: Mapping[str, Any]) -> dict[str, Any]:
        started = time.perf_counter()
        service = self._endpoints.get(endpoint)
        if service is None:
            raise ValueError(f"Unsupported endpoint: {endpoint}")

        options = validate_query(endpoint, query)
        key = make_cache_key(endpoint, options)
        computed = False

        def _load() -> dict[str, Any]:
            nonlocal computed
            computed = True
            return service.compute(options)

        try:
            result = self.cache.cached(key, _load, ttl_seconds=service.ttl_seconds)
        except ProviderError as exc:
            logger.warning("Provider failure for %s: %s", endpoint, exc)
            raise UnknownError(f"Failed to fetch {service.label} data", code="EXTERNAL_API_ERROR") from exc

        now = datetime.now(UTC)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        response: dict[str, Any] = {
            "success": True,
            "data": result["data"],
            "metadata": {
                "request_id": _request_id(),
                "response_time_ms": round(elapsed_ms, 2),
                "data_source": DATA_SOURCE,
                "calculated_at": now,
                "data_freshness": max(0.0, now.timestamp() - result["fetched_at"]),
                "methodology": service.methodology,
                "coverage": result["coverage"],
                "cache_hit": not computed,
            },
            "timestamp": now,
        }
        if result.get("intelligence") is not None:
            response["intelligence"] = result["intelligence"]
        if result.get("benchmarks") is not None:
            response["benchmarks"] = result["benchmarks"]

        logger.info("%s served in %.2fms cache_hit=%s", endpoint, elapsed_ms, not computed)
        if self._log_slow_requests and elapsed_ms >= self._slow_request_threshold_ms:
            logger.warning("Slow request %.2fms endpoint=%s", elapsed_ms, endpoint)
        return response
