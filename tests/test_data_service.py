from __future__ import annotations

import unittest

from market_intel.services.data_service import DataService
from market_intel.services.errors import NotFoundError, ProviderError, UnknownError, ValidationError
from market_intel.services.models import Chain, HistoricalSeries, Protocol
from market_intel.services.shared.cache_store import QueryCache

DAY = 86_400.0


class _FakeProvider:
    def __init__(self, historical: HistoricalSeries | None = None, fail: bool = False):
        self._historical = historical
        self._fail = fail
        self.protocol_calls = 0
        self.chain_calls = 0
        self.historical_calls = 0

    def fetch_protocols(self) -> list[Protocol]:
        self.protocol_calls += 1
        if self._fail:
            raise ProviderError("DefiLlama /protocols unreachable", retryable=True)
        return [
            Protocol(
                id="lido",
                name="Lido",
                tvl=30e9,
                category="Liquid Staking",
                chain="Ethereum",
                chains=("Ethereum",),
                change_1d=0.5,
                change_7d=3.0,
                change_30d=6.0,
            ),
            Protocol(
                id="aave",
                name="Aave",
                tvl=20e9,
                category="Lending",
                chain="Multi-Chain",
                chains=("Ethereum", "Polygon"),
                chain_tvls={"Ethereum": 18e9, "Polygon": 2e9},
                change_1d=2.0,
                change_7d=8.0,
                change_30d=4.0,
            ),
            Protocol(
                id="raydium",
                name="Raydium",
                tvl=2e9,
                category="Dexes",
                chain="Solana",
                chains=("Solana",),
                change_1d=-4.0,
                change_7d=-6.0,
                change_30d=-10.0,
            ),
        ]

    def fetch_chains(self) -> list[Chain]:
        self.chain_calls += 1
        return [
            Chain(name="Ethereum", tvl=60e9, protocol_count=900, change_7d=2.0, token_symbol="ETH"),
            Chain(name="Solana", tvl=8e9, protocol_count=150, change_7d=12.0, token_symbol="SOL"),
            Chain(name="Polygon", tvl=1e9, protocol_count=400, change_7d=-3.0),
        ]

    def fetch_historical(self, timeframe: str | None = None) -> HistoricalSeries | None:
        self.historical_calls += 1
        return self._historical


class _ProviderRowChains(_FakeProvider):
    """Chains as parsed from /v2/chains rows, which carry no protocol counts."""

    def fetch_chains(self) -> list[Chain]:
        self.chain_calls += 1
        return [
            Chain.from_row({"name": "Ethereum", "tvl": 60e9, "tokenSymbol": "ETH"}),
            Chain.from_row({"name": "Solana", "tvl": 8e9, "tokenSymbol": "SOL"}),
            Chain.from_row({"name": "Polygon", "tvl": 1e9}),
        ]


class _HistoryDownProvider(_FakeProvider):
    def fetch_historical(self, timeframe: str | None = None) -> HistoricalSeries | None:
        self.historical_calls += 1
        raise ProviderError("history down", retryable=True)


def _service(provider: _FakeProvider) -> DataService:
    return DataService(provider=provider, cache=QueryCache(ttl_seconds=60.0, max_entries=64))


class DataServiceEnvelopeTests(unittest.TestCase):
    def test_second_request_is_served_from_cache(self) -> None:
        provider = _FakeProvider()
        svc = _service(provider)

        first = svc.get_endpoint_data("market_overview", {})
        second = svc.get_endpoint_data("market_overview", {})

        self.assertTrue(first["success"])
        self.assertFalse(first["metadata"]["cache_hit"])
        self.assertTrue(second["metadata"]["cache_hit"])
        self.assertEqual(first["data"], second["data"])
        self.assertEqual(provider.protocol_calls, 1)

    def test_metadata_fields(self) -> None:
        response = _service(_FakeProvider()).get_endpoint_data("market_dominance", {})
        metadata = response["metadata"]
        self.assertRegex(metadata["request_id"], r"^market-\d+-[0-9a-f]{9}$")
        self.assertEqual(metadata["data_source"], "defillama")
        self.assertEqual(metadata["methodology"], "herfindahl_hirschman_and_shannon_over_tvl_shares")
        self.assertAlmostEqual(metadata["coverage"], 1.0)
        self.assertGreaterEqual(metadata["data_freshness"], 0.0)
        self.assertGreaterEqual(metadata["response_time_ms"], 0.0)

    def test_provider_snapshot_is_shared_across_endpoints(self) -> None:
        provider = _FakeProvider()
        svc = _service(provider)
        svc.get_endpoint_data("market_overview", {})
        svc.get_endpoint_data("market_dominance", {})
        svc.get_endpoint_data("market_movers", {})
        self.assertEqual(provider.protocol_calls, 1)
        self.assertEqual(provider.chain_calls, 1)
        self.assertEqual(provider.historical_calls, 1)

    def test_minimal_detail_omits_enrichment(self) -> None:
        response = _service(_FakeProvider()).get_endpoint_data("market_overview", {"detail": "minimal"})
        self.assertNotIn("intelligence", response)
        self.assertNotIn("benchmarks", response)
        self.assertNotIn("chain_tvls", response["data"]["top_protocols"][0])

    def test_full_detail_adds_chain_breakdown(self) -> None:
        response = _service(_FakeProvider()).get_endpoint_data("market_overview", {"detail": "full"})
        rows = {row["id"]: row for row in response["data"]["top_protocols"]}
        breakdown = rows["aave"]["chain_tvls"]
        self.assertEqual([item["chain"] for item in breakdown], ["Ethereum", "Polygon"])
        self.assertAlmostEqual(breakdown[0]["percentage"], 90.0)
        self.assertAlmostEqual(breakdown[1]["percentage"], 10.0)
        self.assertIn("intelligence", response)
        self.assertIn("benchmarks", response)

    def test_unknown_endpoint_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            _service(_FakeProvider()).get_endpoint_data("market_prices", {})

    def test_health_lists_endpoints(self) -> None:
        health = _service(_FakeProvider()).health()
        self.assertEqual(health["status"], "ok")
        self.assertIn("chain_ecosystem", health["endpoints"])
        self.assertEqual(health["cache"]["entries"], 0)


class DataServiceErrorTests(unittest.TestCase):
    def test_validation_errors_are_aggregated(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            _service(_FakeProvider()).get_endpoint_data("market_trending", {"timeframes": "1y", "limit": "0"})
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("limit must be at least 1", ctx.exception.errors)
        self.assertIn("Invalid timeframes: 1y", ctx.exception.errors)

    def test_supported_chain_missing_from_provider_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            _service(_FakeProvider()).get_endpoint_data("chain_ecosystem", {"chain": "cronos"})
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertTrue(ctx.exception.message.startswith("Chain 'cronos' not found."))

    def test_provider_failure_becomes_external_api_error(self) -> None:
        with self.assertRaises(UnknownError) as ctx:
            _service(_FakeProvider(fail=True)).get_endpoint_data("market_movers", {})
        self.assertEqual(ctx.exception.code, "EXTERNAL_API_ERROR")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.message, "Failed to fetch movers data")


class EndpointComputationTests(unittest.TestCase):
    def test_overview_without_history_still_answers(self) -> None:
        response = _service(_FakeProvider(historical=None)).get_endpoint_data("market_overview", {})
        data = response["data"]
        self.assertEqual(data["total_tvl"], 52e9)
        self.assertEqual(data["dominant_chain"], "Ethereum")
        self.assertEqual(data["trends"]["tvl_growth"], 0.0)
        self.assertEqual([row["rank"] for row in data["top_protocols"]], [1, 2, 3])
        self.assertEqual(response["benchmarks"]["historical_context"]["year_to_date"], 0.0)

    def test_overview_growth_uses_history(self) -> None:
        series = HistoricalSeries(points=((0.0, 100.0), (3 * DAY, 120.0)))
        response = _service(_FakeProvider(historical=series)).get_endpoint_data("market_overview", {"timeframe": "7d"})
        self.assertAlmostEqual(response["data"]["trends"]["tvl_growth"], 20.0)
        self.assertEqual(response["benchmarks"]["historical_context"]["all_time_high"], 120.0)

    def test_overview_chain_filter_uses_provider_names(self) -> None:
        response = _service(_FakeProvider()).get_endpoint_data("market_overview", {"chains": "solana"})
        self.assertEqual(response["data"]["total_protocols"], 1)
        self.assertEqual(response["data"]["top_protocols"][0]["market_share"], 100.0)

    def test_trending_lists_requested_timeframes(self) -> None:
        response = _service(_FakeProvider()).get_endpoint_data("market_trending", {"timeframes": "7d,24h"})
        by_timeframe = response["data"]["by_timeframe"]
        self.assertEqual(set(by_timeframe), {"24h", "7d", "30d"})
        self.assertEqual(by_timeframe["30d"], [])
        self.assertEqual(by_timeframe["7d"][0]["id"], "aave")
        self.assertIn("context", response["intelligence"])

    def test_movers_split_gainers_and_losers(self) -> None:
        response = _service(_FakeProvider()).get_endpoint_data("market_movers", {"timeframe": "7d"})
        self.assertEqual([row["id"] for row in response["data"]["gainers"]], ["aave", "lido"])
        self.assertEqual([row["id"] for row in response["data"]["losers"]], ["raydium"])

    def test_chain_ecosystem_scopes_protocols(self) -> None:
        response = _service(_FakeProvider()).get_endpoint_data("chain_ecosystem", {"chain": "eth"})
        data = response["data"]
        self.assertEqual(data["chain_info"]["name"], "ethereum")
        self.assertEqual(data["chain_info"]["native_token"], "ETH")
        self.assertEqual(data["chain_info"]["protocol_count"], 2)
        rows = {row["id"]: row for row in data["protocols"]}
        self.assertEqual(rows["aave"]["chain_specific_tvl"], 18e9)
        self.assertEqual(rows["aave"]["cross_chain_tvl"], 2e9)
        self.assertEqual(data["comparisons"]["rank_among_chains"], 1)
        self.assertEqual(response["benchmarks"]["chain_specific"]["market_positioning"], "market_leader")

    def test_chains_overview_has_no_intelligence(self) -> None:
        response = _service(_FakeProvider()).get_endpoint_data("chains_overview", {"sortBy": "protocolCount"})
        self.assertNotIn("intelligence", response)
        names = [row["name"] for row in response["data"]["chains"]]
        self.assertEqual(names, ["ethereum", "solana", "polygon"])
        self.assertEqual(response["data"]["total_chains"], 3)

    def test_chain_protocol_counts_follow_protocol_snapshot(self) -> None:
        svc = _service(_ProviderRowChains())
        dominance = svc.get_endpoint_data("market_dominance", {})
        counts = {row["name"]: row["protocol_count"] for row in dominance["data"]["chain_dominance"]}
        self.assertEqual(counts, {"Ethereum": 2, "Solana": 1, "Polygon": 1})

        ecosystem = svc.get_endpoint_data("chain_ecosystem", {"chain": "ethereum"})
        self.assertAlmostEqual(ecosystem["benchmarks"]["sector_average"]["protocols_per_chain"], 4 / 3)
        self.assertAlmostEqual(ecosystem["benchmarks"]["chain_specific"]["protocol_density"], 30e9)

    def test_historical_fetch_failure_degrades_to_no_history(self) -> None:
        provider = _HistoryDownProvider()
        svc = _service(provider)
        response = svc.get_endpoint_data("market_overview", {})
        self.assertTrue(response["success"])
        self.assertEqual(response["data"]["trends"]["tvl_growth"], 0.0)
        self.assertEqual(response["benchmarks"]["historical_context"]["year_to_date"], 0.0)

        svc.get_endpoint_data("market_dominance", {})
        self.assertEqual(provider.historical_calls, 1)


if __name__ == "__main__":
    unittest.main()
