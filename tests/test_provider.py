from __future__ import annotations

import json
import unittest
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

from market_intel.services.errors import ProviderError
from market_intel.services.provider import DefiLlamaClient

DAY = 86_400


def _response(payload) -> MagicMock:
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    resp = MagicMock()
    resp.__enter__.return_value.read.return_value = raw
    return resp


def _client(max_retries: int = 2) -> DefiLlamaClient:
    return DefiLlamaClient(base_url="https://llama.test/", timeout_seconds=1.0, max_retries=max_retries, retry_backoff_seconds=1.5)


class DefiLlamaParsingTests(unittest.TestCase):
    @patch("market_intel.services.provider.urlopen")
    def test_protocol_rows_are_normalized(self, urlopen: MagicMock) -> None:
        urlopen.return_value = _response(
            [
                {
                    "id": "1",
                    "name": "Aave",
                    "tvl": 1000.0,
                    "category": "Lending",
                    "chains": ["Ethereum", "Polygon"],
                    "chainTvls": {"Ethereum": 800.0, "Polygon": 200.0, "Ethereum-borrowed": 50.0, "borrowed": 50.0},
                    "change_1d": 1.5,
                    "change_7d": None,
                    "change_1m": 12.0,
                    "listedAt": 1_600_000_000,
                },
                {"name": "Broken", "tvl": "not-a-number"},
                "junk",
            ]
        )
        protocols = _client().fetch_protocols()

        self.assertEqual(len(protocols), 2)
        aave, broken = protocols
        self.assertEqual(aave.chains, ("Ethereum", "Polygon"))
        self.assertEqual(dict(aave.chain_tvls), {"Ethereum": 800.0, "Polygon": 200.0})
        self.assertEqual(aave.change_1d, 1.5)
        self.assertIsNone(aave.change_7d)
        self.assertEqual(aave.change_30d, 12.0)
        self.assertEqual(aave.listed_at, 1_600_000_000.0)
        self.assertEqual(broken.tvl, 0.0)
        self.assertEqual(broken.chain_list, ("Unknown",))

        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "https://llama.test/protocols")

    @patch("market_intel.services.provider.urlopen")
    def test_chain_rows_are_normalized(self, urlopen: MagicMock) -> None:
        urlopen.return_value = _response(
            [{"name": "Ethereum", "tvl": 5e10, "protocols": 900, "tokenSymbol": "ETH"}, {"tvl": 10}]
        )
        chains = _client().fetch_chains()
        self.assertEqual(chains[0].protocol_count, 900)
        self.assertEqual(chains[0].token_symbol, "ETH")
        self.assertEqual(chains[1].name, "Unknown")
        self.assertEqual(urlopen.call_args.args[0].full_url, "https://llama.test/v2/chains")

    @patch("market_intel.services.provider.urlopen")
    def test_historical_series_is_sorted_and_windowed(self, urlopen: MagicMock) -> None:
        urlopen.return_value = _response(
            [{"date": 10 * DAY, "tvl": 300.0}, {"date": 0, "tvl": 100.0}, {"date": 9 * DAY, "tvl": 250.0}, {"date": "x"}]
        )
        full = _client().fetch_historical()
        self.assertEqual([tvl for _, tvl in full.points], [100.0, 250.0, 300.0])

        urlopen.return_value = _response([{"date": 0, "tvl": 100.0}, {"date": 9 * DAY, "tvl": 250.0}, {"date": 10 * DAY, "tvl": 300.0}])
        week = _client().fetch_historical("7d")
        self.assertEqual([tvl for _, tvl in week.points], [250.0, 300.0])


class DefiLlamaFailureTests(unittest.TestCase):
    @patch("market_intel.services.provider.time.sleep")
    @patch("market_intel.services.provider.urlopen")
    def test_http_errors_are_not_retried(self, urlopen: MagicMock, sleep: MagicMock) -> None:
        urlopen.side_effect = HTTPError("https://llama.test/protocols", 503, "Service Unavailable", None, None)
        with self.assertRaises(ProviderError) as ctx:
            _client().fetch_protocols()
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual(urlopen.call_count, 1)
        sleep.assert_not_called()

    @patch("market_intel.services.provider.time.sleep")
    @patch("market_intel.services.provider.urlopen")
    def test_network_errors_are_retried_with_backoff(self, urlopen: MagicMock, sleep: MagicMock) -> None:
        urlopen.side_effect = URLError("connection refused")
        with self.assertRaises(ProviderError) as ctx:
            _client(max_retries=2).fetch_chains()
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(urlopen.call_count, 3)
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [1.0, 1.5])

    @patch("market_intel.services.provider.time.sleep")
    @patch("market_intel.services.provider.urlopen")
    def test_retry_recovers_after_transient_failure(self, urlopen: MagicMock, sleep: MagicMock) -> None:
        urlopen.side_effect = [TimeoutError("slow"), _response([{"name": "Solana", "tvl": 1.0}])]
        chains = _client().fetch_chains()
        self.assertEqual([c.name for c in chains], ["Solana"])
        self.assertEqual(sleep.call_count, 1)

    @patch("market_intel.services.provider.urlopen")
    def test_malformed_json_is_rejected(self, urlopen: MagicMock) -> None:
        urlopen.return_value = _response(b"<html>oops</html>")
        with self.assertRaises(ProviderError) as ctx:
            _client().fetch_protocols()
        self.assertFalse(ctx.exception.retryable)

    @patch("market_intel.services.provider.urlopen")
    def test_unexpected_payload_shape_is_rejected(self, urlopen: MagicMock) -> None:
        urlopen.return_value = _response({"protocols": []})
        with self.assertRaises(ProviderError):
            _client().fetch_protocols()

    @patch("market_intel.services.provider.time.sleep")
    @patch("market_intel.services.provider.urlopen")
    def test_historical_failure_returns_none(self, urlopen: MagicMock, sleep: MagicMock) -> None:
        urlopen.side_effect = URLError("down")
        self.assertIsNone(_client(max_retries=0).fetch_historical("30d"))
        sleep.assert_not_called()


if __name__ == "__main__":
    unittest.main()
