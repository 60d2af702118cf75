from __future__ import annotations

import re
import threading
import time
import unittest

from market_intel.services.models import MarketOverviewOptions
from market_intel.services.shared.cache_store import QueryCache, make_cache_key


class QueryCacheSingleflightTests(unittest.TestCase):
    def test_concurrent_callers_share_one_load(self) -> None:
        cache = QueryCache(ttl_seconds=0.05, max_entries=16)
        calls = 0
        calls_lock = threading.Lock()
        results: list[str] = []

        def loader() -> str:
            nonlocal calls
            with calls_lock:
                calls += 1
            time.sleep(0.15)
            return "ok"

        def worker() -> None:
            value = cache.cached("ts-key", loader, ttl_seconds=1.0)
            results.append(value)

        t1 = threading.Thread(target=worker)
        t2 = threading.Thread(target=worker)
        t1.start()
        time.sleep(0.01)
        t2.start()
        t1.join()
        t2.join()

        self.assertEqual(calls, 1, "inflight waiter should not trigger duplicate loader")
        self.assertEqual(results, ["ok", "ok"])

    def test_failed_load_releases_waiters(self) -> None:
        cache = QueryCache(ttl_seconds=1.0, max_entries=4)

        def broken() -> str:
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            cache.cached("k", broken)
        self.assertEqual(cache.stats()["inflight"], 0)
        self.assertEqual(cache.cached("k", lambda: "recovered"), "recovered")


class QueryCacheStoreTests(unittest.TestCase):
    def test_entries_expire_after_ttl(self) -> None:
        cache = QueryCache(ttl_seconds=0.05, max_entries=4)
        cache.set("k", "v")
        self.assertEqual(cache.get("k"), "v")
        time.sleep(0.1)
        self.assertIsNone(cache.get("k"))

    def test_least_recently_used_entry_is_evicted(self) -> None:
        cache = QueryCache(ttl_seconds=10.0, max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        self.assertIsNone(cache.get("b"))
        self.assertEqual(cache.get("a"), 1)
        self.assertEqual(cache.get("c"), 3)

    def test_stats_track_hits_and_misses(self) -> None:
        cache = QueryCache(ttl_seconds=10.0, max_entries=4)
        cache.get("missing")
        cache.set("k", "v")
        cache.get("k")
        stats = cache.stats()
        self.assertEqual(stats["entries"], 1)
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertAlmostEqual(stats["hit_rate"], 0.5)

        cache.clear()
        self.assertEqual(cache.stats()["entries"], 0)
        self.assertEqual(cache.stats()["hit_rate"], 0.0)


class CacheKeyTests(unittest.TestCase):
    def test_key_format(self) -> None:
        key = make_cache_key("market_overview", MarketOverviewOptions())
        self.assertRegex(key, re.compile(r"^defi:market:market_overview:[0-9a-f]{32}$"))

    def test_list_order_and_case_do_not_matter(self) -> None:
        first = make_cache_key("market_overview", MarketOverviewOptions(chains=("ethereum", "bsc")))
        second = make_cache_key("market_overview", MarketOverviewOptions(chains=("BSC", "Ethereum")))
        self.assertEqual(first, second)

    def test_different_options_or_endpoints_differ(self) -> None:
        base = make_cache_key("market_overview", MarketOverviewOptions())
        self.assertNotEqual(base, make_cache_key("market_overview", MarketOverviewOptions(limit=11)))
        self.assertNotEqual(base, make_cache_key("market_dominance", MarketOverviewOptions()))

    def test_mapping_key_order_does_not_matter(self) -> None:
        self.assertEqual(
            make_cache_key("chains_overview", {"limit": 5, "sort_by": "tvl"}),
            make_cache_key("chains_overview", {"sort_by": "tvl", "limit": 5}),
        )


if __name__ == "__main__":
    unittest.main()
