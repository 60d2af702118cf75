from __future__ import annotations

import json
import logging
import os
import time
import typing
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from market_intel.services.errors import ProviderError
from market_intel.services.models import Chain, HistoricalSeries, Protocol

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.llama.fi"


class ProviderClient(typing.Protocol):
    def fetch_protocols(self) -> list[Protocol]: ...

    def fetch_chains(self) -> list[Chain]: ...

    def fetch_historical(self, timeframe: str | None = None) -> HistoricalSeries | None: ...


class DefiLlamaClient:
    def __init__(
        self,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
    ):
        self.base_url = (base_url or os.getenv("DEFILLAMA_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else float(os.getenv("DEFILLAMA_TIMEOUT_SECONDS", "30"))
        )
        self.max_retries = max_retries if max_retries is not None else int(os.getenv("DEFILLAMA_MAX_RETRIES", "2"))
        self.retry_backoff_seconds = (
            retry_backoff_seconds
            if retry_backoff_seconds is not None
            else float(os.getenv("DEFILLAMA_RETRY_BACKOFF_SECONDS", "1.5"))
        )

    def _fetch_once(self, path: str) -> Any:
        req = Request(
            f"{self.base_url}{path}",
            method="GET",
            headers={"Accept": "application/json", "User-Agent": "market-intel/0.1"},
        )
        try:
            with urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except HTTPError as exc:
            raise ProviderError(f"DefiLlama {path} returned HTTP {exc.code}", retryable=False, status=exc.code) from exc
        except TimeoutError as exc:
            raise ProviderError(f"DefiLlama {path} timed out", retryable=True) from exc
        except URLError as exc:
            raise ProviderError(f"DefiLlama {path} unreachable: {exc.reason}", retryable=True) from exc
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProviderError(f"DefiLlama {path} returned malformed JSON", retryable=False) from exc

    def fetch_json(self, path: str) -> Any:
        for attempt in range(self.max_retries + 1):
            try:
                return self._fetch_once(path)
            except ProviderError as exc:
                if not exc.retryable or attempt >= self.max_retries:
                    raise
                logger.warning("DefiLlama fetch failed attempt %s/%s: %s", attempt + 1, self.max_retries + 1, exc)
                time.sleep(self.retry_backoff_seconds**attempt)
        raise ProviderError(f"DefiLlama {path} failed", retryable=False)

    def _fetch_list(self, path: str) -> list[dict[str, Any]]:
        payload = self.fetch_json(path)
        if not isinstance(payload, list):
            raise ProviderError(f"DefiLlama {path} returned unexpected payload", retryable=False)
        return [row for row in payload if isinstance(row, dict)]

    def fetch_protocols(self) -> list[Protocol]:
        rows = self._fetch_list("/protocols")
        logger.debug("Fetched %s protocols", len(rows))
        return [Protocol.from_row(row) for row in rows]

    def fetch_chains(self) -> list[Chain]:
        rows = self._fetch_list("/v2/chains")
        logger.debug("Fetched %s chains", len(rows))
        return [Chain.from_row(row) for row in rows]

    def fetch_historical(self, timeframe: str | None = None) -> HistoricalSeries | None:
        """Total DeFi TVL history; None when the provider cannot serve it."""
        try:
            series = HistoricalSeries.from_rows(self._fetch_list("/v2/historicalChainTvl"))
        except ProviderError as exc:
            logger.warning("Historical TVL unavailable: %s", exc)
            return None
        return series.window(timeframe) if timeframe else series
