from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Mapping

DetailLevel = Literal["minimal", "basic", "full"]
Timeframe = Literal["24h", "7d", "30d"]

TIMEFRAME_SECONDS: dict[str, int] = {
    "24h": 86_400,
    "7d": 7 * 86_400,
    "30d": 30 * 86_400,
}

_TVL_BREAKDOWN_KEYS = {
    "borrowed", "staking", "pool2", "vesting", "doublecounted",
    "liquidstaking", "dcAndLsOverlap", "treasury", "offers",
}


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return None
    return parsed


# ---------------------------------------------------------------------------
# Provider records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Protocol:
    id: str
    name: str
    tvl: float = 0.0
    category: str | None = None
    chain: str | None = None
    chains: tuple[str, ...] = ()
    chain_tvls: Mapping[str, float] = field(default_factory=dict)
    change_1d: float | None = None
    change_7d: float | None = None
    change_30d: float | None = None
    logo: str | None = None
    slug: str | None = None
    listed_at: float | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Protocol":
        """Build a record from a raw provider row, tolerating missing or malformed fields."""
        tvl = _as_float(row.get("tvl")) or 0.0
        chains_raw = row.get("chains")
        chains = tuple(str(c) for c in chains_raw if c) if isinstance(chains_raw, list) else ()
        chain_tvls_raw = row.get("chainTvls")
        chain_tvls: dict[str, float] = {}
        if isinstance(chain_tvls_raw, Mapping):
            for chain_name, value in chain_tvls_raw.items():
                parsed = _as_float(value)
                # Provider mixes breakdown keys like "Ethereum-borrowed" into this map.
                if parsed is None or "-" in str(chain_name) or str(chain_name) in _TVL_BREAKDOWN_KEYS:
                    continue
                chain_tvls[str(chain_name)] = parsed
        name = str(row.get("name") or row.get("id") or "Unknown")
        return cls(
            id=str(row.get("id") or row.get("slug") or name),
            name=name,
            tvl=max(0.0, tvl),
            category=row.get("category") or None,
            chain=row.get("chain") or None,
            chains=chains,
            chain_tvls=chain_tvls,
            change_1d=_as_float(row.get("change_1d")),
            change_7d=_as_float(row.get("change_7d")),
            change_30d=_as_float(row.get("change_30d", row.get("change_1m"))),
            logo=row.get("logo") or None,
            slug=row.get("slug") or None,
            listed_at=_as_float(row.get("listedAt")),
        )

    @property
    def chain_list(self) -> tuple[str, ...]:
        if self.chains:
            return self.chains
        if self.chain:
            return (self.chain,)
        return ("Unknown",)

    def change_for(self, timeframe: str) -> float:
        if timeframe == "24h":
            return self.change_1d or 0.0
        if timeframe == "7d":
            return self.change_7d or 0.0
        if timeframe == "30d":
            return self.change_30d or 0.0
        return 0.0


@dataclass(frozen=True)
class Chain:
    name: str
    tvl: float = 0.0
    protocol_count: int = 0
    change_1d: float | None = None
    change_7d: float | None = None
    change_30d: float | None = None
    token_symbol: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Chain":
        protocols = row.get("protocols")
        if isinstance(protocols, list):
            protocol_count = len(protocols)
        else:
            protocol_count = int(_as_float(protocols) or 0)
        return cls(
            name=str(row.get("name") or "Unknown"),
            tvl=max(0.0, _as_float(row.get("tvl")) or 0.0),
            protocol_count=protocol_count,
            change_1d=_as_float(row.get("change_1d")),
            change_7d=_as_float(row.get("change_7d")),
            change_30d=_as_float(row.get("change_30d")),
            token_symbol=row.get("tokenSymbol") or None,
        )


@dataclass(frozen=True)
class HistoricalSeries:
    points: tuple[tuple[float, float], ...]

    @classmethod
    def from_rows(cls, rows: list[Mapping[str, Any]]) -> "HistoricalSeries":
        points: list[tuple[float, float]] = []
        for row in rows:
            ts = _as_float(row.get("date"))
            tvl = _as_float(row.get("tvl", row.get("totalLiquidityUSD")))
            if ts is None or tvl is None:
                continue
            points.append((ts, tvl))
        points.sort(key=lambda item: item[0])
        return cls(points=tuple(points))

    def window(self, timeframe: str) -> "HistoricalSeries":
        if not self.points:
            return self
        span = TIMEFRAME_SECONDS.get(timeframe)
        if span is None:
            return self
        cutoff = self.points[-1][0] - span
        return HistoricalSeries(points=tuple(p for p in self.points if p[0] >= cutoff))


@dataclass(frozen=True)
class ProviderSnapshot:
    protocols: tuple[Protocol, ...]
    chains: tuple[Chain, ...]
    fetched_at: float = field(default_factory=lambda: datetime.now(UTC).timestamp())


# ---------------------------------------------------------------------------
# Validated query options
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MarketOverviewOptions:
    detail: DetailLevel = "basic"
    timeframe: Timeframe = "7d"
    categories: tuple[str, ...] | None = None
    chains: tuple[str, ...] | None = None
    limit: int = 10


@dataclass(frozen=True)
class DominanceOptions:
    detail: DetailLevel = "basic"
    limit: int = 20


@dataclass(frozen=True)
class TrendingOptions:
    timeframes: tuple[Timeframe, ...] = ("7d",)
    min_tvl: float = 0.0
    categories: tuple[str, ...] | None = None
    chains: tuple[str, ...] | None = None
    limit: int = 30


@dataclass(frozen=True)
class MoversOptions:
    timeframe: Timeframe = "24h"
    detail: DetailLevel = "basic"
    limit: int = 25
    min_percent_change: float = 1.0


@dataclass(frozen=True)
class ChainEcosystemOptions:
    chain: str
    detail: DetailLevel = "basic"
    limit: int = 50
    sort_by: str = "tvl"
    categories: tuple[str, ...] | None = None


@dataclass(frozen=True)
class ChainsOverviewOptions:
    sort_by: str = "tvl"
    limit: int = 20


# ---------------------------------------------------------------------------
# Derived analytics records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DominanceEntry:
    id: str
    name: str
    tvl: float
    dominance_percentage: float
    category: str
    chain: str
    chains: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChainDominanceEntry:
    name: str
    tvl: float
    dominance_percentage: float
    protocol_count: int
    growth_7d: float
    average_tvl_per_protocol: float = 0.0


@dataclass(frozen=True)
class CategoryDominanceEntry:
    category: str
    tvl: float
    dominance_percentage: float
    protocol_count: int
    average_tvl_per_protocol: float


@dataclass(frozen=True)
class TrendingProtocol:
    id: str
    name: str
    tvl: float
    growth_rate: float
    momentum_score: float
    trending_score: float
    rank: int
    category: str
    chain: str
    logo: str | None = None


@dataclass(frozen=True)
class MoverProtocol:
    id: str
    name: str
    tvl: float
    change_percent: float
    change_absolute: float
    reason: str
    category: str
    chain: str
    logo: str | None = None


@dataclass(frozen=True)
class EmergingProtocol:
    id: str
    name: str
    tvl: float
    growth_rate: float
    emergence_score: float
    category: str
    chain: str
    days_active: int | None = None


@dataclass(frozen=True)
class VolatilityProtocol:
    id: str
    name: str
    tvl: float
    volatility_score: float
    standard_deviation: float
    category: str
    chain: str


@dataclass(frozen=True)
class MoversData:
    gainers: tuple[MoverProtocol, ...] = ()
    losers: tuple[MoverProtocol, ...] = ()


@dataclass(frozen=True)
class Recommendation:
    type: Literal["opportunity", "warning", "strategy", "timing"]
    description: str
    confidence: float
    category: str | None = None
    timeframe: str | None = None
    risk_level: Literal["low", "medium", "high"] | None = None
