"""Pure analytics over provider snapshots.

Nothing here performs I/O or raises on empty input: totals of zero produce
empty tables and zero-valued indices.
"""

from __future__ import annotations

import logging
import math
import statistics
from collections import Counter
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Iterable, Mapping, Sequence

from market_intel.services.models import (
    TIMEFRAME_SECONDS,
    CategoryDominanceEntry,
    Chain,
    ChainDominanceEntry,
    DominanceEntry,
    EmergingProtocol,
    HistoricalSeries,
    MoverProtocol,
    MoversData,
    Protocol,
    TrendingProtocol,
    VolatilityProtocol,
)

logger = logging.getLogger(__name__)

LIQUIDITY_FLOOR = 1_000_000.0
EMERGING_TVL_CEILING = 50_000_000.0
VOLATILITY_TVL_FLOOR = 10_000_000.0
CONCENTRATION_TOP_N = 5
OVERALL_TRENDING_LIMIT = 20
EMERGING_LIMIT = 10
VOLATILITY_LIMIT = 5
MOMENTUM_LIST_LIMIT = 5
CHAIN_COMPARISON_LIMIT = 5

_CATEGORY_SLUGS = {
    "dexes": "dex",
    "dexs": "dex",
    "dex": "dex",
    "lending": "lending",
    "cdp": "lending",
    "liquid staking": "liquid-staking",
    "liquid restaking": "liquid-staking",
    "yield": "yield-farming",
    "yield aggregator": "yield-farming",
    "farm": "yield-farming",
    "derivatives": "derivatives",
    "cross chain": "cross-chain",
    "cross chain bridge": "bridge",
    "bridge": "bridge",
    "insurance": "insurance",
    "launchpad": "launchpad",
    "nft marketplace": "nft-marketplace",
    "gaming": "gaming",
    "sofi": "social",
    "rwa": "real-world-assets",
    "rwa lending": "real-world-assets",
    "options": "options",
    "options vault": "options",
    "prediction market": "prediction-markets",
    "indexes": "asset-management",
    "liquidity manager": "asset-management",
    "onchain capital allocator": "asset-management",
}

_CHAIN_CANONICAL = {
    "bsc": "binance-smart-chain",
    "binance": "binance-smart-chain",
    "bnb": "binance-smart-chain",
    "bnb chain": "binance-smart-chain",
    "op mainnet": "optimism",
    "avax": "avalanche",
    "eth": "ethereum",
    "matic": "polygon",
}


# ---------------------------------------------------------------------------
# Naming helpers
# ---------------------------------------------------------------------------


def category_slug(category: str | None) -> str | None:
    if not category:
        return None
    clean = category.strip().lower()
    return _CATEGORY_SLUGS.get(clean, clean.replace(" ", "-"))


def canonical_chain(name: str | None) -> str:
    if not name:
        return ""
    clean = name.strip().lower()
    return _CHAIN_CANONICAL.get(clean, clean.replace(" ", "-"))


def protocol_on_chain(protocol: Protocol, chain: str) -> bool:
    target = canonical_chain(chain)
    return any(canonical_chain(name) == target for name in protocol.chain_list)


def protocol_tvl_on_chain(protocol: Protocol, chain: str) -> float:
    """TVL the protocol holds on one chain, falling back to its total for single-chain protocols."""
    target = canonical_chain(chain)
    for name, tvl in protocol.chain_tvls.items():
        if canonical_chain(name) == target:
            return max(0.0, tvl)
    if len(protocol.chain_list) <= 1:
        return protocol.tvl
    return 0.0


def protocol_counts(protocols: Iterable[Protocol]) -> Counter[str]:
    """Protocols listed on each chain, keyed by canonical chain name."""
    counts: Counter[str] = Counter()
    for protocol in protocols:
        for chain in {canonical_chain(name) for name in protocol.chain_list}:
            counts[chain] += 1
    return counts


def chain_protocol_count(chain: Chain, counts: Mapping[str, int] | None) -> int:
    if counts:
        return counts.get(canonical_chain(chain.name), chain.protocol_count)
    return chain.protocol_count


def filter_protocols(
    protocols: Iterable[Protocol],
    categories: Sequence[str] | None = None,
    chains: Sequence[str] | None = None,
    min_tvl: float = 0.0,
) -> list[Protocol]:
    category_set = set(categories) if categories else None
    chain_set = {canonical_chain(c) for c in chains} if chains else None
    filtered: list[Protocol] = []
    for protocol in protocols:
        if protocol.tvl < min_tvl:
            continue
        if category_set is not None and category_slug(protocol.category) not in category_set:
            continue
        if chain_set is not None and not any(canonical_chain(c) in chain_set for c in protocol.chain_list):
            continue
        filtered.append(protocol)
    return filtered


# ---------------------------------------------------------------------------
# Dominance and concentration
# ---------------------------------------------------------------------------


def total_tvl(protocols: Iterable[Protocol | Chain]) -> float:
    return sum(max(0.0, item.tvl) for item in protocols)


def calculate_dominance(protocols: Sequence[Protocol]) -> list[DominanceEntry]:
    ranked = sorted((p for p in protocols if p.tvl > 0), key=lambda p: p.tvl, reverse=True)
    total = sum(p.tvl for p in ranked)
    if total <= 0:
        return []
    return [
        DominanceEntry(
            id=p.id,
            name=p.name,
            tvl=p.tvl,
            dominance_percentage=p.tvl / total * 100,
            category=p.category or "Unknown",
            chain=p.chain or "Unknown",
            chains=p.chain_list,
        )
        for p in ranked
    ]


def calculate_chain_dominance(
    chains: Sequence[Chain],
    counts: Mapping[str, int] | None = None,
) -> list[ChainDominanceEntry]:
    """Chain shares of total TVL; `counts` (from `protocol_counts`) override provider protocol counts."""
    groups: dict[str, list[Chain]] = {}
    for chain in chains:
        if chain.tvl <= 0:
            continue
        groups.setdefault(chain.name or "Multi-Chain", []).append(chain)
    total = sum(c.tvl for members in groups.values() for c in members)
    if total <= 0:
        return []
    entries: list[ChainDominanceEntry] = []
    for name, members in groups.items():
        tvl = sum(c.tvl for c in members)
        count = sum(chain_protocol_count(c, counts) for c in members)
        # TVL-weighted so merged duplicates don't skew growth.
        growth = sum((c.change_7d or 0.0) * c.tvl for c in members) / tvl
        entries.append(
            ChainDominanceEntry(
                name=name,
                tvl=tvl,
                dominance_percentage=tvl / total * 100,
                protocol_count=count,
                growth_7d=growth,
                average_tvl_per_protocol=tvl / count if count else 0.0,
            )
        )
    entries.sort(key=lambda e: e.tvl, reverse=True)
    return entries


def calculate_category_dominance(protocols: Sequence[Protocol]) -> list[CategoryDominanceEntry]:
    totals: dict[str, float] = {}
    counts: dict[str, int] = {}
    for protocol in protocols:
        category = protocol.category or "Other"
        totals[category] = totals.get(category, 0.0) + max(0.0, protocol.tvl)
        counts[category] = counts.get(category, 0) + 1
    total = sum(totals.values())
    if total <= 0:
        return []
    entries = [
        CategoryDominanceEntry(
            category=category,
            tvl=tvl,
            dominance_percentage=tvl / total * 100,
            protocol_count=counts[category],
            average_tvl_per_protocol=tvl / counts[category],
        )
        for category, tvl in totals.items()
        if tvl > 0
    ]
    entries.sort(key=lambda e: e.tvl, reverse=True)
    return entries


def concentration_index(percentages: Sequence[float], top_n: int = CONCENTRATION_TOP_N) -> float:
    return sum(percentages[:top_n])


def herfindahl_index(percentages: Iterable[float]) -> float:
    return sum((pct / 100) ** 2 for pct in percentages)


def shannon_index(percentages: Iterable[float]) -> float:
    value = 0.0
    for pct in percentages:
        share = pct / 100
        if share > 0:
            value -= share * math.log(share)
    return value


def diversity_metrics(table: Sequence[Any]) -> dict[str, float]:
    percentages = [entry.dominance_percentage for entry in table]
    return {
        "herfindahl_index": herfindahl_index(percentages),
        "shannon_index": shannon_index(percentages),
    }


# ---------------------------------------------------------------------------
# Trending
# ---------------------------------------------------------------------------


def _acceleration(protocol: Protocol, timeframe: str) -> float:
    daily_1d = protocol.change_1d or 0.0
    daily_7d = (protocol.change_7d or 0.0) / 7
    daily_30d = (protocol.change_30d or 0.0) / 30
    if timeframe == "24h":
        return daily_1d - daily_7d
    if timeframe == "7d":
        return daily_7d - daily_30d
    return daily_30d


def momentum_score(protocol: Protocol, timeframe: str) -> float:
    score = 10 * _acceleration(protocol, timeframe)
    if (protocol.change_7d or 0.0) > 0:
        score += 20
    return min(100.0, max(0.0, score))


def calculate_trending_scores(protocols: Sequence[Protocol], timeframe: str, limit: int) -> list[TrendingProtocol]:
    """Score liquid protocols for one timeframe and return the ranked top `limit`.

    trending = 0.4 * growth + 0.4 * momentum + 0.2 * volume, floored at zero;
    volume is the protocol's absolute TVL flow relative to the largest flow.
    """
    eligible = [p for p in protocols if p.tvl > LIQUIDITY_FLOOR]
    flows = [abs(p.tvl * p.change_for(timeframe) / 100) for p in eligible]
    max_flow = max(flows, default=0.0)

    scored: list[TrendingProtocol] = []
    for protocol, flow in zip(eligible, flows):
        growth = protocol.change_for(timeframe)
        momentum = momentum_score(protocol, timeframe)
        volume = 50 * flow / max_flow if max_flow > 0 else 0.0
        score = max(0.0, 0.4 * growth + 0.4 * momentum + 0.2 * volume)
        if score <= 0:
            continue
        scored.append(
            TrendingProtocol(
                id=protocol.id,
                name=protocol.name,
                tvl=protocol.tvl,
                growth_rate=growth,
                momentum_score=momentum,
                trending_score=score,
                rank=0,
                category=protocol.category or "Unknown",
                chain=protocol.chain or "Unknown",
                logo=protocol.logo,
            )
        )
    scored.sort(key=lambda t: t.trending_score, reverse=True)
    return [replace(entry, rank=index + 1) for index, entry in enumerate(scored[:limit])]


def calculate_overall_trending(
    tables: Sequence[Sequence[TrendingProtocol]],
    limit: int = OVERALL_TRENDING_LIMIT,
) -> list[TrendingProtocol]:
    first_seen: dict[str, TrendingProtocol] = {}
    scores: dict[str, list[float]] = {}
    for table in tables:
        for entry in table:
            first_seen.setdefault(entry.id, entry)
            scores.setdefault(entry.id, []).append(entry.trending_score)
    merged = [
        replace(entry, trending_score=sum(scores[key]) / len(scores[key]))
        for key, entry in first_seen.items()
    ]
    merged.sort(key=lambda t: t.trending_score, reverse=True)
    return [replace(entry, rank=index + 1) for index, entry in enumerate(merged[:limit])]


def accelerating_protocols(table: Sequence[TrendingProtocol]) -> list[TrendingProtocol]:
    return [t for t in table if t.momentum_score > 70][:MOMENTUM_LIST_LIMIT]


def decelerating_protocols(table: Sequence[TrendingProtocol]) -> list[TrendingProtocol]:
    slowing = [t for t in table if t.momentum_score < 30]
    return list(reversed(slowing[-MOMENTUM_LIST_LIMIT:]))


# ---------------------------------------------------------------------------
# Movers, emergence, volatility
# ---------------------------------------------------------------------------


def change_reason(change_percent: float) -> str:
    magnitude = abs(change_percent)
    if magnitude > 50:
        return "major_protocol_update"
    if magnitude > 20:
        return "market_sentiment"
    if magnitude > 10:
        return "competitive_dynamics"
    return "normal_fluctuation"


def calculate_tvl_movers(
    protocols: Sequence[Protocol],
    timeframe: str,
    min_percent_change: float = 1.0,
) -> MoversData:
    movers: list[MoverProtocol] = []
    for protocol in protocols:
        if protocol.tvl <= LIQUIDITY_FLOOR:
            continue
        change = protocol.change_for(timeframe)
        if abs(change) < min_percent_change:
            continue
        movers.append(
            MoverProtocol(
                id=protocol.id,
                name=protocol.name,
                tvl=protocol.tvl,
                change_percent=change,
                change_absolute=protocol.tvl * change / 100,
                reason=change_reason(change),
                category=protocol.category or "Unknown",
                chain=protocol.chain or "Unknown",
                logo=protocol.logo,
            )
        )
    gainers = sorted((m for m in movers if m.change_percent > 0), key=lambda m: m.change_percent, reverse=True)
    losers = sorted((m for m in movers if m.change_percent < 0), key=lambda m: m.change_percent)
    return MoversData(gainers=tuple(gainers), losers=tuple(losers))


def _days_active(listed_at: float | None, now_ts: float) -> int | None:
    if listed_at is None or listed_at <= 0:
        return None
    return max(0, int((now_ts - listed_at) // 86_400))


def emergence_score(protocol: Protocol) -> float:
    growth_component = max(0.0, protocol.change_7d or 0.0) * 0.4
    size_component = min(30.0, max(0.0, 100 - protocol.tvl / 1_000_000)) * 0.3
    activity = min(100.0, 10 * abs(protocol.change_1d or 0.0))
    return min(100.0, max(0.0, growth_component + size_component + activity * 0.3))


def identify_emerging_protocols(
    protocols: Sequence[Protocol],
    limit: int = EMERGING_LIMIT,
    now_ts: float | None = None,
) -> list[EmergingProtocol]:
    now_ts = datetime.now(UTC).timestamp() if now_ts is None else now_ts
    emerging = [
        EmergingProtocol(
            id=p.id,
            name=p.name,
            tvl=p.tvl,
            growth_rate=p.change_7d or 0.0,
            emergence_score=emergence_score(p),
            category=p.category or "Unknown",
            chain=p.chain or "Unknown",
            days_active=_days_active(p.listed_at, now_ts),
        )
        for p in protocols
        if LIQUIDITY_FLOOR < p.tvl < EMERGING_TVL_CEILING
    ]
    emerging.sort(key=lambda e: e.emergence_score, reverse=True)
    return emerging[:limit]


def volatility_protocols(
    protocols: Sequence[Protocol],
    count: int = VOLATILITY_LIMIT,
) -> tuple[list[VolatilityProtocol], list[VolatilityProtocol]]:
    """Return (most volatile, least volatile) protocols above the volatility TVL floor."""
    scored: list[VolatilityProtocol] = []
    for p in protocols:
        if p.tvl <= VOLATILITY_TVL_FLOOR:
            continue
        changes = [c for c in (p.change_1d, p.change_7d, p.change_30d) if c is not None]
        scored.append(
            VolatilityProtocol(
                id=p.id,
                name=p.name,
                tvl=p.tvl,
                volatility_score=0.7 * abs(p.change_1d or 0.0) + 0.3 * abs(p.change_7d or 0.0),
                standard_deviation=statistics.pstdev(changes) if len(changes) >= 2 else 0.0,
                category=p.category or "Unknown",
                chain=p.chain or "Unknown",
            )
        )
    high = sorted(scored, key=lambda v: v.volatility_score, reverse=True)[:count]
    low = sorted(scored, key=lambda v: v.volatility_score)[:count]
    return high, low


# ---------------------------------------------------------------------------
# Benchmarks and history
# ---------------------------------------------------------------------------


def growth_rate_from_history(series: HistoricalSeries | None, timeframe: str) -> float:
    if series is None:
        logger.debug("No historical series for %s growth", timeframe)
        return 0.0
    points = series.window(timeframe).points
    if len(points) < 2:
        logger.debug("Insufficient history for %s growth: %s points", timeframe, len(points))
        return 0.0
    first, last = points[0][1], points[-1][1]
    if first <= 0:
        logger.debug("Historical series for %s starts at non-positive TVL", timeframe)
        return 0.0
    return (last - first) / first * 100


def year_to_date_growth(series: HistoricalSeries | None) -> float:
    if series is None or not series.points:
        return 0.0
    last_ts, last_tvl = series.points[-1]
    year_start = datetime(datetime.fromtimestamp(last_ts, UTC).year, 1, 1, tzinfo=UTC).timestamp()
    first = next((tvl for ts, tvl in series.points if ts >= year_start), None)
    if first is None or first <= 0:
        return 0.0
    return (last_tvl - first) / first * 100


def market_cycle_phase(growth: float) -> str:
    if growth > 15:
        return "bull_market"
    if growth < -15:
        return "bear_market"
    if growth > 5:
        return "growth"
    if growth > -5:
        return "consolidation"
    return "correction"


def average_growth_7d(protocols: Iterable[Protocol]) -> float:
    values = [p.change_7d for p in protocols if p.change_7d is not None]
    return sum(values) / len(values) if values else 0.0


def chain_comparison(chains: Sequence[Chain], limit: int = CHAIN_COMPARISON_LIMIT) -> list[dict[str, Any]]:
    total = total_tvl(chains)
    ranked = sorted((c for c in chains if c.tvl > 0), key=lambda c: c.tvl, reverse=True)[:limit]
    return [
        {
            "name": c.name,
            "tvl": c.tvl,
            "dominance": c.tvl / total * 100 if total > 0 else 0.0,
            "growth_7d": c.change_7d or 0.0,
        }
        for c in ranked
    ]


def calculate_benchmarks(
    protocols: Sequence[Protocol],
    chains: Sequence[Chain],
    historical: HistoricalSeries | None = None,
) -> dict[str, Any]:
    protocol_total = total_tvl(protocols)
    active_chains = [c for c in chains if c.tvl > 0]
    growth_7d = average_growth_7d(protocols)
    if historical is not None and len(historical.points) >= 2:
        all_time_high = max(tvl for _, tvl in historical.points)
        cycle_growth = growth_rate_from_history(historical, "30d")
    else:
        all_time_high = total_tvl(chains) or protocol_total
        cycle_growth = growth_7d
    return {
        "sector_average": {
            "tvl": protocol_total / len(protocols) if protocols else 0.0,
            "growth_7d": growth_7d,
            "protocols_per_chain": len(protocols) / len(active_chains) if active_chains else 0.0,
        },
        "chain_comparison": chain_comparison(chains),
        "historical_context": {
            "all_time_high": all_time_high,
            "year_to_date": year_to_date_growth(historical),
            "market_cycle_phase": market_cycle_phase(cycle_growth),
        },
    }


def new_protocols_count(protocols: Iterable[Protocol], timeframe: str, now_ts: float | None = None) -> int:
    now_ts = datetime.now(UTC).timestamp() if now_ts is None else now_ts
    cutoff = now_ts - TIMEFRAME_SECONDS.get(timeframe, TIMEFRAME_SECONDS["7d"])
    return sum(1 for p in protocols if p.listed_at is not None and p.listed_at >= cutoff)


def data_coverage(protocols: Sequence[Protocol | Chain]) -> float:
    if not protocols:
        return 0.0
    return sum(1 for p in protocols if p.tvl > 0) / len(protocols)


# ---------------------------------------------------------------------------
# Chain ecosystem
# ---------------------------------------------------------------------------


def median_tvl(values: Sequence[float]) -> float:
    return float(statistics.median(values)) if values else 0.0


def top_category(protocols: Iterable[Protocol]) -> str:
    counts: dict[str, int] = {}
    for protocol in protocols:
        category = protocol.category or "Unknown"
        counts[category] = counts.get(category, 0) + 1
    if not counts:
        return "Unknown"
    return max(counts, key=lambda name: counts[name])


def diversity_score(protocols: Iterable[Protocol]) -> float:
    categories = {p.category or "Unknown" for p in protocols}
    return min(1.0, len(categories) / 10)


def chain_rank(chain_name: str, chains: Sequence[Chain]) -> int:
    ranked = sorted(chains, key=lambda c: c.tvl, reverse=True)
    for index, chain in enumerate(ranked):
        if chain.name == chain_name:
            return index + 1
    return 0


def competitive_position(rank: int) -> str:
    if 0 < rank <= 3:
        return "market_leader"
    if 0 < rank <= 10:
        return "strong_competitor"
    if 0 < rank <= 20:
        return "growing_player"
    return "emerging_ecosystem"


def calculate_chain_metrics(protocols: Sequence[Protocol], chain: str, chain_tvl: float) -> dict[str, Any]:
    tvls = sorted((protocol_tvl_on_chain(p, chain) for p in protocols), reverse=True)
    shares = [tvl / chain_tvl * 100 for tvl in tvls] if chain_tvl > 0 else []
    return {
        "average_tvl_per_protocol": chain_tvl / len(protocols) if protocols else 0.0,
        "median_tvl_per_protocol": median_tvl(tvls),
        "top_category": top_category(protocols),
        "diversity_score": diversity_score(protocols) if protocols else 0.0,
        "concentration_index": concentration_index(shares),
        "maturity_score": min(100, 2 * len(protocols)),
    }


def market_distribution(chains: Sequence[Chain]) -> dict[str, float]:
    total = total_tvl(chains)
    if total <= 0:
        return {"top_chain_dominance": 0.0, "top3_chains_dominance": 0.0, "diversity_index": 0.0}
    ranked = sorted((max(0.0, c.tvl) for c in chains), reverse=True)
    return {
        "top_chain_dominance": ranked[0] / total * 100,
        "top3_chains_dominance": sum(ranked[:3]) / total * 100,
        "diversity_index": shannon_index(tvl / total * 100 for tvl in ranked),
    }


def sort_protocols(protocols: Sequence[Protocol], sort_by: str, chain: str | None = None) -> list[Protocol]:
    if sort_by == "name":
        return sorted(protocols, key=lambda p: p.name.lower())
    if sort_by == "growth":
        return sorted(protocols, key=lambda p: p.change_7d or 0.0, reverse=True)
    if sort_by == "marketShare" and chain:
        return sorted(protocols, key=lambda p: protocol_tvl_on_chain(p, chain), reverse=True)
    return sorted(protocols, key=lambda p: p.tvl, reverse=True)


def sort_chains(chains: Sequence[Chain], sort_by: str, protocol_counts: Mapping[str, int] | None = None) -> list[Chain]:
    if sort_by == "name":
        return sorted(chains, key=lambda c: c.name.lower())
    if sort_by == "protocolCount":
        counts = protocol_counts or {}
        return sorted(chains, key=lambda c: counts.get(c.name, c.protocol_count), reverse=True)
    return sorted(chains, key=lambda c: c.tvl, reverse=True)
