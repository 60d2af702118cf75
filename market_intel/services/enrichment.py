"""Narrative insights and recommendations layered over computed analytics.

Every generator is deterministic: the same analytics always yield the same
insight strings, recommendation confidences and context labels.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import asdict
from typing import Any, Sequence

from market_intel.services import analytics
from market_intel.services.models import (
    CategoryDominanceEntry,
    Chain,
    ChainDominanceEntry,
    DominanceEntry,
    MoversData,
    Protocol,
    Recommendation,
    TrendingProtocol,
)

logger = logging.getLogger(__name__)

NATIVE_TOKENS = {
    "ethereum": "ETH",
    "solana": "SOL",
    "binance-smart-chain": "BNB",
    "polygon": "MATIC",
    "avalanche": "AVAX",
    "arbitrum": "ETH",
    "optimism": "ETH",
    "fantom": "FTM",
}

EXPLORERS = {
    "ethereum": "https://etherscan.io",
    "solana": "https://explorer.solana.com",
    "binance-smart-chain": "https://bscscan.com",
    "polygon": "https://polygonscan.com",
    "avalanche": "https://snowtrace.io",
    "arbitrum": "https://arbiscan.io",
    "optimism": "https://optimistic.etherscan.io",
    "fantom": "https://ftmscan.com",
}

_LAYER2_MARKERS = ("arbitrum", "optimism", "polygon")


def native_token(chain: str) -> str:
    return NATIVE_TOKENS.get(analytics.canonical_chain(chain), "Unknown")


def explorer_url(chain: str) -> str:
    return EXPLORERS.get(analytics.canonical_chain(chain), "")


def dominance_reason(protocol: Protocol) -> str:
    category = (protocol.category or "").lower()
    if "liquid" in category and "staking" in category:
        return "liquid_staking_leader"
    if "dex" in category or "exchange" in category:
        return "dex_liquidity_leader"
    if "lending" in category or "borrow" in category:
        return "lending_innovation"
    if "yield" in category or "farm" in category:
        return "yield_optimization"
    if "derivatives" in category:
        return "derivatives_pioneer"
    if "bridge" in category or "cross" in category:
        return "cross_chain_leader"
    return "market_leader"


def recommendation_dict(rec: Recommendation) -> dict[str, Any]:
    return {key: value for key, value in asdict(rec).items() if value is not None}


def _bundle(
    insights: Sequence[str | None],
    recommendations: Sequence[Recommendation | None],
    context: dict[str, Any],
) -> dict[str, Any]:
    return {
        "insights": [item for item in insights if item],
        "recommendations": [recommendation_dict(rec) for rec in recommendations if rec is not None],
        "context": context,
    }


def _snake(label: str) -> str:
    return label.strip().lower().replace("-", "_").replace(" ", "_")


# ---------------------------------------------------------------------------
# Market overview
# ---------------------------------------------------------------------------


def market_growth_trend(growth: float) -> str:
    if growth > 10:
        return "market_experiencing_exceptional_growth"
    if growth > 5:
        return "market_experiencing_strong_growth"
    if growth > 0:
        return "market_showing_positive_momentum"
    if growth > -5:
        return "market_in_consolidation_phase"
    if growth > -15:
        return "market_experiencing_correction"
    return "market_in_significant_decline"


def dominating_chain(chains: Sequence[Chain]) -> str | None:
    ranked = sorted(chains, key=lambda c: c.tvl, reverse=True)
    if len(ranked) < 2:
        return None
    leader, runner_up = ranked[0], ranked[1]
    if leader.tvl > runner_up.tvl * 2:
        return f"{_snake(leader.name)}_maintains_strong_dominance"
    if leader.tvl > runner_up.tvl * 1.5:
        return f"{_snake(leader.name)}_leads_but_competition_growing"
    return "multi_chain_ecosystem_becoming_balanced"


def _category_growth(protocols: Sequence[Protocol]) -> list[tuple[str, float]]:
    buckets: dict[str, list[float]] = {}
    for protocol in protocols:
        if protocol.category and protocol.change_7d is not None:
            buckets.setdefault(protocol.category, []).append(protocol.change_7d)
    averages = [(category, sum(values) / len(values)) for category, values in buckets.items()]
    averages.sort(key=lambda item: item[1], reverse=True)
    return averages


def emerging_sector(protocols: Sequence[Protocol]) -> str | None:
    ranked = _category_growth(protocols)
    if not ranked or ranked[0][1] <= 0:
        return None
    return f"{_snake(ranked[0][0])}_sector_showing_emergence"


def innovation_areas(protocols: Sequence[Protocol], count: int = 3) -> list[str]:
    return [_snake(category) for category, growth in _category_growth(protocols)[:count] if growth > 0]


def market_concentration(protocols: Sequence[Protocol]) -> str | None:
    if len(protocols) < 5:
        return None
    total = analytics.total_tvl(protocols)
    if total <= 0:
        return None
    top5 = sum(sorted((p.tvl for p in protocols), reverse=True)[:5])
    concentration = top5 / total * 100
    if concentration > 70:
        return "very_high_protocol_concentration_detected"
    if concentration > 60:
        return "high_protocol_concentration_present"
    if concentration > 40:
        return "moderate_protocol_concentration"
    if concentration > 25:
        return "balanced_protocol_distribution"
    return "highly_distributed_protocol_landscape"


def growth_recommendation(growth: float) -> Recommendation | None:
    if growth > 15:
        return Recommendation(
            type="opportunity",
            description="Exceptional market growth presents prime expansion opportunities across sectors",
            confidence=0.90,
            risk_level="medium",
        )
    if growth > 5:
        return Recommendation(
            type="opportunity",
            description="Strong market growth indicates favorable conditions for strategic positioning",
            confidence=0.85,
            risk_level="low",
        )
    if growth < -10:
        return Recommendation(
            type="strategy",
            description="Market correction may present accumulation opportunities for quality protocols",
            confidence=0.75,
            risk_level="high",
        )
    return None


def diversification_recommendation(protocols: Sequence[Protocol]) -> Recommendation:
    categories = {p.category for p in protocols if p.category}
    if len(categories) > 8:
        return Recommendation(
            type="strategy",
            description="Rich protocol diversity enables sophisticated portfolio construction strategies",
            confidence=0.80,
            category="diversification",
        )
    return Recommendation(
        type="strategy",
        description="Consider diversification across emerging DeFi categories for risk management",
        confidence=0.75,
        category="risk_management",
    )


def chain_opportunity_recommendation(chains: Sequence[Chain]) -> Recommendation | None:
    growing = sorted((c for c in chains if (c.change_7d or 0.0) > 15), key=lambda c: c.change_7d or 0.0, reverse=True)
    if not growing:
        return None
    return Recommendation(
        type="opportunity",
        description=f"{growing[0].name} ecosystem showing exceptional growth momentum",
        confidence=0.82,
        timeframe="7d",
    )


def market_phase(growth: float, total: float) -> str:
    if growth > 20 and total > 200_000_000_000:
        return "bull_expansion"
    if growth > 10:
        return "growth_phase"
    if growth > 0:
        return "accumulation"
    if growth > -10:
        return "consolidation"
    if growth > -20:
        return "correction"
    return "bear_market"


def market_volatility(protocols: Sequence[Protocol]) -> str:
    changes = [abs(p.change_1d) for p in protocols if p.change_1d]
    if not changes:
        return "low"
    average = sum(changes) / len(changes)
    if average > 15:
        return "very_high"
    if average > 10:
        return "high"
    if average > 5:
        return "moderate"
    return "low"


def dominance_shift(chains: Sequence[Chain]) -> str:
    if len(chains) < 2:
        return "insufficient_data"
    for chain in chains:
        name = chain.name.lower()
        if any(marker in name for marker in _LAYER2_MARKERS) and (chain.change_7d or 0.0) > 10:
            return "ethereum_to_l2_migration_accelerating"
    return "ethereum_dominance_stable"


def market_insights(
    protocols: Sequence[Protocol],
    chains: Sequence[Chain],
    total: float,
    growth: float,
) -> dict[str, Any]:
    bundle = _bundle(
        [
            market_growth_trend(growth),
            dominating_chain(chains),
            emerging_sector(protocols),
            market_concentration(protocols),
        ],
        [
            growth_recommendation(growth),
            diversification_recommendation(protocols),
            chain_opportunity_recommendation(chains),
        ],
        {
            "market_phase": market_phase(growth, total),
            "volatility": market_volatility(protocols),
            "innovation_areas": innovation_areas(protocols),
            "dominance_shift": dominance_shift(chains),
        },
    )
    logger.debug("Market insights generated: %s insights, %s recommendations",
                 len(bundle["insights"]), len(bundle["recommendations"]))
    return bundle


# ---------------------------------------------------------------------------
# Dominance
# ---------------------------------------------------------------------------


def protocol_concentration(table: Sequence[DominanceEntry]) -> str | None:
    if not table:
        return None
    top = table[0].dominance_percentage
    if top > 30:
        return "single_protocol_dominance_concerning"
    if top > 20:
        return "leading_protocol_has_significant_influence"
    if top > 10:
        return "healthy_protocol_leadership_detected"
    return "highly_distributed_protocol_landscape"


def chain_distribution(table: Sequence[ChainDominanceEntry]) -> str | None:
    if len(table) < 2:
        return None
    top, second = table[0].dominance_percentage, table[1].dominance_percentage
    if top > 60:
        return "single_chain_dominance_very_high"
    if top - second < 10:
        return "multi_chain_competition_intensifying"
    return "chain_dominance_hierarchy_established"


def category_balance(table: Sequence[CategoryDominanceEntry]) -> str | None:
    if not table:
        return None
    top = table[0].dominance_percentage
    if top > 40:
        return "single_category_dominance_detected"
    if top > 25:
        return "category_leadership_established"
    return "balanced_category_distribution"


def dominance_recommendation(table: Sequence[DominanceEntry]) -> Recommendation | None:
    if table and table[0].dominance_percentage > 25:
        return Recommendation(
            type="warning",
            description="High concentration risk detected - consider diversification strategies",
            confidence=0.88,
            risk_level="medium",
        )
    return None


def chain_diversification_recommendation(table: Sequence[ChainDominanceEntry]) -> Recommendation | None:
    if len(table) < 2:
        return None
    return Recommendation(
        type="strategy",
        description="Multi-chain diversification recommended for risk mitigation",
        confidence=0.75,
        category="diversification",
    )


def category_recommendation(table: Sequence[CategoryDominanceEntry]) -> Recommendation | None:
    leader = next((entry for entry in table if "Liquid" in entry.category), None)
    if leader is None:
        return None
    return Recommendation(
        type="opportunity",
        description=f"{leader.category} sector showing strong fundamentals",
        confidence=0.80,
    )


def concentration_level(table: Sequence[DominanceEntry]) -> str:
    top3 = sum(entry.dominance_percentage for entry in table[:3])
    if top3 > 70:
        return "very_high"
    if top3 > 50:
        return "high"
    if top3 > 30:
        return "moderate"
    return "low"


def normalized_entropy(table: Sequence[DominanceEntry]) -> float:
    """Base-2 entropy of the shares divided by its maximum; 0 for fewer than two entries."""
    if len(table) < 2:
        return 0.0
    entropy = 0.0
    for entry in table:
        share = entry.dominance_percentage / 100
        if share > 0:
            entropy -= share * math.log2(share)
    return min(1.0, entropy / math.log2(len(table)))


def competition_health(table: Sequence[DominanceEntry]) -> str:
    if len(table) < 3:
        return "insufficient_competition"
    top1 = table[0].dominance_percentage
    top3 = sum(entry.dominance_percentage for entry in table[:3])
    if top1 < 20 and top3 < 50:
        return "healthy"
    if top1 < 30 and top3 < 60:
        return "moderate"
    return "concerning"


def dominance_insights(
    protocol_table: Sequence[DominanceEntry],
    chain_table: Sequence[ChainDominanceEntry],
    category_table: Sequence[CategoryDominanceEntry],
) -> dict[str, Any]:
    return _bundle(
        [
            protocol_concentration(protocol_table),
            chain_distribution(chain_table),
            category_balance(category_table),
        ],
        [
            dominance_recommendation(protocol_table),
            chain_diversification_recommendation(chain_table),
            category_recommendation(category_table),
        ],
        {
            "concentration_level": concentration_level(protocol_table),
            "diversity_score": normalized_entropy(protocol_table),
            "competition_health": competition_health(protocol_table),
        },
    )


# ---------------------------------------------------------------------------
# Trending
# ---------------------------------------------------------------------------


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def momentum_shift(tables: Sequence[Sequence[TrendingProtocol]]) -> str | None:
    momentum = [t.momentum_score for table in tables for t in table]
    if not momentum:
        return None
    average = _mean(momentum)
    if average > 50:
        return "positive_momentum_detected_across_sectors"
    if average < 30:
        return "momentum_weakening_across_sectors"
    return "mixed_momentum_across_sectors"


def trend_consistency(tables: Sequence[Sequence[TrendingProtocol]]) -> str | None:
    populated = [table for table in tables if table]
    if len(populated) < 2:
        return None
    id_sets = [{t.id for t in table[:10]} for table in populated]
    shared = set.intersection(*id_sets)
    overlap = len(shared) / max(1, min(len(ids) for ids in id_sets))
    if overlap > 0.5:
        return "trend_consistency_high_across_timeframes"
    if overlap > 0.2:
        return "trend_consistency_moderate_across_timeframes"
    return "trend_consistency_low_across_timeframes"


def breakout_protocols(tables: Sequence[Sequence[TrendingProtocol]]) -> str | None:
    breakouts = {t.id for table in tables for t in table if t.growth_rate > 20}
    if len(breakouts) >= 3:
        return "several_protocols_showing_breakout_patterns"
    if breakouts:
        return "isolated_breakout_detected"
    return None


def trending_insights(
    tables: Sequence[Sequence[TrendingProtocol]],
    lead_timeframe: str = "7d",
) -> dict[str, Any]:
    """Insights over per-timeframe tables; `lead_timeframe` is the shortest window requested."""
    entries = [t for table in tables for t in table]
    average_momentum = _mean([t.momentum_score for t in entries])
    average_growth = _mean([t.growth_rate for t in entries])
    average_score = _mean([t.trending_score for t in entries])

    recommendations: list[Recommendation | None] = []
    if entries and average_momentum > 50:
        recommendations.append(Recommendation(
            type="timing",
            description="Current momentum suggests favorable entry conditions for trending protocols",
            confidence=0.78,
            timeframe=lead_timeframe,
        ))
    if entries:
        recommendations.append(Recommendation(
            type="strategy",
            description="Consider phased entry approach for trending opportunities",
            confidence=0.72,
        ))
    if any(t.growth_rate > 30 for t in entries):
        recommendations.append(Recommendation(
            type="warning",
            description="Monitor trend sustainability and implement stop-loss strategies",
            confidence=0.85,
            risk_level="medium",
        ))

    if average_growth > 2:
        market_momentum = "positive"
    elif average_growth < -2:
        market_momentum = "negative"
    else:
        market_momentum = "neutral"
    if average_score > 40:
        strength = "strong"
    elif average_score > 15:
        strength = "moderate"
    else:
        strength = "weak"
    sustained = [t for t in entries if t.momentum_score >= 30]

    return _bundle(
        [momentum_shift(tables), trend_consistency(tables), breakout_protocols(tables)],
        recommendations,
        {
            "market_momentum": market_momentum,
            "trend_strength": strength,
            "sustainability_score": len(sustained) / len(entries) if entries else 0.5,
        },
    )


# ---------------------------------------------------------------------------
# Movers
# ---------------------------------------------------------------------------


def movement_volatility(movers: MoversData) -> str:
    changes = [abs(m.change_percent) for m in (*movers.gainers, *movers.losers)]
    average = _mean(changes)
    if average > 20:
        return "very_high"
    if average > 10:
        return "high"
    if average > 5:
        return "moderate"
    return "low"


def opportunity_index(movers: MoversData) -> float:
    count = len(movers.gainers) + len(movers.losers)
    return min(1.0, max(0.0, len(movers.gainers) / count)) if count else 0.0


def movement_risk_level(movers: MoversData) -> str:
    volatility = movement_volatility(movers)
    if volatility == "very_high":
        return "high"
    if volatility == "high":
        return "medium"
    return "low"


def movement_breadth(movers: MoversData) -> str | None:
    gainers, losers = len(movers.gainers), len(movers.losers)
    if gainers == 0 and losers == 0:
        return None
    if gainers > losers * 1.5:
        return "gainers_outnumber_losers"
    if losers > gainers * 1.5:
        return "losers_outnumber_gainers"
    return "balanced_market_movement"


def movement_cause(movers: MoversData) -> str | None:
    reasons = Counter(m.reason for m in (*movers.gainers, *movers.losers))
    if not reasons:
        return None
    reason, _ = reasons.most_common(1)[0]
    return f"movements_primarily_driven_by_{reason}"


def movement_sustainability(movers: MoversData) -> str | None:
    entries = [*movers.gainers, *movers.losers]
    if not entries:
        return None
    major = sum(1 for m in entries if m.reason == "major_protocol_update")
    if major / len(entries) > 0.3:
        return "movement_sustainability_requires_monitoring"
    return "movements_within_normal_ranges"


def movement_insights(movers: MoversData) -> dict[str, Any]:
    volatility = movement_volatility(movers)
    recommendations: list[Recommendation | None] = []
    if volatility in ("high", "very_high"):
        recommendations.append(Recommendation(
            type="warning",
            description="Elevated volatility detected - implement risk management measures",
            confidence=0.87,
            risk_level="high",
        ))
    if movers.gainers:
        recommendations.append(Recommendation(
            type="opportunity",
            description="Strong gainers present momentum investment opportunities",
            confidence=0.76,
        ))
    if movers.gainers or movers.losers:
        recommendations.append(Recommendation(
            type="strategy",
            description="Implement position sizing and diversification for volatile conditions",
            confidence=0.90,
            category="risk_management",
        ))
    return _bundle(
        [movement_breadth(movers), movement_cause(movers), movement_sustainability(movers)],
        recommendations,
        {
            "market_volatility": volatility,
            "opportunity_index": opportunity_index(movers),
            "risk_level": movement_risk_level(movers),
        },
    )


# ---------------------------------------------------------------------------
# Chain ecosystem
# ---------------------------------------------------------------------------


def chain_insights(chain: Chain, protocol_count: int, rank: int) -> dict[str, Any]:
    growth = chain.change_7d or 0.0
    if protocol_count > 100:
        maturity = "mature_ecosystem_with_high_protocol_diversity"
    elif protocol_count > 50:
        maturity = "growing_ecosystem_with_good_protocol_adoption"
    else:
        maturity = "emerging_ecosystem_with_potential_for_growth"

    momentum: str | None = None
    recommendation: Recommendation | None = None
    if growth > 10:
        momentum = "strong_growth_momentum_detected"
        recommendation = Recommendation(
            type="opportunity",
            description="Strong growth trend suggests expansion opportunities",
            confidence=0.8,
        )
    elif growth < -10:
        momentum = "market_consolidation_phase"
        recommendation = Recommendation(
            type="warning",
            description="Negative growth may indicate market challenges",
            confidence=0.75,
        )

    if growth > 0:
        health = "healthy"
    elif growth > -5:
        health = "stable"
    else:
        health = "declining"
    if growth > 5:
        trend = "strong_growth"
    elif growth > 0:
        trend = "moderate_growth"
    else:
        trend = "declining"
    if protocol_count > 100:
        innovation = "high"
    elif protocol_count > 50:
        innovation = "medium"
    else:
        innovation = "low"

    return _bundle(
        [maturity, momentum],
        [recommendation],
        {
            "chain_health": health,
            "growth_trend": trend,
            "competitive_position": analytics.competitive_position(rank),
            "innovation_level": innovation,
        },
    )
