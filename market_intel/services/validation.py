from __future__ import annotations

import logging
import math
from typing import Any, Callable, Mapping

from market_intel.services.errors import ValidationError
from market_intel.services.models import (
    ChainEcosystemOptions,
    ChainsOverviewOptions,
    DominanceOptions,
    MarketOverviewOptions,
    MoversOptions,
    TrendingOptions,
)

logger = logging.getLogger(__name__)

DETAIL_LEVELS = ("minimal", "basic", "full")
TIMEFRAMES = ("24h", "7d", "30d")

ALLOWED_CATEGORIES = frozenset({
    "dex", "lending", "liquid-staking", "yield-farming",
    "derivatives", "cross-chain", "insurance", "launchpad",
    "nft-marketplace", "gaming", "social", "real-world-assets",
    "bridge", "options", "prediction-markets", "asset-management",
})

ALLOWED_CHAINS = frozenset({
    "ethereum", "bsc", "polygon", "avalanche", "arbitrum",
    "optimism", "fantom", "solana", "terra", "cosmos",
    "near", "flow", "cardano", "polkadot", "kusama",
    "moonbeam", "moonriver", "aurora", "harmony", "celo",
    "binance-smart-chain",
})

# Order matters: it is echoed back in error messages.
SUPPORTED_CHAINS = (
    "ethereum", "solana", "binance-smart-chain", "polygon",
    "avalanche", "arbitrum", "optimism", "fantom", "cronos", "aurora",
)

CHAIN_ALIASES: Mapping[str, str] = {
    "eth": "ethereum",
    "sol": "solana",
    "bsc": "binance-smart-chain",
    "poly": "polygon",
    "avax": "avalanche",
    "arb": "arbitrum",
    "op": "optimism",
    "ftm": "fantom",
}

MAX_LIST_ITEMS = 10
MAX_TIMEFRAMES = 5
MAX_MIN_TVL = 10_000_000_000.0
MAX_MIN_PERCENT_CHANGE = 1000.0

CHAIN_ECOSYSTEM_SORT_FIELDS = ("tvl", "growth", "marketShare", "name")
CHAINS_OVERVIEW_SORT_FIELDS = ("tvl", "name", "protocolCount", "dominance")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return True
    return False


# ---------------------------------------------------------------------------
# Primitives. Each appends to `errors` and returns a safe value.
# ---------------------------------------------------------------------------


def validate_enum(value: Any, field: str, allowed: tuple[str, ...], default: str, errors: list[str]) -> str:
    if _is_missing(value):
        return default
    if not isinstance(value, str):
        errors.append(f"{field} must be a string")
        return default
    clean = value.strip().lower()
    if clean not in allowed:
        errors.append(f"{field} must be one of: {', '.join(allowed)}")
        return default
    return clean


def validate_bounded_number(
    value: Any,
    field: str,
    errors: list[str],
    default: float,
    minimum: float,
    maximum: float,
    integer: bool = False,
    too_low: str | None = None,
    too_high: str | None = None,
) -> float:
    """Parse a numeric bound: reject non-numeric or low values, clamp high values to `maximum`."""
    if _is_missing(value):
        return default
    if isinstance(value, (list, tuple)):
        value = value[0]
    try:
        parsed = float(str(value).strip())
        if integer:
            parsed = float(int(parsed))
    except (TypeError, ValueError, OverflowError):
        errors.append(f"{field} must be a number")
        return default
    if math.isnan(parsed):
        errors.append(f"{field} must be a number")
        return default
    if parsed < minimum:
        errors.append(too_low or f"{field} must be at least {_fmt_bound(minimum)}")
        return default
    if parsed > maximum:
        errors.append(too_high or f"{field} cannot exceed {_fmt_bound(maximum)}")
        return maximum
    return parsed


def _fmt_bound(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def validate_limit(value: Any, errors: list[str], default: int, minimum: int = 1, maximum: int = 50) -> int:
    return int(validate_bounded_number(value, "limit", errors, default, minimum, maximum, integer=True))


def validate_min_tvl(value: Any, errors: list[str]) -> float:
    return validate_bounded_number(
        value,
        "minTvl",
        errors,
        default=0.0,
        minimum=0.0,
        maximum=MAX_MIN_TVL,
        too_low="minTvl cannot be negative",
        too_high="minTvl cannot exceed 10 billion",
    )


def validate_min_percent_change(value: Any, errors: list[str]) -> float:
    return validate_bounded_number(
        value,
        "minPercentChange",
        errors,
        default=1.0,
        minimum=0.0,
        maximum=MAX_MIN_PERCENT_CHANGE,
        too_low="minPercentChange cannot be negative",
        too_high="minPercentChange cannot exceed 1000%",
    )


def _split_list(value: Any, field: str, errors: list[str], max_items: int) -> list[str] | None:
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = []
        for item in value:
            items.extend(str(item).split(","))
    else:
        errors.append(f"{field} must be a string or array")
        return None
    cleaned = [item.strip().lower() for item in items]
    deduped = list(dict.fromkeys(item for item in cleaned if item))
    return deduped[:max_items]


def validate_list(
    value: Any,
    field: str,
    allowed: frozenset[str] | tuple[str, ...],
    errors: list[str],
    max_items: int = MAX_LIST_ITEMS,
) -> tuple[str, ...] | None:
    if _is_missing(value):
        return None
    items = _split_list(value, field, errors, max_items)
    if items is None:
        return None
    valid = [item for item in items if item in allowed]
    invalid = [item for item in items if item not in allowed]
    if invalid:
        errors.append(f"Invalid {field}: {', '.join(invalid)}")
    return tuple(valid) if valid else None


def validate_timeframes(value: Any, errors: list[str]) -> tuple[str, ...]:
    if _is_missing(value):
        return ("7d",)
    items = _split_list(value, "timeframes", errors, MAX_TIMEFRAMES)
    if items is None:
        return ("7d",)
    valid = [item for item in items if item in TIMEFRAMES]
    invalid = [item for item in items if item not in TIMEFRAMES]
    if invalid:
        errors.append(f"Invalid timeframes: {', '.join(invalid)}")
    if not valid:
        errors.append(f"At least one valid timeframe required: {', '.join(TIMEFRAMES)}")
        return ("7d",)
    return tuple(valid)


def normalize_chain_name(value: Any, errors: list[str]) -> str:
    if _is_missing(value) or not isinstance(value, str):
        errors.append("chain parameter is required and must be a string")
        return ""
    clean = value.strip().lower()
    normalized = CHAIN_ALIASES.get(clean, clean)
    if normalized not in SUPPORTED_CHAINS:
        errors.append(f"Unsupported chain: {value}. Supported: {', '.join(SUPPORTED_CHAINS)}")
        return ""
    return normalized


def validate_sort_by(value: Any, allowed: tuple[str, ...], errors: list[str]) -> str:
    if _is_missing(value):
        return allowed[0]
    if not isinstance(value, str):
        errors.append("sortBy must be a string")
        return allowed[0]
    by_lower = {item.lower(): item for item in allowed}
    match = by_lower.get(value.strip().lower())
    if match is None:
        errors.append(f"sortBy must be one of: {', '.join(allowed)}")
        return allowed[0]
    return match


def _raise_if_errors(endpoint: str, errors: list[str], query: Mapping[str, Any]) -> None:
    if errors:
        logger.warning("%s validation failed: %s query=%s", endpoint, errors, dict(query))
        raise ValidationError(errors)


# ---------------------------------------------------------------------------
# Endpoint validators
# ---------------------------------------------------------------------------


def validate_market_overview_query(query: Mapping[str, Any]) -> MarketOverviewOptions:
    errors: list[str] = []
    detail = validate_enum(query.get("detail"), "detail", DETAIL_LEVELS, "basic", errors)
    timeframe = validate_enum(query.get("timeframe"), "timeframe", TIMEFRAMES, "7d", errors)
    categories = validate_list(query.get("categories"), "categories", ALLOWED_CATEGORIES, errors)
    chains = validate_list(query.get("chains"), "chains", ALLOWED_CHAINS, errors)
    limit = validate_limit(query.get("limit"), errors, default=10, maximum=50)
    _raise_if_errors("market_overview", errors, query)
    return MarketOverviewOptions(
        detail=detail,  # type: ignore[arg-type]
        timeframe=timeframe,  # type: ignore[arg-type]
        categories=categories,
        chains=chains,
        limit=limit,
    )


def validate_dominance_query(query: Mapping[str, Any]) -> DominanceOptions:
    errors: list[str] = []
    detail = validate_enum(query.get("detail"), "detail", DETAIL_LEVELS, "basic", errors)
    limit = validate_limit(query.get("limit"), errors, default=20, maximum=50)
    _raise_if_errors("market_dominance", errors, query)
    return DominanceOptions(detail=detail, limit=limit)  # type: ignore[arg-type]


def validate_trending_query(query: Mapping[str, Any]) -> TrendingOptions:
    errors: list[str] = []
    timeframes = validate_timeframes(query.get("timeframes"), errors)
    min_tvl = validate_min_tvl(query.get("minTvl"), errors)
    categories = validate_list(query.get("categories"), "categories", ALLOWED_CATEGORIES, errors)
    chains = validate_list(query.get("chains"), "chains", ALLOWED_CHAINS, errors)
    limit = validate_limit(query.get("limit"), errors, default=30, maximum=30)
    _raise_if_errors("market_trending", errors, query)
    return TrendingOptions(
        timeframes=timeframes,  # type: ignore[arg-type]
        min_tvl=min_tvl,
        categories=categories,
        chains=chains,
        limit=limit,
    )


def validate_movers_query(query: Mapping[str, Any]) -> MoversOptions:
    errors: list[str] = []
    timeframe = validate_enum(query.get("timeframe"), "timeframe", TIMEFRAMES, "24h", errors)
    detail = validate_enum(query.get("detail"), "detail", DETAIL_LEVELS, "basic", errors)
    limit = validate_limit(query.get("limit"), errors, default=25, maximum=25)
    min_percent_change = validate_min_percent_change(query.get("minPercentChange"), errors)
    _raise_if_errors("market_movers", errors, query)
    return MoversOptions(
        timeframe=timeframe,  # type: ignore[arg-type]
        detail=detail,  # type: ignore[arg-type]
        limit=limit,
        min_percent_change=min_percent_change,
    )


def validate_chain_ecosystem_query(query: Mapping[str, Any]) -> ChainEcosystemOptions:
    errors: list[str] = []
    chain = normalize_chain_name(query.get("chain"), errors)
    detail = validate_enum(query.get("detail"), "detail", DETAIL_LEVELS, "basic", errors)
    limit = validate_limit(query.get("limit"), errors, default=50, maximum=100)
    sort_by = validate_sort_by(query.get("sortBy"), CHAIN_ECOSYSTEM_SORT_FIELDS, errors)
    categories = validate_list(query.get("categories"), "categories", ALLOWED_CATEGORIES, errors)
    _raise_if_errors("chain_ecosystem", errors, query)
    return ChainEcosystemOptions(
        chain=chain,
        detail=detail,  # type: ignore[arg-type]
        limit=limit,
        sort_by=sort_by,
        categories=categories,
    )


def validate_chains_overview_query(query: Mapping[str, Any]) -> ChainsOverviewOptions:
    errors: list[str] = []
    sort_by = validate_sort_by(query.get("sortBy"), CHAINS_OVERVIEW_SORT_FIELDS, errors)
    limit = validate_limit(query.get("limit"), errors, default=20, maximum=50)
    _raise_if_errors("chains_overview", errors, query)
    return ChainsOverviewOptions(sort_by=sort_by, limit=limit)


VALIDATORS: dict[str, Callable[[Mapping[str, Any]], Any]] = {
    "market_overview": validate_market_overview_query,
    "market_dominance": validate_dominance_query,
    "market_trending": validate_trending_query,
    "market_movers": validate_movers_query,
    "chain_ecosystem": validate_chain_ecosystem_query,
    "chains_overview": validate_chains_overview_query,
}


def validate_query(endpoint: str, query: Mapping[str, Any]) -> Any:
    validator = VALIDATORS.get(endpoint)
    if validator is None:
        raise KeyError(f"Unsupported endpoint '{endpoint}'")
    return validator(query)
