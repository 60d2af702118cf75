from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from market_intel.api.schemas import HealthResponse, IntelligentResponse
from market_intel.services.data_service import DataService

PREFIX = "/api/v1/defi/market"

router = APIRouter()
_service = DataService()


def get_data_service() -> DataService:
    return _service


def _raw_query(request: Request) -> dict[str, Any]:
    """Query params as a plain dict; repeated keys collapse into a list."""
    raw: dict[str, Any] = {}
    for key, value in request.query_params.multi_items():
        if key not in raw:
            raw[key] = value
        elif isinstance(raw[key], list):
            raw[key].append(value)
        else:
            raw[key] = [raw[key], value]
    return raw


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get(f"{PREFIX}/health", response_model=HealthResponse)
def market_health(svc: DataService = Depends(get_data_service)) -> HealthResponse:
    return HealthResponse(**svc.health())


@router.get(f"{PREFIX}/overview", response_model=IntelligentResponse, response_model_exclude_none=True)
def market_overview(request: Request, svc: DataService = Depends(get_data_service)) -> IntelligentResponse:
    return IntelligentResponse(**svc.get_endpoint_data("market_overview", _raw_query(request)))


@router.get(f"{PREFIX}/dominance", response_model=IntelligentResponse, response_model_exclude_none=True)
def market_dominance(request: Request, svc: DataService = Depends(get_data_service)) -> IntelligentResponse:
    return IntelligentResponse(**svc.get_endpoint_data("market_dominance", _raw_query(request)))


@router.get(f"{PREFIX}/trending", response_model=IntelligentResponse, response_model_exclude_none=True)
def market_trending(request: Request, svc: DataService = Depends(get_data_service)) -> IntelligentResponse:
    return IntelligentResponse(**svc.get_endpoint_data("market_trending", _raw_query(request)))


@router.get(f"{PREFIX}/movers", response_model=IntelligentResponse, response_model_exclude_none=True)
def market_movers(request: Request, svc: DataService = Depends(get_data_service)) -> IntelligentResponse:
    return IntelligentResponse(**svc.get_endpoint_data("market_movers", _raw_query(request)))


@router.get(f"{PREFIX}/chains/overview", response_model=IntelligentResponse, response_model_exclude_none=True)
def chains_overview(request: Request, svc: DataService = Depends(get_data_service)) -> IntelligentResponse:
    return IntelligentResponse(**svc.get_endpoint_data("chains_overview", _raw_query(request)))


@router.get(
    f"{PREFIX}/chains/{{chain}}/ecosystem",
    response_model=IntelligentResponse,
    response_model_exclude_none=True,
)
def chain_ecosystem(
    chain: str,
    request: Request,
    svc: DataService = Depends(get_data_service),
) -> IntelligentResponse:
    query = _raw_query(request)
    query["chain"] = chain
    return IntelligentResponse(**svc.get_endpoint_data("chain_ecosystem", query))
