from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class ResponseMetadata(BaseModel):
    request_id: str
    response_time_ms: float
    data_source: str
    calculated_at: datetime
    data_freshness: float
    methodology: str
    coverage: float = Field(ge=0.0, le=1.0)
    cache_hit: bool = False


class IntelligentResponse(BaseModel):
    success: Literal[True] = True
    data: Any
    intelligence: dict[str, Any] | None = None
    benchmarks: dict[str, Any] | None = None
    metadata: ResponseMetadata
    timestamp: datetime


class ErrorResponse(BaseModel):
    success: Literal[False] = False
    error: str
    code: str
    timestamp: datetime
    details: list[str] | None = None


class HealthResponse(BaseModel):
    status: str
    endpoints: list[str] = Field(default_factory=list)
    cache: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
