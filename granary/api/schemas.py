"""Pydantic schemas for Granary API requests and responses.

Service-layer models (``SignalOut``, ``PolicyOut``, ``ProfitMatrix``,
``LearningInsights``, ``JobRun``) are returned as-is; this module holds the
request bodies and the few responses that exist only at the HTTP edge.
"""

from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from granary.insurance.indemnity import CountyYields


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class DismissRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ActionRequest(BaseModel):
    """Body for POST /v1/businesses/{id}/signals/{signal_id}/action.

    Attributes
    ----------
    action:
        Free-text description of what was done, e.g. ``"Sold 5,000 bu"``.
    """

    action: str = Field(..., min_length=1, max_length=500)


class EstimateRequest(BaseModel):
    actual_yield: float = Field(..., ge=0)
    harvest_price: float = Field(..., gt=0)
    county: Optional[CountyYields] = None


class JobTriggerRequest(BaseModel):
    force: bool = False


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class GenerateResponse(BaseModel):
    business_id: UUID
    signals_changed: int
    signal_ids: list[UUID]


class HealthResponse(BaseModel):
    """Response for GET /v1/health.

    Attributes
    ----------
    status:
        ``"ok"`` | ``"error"``.
    database:
        ``"ok"`` or the connection error text.
    market_open:
        Whether CBOT grain futures are trading right now.
    """

    status: str
    version: str
    database: str = "unknown"
    market_open: bool = False
    active_signals: int = 0
    jobs: Optional[dict[str, Any]] = None
