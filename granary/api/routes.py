"""Granary FastAPI application — marketing signals, preferences, insurance and jobs.

Endpoints
---------
GET    /v1/businesses/{business_id}/signals                       — list signals
POST   /v1/businesses/{business_id}/signals/generate              — run signal generation now
GET    /v1/businesses/{business_id}/signals/{signal_id}           — one signal
POST   /v1/businesses/{business_id}/signals/{signal_id}/dismiss   — dismiss
POST   /v1/businesses/{business_id}/signals/{signal_id}/action    — record action taken
POST   /v1/businesses/{business_id}/signals/{signal_id}/view      — mark viewed
GET    /v1/businesses/{business_id}/preferences                   — marketing preferences
PUT    /v1/businesses/{business_id}/preferences                   — partial update
GET    /v1/businesses/{business_id}/farms/{farm_id}/insurance     — crop insurance policy
PUT    /v1/businesses/{business_id}/farms/{farm_id}/insurance     — create/replace policy
DELETE /v1/businesses/{business_id}/farms/{farm_id}/insurance     — soft delete policy
POST   /v1/businesses/{business_id}/farms/{farm_id}/insurance/estimate — indemnity estimate
GET    /v1/businesses/{business_id}/farms/{farm_id}/profit-matrix — yield × price matrix
POST   /v1/businesses/{business_id}/decisions                     — record a marketing decision
GET    /v1/users/{user_id}/insights                               — learning insights
GET    /v1/jobs                                                   — scheduler status
POST   /v1/jobs/{name}/run                                        — run one job now
GET    /v1/health                                                 — system health

Authentication is via the ``X-API-Key`` header; the acting user, when the
caller knows it, is passed as ``X-User-Id`` so interactions feed the
learning profile.  Rate limiting allows 100 requests per minute per key.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text

from granary import __version__
from granary.api.schemas import (
    ActionRequest,
    DismissRequest,
    EstimateRequest,
    GenerateResponse,
    HealthResponse,
    JobTriggerRequest,
)
from granary.config import settings
from granary.db import MarketingSignal
from granary.enums import CommodityType, SignalStatus, SignalStrength, SignalType
from granary.errors import GranaryError
from granary.insurance.schemas import IndemnityEstimate, PolicyInput, PolicyOut, ProfitMatrix
from granary.insurance.service import CropInsuranceService
from granary.jobs.service import JobRun, MarketingJobService
from granary.learning.service import DecisionInput, LearningInsights
from granary.signals.preferences import (
    PreferencesOut,
    PreferencesUpdate,
    get_or_create_preferences,
    update_preferences,
)
from granary.signals.schemas import SignalFilters, SignalOut

logger = logging.getLogger("granary.api")

# ---------------------------------------------------------------------------
# In-memory rate limiter
# ---------------------------------------------------------------------------

_rate_limit_windows: dict[str, list[float]] = defaultdict(list)

_RATE_LIMIT_MAX = 100       # requests
_RATE_LIMIT_WINDOW = 60.0   # seconds


def _check_rate_limit(api_key: str) -> None:
    now = time.monotonic()
    cutoff = now - _RATE_LIMIT_WINDOW
    _rate_limit_windows[api_key] = [t for t in _rate_limit_windows[api_key] if t > cutoff]
    if len(_rate_limit_windows[api_key]) >= _RATE_LIMIT_MAX:
        logger.warning("Rate limit exceeded for key=%s", api_key[:8])
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded: 100 requests per 60 seconds.",
        )
    _rate_limit_windows[api_key].append(now)


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------

_jobs: MarketingJobService | None = None
_insurance: CropInsuranceService | None = None


def set_job_service(service: Optional[MarketingJobService]) -> None:
    """Install the process-wide job service (tests and embedding callers)."""
    global _jobs
    _jobs = service


def set_insurance_service(service: Optional[CropInsuranceService]) -> None:
    global _insurance
    _insurance = service


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the shared services; optionally run the in-process scheduler."""
    global _jobs, _insurance

    logger.info("Granary API starting up (version=%s)", __version__)
    if _jobs is None:
        _jobs = MarketingJobService()
    if _insurance is None:
        _insurance = CropInsuranceService()
    if settings.scheduler_in_api:
        _jobs.start()

    yield

    logger.info("Granary API shutting down")
    await _jobs.stop()


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Granary Grain Marketing API",
    description=(
        "Break-even driven grain marketing signals, personalised thresholds and "
        "crop-insurance indemnity estimates."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.exception_handler(GranaryError)
async def granary_error_handler(request: Request, exc: GranaryError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every inbound request with timing."""
    start = time.monotonic()
    response = await call_next(request)
    elapsed_ms = (time.monotonic() - start) * 1000
    logger.info(
        "%s %s → %d (%.1fms)",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


async def require_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    if x_api_key != settings.granary_api_key:
        logger.warning("Invalid API key attempt: %s...", x_api_key[:6])
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key.")
    _check_rate_limit(x_api_key)
    return x_api_key


async def optional_user_id(
    x_user_id: Optional[UUID] = Header(None, alias="X-User-Id"),
) -> Optional[UUID]:
    return x_user_id


def _get_jobs() -> MarketingJobService:
    if _jobs is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job service not initialised.",
        )
    return _jobs


def _get_insurance() -> CropInsuranceService:
    if _insurance is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Insurance service not initialised.",
        )
    return _insurance


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


@app.get("/v1/businesses/{business_id}/signals", response_model=list[SignalOut], tags=["Signals"])
async def list_signals(
    business_id: UUID,
    status_filter: Optional[SignalStatus] = Query(None, alias="status"),
    commodity: Optional[CommodityType] = None,
    signal_type: Optional[SignalType] = None,
    strength: Optional[SignalStrength] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _key: str = Depends(require_api_key),
) -> list[SignalOut]:
    filters = SignalFilters(
        status=status_filter, commodity=commodity, signal_type=signal_type, strength=strength
    )
    rows = await _get_jobs().orchestrator.get_signals(business_id, filters, limit, offset)
    return [SignalOut.model_validate(r) for r in rows]


@app.post(
    "/v1/businesses/{business_id}/signals/generate",
    response_model=GenerateResponse,
    tags=["Signals"],
)
async def generate_signals(
    business_id: UUID,
    user_id: Optional[UUID] = Depends(optional_user_id),
    _key: str = Depends(require_api_key),
) -> GenerateResponse:
    signals = await _get_jobs().orchestrator.generate_signals(business_id, user_id)
    return GenerateResponse(
        business_id=business_id,
        signals_changed=len(signals),
        signal_ids=[s.id for s in signals],
    )


@app.get(
    "/v1/businesses/{business_id}/signals/{signal_id}",
    response_model=SignalOut,
    tags=["Signals"],
)
async def get_signal(
    business_id: UUID, signal_id: UUID, _key: str = Depends(require_api_key)
) -> SignalOut:
    return SignalOut.model_validate(
        await _get_jobs().orchestrator.get_signal(signal_id, business_id)
    )


@app.post(
    "/v1/businesses/{business_id}/signals/{signal_id}/dismiss",
    response_model=SignalOut,
    tags=["Signals"],
)
async def dismiss_signal(
    business_id: UUID,
    signal_id: UUID,
    body: DismissRequest,
    user_id: Optional[UUID] = Depends(optional_user_id),
    _key: str = Depends(require_api_key),
) -> SignalOut:
    signal = await _get_jobs().orchestrator.dismiss_signal(
        signal_id, business_id, body.reason, user_id
    )
    return SignalOut.model_validate(signal)


@app.post(
    "/v1/businesses/{business_id}/signals/{signal_id}/action",
    response_model=SignalOut,
    tags=["Signals"],
)
async def record_action(
    business_id: UUID,
    signal_id: UUID,
    body: ActionRequest,
    user_id: Optional[UUID] = Depends(optional_user_id),
    _key: str = Depends(require_api_key),
) -> SignalOut:
    signal = await _get_jobs().orchestrator.record_action(
        signal_id, business_id, body.action, user_id
    )
    return SignalOut.model_validate(signal)


@app.post(
    "/v1/businesses/{business_id}/signals/{signal_id}/view",
    response_model=SignalOut,
    tags=["Signals"],
)
async def mark_viewed(
    business_id: UUID,
    signal_id: UUID,
    user_id: Optional[UUID] = Depends(optional_user_id),
    _key: str = Depends(require_api_key),
) -> SignalOut:
    signal = await _get_jobs().orchestrator.mark_viewed(signal_id, business_id, user_id)
    return SignalOut.model_validate(signal)


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


@app.get(
    "/v1/businesses/{business_id}/preferences",
    response_model=PreferencesOut,
    tags=["Preferences"],
)
async def get_preferences(business_id: UUID, _key: str = Depends(require_api_key)) -> PreferencesOut:
    prefs = await get_or_create_preferences(business_id, _get_jobs().session_factory)
    return PreferencesOut.model_validate(prefs)


@app.put(
    "/v1/businesses/{business_id}/preferences",
    response_model=PreferencesOut,
    tags=["Preferences"],
)
async def put_preferences(
    business_id: UUID, body: PreferencesUpdate, _key: str = Depends(require_api_key)
) -> PreferencesOut:
    prefs = await update_preferences(
        business_id, body, _get_jobs().session_factory
    )
    return PreferencesOut.model_validate(prefs)


# ---------------------------------------------------------------------------
# Crop insurance
# ---------------------------------------------------------------------------


@app.get(
    "/v1/businesses/{business_id}/farms/{farm_id}/insurance",
    response_model=Optional[PolicyOut],
    tags=["Insurance"],
)
async def get_policy(
    business_id: UUID, farm_id: UUID, _key: str = Depends(require_api_key)
) -> Optional[PolicyOut]:
    return await _get_insurance().get_policy(farm_id, business_id)


@app.put(
    "/v1/businesses/{business_id}/farms/{farm_id}/insurance",
    response_model=PolicyOut,
    tags=["Insurance"],
)
async def put_policy(
    business_id: UUID, farm_id: UUID, body: PolicyInput, _key: str = Depends(require_api_key)
) -> PolicyOut:
    return await _get_insurance().upsert_policy(farm_id, business_id, body)


@app.delete(
    "/v1/businesses/{business_id}/farms/{farm_id}/insurance",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Insurance"],
)
async def delete_policy(
    business_id: UUID, farm_id: UUID, _key: str = Depends(require_api_key)
) -> None:
    await _get_insurance().delete_policy(farm_id, business_id)


@app.post(
    "/v1/businesses/{business_id}/farms/{farm_id}/insurance/estimate",
    response_model=IndemnityEstimate,
    tags=["Insurance"],
)
async def estimate_indemnity(
    business_id: UUID,
    farm_id: UUID,
    body: EstimateRequest,
    _key: str = Depends(require_api_key),
) -> IndemnityEstimate:
    return await _get_insurance().estimate(
        farm_id, business_id, body.actual_yield, body.harvest_price, body.county
    )


@app.get(
    "/v1/businesses/{business_id}/farms/{farm_id}/profit-matrix",
    response_model=ProfitMatrix,
    tags=["Insurance"],
)
async def profit_matrix(
    business_id: UUID,
    farm_id: UUID,
    yield_steps: int = Query(7, ge=2, le=15),
    price_steps: int = Query(7, ge=2, le=15),
    _key: str = Depends(require_api_key),
) -> ProfitMatrix:
    return await _get_insurance().profit_matrix(farm_id, business_id, yield_steps, price_steps)


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------


@app.post(
    "/v1/businesses/{business_id}/decisions",
    status_code=status.HTTP_201_CREATED,
    tags=["Learning"],
)
async def record_decision(
    business_id: UUID,
    body: DecisionInput,
    user_id: Optional[UUID] = Depends(optional_user_id),
    _key: str = Depends(require_api_key),
) -> dict:
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="X-User-Id header is required to record a decision.",
        )
    decision = await _get_jobs().learning.record_marketing_decision(user_id, business_id, body)
    return {
        "id": str(decision.id),
        "break_even_price": decision.break_even_price,
        "percent_above_break_even": decision.percent_above_break_even,
        "total_value": decision.total_value,
    }


@app.get("/v1/users/{user_id}/insights", response_model=LearningInsights, tags=["Learning"])
async def learning_insights(user_id: UUID, _key: str = Depends(require_api_key)) -> LearningInsights:
    insights = await _get_jobs().learning.get_learning_insights(user_id)
    if insights is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No marketing profile.")
    return insights


# ---------------------------------------------------------------------------
# Jobs & system
# ---------------------------------------------------------------------------


@app.get("/v1/jobs", tags=["System"])
async def jobs_status(_key: str = Depends(require_api_key)) -> dict:
    return _get_jobs().status()


@app.post("/v1/jobs/{name}/run", response_model=JobRun, tags=["System"])
async def trigger_job(
    name: str, body: Optional[JobTriggerRequest] = None, _key: str = Depends(require_api_key)
) -> JobRun:
    return await _get_jobs().run_job(name, force=(body.force if body else False))


@app.get("/v1/health", response_model=HealthResponse, tags=["System"])
async def health_check(_key: str = Depends(require_api_key)) -> HealthResponse:
    jobs = _get_jobs()
    try:
        async with jobs.session_factory() as session:
            await session.execute(text("SELECT 1"))
            active = (
                await session.execute(
                    select(func.count()).select_from(MarketingSignal).where(
                        MarketingSignal.status == SignalStatus.ACTIVE.value
                    )
                )
            ).scalar() or 0
    except Exception as exc:
        logger.exception("Health check database error: %s", exc)
        return HealthResponse(status="error", version=__version__, database=str(exc))

    job_status = jobs.status()
    return HealthResponse(
        status="ok",
        version=__version__,
        database="ok",
        market_open=job_status["market_open"],
        active_signals=int(active),
        jobs=job_status["jobs"],
    )
