"""
FastAPI layer for ChurnOpp.

This module provides:
- Collector endpoint receiving behavioral events from the browser SDK
- Churn score endpoints for the dashboard (single user and bulk listing)
- Event statistics and recent-event overview for the dashboard
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .auth import decode_account_id
from .cache import ScoreCache
from .config import Settings
from .database import ChurnOppDatabase
from .errors import (
    AuthorizationError,
    ChurnOppError,
    ComputationError,
    EntitlementError,
)
from .ingestion import IngestionGateway
from .logger import ChurnOppLogger
from .models import EventIngestRequest, EventType
from .notifications import build_dispatcher
from .scorer import ChurnScorer

log = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="ChurnOpp API",
    description="Behavioral churn signal collection and scoring",
    version=__version__,
)

# CORS middleware: the collector is called from customer sites
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Services ==============

@dataclass
class Services:
    """Long-lived collaborators shared by all requests."""
    settings: Settings
    db: ChurnOppDatabase
    gateway: IngestionGateway
    scorer: ChurnScorer
    activity_log: ChurnOppLogger


def build_services(settings: Optional[Settings] = None) -> Services:
    """Wire the database, gateway, scorer and dispatcher from settings."""
    settings = settings if settings is not None else Settings.from_env()
    db = ChurnOppDatabase(settings.db_path)
    activity_log = ChurnOppLogger(settings.log_dir)
    dispatcher = build_dispatcher(settings, on_dispatched=activity_log.log_alert)
    scorer = ChurnScorer(
        db,
        cache=ScoreCache(ttl_seconds=settings.score_cache_ttl_seconds),
        dispatcher=dispatcher,
        alert_threshold=settings.churn_alert_threshold,
        fallback_recipient=settings.alert_fallback_recipient,
    )
    return Services(
        settings=settings,
        db=db,
        gateway=IngestionGateway(db),
        scorer=scorer,
        activity_log=activity_log,
    )


# Singleton instance
_services: Optional[Services] = None


def get_services() -> Services:
    """Get or create the shared services."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def current_account(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> str:
    """Resolve the authenticated account of a dashboard request."""
    account_id = decode_account_id(authorization, services.settings.jwt_secret)
    if services.db.get_account(account_id) is None:
        raise AuthorizationError("Unknown account")
    return account_id


@app.exception_handler(ChurnOppError)
async def churnopp_error_handler(request: Request, exc: ChurnOppError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": str(exc)},
    )


# ============== Request/Response Models ==============

class MessageResponse(BaseModel):
    message: str


class ChurnScoreResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    churn_score: float = Field(alias="churnScore")


class UserChurnScore(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    churn_score: float = Field(alias="churnScore")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str


def _day_start(value: Optional[date]) -> Optional[datetime]:
    return datetime.combine(value, time.min) if value else None


def _day_end(value: Optional[date]) -> Optional[datetime]:
    # End dates include the whole day
    return datetime.combine(value, time(23, 59, 59, 999000)) if value else None


# ============== API Endpoints ==============

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.utcnow().isoformat(),
        version=__version__,
    )


@app.post("/api/events", response_model=MessageResponse, status_code=201)
async def collect_event(
    payload: EventIngestRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """
    Collector endpoint for the browser SDK.

    Rejects unknown accounts (401) and event types outside the account's
    tier (403); accepted events are stored verbatim.
    """
    try:
        event = services.gateway.ingest(payload)
    except (AuthorizationError, EntitlementError) as e:
        services.activity_log.log_rejected(payload, e.code, str(e))
        raise
    except sqlite3.Error as e:
        log.error("Storing event for %s failed: %s", payload.account_id, e)
        raise ComputationError("Failed to store event") from e

    background_tasks.add_task(services.activity_log.log_ingested, event)
    return MessageResponse(message="Event saved successfully")


@app.get(
    "/api/dashboard/churn-score/{user_id}",
    response_model=ChurnScoreResponse,
    response_model_by_alias=True,
)
async def get_churn_score(
    user_id: str,
    background_tasks: BackgroundTasks,
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
):
    """Churn score of one tracked user. Alerts go out after the response."""
    result = services.scorer.get_score(account_id, user_id, defer=background_tasks.add_task)
    background_tasks.add_task(services.activity_log.log_score, result)
    return ChurnScoreResponse(churn_score=result.score)


@app.get(
    "/api/dashboard/churn-users",
    response_model=list[UserChurnScore],
    response_model_by_alias=True,
)
async def list_churn_users(
    background_tasks: BackgroundTasks,
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
):
    """Every tracked user of the account, highest churn risk first."""
    results = services.scorer.list_scores(account_id, defer=background_tasks.add_task)
    for result in results:
        background_tasks.add_task(services.activity_log.log_score, result)
    return [UserChurnScore(user_id=r.user_id, churn_score=r.score) for r in results]


@app.get("/api/dashboard/stats")
async def get_dashboard_stats(
    event_type: Optional[EventType] = Query(None, alias="eventType"),
    user_id: Optional[str] = Query(None, alias="userId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
):
    """Aggregate event statistics with optional filters."""
    try:
        return services.db.get_event_stats(
            account_id,
            event_type=event_type,
            user_id=user_id,
            start_date=_day_start(start_date),
            end_date=_day_end(end_date),
        )
    except sqlite3.Error as e:
        log.error("Stats aggregation for %s failed: %s", account_id, e)
        raise ComputationError("Failed to aggregate stats") from e


@app.get("/api/dashboard/overview")
async def get_dashboard_overview(
    event_type: Optional[EventType] = Query(None, alias="eventType"),
    user_id: Optional[str] = Query(None, alias="userId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    account_id: str = Depends(current_account),
    services: Services = Depends(get_services),
):
    """The 100 most recent events with optional filters."""
    try:
        events = services.db.get_recent_events(
            account_id,
            event_type=event_type,
            user_id=user_id,
            start_date=_day_start(start_date),
            end_date=_day_end(end_date),
        )
    except sqlite3.Error as e:
        log.error("Event overview for %s failed: %s", account_id, e)
        raise ComputationError("Failed to load events") from e
    return [event.to_dict() for event in events]


# ============== Startup/Shutdown ==============

@app.on_event("startup")
async def startup():
    """Initialize on startup."""
    log.info("ChurnOpp API starting up...")
    get_services()
    log.info("Database initialized")


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    log.info("ChurnOpp API shutting down...")
    if _services is not None:
        _services.scorer.dispatcher.shutdown(wait=False)


# Run with: uvicorn churnopp.api:app --reload
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
