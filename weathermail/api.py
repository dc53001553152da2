"""
REST API module for weathermail.

Provides endpoints for:
- Current weather lookup by city
- Subscription with double opt-in (subscribe, confirm, unsubscribe)
- Health monitoring
"""

import logging
import os
import re
from typing import Literal, Optional
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError, field_validator
from starlette.concurrency import run_in_threadpool

from .config import Config, ConfigError
from .database import SubscriptionRepository
from .fetcher import FetchError, Fetcher
from .mailer import EmailError, SMTPSender
from .subscriptions import (
    AlreadySubscribed,
    InvalidCity,
    InvalidToken,
    SubscriptionService,
    TokenNotFound,
)
from .weather import build_caching_fetcher

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# =============================================================================
# Pydantic Models
# =============================================================================

class WeatherResponse(BaseModel):
    temperature: float
    humidity: int
    description: str


class SubscribeRequest(BaseModel):
    email: str
    city: str
    frequency: Literal["hourly", "daily"]

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("invalid email address")
        return value

    @field_validator("city")
    @classmethod
    def check_city(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("city is required")
        return value


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    database: str
    weather: str
    subscriptions: int


# =============================================================================
# Global State
# =============================================================================

repository: Optional[SubscriptionRepository] = None
fetcher: Optional[Fetcher] = None
service: Optional[SubscriptionService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global repository, fetcher, service

    logger.info("Starting weathermail API...")

    try:
        config = Config.from_env()
        fetcher = build_caching_fetcher(config)
    except (ConfigError, FetchError) as e:
        logger.critical(f"Startup failed: {e}")
        raise

    repository = SubscriptionRepository(config.database_path)
    service = SubscriptionService(
        repository=repository,
        sender=SMTPSender.from_config(config),
        fetcher=fetcher,
        base_url=config.base_url,
    )
    logger.info("Weather fetcher and database initialized")

    yield

    logger.info("Shutting down...")
    if repository:
        repository.close()
    logger.info("Shutdown complete")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Weather Subscription API",
    description="Current weather lookups and email weather updates",
    version="1.0.0",
    lifespan=lifespan
)


def error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return error(400, _describe(exc.errors()))


def _describe(errors) -> str:
    parts = []
    for err in errors:
        field = ".".join(str(loc) for loc in err.get("loc", ()) if loc not in ("body", "query"))
        parts.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return "; ".join(parts) or "invalid request"


# =============================================================================
# API Endpoints - Weather
# =============================================================================

@app.get("/api/weather", response_model=WeatherResponse, tags=["Weather"])
def get_weather(city: str = Query(..., min_length=1, description="City name")):
    """Get current weather for a city."""
    if not fetcher:
        return error(503, "Weather service not available")

    try:
        reading = fetcher.fetch_current(city)
    except FetchError as e:
        return error(404, str(e))

    return WeatherResponse(
        temperature=reading.temperature,
        humidity=reading.humidity,
        description=reading.description,
    )


# =============================================================================
# API Endpoints - Subscriptions
# =============================================================================

@app.post("/api/subscribe", tags=["Subscription"])
async def subscribe(request: Request):
    """Subscribe an email to weather updates; accepts JSON or form data."""
    if not service:
        return error(503, "Subscription service not available")

    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            payload = await request.json()
        else:
            payload = dict(await request.form())
        req = SubscribeRequest.model_validate(payload)
    except ValidationError as e:
        return error(400, _describe(e.errors()))
    except ValueError:
        return error(400, "malformed request body")

    try:
        await run_in_threadpool(service.subscribe, req.email, req.city, req.frequency)
    except AlreadySubscribed as e:
        return error(409, str(e))
    except InvalidCity as e:
        return error(400, str(e))
    except EmailError as e:
        logger.error(f"Confirmation email failed: {e}")
        return error(400, "failed to send confirmation email")

    return {"message": "Subscription successful. Confirmation email sent."}


@app.get("/api/confirm/{token}", tags=["Subscription"])
def confirm(token: str):
    """Confirm a subscription."""
    if not service:
        return error(503, "Subscription service not available")

    try:
        service.confirm(token)
    except InvalidToken as e:
        return error(400, str(e))
    except TokenNotFound as e:
        return error(404, str(e))

    return {"message": "Subscription confirmed successfully"}


@app.get("/api/unsubscribe/{token}", tags=["Subscription"])
def unsubscribe(token: str):
    """Remove a subscription."""
    if not service:
        return error(503, "Subscription service not available")

    try:
        service.unsubscribe(token)
    except InvalidToken as e:
        return error(400, str(e))
    except TokenNotFound as e:
        return error(404, str(e))

    return {"message": "Unsubscribed successfully"}


# =============================================================================
# API Endpoints - Health
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check():
    """Health check endpoint."""
    healthy = repository is not None and fetcher is not None

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        database="connected" if repository else "disconnected",
        weather="ready" if fetcher else "unavailable",
        subscriptions=repository.count() if repository else 0,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "weathermail.api:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        reload=os.getenv("DEBUG", "false").lower() == "true"
    )
