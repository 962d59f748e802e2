import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from referral_engine.api.routes import admin, referrals
from referral_engine.config import settings
from referral_engine.core.metrics import MetricsMiddleware, get_metrics
from referral_engine.db.database import init_db
from referral_engine.services.reset_scheduler import reset_scheduler
from referral_engine.services.trading_points import close_trading_points_source

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    await init_db()
    await reset_scheduler.initialize()
    yield
    await reset_scheduler.stop()
    await close_trading_points_source()


app = FastAPI(
    title="Referral Engine",
    description="Referral periods, bonus strategies and leaderboards",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.metrics_enabled:
    app.add_middleware(MetricsMiddleware)

# REST API routes
app.include_router(referrals.router, prefix="/api/referral", tags=["referral"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/metrics")
async def metrics() -> Response:
    content, content_type = await get_metrics()
    return Response(content=content, media_type=content_type)


@app.get("/")
async def root() -> dict[str, Any]:
    return {
        "name": "Referral Engine",
        "version": "0.1.0",
        "docs": "/docs",
        "endpoints": {
            "referral": "/api/referral",
            "admin": "/api/admin/referral",
        },
        "strategies": ["growth_multiplier", "revenue_share", "milestone_quest", "team_volume"],
    }
