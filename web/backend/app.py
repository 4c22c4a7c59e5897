import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from web.backend.routers import chains, daily_plan, time_blocks

logger = logging.getLogger("life_planner.api")


def create_app() -> FastAPI:
    app = FastAPI(title="Life Planner API", version="1.0")

    raw_origins = os.getenv("LIFE_PLANNER_ALLOWED_ORIGINS", "*")
    allow_origins = [o.strip() for o in raw_origins.split(",") if o.strip()]
    allow_credentials = "*" not in allow_origins

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "Life Planner"}

    app.include_router(daily_plan.router, prefix="/api/v1/daily-plan", tags=["daily-plan"])
    app.include_router(chains.router, prefix="/api/v1/chains", tags=["chains"])
    app.include_router(time_blocks.router, prefix="/api/v1/time-blocks", tags=["time-blocks"])

    logger.info("Routes registered: daily-plan, chains, time-blocks")
    return app


app = create_app()
