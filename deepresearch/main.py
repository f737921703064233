from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from deepresearch.api.routes import research
from deepresearch.config import settings
from deepresearch.services import database
from deepresearch.services.durable import get_task_runner
from deepresearch.services.logger import log_service_event
from deepresearch.services.research_service import get_research_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if settings.database_url:
        await database.ensure_schema()
    resumed = await get_research_service().recover_running_runs()
    log_service_event("startup", "Deep research service started", resumed_runs=resumed)
    yield
    # Shutdown
    await get_task_runner().shutdown()
    await database.close_pool()
    logger.info("Deep research service stopped")


app = FastAPI(
    title="Deep Research",
    description="Plan-approve-execute research runs with cited findings",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "deepresearch"}
