"""
FastAPI application for structured extraction from financial documents.

Exposes the chatter, points, plotline and thread endpoints plus model
health checks. Provider clients are opened per request.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from analyst.api import chatter_routes, health_routes, plotline_routes, points_routes, thread_routes
from analyst.api.body_limits import enforce_body_limits
from analyst.api.errors import register_exception_handlers
from analyst.config import get_settings
from analyst.logging_config import setup_logging
from analyst.services.extraction.attempt_planner import load_provider_topology

# Configure logging before anything else
settings = get_settings()
setup_logging(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Loads the provider topology once and logs which providers have
    credentials configured.
    """
    logger.info("Starting Analyst Extraction API")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"Config directory: {settings.config_dir}")

    topology = load_provider_topology(settings)
    app.state.topology = topology
    for name, spec in topology.providers.items():
        configured = settings.api_key_for(spec.credential_env) is not None
        logger.info(
            f"Provider {name} ({spec.kind}): default {spec.default_model}, "
            f"{len(spec.allowed_models)} models, key {'set' if configured else 'missing'}"
        )

    yield

    logger.info("Shutting down Analyst Extraction API")


app = FastAPI(
    title="Analyst Extraction API",
    description="Structured extraction from earnings calls and investor decks",
    version="0.1.0",
    lifespan=lifespan,
)

# Body ceilings before routing; CORS stays outermost
app.middleware("http")(enforce_body_limits)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(chatter_routes.router)
app.include_router(points_routes.router)
app.include_router(plotline_routes.router)
app.include_router(thread_routes.router)
app.include_router(health_routes.router)


@app.get("/health")
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns:
        Basic health status
    """
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "analyst.main:app",
        host="0.0.0.0",
        port=8801,
        reload=True,
    )
