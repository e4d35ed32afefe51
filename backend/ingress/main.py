"""
Ingress — FastAPI Application Factory
=======================================

What:  Creates the FastAPI application: route table, pipeline, lifecycle.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   uvicorn (`uvicorn ingress.main:app`) and the test suite, which builds
       a fresh app per test with its own settings and throttle.

Application Architecture:
    ┌─────────────────────────────────────────────────────┐
    │                   FastAPI App                       │
    │                                                     │
    │  PipelineMiddleware (ordered stages):               │
    │  request id → proxy → body → cookies → CORS →       │
    │  static → security headers → logging → throttle →   │
    │  sanitizer → parameter pollution → compression      │
    │                                                     │
    │  Routes (in table order):                           │
    │  ┌──────────────┐ ┌──────────────┐ ┌─────────────┐  │
    │  │ GET /health  │ │ business ... │ │ fallback 404│  │
    │  └──────────────┘ └──────────────┘ └─────────────┘  │
    │                                                     │
    │  ErrorNormalizer: every fault → {status, message}   │
    └─────────────────────────────────────────────────────┘

FastAPI formats HTTPException and RequestValidationError on its own by
default; both are registered with propagate_fault so they reach the error
normalizer instead.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Sequence

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ingress import __version__
from ingress.config import Settings, settings as default_settings
from ingress.errors import ErrorNormalizer, propagate_fault
from ingress.middleware.rate_limit import RequestThrottle
from ingress.middleware.request_id import RequestIdFilter
from ingress.pipeline import TERMINAL_STAGES, PipelineMiddleware, build_stages
from ingress.routes import DEFAULT_ROUTE_TABLE, RouteBinding, mount

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the whole process.

    Format: %(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s
    Called once at startup, before anything else logs. The request id comes
    from RequestIdFilter, so every line logged while a request is in flight
    carries it, whichever module logs.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    # The pipeline writes its own access log
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config: Settings = app.state.settings
    setup_logging(config.log_level)

    logger.info("Ingress starting in %s mode", config.run_mode)
    logger.info("Pipeline: %s", " → ".join(app.state.pipeline))
    logger.info("Routes: %s", ", ".join(b.prefix or "/" for b in app.state.route_table))

    yield

    logger.info("Ingress shut down.")


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    settings: Optional[Settings] = None,
    route_table: Optional[Sequence[RouteBinding]] = None,
    throttle: Optional[RequestThrottle] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings:     Configuration; defaults to the environment-loaded settings.
        route_table:  Ordered (prefix, router) bindings; defaults to the health route.
        throttle:     Replacement RequestThrottle (custom store or clock).

    Returns:
        FastAPI app whose every HTTP request goes through the pipeline.
    """
    config = settings or default_settings

    app = FastAPI(
        title="Ingress",
        description="Request-processing pipeline in front of the business routers.",
        version=__version__,
        lifespan=lifespan,
        exception_handlers={
            StarletteHTTPException: propagate_fault,
            RequestValidationError: propagate_fault,
        },
    )
    app.state.settings = config

    # ── Routes ────────────────────────────────────────────────────────────
    app.state.route_table = mount(
        app, DEFAULT_ROUTE_TABLE if route_table is None else route_table
    )

    # ── Pipeline ──────────────────────────────────────────────────────────
    stages = build_stages(config, throttle=throttle)
    normalizer = ErrorNormalizer(run_mode=config.run_mode)
    app.add_middleware(
        PipelineMiddleware, stages=stages, normalizer=normalizer, router=app.router
    )
    app.state.pipeline = [stage.name for stage in stages] + list(TERMINAL_STAGES)

    return app


# uvicorn entry point: `uvicorn ingress.main:app`
app = create_app()


def run() -> None:
    """Console entry point: serve the module-level app on settings.host:settings.port."""
    config = app.state.settings
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
