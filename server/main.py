"""
FastAPI service for the workflow execution engine.

Exposes the job processor (driven by an external cron tick), the handler
catalogue and execution lookup.
"""

from datetime import datetime, timezone
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.config import Settings
from core.logging import configure_logging, get_logger
from routers import workflow
from services.execution import get_engine_pool
from services.handlers import shutdown_code_executor

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
import logging
logging.getLogger("uvicorn").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("uvicorn.error").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting workflow engine")

    await container.database().startup()
    registry = container.registry()

    logger.info("Services started successfully", handlers=len(registry))
    yield

    await container.usage_tracker().drain()
    await get_engine_pool().dispose_all()
    shutdown_code_executor()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


app = FastAPI(
    title="Workflow Engine",
    version="1.0.0",
    description="Workflow execution engine with pluggable node handlers",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error_type=type(e).__name__, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)

app.include_router(workflow.router)


@app.get("/health")
async def health_check():
    """Service health check."""
    return {
        "status": "OK",
        "service": "workflow-engine",
        "version": "1.0.0",
        "environment": "development" if settings.debug else "production",
        "handlers": len(container.registry()),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting workflow engine",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
