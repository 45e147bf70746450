"""
FastAPI service for CRM workflow automation.

Receives inbound conversation events, resumes waiting executions, starts
triggered workflows and runs the background sweeps.
"""

from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crm_automation.core.container import container
from crm_automation.core.logging import configure_logging, get_logger
from crm_automation.routers import automation

settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting CRM automation engine")
    await container.database().startup()

    scheduler = container.scheduler()
    if settings.scheduler_enabled:
        scheduler.start()

    logger.info("Services started successfully")
    yield

    # Shutdown
    scheduler.shutdown()
    await container.runner().drain()
    await container.http_client().aclose()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


def create_app() -> FastAPI:
    app = FastAPI(
        title="CRM Automation Engine",
        version="1.0.0",
        description="Workflow automation for CRM conversations",
        lifespan=lifespan,
    )

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception):
        logger.error("Unhandled exception", path=request.url.path,
                     error=f"{type(exc).__name__}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": f"{type(exc).__name__}: {exc}",
                "detail": "Internal server error"
            }
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(automation.router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "OK",
            "service": "crm-automation",
            "scheduler": container.scheduler().running,
            "jobs": container.scheduler().get_jobs(),
            "timestamp": datetime.now().isoformat()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting CRM automation engine", host=settings.host, port=settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)
