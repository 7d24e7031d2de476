"""Main FastAPI application."""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from schoolsync import __version__
from schoolsync.api.v1.api import api_router
from schoolsync.config import settings
from schoolsync.logging_config import setup_logging
from schoolsync.scheduler import sync_scheduler

# Configure root logger early
setup_logging(settings.log_level)

log = logging.getLogger(__name__)

app = FastAPI(
    title="School Data Sync",
    description="Orchestrates ManageBac and Nexquare syncs into the central school data store",
    version=__version__
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__
    }


@app.get("/")
async def root():
    """Root endpoint - redirect to docs."""
    return {
        "message": "School Data Sync API",
        "version": __version__,
        "docs": "/docs"
    }


app.include_router(api_router, prefix=settings.api_v1_str)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    log.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


@app.on_event("startup")
async def startup_event():
    if sync_scheduler.start():
        log.info(f"Recurring sync schedules active: {sync_scheduler.registered_ids()}")


@app.on_event("shutdown")
async def shutdown_event():
    sync_scheduler.shutdown()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=settings.log_level.lower())
