"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import uvicorn

from provisioner.core.config import settings, validate_crm_config
from provisioner.core.logging import setup_logging
from provisioner.db.session import init_db
from provisioner.services.email_service import validate_email_config

# Import routers
from provisioner.api import crm, email, monitoring, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    crm_ok, crm_error = validate_crm_config()
    if not crm_ok:
        logger.warning(f"CRM provisioning not configured: {crm_error}")
    email_ok, email_error = validate_email_config()
    if not email_ok:
        logger.warning(f"Email not configured: {email_error}")

    logger.info(f"Provisioning service started ({settings.ENVIRONMENT})")
    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Polar Provisioner",
    description="Polar webhook ingestion and CRM account provisioning",
    version="1.0.0",
    lifespan=lifespan
)

# Include routers
app.include_router(monitoring.router)
app.include_router(webhooks.router)
app.include_router(crm.router)
app.include_router(email.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


if __name__ == "__main__":
    # Reload needs the app as an import string
    reload = settings.ENVIRONMENT == "development"
    config = {
        "host": "0.0.0.0",
        "port": 8000,
        "timeout_graceful_shutdown": 30,
    }
    if reload:
        uvicorn.run("provisioner.main:app", reload=True, **config)
    else:
        uvicorn.run(app, **config)
