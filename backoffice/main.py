from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import database components
from backoffice.database.database import sync_engine, Base

# Import middleware and error handling
from backoffice.common.middleware import TenantMiddleware, SecurityHeadersMiddleware
from backoffice.common.exceptions import BackofficeError, backoffice_error_handler

# Import routers
from backoffice.modules.sales.router import router as sales_router
from backoffice.modules.fiscal.router import router as fiscal_router

# Import models for table creation
import backoffice.modules.organizations.models
import backoffice.modules.sales.models

from backoffice.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Backoffice Payments API",
    description="Sale payment ledger and fiscal document lifecycle for a multi-tenant back-office",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(TenantMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Domain errors -> JSON responses
app.add_exception_handler(BackofficeError, backoffice_error_handler)

# Include routers
app.include_router(sales_router)
app.include_router(fiscal_router)


@app.get("/")
async def read_root():
    return {
        "message": "Backoffice Payments API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("Backoffice Payments API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    # Create database tables (only for development - no migrations yet)
    if settings.ENVIRONMENT == "development":
        try:
            Base.metadata.create_all(bind=sync_engine)
        except Exception as e:
            logger.warning(f"Table creation skipped or failed: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Backoffice Payments API shutting down...")
