"""
School directory administration API: authentication, sessions and PIN-confirmed user management.
"""
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

import config
from core.exceptions import DirectoryError, LockoutError, UnauthenticatedError, SessionExpiredError
from core.logger import logger
from database.connection import Database
from middleware.security import (
    RateLimitMiddleware, SecurityHeadersMiddleware,
    setup_cors, setup_trusted_hosts
)
from middleware.auth_middleware import AuthRequiredMiddleware
from routers.auth import router as auth_router
from routers.users import router as users_router


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan events for FastAPI app.
    Initialize database on startup, release connections on shutdown.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {config.APP_NAME} ({config.ENVIRONMENT})...")
    logger.info("=" * 60)

    try:
        if config.db is None:
            config.db = Database(
                database_url=config.DATABASE_URL,
                pool_size=config.DB_POOL_SIZE,
                max_overflow=config.DB_MAX_OVERFLOW
            )
        # Create tables if they don't exist
        config.db.create_tables()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)
        raise

    if config.ENVIRONMENT == "production" and config.SECRET_KEY == "change-this-secret-key-in-production":
        logger.warning("SECRET_KEY is the default value; transfer tokens can be forged")

    yield

    # Cleanup on shutdown
    logger.info("Shutting down...")
    if config.db:
        config.db.engine.dispose()
        logger.info("Database connections closed")


# Initialize FastAPI app
app = FastAPI(
    title=config.APP_NAME,
    description="Role-based directory administration with session guard, admin PIN confirmation and audit trail",
    version=config.APP_VERSION,
    lifespan=lifespan
)

# Setup security middleware
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    requests_per_minute=config.RATE_LIMIT_PER_MINUTE,
    requests_per_hour=config.RATE_LIMIT_PER_HOUR,
    credential_requests_per_minute=config.RATE_LIMIT_CREDENTIAL_PER_MINUTE
)
# Add authentication middleware (logs protected requests arriving without a session)
app.add_middleware(AuthRequiredMiddleware)
setup_cors(app, config.CORS_ORIGINS)
if config.ENVIRONMENT == "production":
    setup_trusted_hosts(app, config.TRUSTED_HOSTS)

# Include routers
app.include_router(auth_router)
app.include_router(users_router)


@app.exception_handler(DirectoryError)
async def directory_error_handler(request: Request, exc: DirectoryError):
    """Render core errors: generic message to the client, reason to the log."""
    content = exc.to_dict()
    headers = {}

    if isinstance(exc, LockoutError):
        headers["Retry-After"] = str(exc.retry_after)

    session_error = isinstance(exc, (UnauthenticatedError, SessionExpiredError))
    if session_error:
        content["redirect"] = f"{config.LOGIN_URL}?error={exc.reason}"
        headers["Location"] = content["redirect"]

    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} ({exc.reason})")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} ({exc.reason})")

    response = JSONResponse(status_code=exc.status_code, content=content, headers=headers)
    if session_error:
        response.delete_cookie(config.SESSION_COOKIE_NAME, path="/")
    return response


@app.get("/")
async def root():
    """Root endpoint with API information. Public endpoint."""
    return {
        "message": config.APP_NAME,
        "version": config.APP_VERSION,
        "environment": config.ENVIRONMENT,
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring. Public endpoint."""
    health_status = {
        "status": "healthy",
        "timestamp": time.time(),
        "checks": {}
    }

    # Check database
    try:
        if config.db is None:
            health_status["checks"]["database"] = {"status": "error", "error": "not initialized"}
            health_status["status"] = "degraded"
        else:
            with config.db.get_session() as db:
                db.execute(text("SELECT 1"))
            health_status["checks"]["database"] = {"status": "ok"}
    except Exception as e:
        health_status["checks"]["database"] = {"status": "error", "error": str(e)}
        health_status["status"] = "degraded"

    return health_status


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
