"""
Authentication middleware that flags requests to protected routes arriving without a session.
This middleware provides an early check, but actual validation is done by FastAPI dependencies.
"""
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from typing import List

from core.logger import logger
from core.utils import get_client_ip
import config

# Public routes that don't require authentication
PUBLIC_ROUTES: List[str] = [
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    # Auth endpoints (with /api/auth prefix)
    "/api/auth/login",
    "/api/auth/register",
    "/api/auth/reset-request",
    "/api/auth/reset-password",
]


class AuthRequiredMiddleware(BaseHTTPMiddleware):
    """
    Middleware to watch authentication on all routes.

    This provides an early check for a session cookie or header.
    Session validation is handled by FastAPI dependencies.
    """

    def __init__(self, app, public_routes: List[str] = None):
        """
        Initialize authentication middleware.

        Args:
            app: FastAPI application
            public_routes: List of public routes (paths) that don't require auth
        """
        super().__init__(app)
        self.public_routes = public_routes or PUBLIC_ROUTES

    def is_public(self, path: str) -> bool:
        return path == "/" or any(path.startswith(route) for route in self.public_routes)

    async def dispatch(self, request: Request, call_next):
        """Process request with authentication check."""
        path = request.url.path

        if self.is_public(path) or request.method == "OPTIONS":
            return await call_next(request)

        session_cookie = request.cookies.get(config.SESSION_COOKIE_NAME)
        session_header = request.headers.get("x-session-key")

        # Early check: log only, dependencies produce the proper error and redirect hint
        if not session_cookie and not session_header:
            logger.warning(f"Request without session: {request.method} {path} from {get_client_ip(request) or 'unknown'}")

        return await call_next(request)
