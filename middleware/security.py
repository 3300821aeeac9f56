"""
Security middleware for rate limiting, CORS, and response headers.
"""
from fastapi import Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
import time
from collections import defaultdict
from typing import Dict, List, Tuple

from core.logger import logger
from core.utils import get_client_ip

# Credential endpoints get their own, tighter per-minute budget
CREDENTIAL_PATHS: Tuple[str, ...] = (
    "/api/auth/login",
    "/api/auth/reset-request",
    "/api/auth/reset-password",
    "/api/users/confirm",
)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding-window rate limiting."""

    def __init__(
        self,
        app,
        requests_per_minute: int = 60,
        requests_per_hour: int = 1000,
        credential_requests_per_minute: int = 10
    ):
        """
        Initialize rate limiting middleware.

        Args:
            app: FastAPI application
            requests_per_minute: Max requests per minute per IP
            requests_per_hour: Max requests per hour per IP
            credential_requests_per_minute: Max login/reset/confirm requests per minute per IP
        """
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self.credential_requests_per_minute = credential_requests_per_minute
        self.minute_requests: Dict[str, List[float]] = defaultdict(list)
        self.hour_requests: Dict[str, List[float]] = defaultdict(list)
        self.credential_requests: Dict[str, List[float]] = defaultdict(list)
        self.cleanup_interval = 300  # Clean up old entries every 5 minutes
        self.last_cleanup = time.time()

    async def dispatch(self, request: Request, call_next):
        """Process request with rate limiting."""
        client_ip = get_client_ip(request) or "unknown"

        current_time = time.time()
        if current_time - self.last_cleanup > self.cleanup_interval:
            self._cleanup_old_entries(current_time)
            self.last_cleanup = current_time

        is_credential = request.method == "POST" and request.url.path.startswith(CREDENTIAL_PATHS)
        if not self._check_rate_limit(client_ip, current_time, is_credential):
            logger.warning(f"Rate limit exceeded for IP: {client_ip} ({request.method} {request.url.path})")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"code": "rate_limited", "detail": "Rate limit exceeded. Please try again later."},
                headers={"Retry-After": "60"}
            )

        return await call_next(request)

    def _check_rate_limit(self, client_ip: str, current_time: float, is_credential: bool = False) -> bool:
        """Check if request is within rate limits, and count it if so."""
        self.minute_requests[client_ip] = self._recent(self.minute_requests[client_ip], current_time, 60)
        self.hour_requests[client_ip] = self._recent(self.hour_requests[client_ip], current_time, 3600)

        if len(self.minute_requests[client_ip]) >= self.requests_per_minute:
            return False
        if len(self.hour_requests[client_ip]) >= self.requests_per_hour:
            return False

        if is_credential:
            self.credential_requests[client_ip] = self._recent(self.credential_requests[client_ip], current_time, 60)
            if len(self.credential_requests[client_ip]) >= self.credential_requests_per_minute:
                return False
            self.credential_requests[client_ip].append(current_time)

        self.minute_requests[client_ip].append(current_time)
        self.hour_requests[client_ip].append(current_time)
        return True

    @staticmethod
    def _recent(timestamps: List[float], current_time: float, window: int) -> List[float]:
        return [t for t in timestamps if current_time - t < window]

    def _cleanup_old_entries(self, current_time: float):
        """Clean up old rate limit entries."""
        for bucket, window in (
            (self.minute_requests, 60),
            (self.hour_requests, 3600),
            (self.credential_requests, 60),
        ):
            for ip in list(bucket.keys()):
                bucket[ip] = self._recent(bucket[ip], current_time, window)
                if not bucket[ip]:
                    del bucket[ip]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to responses."""

    async def dispatch(self, request: Request, call_next):
        """Add security headers."""
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Session and token responses must never be cached
        response.headers["Cache-Control"] = "no-store"

        return response


def setup_cors(app, allowed_origins: list[str], allowed_methods: list[str] = None):
    """
    Setup CORS middleware.

    Args:
        app: FastAPI application
        allowed_origins: List of allowed origins
        allowed_methods: List of allowed HTTP methods
    """
    if allowed_methods is None:
        allowed_methods = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=allowed_methods,
        allow_headers=["Content-Type", "X-Session-Key"],
    )


def setup_trusted_hosts(app, allowed_hosts: list[str]):
    """
    Setup trusted hosts middleware.

    Args:
        app: FastAPI application
        allowed_hosts: List of allowed hostnames
    """
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=allowed_hosts
    )
