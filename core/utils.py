"""
Small shared helpers.
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_client_ip(request: Request) -> Optional[str]:
    """Source address of the request, honouring a single reverse proxy hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
