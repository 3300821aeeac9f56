"""
Request context passed explicitly from the HTTP layer into services.
"""
from dataclasses import dataclass
from typing import Optional

from database.models import UserRole


@dataclass(frozen=True)
class ClientInfo:
    """Where a request came from."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class CurrentIdentity:
    """The authenticated identity behind a session."""
    id: int
    username: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True)
class RequestContext:
    client: ClientInfo
    identity: Optional[CurrentIdentity] = None
    session_hash: Optional[str] = None

    @property
    def actor_id(self) -> Optional[int]:
        return self.identity.id if self.identity else None
