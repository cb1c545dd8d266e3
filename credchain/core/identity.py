"""
Credchain - Caller Identity
Authentication happens at the gateway in front of this service; the
gateway forwards the authenticated address and role as headers.

Headers:
- X-Actor-Id: 20-byte address (0x + 40 hex), compared case-insensitively
- X-Actor-Role: student | institution | employer | admin
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Header

from credchain.core.errors import UnauthorizedError, ValidationError


ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
ANONYMOUS = "anonymous"


class ActorRole(str, Enum):
    STUDENT = "student"
    INSTITUTION = "institution"
    EMPLOYER = "employer"
    ADMIN = "admin"


def normalize_address(value: str, field: str = "address") -> str:
    """Validate a 20-byte address and return it lowercased."""
    if not isinstance(value, str) or not ADDRESS_RE.match(value.strip()):
        raise ValidationError(f"{field} must be 0x followed by 40 hex characters", field=field)
    return value.strip().lower()


@dataclass(frozen=True)
class Actor:
    """An identified caller (or anonymous when actor_id is None)."""
    actor_id: Optional[str] = None
    role: Optional[ActorRole] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def can_issue(self) -> bool:
        return self.role in (ActorRole.INSTITUTION, ActorRole.ADMIN)

    @property
    def is_anonymous(self) -> bool:
        return self.actor_id is None

    def require_identified(self) -> str:
        if self.actor_id is None:
            raise UnauthorizedError("An identified caller is required")
        return self.actor_id


async def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Actor:
    """FastAPI dependency: the caller as asserted by the gateway."""
    actor_id = normalize_address(x_actor_id, "X-Actor-Id") if x_actor_id else None
    role = None
    if x_actor_role:
        try:
            role = ActorRole(x_actor_role.strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown role '{x_actor_role}'", field="X-Actor-Role") from None
    return Actor(actor_id=actor_id, role=role)
