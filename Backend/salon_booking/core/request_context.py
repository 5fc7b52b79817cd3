"""
Request Context Resolution Module

Identity is issued upstream (auth gateway); by the time a request reaches
this service the gateway has already verified the caller and forwards the
result as headers:

    X-User-Id:   opaque user identifier (required)
    X-User-Role: "customer" (default) or "admin"

This module turns those headers into an ``Actor`` that the booking core
uses for ownership checks and admin-only bypasses.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, status

from ..models import UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation."""
    user_id: str
    role: UserRole = UserRole.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


async def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    """FastAPI dependency resolving the calling actor from gateway headers."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        logger.warning("Authentication failed: missing X-User-Id")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Please sign in.",
        )

    raw_role = (x_user_role or UserRole.CUSTOMER.value).strip().lower()
    try:
        role = UserRole(raw_role)
    except ValueError:
        logger.warning(f"Rejected unknown role {raw_role!r} for user {user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown role",
        )
    return Actor(user_id=user_id, role=role)
