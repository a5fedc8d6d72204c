"""
Authentication and authorization dependencies.

Identity is owned by the identity provider: this service verifies its
JWTs and keeps a local `users` mirror keyed by the token's `sub`.

Provides FastAPI dependencies for:
- Getting current authenticated user (provisioned on first sight)
- Role-based access control
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID

import logging

from core.database import get_db
from core.logging import bind_log_context
from core.security import decode_identity_token, subject_of
from models import User
from services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)


def _provision_user(db: Session, user_id: UUID, payload: dict) -> User:
    """First request from a new identity: mirror row + default plan."""
    user = User(id=user_id, email=payload.get("email"), display_name=payload.get("name"))
    try:
        with db.begin_nested():
            db.add(user)
    except IntegrityError:
        # Concurrent first request won the insert.
        return db.query(User).filter(User.id == user_id).first()

    SubscriptionService(db).ensure_default(user_id)
    logger.info(f"Provisioned user {user_id}")
    return user


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Get the current authenticated user from JWT token.

    Raises HTTPException if token is invalid. Tags the request with the
    user id so the usage middleware can attribute it.
    """
    # Check if credentials are missing (return 401, not 403)
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_identity_token(credentials.credentials)

    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = subject_of(payload)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token subject is not a user id",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        user = _provision_user(db, user_id, payload)

    request.state.user_id = user.id
    bind_log_context(user_id=str(user.id))
    return user


def get_current_active_user(
    current_user: User = Depends(get_current_user)
) -> User:
    """
    Get current user and ensure they are active.

    Blocking/deactivation lives with the identity provider; a token it
    still signs is an active user here.
    """
    return current_user


def require_role(allowed_roles: list[str]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/admin-only")
        def admin_endpoint(user: User = Depends(require_role(["admin"]))):
            ...
    """
    def role_checker(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {allowed_roles}",
            )
        return current_user

    return role_checker


def require_admin(
    current_user: User = Depends(require_role(["admin", "owner"]))
) -> User:
    """Require admin or owner role."""
    return current_user
