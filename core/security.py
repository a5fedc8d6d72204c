"""
Identity token handling.

Tokens are minted by the identity provider and only verified here. The
`sub` claim is the user id; `email`/`name` seed the local user mirror on
first sight. `issue_identity_token` exists for service-to-service calls
and tests.

SECRET_KEY must be at least 32 characters and is shared with the
identity provider.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
from uuid import UUID
from jose import ExpiredSignatureError, JWTError, jwt
from core.config import settings
import logging

logger = logging.getLogger(__name__)

SECRET_KEY = settings.SECRET_KEY

if len(SECRET_KEY) < 32:
    raise ValueError("SECRET_KEY must be at least 32 characters (shared with the identity provider)")

ALGORITHM = settings.JWT_ALGORITHM
IDENTITY_TOKEN_TTL = timedelta(hours=settings.JWT_TTL_HOURS)


def issue_identity_token(user_id: UUID, claims: Optional[Dict] = None, ttl: Optional[timedelta] = None) -> str:
    """Mint a token in the identity provider's format."""
    now = datetime.now(timezone.utc)
    payload = dict(claims or {})
    payload.update({"sub": str(user_id), "iat": now, "exp": now + (ttl or IDENTITY_TOKEN_TTL)})
    if settings.JWT_AUDIENCE:
        payload["aud"] = settings.JWT_AUDIENCE
    if settings.JWT_ISSUER:
        payload["iss"] = settings.JWT_ISSUER
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_identity_token(token: str) -> Optional[Dict]:
    """
    Verify signature, expiry and (when configured) audience/issuer.

    Returns the claims, or None for any token this service should treat as
    unauthenticated.
    """
    try:
        return jwt.decode(
            token,
            SECRET_KEY,
            algorithms=[ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"verify_aud": settings.JWT_AUDIENCE is not None},
        )
    except ExpiredSignatureError:
        logger.info("Rejected expired identity token")
        return None
    except JWTError:
        return None


def subject_of(claims: Dict) -> Optional[UUID]:
    """The user id carried in `sub`, or None when absent or not a UUID."""
    subject = claims.get("sub")
    if not subject:
        return None
    try:
        return UUID(str(subject))
    except ValueError:
        return None
