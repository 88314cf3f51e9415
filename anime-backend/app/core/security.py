# Bearer token verification
# backend/app/core/security.py

import logging
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError

from app.core.config import settings

logger = logging.getLogger(__name__)

# Missing or malformed headers are reported by get_current_user_id, not by FastAPI
bearer_scheme = HTTPBearer(auto_error=False)

class AuthenticationError(HTTPException):
    """401 carrying the Bearer challenge header."""
    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )

def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decodes an access token signed with JWT_SECRET and checks its expiry
    (and its audience, when JWT_AUDIENCE is configured).

    Raises:
        AuthenticationError: If the token is expired, malformed or fails a claim check.
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET.get_secret_value(),
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options={"verify_aud": settings.JWT_AUDIENCE is not None, "verify_exp": True},
        )
    except ExpiredSignatureError:
        logger.warning("Rejected token: expired.")
        raise AuthenticationError("Token has expired")
    except JWTClaimsError as e:
        logger.warning(f"Rejected token: invalid claims - {e}")
        raise AuthenticationError(f"Invalid token claims: {e}")
    except JWTError as e:
        logger.warning(f"Rejected token: bad signature or format - {e}")
        raise AuthenticationError(f"Invalid token: {e}")

def user_id_from_claims(claims: Dict[str, Any]) -> str:
    """The `sub` claim, which must be the hex ObjectId of a user document."""
    subject = claims.get("sub")
    if not isinstance(subject, str) or not ObjectId.is_valid(subject):
        logger.warning(f"Rejected token: subject {subject!r} is not a user id.")
        raise AuthenticationError("Token subject is not a valid user identifier")
    return subject

async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """FastAPI dependency resolving the caller's user id from the Authorization header."""
    if credentials is None or not credentials.credentials:
        logger.warning("Rejected request: no bearer token.")
        raise AuthenticationError("Authentication token missing")
    return user_id_from_claims(decode_access_token(credentials.credentials))
