"""Session tokens that scope ledger calls to one user.

The main application's auth flow issues these. The ledger verifies them and
reads the subject, plus the email used when a billing customer is created.
``issue_session_token`` covers service-to-service calls and tests.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "mentor_session"
CLOCK_SKEW_SECONDS = 30

_DECODE_OPTIONS = {"require_exp": True, "require_sub": True, "leeway": CLOCK_SKEW_SECONDS}


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    expires_at: datetime
    email: Optional[str] = None


def issue_session_token(user_id: str, *, email: Optional[str] = None, ttl_hours: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_session_token(token: str) -> SessionClaims:
    """Raise ValueError unless the token is signed, unexpired and a ledger session."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM], options=_DECODE_OPTIONS)
    except ExpiredSignatureError as exc:
        raise ValueError("Session token expired.") from exc
    except JWTError as exc:
        raise ValueError("Invalid session token.") from exc

    if claims.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    user_id = str(claims["sub"]).strip()
    if not user_id:
        raise ValueError("Session token missing subject.")
    return SessionClaims(
        user_id=user_id,
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        email=claims.get("email") or None,
    )
