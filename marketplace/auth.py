import datetime as dt
import uuid

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal
from .models import User


bearer_scheme = HTTPBearer(auto_error=True)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(user_id: str, phone: str) -> str:
    issued = dt.datetime.now(dt.timezone.utc)
    claims = {
        "sub": str(user_id),
        "phone": phone,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": int(issued.timestamp()),
        "exp": int((issued + settings.jwt_expires_delta).timestamp()),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm="HS256")


def decode_access_token(token: str) -> uuid.UUID:
    """Validate an HS256 bearer token and return the user id it names."""
    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE if settings.JWT_VALIDATE_AUD else None,
            leeway=settings.JWT_CLOCK_SKEW_SECS,
            options={"require": ["exp", "iat", "sub"], "verify_aud": settings.JWT_VALIDATE_AUD},
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")
    try:
        return uuid.UUID(str(claims["sub"]))
    except ValueError:
        raise _unauthorized("Invalid token subject")


def get_db():
    """One unit of work per request: commit on success, roll back on any error."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    user = db.get(User, decode_access_token(creds.credentials))
    if user is None:
        raise _unauthorized("Unknown user")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    # Dispute adjudication and ledger maintenance are staff-only
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
