from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..auth import create_access_token, get_db
from ..config import settings
from ..models import User
from ..schemas import DevLoginIn, TokenOut
from ..utils.audit import record_event


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/dev/login", response_model=TokenOut, include_in_schema=settings.DEV_MODE)
def dev_login(payload: DevLoginIn, db: Session = Depends(get_db)):
    """Issue a bearer token for a phone number. Identity proper lives in the auth service."""
    if not settings.DEV_MODE:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    user = db.query(User).filter(User.phone == payload.phone).one_or_none()
    if user is None:
        referrer = None
        if payload.referred_by_phone:
            referrer = db.query(User).filter(User.phone == payload.referred_by_phone).one_or_none()
        user = User(
            phone=payload.phone,
            name=payload.name,
            referred_by_user_id=referrer.id if referrer else None,
        )
        db.add(user)
        db.flush()
        record_event(db, "user.dev_created", user.id, {"phone": user.phone})
    return TokenOut(access_token=create_access_token(str(user.id), user.phone), user_id=str(user.id))
