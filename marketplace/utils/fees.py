from typing import Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models import User


def calc_fee_bps(amount_cents: int, bps: int) -> int:
    if bps <= 0 or amount_cents <= 0:
        return 0
    # Round to nearest cent using integer math
    return (amount_cents * bps + 5000) // 10000


def split_price(agreed_price_cents: int) -> Tuple[int, int]:
    """Return (platform_fee_cents, seller_receives_cents) for an agreed price."""
    platform_fee = calc_fee_bps(agreed_price_cents, settings.PLATFORM_FEE_BPS)
    seller_receives = agreed_price_cents - calc_fee_bps(agreed_price_cents, settings.SELLER_FEE_BPS)
    return platform_fee, seller_receives


def ensure_fee_user(db: Session) -> User:
    """The system account whose wallet collects the platform's cut."""
    phone = settings.FEE_WALLET_PHONE
    user = db.query(User).filter(User.phone == phone).one_or_none()
    if user is not None:
        return user
    try:
        with db.begin_nested():
            user = User(phone=phone, name="System Fees", is_admin=False)
            db.add(user)
    except IntegrityError:
        # First release after deploy raced another one
        user = db.query(User).filter(User.phone == phone).one()
    return user
