import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from prometheus_client import Counter
from sqlalchemy.orm import Session

from ..auth import get_db
from ..errors import InvalidWebhookSignature
from ..payment_gateway import get_gateway
from ..services import escrow


logger = logging.getLogger("marketplace.webhook")

WEBHOOK_COUNTER = Counter("marketplace_payment_webhooks_total", "Provider callbacks", ["outcome"])

router = APIRouter(prefix="/payments", tags=["payments-webhook"])


def _count(outcome: str) -> None:
    try:
        WEBHOOK_COUNTER.labels(outcome).inc()
    except Exception:
        pass


def _order_id(obj: Dict[str, Any]) -> Optional[Any]:
    order = obj.get("order")
    if isinstance(order, dict):
        return order.get("id")
    return order


@router.post("/webhook")
def payment_webhook(
    payload: Dict[str, Any] = Body(...),
    hmac_sig: Optional[str] = Query(default=None, alias="hmac"),
    db: Session = Depends(get_db),
):
    obj = payload.get("obj")
    if not isinstance(obj, dict):
        obj = payload
    if not get_gateway().verify_webhook_signature(obj, hmac_sig):
        _count("bad_signature")
        logger.warning("rejected provider callback with invalid signature (order=%s)", _order_id(obj))
        raise InvalidWebhookSignature()

    order_id = _order_id(obj)
    if obj.get("is_refunded") is True:
        escrow.on_payment_refunded(db, order_id, obj)
        _count("refunded")
        return {"received": True}
    if obj.get("pending") is True:
        _count("pending")
        return {"received": True}
    if obj.get("success") is not True:
        escrow.on_payment_failed(db, order_id, obj)
        _count("failed")
        return {"received": True}

    tx = escrow.on_payment_confirmed(db, order_id, obj)
    _count("held" if tx is not None else "ignored")
    return {"received": True}
