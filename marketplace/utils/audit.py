import logging
import uuid
from typing import Optional, Dict, Any, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import AuditEvent
from .event_stream import publish


logger = logging.getLogger("marketplace.events")


def _json_safe(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (str(v) if isinstance(v, uuid.UUID) else v) for k, v in data.items()}


def record_event(
    db: Session,
    type: str,
    user_id: Optional[Union[str, uuid.UUID]],
    data: Optional[Dict[str, Any]] = None,
) -> None:
    """Append a domain event to the audit log and publish it.

    The row lives in a savepoint of the caller's transaction, so it commits
    or rolls back together with the state change it describes, while a
    failing insert never aborts that state change.
    """
    payload = _json_safe(data or {})
    if isinstance(user_id, str):
        user_id = uuid.UUID(user_id)
    try:
        with db.begin_nested():
            db.add(AuditEvent(type=type, user_id=user_id, data=payload))
    except SQLAlchemyError:
        logger.exception("audit insert failed for %s", type)
        return
    try:
        publish(type, {"user_id": str(user_id) if user_id else None, **payload})
    except Exception:
        logger.exception("event publish failed for %s", type)
