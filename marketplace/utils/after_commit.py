"""Deferred side effects that run only once the surrounding unit commits.

Handlers are plain functions ``fn(db, *args)``. Each one runs in its own
``session_scope`` after the originating session commits; a rollback drops
the queue. Handler failures are logged and never reach the caller whose
transaction already committed.
"""
import importlib
import logging
from typing import Any, Callable, List, Tuple

from sqlalchemy import event
from sqlalchemy.orm import Session

from ..config import settings


logger = logging.getLogger("marketplace.events")

_KEY = "after_commit_hooks"


def run_after_commit(db: Session, fn: Callable[..., Any], *args: Any) -> None:
    db.info.setdefault(_KEY, []).append((fn, args))


def handler_path(fn: Callable[..., Any]) -> str:
    return f"{fn.__module__}:{fn.__qualname__}"


def resolve_handler(path: str) -> Callable[..., Any]:
    module_name, _, attr = path.partition(":")
    return getattr(importlib.import_module(module_name), attr)


def run_handler(fn: Callable[..., Any], *args: Any) -> None:
    from ..database import session_scope

    try:
        with session_scope() as db:
            fn(db, *args)
    except Exception:
        logger.exception("deferred handler %s failed", handler_path(fn))


def _dispatch(fn: Callable[..., Any], args: Tuple[Any, ...]) -> None:
    if settings.DOMAIN_EVENTS_MODE.lower() == "celery":
        from ..tasks import run_deferred

        try:
            run_deferred.delay(handler_path(fn), [str(a) for a in args])
            return
        except Exception:
            logger.exception("enqueue failed for %s, running inline", handler_path(fn))
    run_handler(fn, *args)


@event.listens_for(Session, "after_commit")
def _flush_hooks(session: Session) -> None:
    # Released savepoints fire this too; wait for the outermost commit
    if session.in_nested_transaction():
        return
    hooks: List[Tuple[Callable[..., Any], Tuple[Any, ...]]] = session.info.pop(_KEY, [])
    for fn, args in hooks:
        _dispatch(fn, args)


@event.listens_for(Session, "after_soft_rollback")
def _drop_hooks(session: Session, previous_transaction) -> None:
    # Savepoint rollbacks keep the queue; only the outermost unit discards it
    if previous_transaction.parent is None and not previous_transaction.nested:
        session.info.pop(_KEY, None)
