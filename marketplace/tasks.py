from __future__ import annotations

import logging
from typing import List

from .celery_app import celery_app
from .services import sweeper
from .utils.after_commit import resolve_handler, run_handler


logger = logging.getLogger("marketplace.tasks")


@celery_app.task(name="marketplace.tasks.run_expiry_sweep")
def run_expiry_sweep() -> dict:
    """Expire stale offers and listings, then auto-release matured escrows."""
    return sweeper.run_once().as_dict()


@celery_app.task(name="marketplace.tasks.run_deferred")
def run_deferred(handler: str, args: List[str]) -> None:
    # Failures are logged inside run_handler; the originating transaction already committed
    run_handler(resolve_handler(handler), *args)
