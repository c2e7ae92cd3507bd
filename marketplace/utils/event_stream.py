import os
import json
import logging
from typing import Dict, Any


logger = logging.getLogger("marketplace.events")

SINK = os.getenv("EVENT_SINK", "log").lower()  # log|none


def publish(event_type: str, payload: Dict[str, Any]) -> None:
    if SINK == "none":
        return
    logger.info(json.dumps({"type": event_type, "data": payload}, default=str))
