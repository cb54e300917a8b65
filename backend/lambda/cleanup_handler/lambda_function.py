"""cleanup_handler/lambda_function.py

Scheduled Lambda (EventBridge rate rule) that reconciles preview
environments: ACTIVE ones past their expiry and CREATING/UPDATING ones
stuck beyond the grace period get a DESTROY action.

Dispatch follows SWEEPER_DISPATCH_MODE: ``eventbridge`` publishes the
DESTROY to the event bus the environment controller listens on, ``direct``
runs the controller in this invocation.
"""

from __future__ import annotations

from typing import Any, Dict

from preview_env import sweeper
from preview_env.config import logger


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    logger.info("cleanup_handler: scheduled run %s", (event or {}).get("id", "-"))
    try:
        return sweeper.sweep()
    except Exception as exc:
        logger.error("[ERROR] Scheduled cleanup failed: %s", exc, exc_info=True)
        raise
