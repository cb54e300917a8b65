"""environment_controller/lambda_function.py

EventBridge-triggered Lambda that drives one preview environment through a
lifecycle action.

Flow:
    EventBridge (virtual-env-events, DetailType PullRequestEvent)
    → This Lambda
    → parse_action(event.detail)
    → controller.handle(action, remaining_ms)
    → DynamoDB / ECS / ELBv2 / Cloud Map

Errors propagate so EventBridge retry and the dead-letter queue apply; the
controller has already forced the environment to FAILED by then. A CREATE
that lands during a teardown raises EnvironmentBusyError with the record
untouched, and the retried event runs once the teardown has finished.

Environment variables: see preview_env.config.
"""

from __future__ import annotations

import json
from typing import Any, Dict

from preview_env import controller
from preview_env.config import logger
from preview_env.models import InvalidActionError, parse_action


def _detail(event: Dict[str, Any]) -> Dict[str, Any]:
    detail = event.get("detail", event)
    if isinstance(detail, str):
        try:
            detail = json.loads(detail)
        except json.JSONDecodeError as exc:
            raise InvalidActionError(f"Event detail is not valid JSON: {exc}") from exc
    return detail


def _remaining_ms(context: Any):
    getter = getattr(context, "get_remaining_time_in_millis", None)
    if getter is None:
        return None
    return int(getter())


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    logger.info(
        "environment_controller: received %s from %s",
        event.get("detail-type", "direct invocation"),
        event.get("source", "-"),
    )
    try:
        action = parse_action(_detail(event))
    except InvalidActionError as exc:
        logger.error("[ERROR] Rejected lifecycle action: %s", exc)
        raise

    return controller.handle(action, remaining_ms=_remaining_ms(context))
