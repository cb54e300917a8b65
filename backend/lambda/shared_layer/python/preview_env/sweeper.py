"""preview_env.sweeper — Periodic reconciliation of expired and stuck environments.

Two reads per run:
  1. ACTIVE environments past expires_at (GSI query).
  2. CREATING/UPDATING environments past expires_at minus the grace period (scan).
The union, deduplicated by environment_id, gets one DESTROY action each,
either published to EventBridge or handed to the controller in-process.
"""
from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

from .config import (
    EVENT_BUS_NAME,
    EVENT_DETAIL_TYPE,
    EVENT_SOURCE,
    GRACE_PERIOD_MINUTES,
    SWEEPER_DISPATCH_MODE,
    logger,
)
from .models import ACTION_DESTROY, ENV_ACTIVE, ENV_CREATING, ENV_UPDATING, LifecycleAction
from .serialization import _emit_structured_observability, _unix_now
from .store import _query_environments_by_status, _scan_environments_in_statuses
from .aws_clients import _get_events

__all__ = [
    "REASON_STUCK_TRANSITION",
    "REASON_TTL_EXPIRED",
    "build_destroy_action",
    "direct_dispatcher",
    "eventbridge_dispatcher",
    "find_expired_environments",
    "find_overdue_environments",
    "sweep",
]

REASON_TTL_EXPIRED = "TTL_EXPIRED"
REASON_STUCK_TRANSITION = "STUCK_TRANSITION"

Dispatcher = Callable[[LifecycleAction], Any]


def find_expired_environments(now: Optional[int] = None) -> List[Dict[str, Any]]:
    now = _unix_now() if now is None else int(now)
    return _query_environments_by_status(ENV_ACTIVE, now)


def find_overdue_environments(now: Optional[int] = None) -> List[Dict[str, Any]]:
    now = _unix_now() if now is None else int(now)
    cutoff = now - GRACE_PERIOD_MINUTES * 60
    return _scan_environments_in_statuses((ENV_CREATING, ENV_UPDATING), cutoff)


def build_destroy_action(env: Dict[str, Any], reason: str) -> LifecycleAction:
    return LifecycleAction(
        action=ACTION_DESTROY,
        environment_id=env["environment_id"],
        repository=str(env.get("repository") or ""),
        branch=str(env.get("branch") or ""),
        pr_number=env.get("pr_number"),
        pr_url=str(env.get("pr_url") or ""),
        reason=reason,
    )


def eventbridge_dispatcher(action: LifecycleAction) -> str:
    resp = _get_events().put_events(
        Entries=[
            {
                "EventBusName": EVENT_BUS_NAME,
                "Source": EVENT_SOURCE,
                "DetailType": EVENT_DETAIL_TYPE,
                "Detail": json.dumps(action.to_detail(), default=str),
            }
        ]
    )
    if int(resp.get("FailedEntryCount", 0)):
        entry = (resp.get("Entries") or [{}])[0]
        raise RuntimeError(
            f"EventBridge rejected DESTROY for {action.environment_id}: "
            f"{entry.get('ErrorCode')} {entry.get('ErrorMessage')}"
        )
    return str(((resp.get("Entries") or [{}])[0]).get("EventId") or "")


def direct_dispatcher(action: LifecycleAction) -> Dict[str, Any]:
    from . import controller

    return controller.handle(action)


def _default_dispatcher() -> Dispatcher:
    if SWEEPER_DISPATCH_MODE == "direct":
        return direct_dispatcher
    if SWEEPER_DISPATCH_MODE != "eventbridge":
        logger.warning("[WARNING] Unknown SWEEPER_DISPATCH_MODE '%s' - using eventbridge", SWEEPER_DISPATCH_MODE)
    return eventbridge_dispatcher


def sweep(dispatcher: Optional[Dispatcher] = None, now: Optional[int] = None) -> Dict[str, Any]:
    """Run one reconciliation pass and return a summary.

    Store read failures propagate. A failed dispatch is logged and counted;
    the next pass picks the environment up again.
    """
    dispatcher = dispatcher or _default_dispatcher()
    now = _unix_now() if now is None else int(now)
    logger.info("[START] Sweeping preview environments at %d", now)

    expired = find_expired_environments(now)
    overdue = find_overdue_environments(now)
    logger.info("[INFO] Found %d expired and %d overdue environment(s)", len(expired), len(overdue))

    targets: Dict[str, LifecycleAction] = {}
    for env in expired:
        targets.setdefault(env["environment_id"], build_destroy_action(env, REASON_TTL_EXPIRED))
    for env in overdue:
        targets.setdefault(env["environment_id"], build_destroy_action(env, REASON_STUCK_TRANSITION))

    dispatched: List[str] = []
    failed: List[str] = []
    for environment_id, action in targets.items():
        try:
            dispatcher(action)
        except Exception as exc:
            logger.error("[ERROR] DESTROY dispatch failed for %s: %s", environment_id, exc)
            failed.append(environment_id)
            continue
        logger.info("[INFO] DESTROY dispatched for %s (%s)", environment_id, action.reason)
        dispatched.append(environment_id)

    summary = {
        "expired_count": len(expired),
        "overdue_count": len(overdue),
        "dispatched": len(dispatched),
        "failed": len(failed),
        "environment_ids": dispatched,
        "failed_environment_ids": failed,
    }
    _emit_structured_observability(
        component="cleanup_handler",
        event="sweep_completed",
        extra={k: v for k, v in summary.items() if k.endswith("count") or k in ("dispatched", "failed")},
    )
    logger.info("[END] Sweep complete: %s", json.dumps(summary, sort_keys=True))
    return summary
