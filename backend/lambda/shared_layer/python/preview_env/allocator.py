"""preview_env.allocator — Routing-priority slots in a bounded, shared range.

Slots are claimed by a scan-then-conditional-create: the in-use set is read
fresh on every call (never cached), candidates are tried in ascending order,
and a lost race moves on to the next candidate. No two environments can hold
the same (routing_domain, priority) because the final write is
create-if-absent.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from .config import ALB_LISTENER_ARN, PRIORITY_RANGE_END, PRIORITY_RANGE_START, logger
from .models import PriorityExhaustedError, VALID_ENV_STATUSES
from .serialization import _now_z
from .store import (
    _count_priority_allocations,
    _create_priority_allocation,
    _delete_priority_allocation,
    _list_environments,
    _list_priority_allocations,
    _refresh_priority_expiry,
)

__all__ = ["allocate", "capacity_report", "priority_range", "refresh", "release"]

CAPACITY_WARNING_RATIO = 0.7
CAPACITY_CRITICAL_RATIO = 0.9

# Key used when no listener ARN is configured (local runs, tests).
DEFAULT_ROUTING_DOMAIN = "default"


def _domain(domain: Optional[str]) -> str:
    return domain or ALB_LISTENER_ARN or DEFAULT_ROUTING_DOMAIN


def priority_range() -> Tuple[int, int]:
    start, end = int(PRIORITY_RANGE_START), int(PRIORITY_RANGE_END)
    if start < 1 or end < start:
        raise ValueError(f"Invalid priority range [{start}, {end}]")
    return start, end


def allocate(
    domain: str,
    owner_environment_id: str,
    owner_service_id: str,
    expires_at: int,
) -> int:
    """Claim the lowest free priority in the reserved range.

    Raises PriorityExhaustedError when a full pass over the range commits
    nothing.
    """
    domain = _domain(domain)
    start, end = priority_range()
    in_use = {int(item["priority"]) for item in _list_priority_allocations(domain)}

    lost_races = 0
    for candidate in range(start, end + 1):
        if candidate in in_use:
            continue
        created = _create_priority_allocation(
            {
                "routing_domain": domain,
                "priority": candidate,
                "environment_id": owner_environment_id,
                "service_id": owner_service_id,
                "allocated_at": _now_z(),
                "expires_at": int(expires_at),
            }
        )
        if created:
            if lost_races:
                logger.info(
                    "[INFO] Allocated priority %d for %s/%s after %d lost race(s)",
                    candidate,
                    owner_environment_id,
                    owner_service_id,
                    lost_races,
                )
            else:
                logger.info("[INFO] Allocated priority %d for %s/%s", candidate, owner_environment_id, owner_service_id)
            return candidate
        lost_races += 1

    logger.error(
        "[ERROR] Priority range [%d, %d] exhausted for %s (in use: %d, lost races: %d)",
        start,
        end,
        domain,
        len(in_use),
        lost_races,
    )
    raise PriorityExhaustedError(domain, start, end)


def release(domain: str, priority: int, owner_environment_id: Optional[str] = None) -> bool:
    """Delete a slot; already-missing rows are fine.

    Never raises: a row left behind only wastes capacity until its own TTL.
    Returns False only when the delete call itself failed. With an owner, a
    slot re-claimed by another environment is left alone.
    """
    domain = _domain(domain)
    try:
        deleted = _delete_priority_allocation(domain, int(priority), owner_environment_id)
    except Exception as exc:
        logger.warning("[WARNING] Failed to release priority %s on %s: %s", priority, domain, exc)
        return False
    if not deleted:
        logger.info(
            "[INFO] Priority %s on %s no longer held by %s - nothing to release",
            priority,
            domain,
            owner_environment_id,
        )
    return True


def refresh(domain: str, priority: int, owner_environment_id: str, expires_at: int) -> bool:
    domain = _domain(domain)
    return _refresh_priority_expiry(domain, int(priority), owner_environment_id, int(expires_at))


def capacity_report(domain: Optional[str] = None) -> Dict[str, Any]:
    domain = _domain(domain)
    start, end = priority_range()
    total = end - start + 1
    used = _count_priority_allocations(domain)
    by_status: Dict[str, int] = {status: 0 for status in VALID_ENV_STATUSES}
    for env in _list_environments():
        status = str(env.get("status") or "UNKNOWN")
        by_status[status] = by_status.get(status, 0) + 1
    ratio = used / total if total else 1.0
    return {
        "routing_domain": domain,
        "priority_range": [start, end],
        "priorities": {
            "used": used,
            "total": total,
            "available": max(0, total - used),
            "percentage": round(ratio * 100),
            "is_warning": ratio >= CAPACITY_WARNING_RATIO,
            "is_critical": ratio >= CAPACITY_CRITICAL_RATIO,
        },
        "environments": {
            "total": sum(by_status.values()),
            "by_status": by_status,
        },
    }
