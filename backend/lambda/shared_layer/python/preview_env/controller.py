"""preview_env.controller — Lifecycle controller for PR-scoped preview environments.

Single entry point ``handle(action)`` used by both the event path and the
sweeper. The requested action is resolved against the stored record by
``models.plan_action`` and then driven to completion:

    CREATE   fresh record in CREATING -> deploy each catalog service -> ACTIVE
    UPDATE   UPDATING -> redeploy services holding a compute handle in place,
             deploy services new to the catalog, refresh expiry mirrors -> ACTIVE
    DESTROY  DESTROYING -> reverse-order teardown per service -> DESTROYED

Per-service deploy failures never abort sibling services and teardown steps
never abort each other. Anything else escaping an action forces the record
to FAILED with last_error and is re-raised to the caller. A CREATE that
arrives while a teardown is in flight raises EnvironmentBusyError instead,
leaving the record alone for the redelivered event.
"""
from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from .allocator import allocate, refresh, release
from .backends import ComputeBackend, LoadBalancerBackend, RegistryBackend, build_match_condition
from .config import (
    ACTION_DEADLINE_MARGIN_SECONDS,
    ALB_LISTENER_ARN,
    COMPUTE_DRAIN_WAIT_SECONDS,
    DEFAULT_TTL_HOURS,
    DESTROYED_RETENTION_HOURS,
    DOMAIN_NAME,
    MAX_TTL_HOURS,
    TARGET_DEREGISTRATION_WAIT_SECONDS,
    logger,
)
from .models import (
    ACTION_CREATE,
    ACTION_DESTROY,
    ACTION_UPDATE,
    ENV_ACTIVE,
    ENV_CREATING,
    ENV_DESTROYED,
    ENV_DESTROYING,
    ENV_FAILED,
    ENV_UPDATING,
    EnvironmentBusyError,
    EnvironmentNotFoundError,
    InvalidActionError,
    LifecycleAction,
    SVC_ACTIVE,
    SVC_DEPLOYING,
    SVC_DESTROYING,
    SVC_FAILED,
    SVC_PENDING,
    StepFailedError,
    plan_action,
)
from .serialization import _emit_structured_observability, _now_z, _unix_now
from .service_catalog import services_for_repository
from .steps import run_step
from .store import (
    _begin_update,
    _delete_routing_entry,
    _get_environment,
    _list_routing_entries,
    _mark_destroyed,
    _put_fresh_environment,
    _put_routing_entry,
    _refresh_routing_expiry,
    _remove_service_state,
    _set_environment_expiry,
    _set_environment_status,
    _set_service_state,
)

__all__ = ["extend_environment", "handle", "preview_address", "reset_backends"]

DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"

# Handles a ServiceState (or RoutingEntry) may carry.
_HANDLE_FIELDS = (
    "rule_arn",
    "compute_service_arn",
    "target_group_arn",
    "registry_id",
    "priority",
    "task_definition_arn",
)

# ---------------------------------------------------------------------------
# Backend singletons
# ---------------------------------------------------------------------------

_compute: Optional[ComputeBackend] = None
_load_balancer: Optional[LoadBalancerBackend] = None
_registry: Optional[RegistryBackend] = None


def _get_compute() -> ComputeBackend:
    global _compute
    if _compute is None:
        _compute = ComputeBackend()
    return _compute


def _get_load_balancer() -> LoadBalancerBackend:
    global _load_balancer
    if _load_balancer is None:
        _load_balancer = LoadBalancerBackend()
    return _load_balancer


def _get_registry() -> RegistryBackend:
    global _registry
    if _registry is None:
        _registry = RegistryBackend()
    return _registry


def reset_backends() -> None:
    global _compute, _load_balancer, _registry
    _compute = None
    _load_balancer = None
    _registry = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def preview_address(environment_id: str) -> str:
    return f"https://{environment_id}.{DOMAIN_NAME}"


def _routing_domain() -> str:
    return _get_load_balancer().listener_arn or ALB_LISTENER_ARN


def _has_handles(state: Dict[str, Any]) -> bool:
    return any(state.get(name) not in (None, "") for name in _HANDLE_FIELDS)


def _deadline_reached(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def _wait(seconds: float) -> None:
    if seconds and seconds > 0:
        time.sleep(seconds)


def _transition(environment_id: str, event: str, **extra: Any) -> None:
    _emit_structured_observability(
        component="environment_controller",
        event=event,
        environment_id=environment_id,
        extra=extra or None,
    )


def _failure_summary(states: List[Dict[str, Any]]) -> str:
    failed = [s for s in states if s.get("status") == SVC_FAILED]
    return "; ".join(f"{s['service_id']}: {s.get('last_error') or 'deploy failed'}" for s in failed)


# ---------------------------------------------------------------------------
# Per-service deploy
# ---------------------------------------------------------------------------


def _deploy_service(environment_id: str, service: Dict[str, Any], expires_at: int) -> Dict[str, Any]:
    """Provision one service; returns its final ServiceState.

    Each handle is written to the record as soon as its step succeeds, and a
    routing entry is written once the rule exists, so an invocation killed
    mid-sequence still leaves everything a later DESTROY needs.
    Handles acquired before a failing step stay on the FAILED state. A
    priority that never got bound to a rule is released on the spot.
    """
    service_id = service["serviceId"]
    compute = _get_compute()
    load_balancer = _get_load_balancer()
    registry = _get_registry()
    domain = _routing_domain()
    state: Dict[str, Any] = {"service_id": service_id, "status": SVC_DEPLOYING}
    _set_service_state(environment_id, service_id, state)

    def step(name: str, fn, critical: bool = True):
        return run_step(name, fn, critical=critical, environment_id=environment_id, service_id=service_id)

    def checkpoint() -> None:
        _set_service_state(environment_id, service_id, state)

    def routing_entry() -> Dict[str, Any]:
        return {
            "service_id": service_id,
            "environment_id": environment_id,
            "rule_arn": state["rule_arn"],
            "target_group_arn": state["target_group_arn"],
            "compute_service_arn": state.get("compute_service_arn"),
            "registry_id": state.get("registry_id"),
            "priority": state["priority"],
            "path_pattern": service["pathPattern"],
            "expires_at": expires_at,
        }

    try:
        state["task_definition_arn"] = step(
            "register_task_template",
            lambda: compute.register_task_template(environment_id, service),
        ).value
        checkpoint()
        state["target_group_arn"] = step(
            "create_target",
            lambda: load_balancer.create_target(environment_id, service),
        ).value
        checkpoint()
        state["priority"] = step(
            "allocate_priority",
            lambda: allocate(domain, environment_id, service_id, expires_at),
        ).value
        checkpoint()
        try:
            state["rule_arn"] = step(
                "create_rule",
                lambda: load_balancer.create_rule(
                    build_match_condition(environment_id, service["pathPattern"]),
                    state["target_group_arn"],
                    state["priority"],
                    tags=[
                        {"Key": "virtual-env-id", "Value": environment_id},
                        {"Key": "service-id", "Value": service_id},
                    ],
                ),
            ).value
        except StepFailedError:
            release(domain, state.pop("priority"), environment_id)
            raise
        checkpoint()

        registered = step("register_discovery", lambda: registry.register(environment_id, service), critical=False)
        if registered.ok:
            state["registry_id"] = registered.value["id"]
            state["registry_arn"] = registered.value.get("arn") or ""
            checkpoint()
        step("put_routing_entry", lambda: _put_routing_entry(routing_entry()))

        state["compute_service_arn"] = step(
            "create_compute_service",
            lambda: compute.create_service(
                environment_id,
                service,
                state["task_definition_arn"],
                state["target_group_arn"],
                registry_arn=state.get("registry_arn") or None,
            ),
        ).value
        checkpoint()

        step("put_routing_entry", lambda: _put_routing_entry(routing_entry()))
    except StepFailedError as exc:
        state["status"] = SVC_FAILED
        state["last_error"] = str(exc)[:1000]
        state["error_code"] = exc.error_code
        if exc.error_code == "RESOURCE_EXHAUSTED":
            logger.error(
                "[ERROR] Routing capacity exhausted deploying %s/%s: %s",
                environment_id,
                service_id,
                exc.cause,
            )
        _set_service_state(environment_id, service_id, state)
        return state

    state["status"] = SVC_ACTIVE
    _set_service_state(environment_id, service_id, state)
    logger.info("[SUCCESS] Service %s deployed for %s (priority %s)", service_id, environment_id, state["priority"])
    return state


def _deploy_services(
    environment_id: str,
    services: List[Dict[str, Any]],
    expires_at: int,
    deadline: Optional[float],
) -> List[Dict[str, Any]]:
    states: List[Dict[str, Any]] = []
    for service in services:
        if _deadline_reached(deadline):
            logger.warning(
                "[WARNING] Deadline reached before deploying %s/%s - recording FAILED",
                environment_id,
                service["serviceId"],
            )
            state = {
                "service_id": service["serviceId"],
                "status": SVC_FAILED,
                "last_error": "Action deadline reached before deployment started",
                "error_code": DEADLINE_EXCEEDED,
            }
            _set_service_state(environment_id, service["serviceId"], state)
            states.append(state)
            continue
        logger.info("[INFO] Deploying service %s for %s", service["serviceId"], environment_id)
        states.append(_deploy_service(environment_id, service, expires_at))
    return states


# ---------------------------------------------------------------------------
# Per-service teardown
# ---------------------------------------------------------------------------


def _teardown_service(environment_id: str, state: Dict[str, Any], mark_state: bool = True) -> List[str]:
    """Reverse-order teardown of one service's handles; returns the failed step names.

    rule -> compute (scale to zero, drain, delete) -> target (after
    deregistration wait) -> registry -> priority -> routing entry.

    With mark_state, the service entry is dropped from the record once every
    handle is gone; otherwise it is rewritten with only the handles a later
    DESTROY still has to remove.
    """
    service_id = state.get("service_id") or ""
    compute = _get_compute()
    load_balancer = _get_load_balancer()
    registry = _get_registry()
    failed: List[str] = []
    # Task definitions are not deregistered.
    remaining = {k: v for k, v in state.items() if k != "task_definition_arn"}

    def step(name: str, fn, *handles: str) -> None:
        result = run_step(name, fn, critical=False, environment_id=environment_id, service_id=service_id)
        if not result.ok:
            failed.append(name)
            return
        for handle in handles:
            remaining.pop(handle, None)

    if mark_state:
        step(
            "mark_service_destroying",
            lambda: _set_service_state(environment_id, service_id, dict(state, status=SVC_DESTROYING)),
        )

    if state.get("rule_arn"):
        step("delete_rule", lambda: load_balancer.delete_rule(state["rule_arn"]), "rule_arn")

    if state.get("compute_service_arn"):
        step("scale_to_zero", lambda: compute.scale_to_zero(state["compute_service_arn"]))
        _wait(COMPUTE_DRAIN_WAIT_SECONDS)
        step(
            "delete_compute_service",
            lambda: compute.delete_service(state["compute_service_arn"]),
            "compute_service_arn",
        )

    if state.get("target_group_arn"):
        _wait(TARGET_DEREGISTRATION_WAIT_SECONDS)
        step("delete_target", lambda: load_balancer.delete_target(state["target_group_arn"]), "target_group_arn")

    if state.get("registry_id"):
        step(
            "deregister_discovery",
            lambda: registry.deregister(state["registry_id"]),
            "registry_id",
            "registry_arn",
        )

    if state.get("priority") not in (None, ""):
        domain = _routing_domain()

        def _release() -> None:
            if not release(domain, state["priority"], environment_id):
                raise RuntimeError(f"priority {state['priority']} release failed")

        step("release_priority", _release, "priority")

    step("delete_routing_entry", lambda: _delete_routing_entry(service_id, environment_id))

    if mark_state:
        if _has_handles(remaining):
            step(
                "record_remaining_handles",
                lambda: _set_service_state(environment_id, service_id, dict(remaining, status=SVC_DESTROYING)),
            )
        else:
            step("clear_service_state", lambda: _remove_service_state(environment_id, service_id))

    if failed:
        logger.warning("[WARNING] Teardown of %s/%s left failures: %s", environment_id, service_id, failed)
    else:
        logger.info("[INFO] Tore down service %s for %s", service_id, environment_id)
    return failed


def _teardown_all(environment_id: str, services: Dict[str, Any], mark_state: bool = True) -> Dict[str, List[str]]:
    """Tear down every service in the snapshot, then any routing entry the snapshot missed."""
    failures: Dict[str, List[str]] = {}
    seen = set()
    for service_id, state in sorted((services or {}).items()):
        seen.add(service_id)
        state = dict(state, service_id=service_id)
        if not _has_handles(state):
            continue
        failed = _teardown_service(environment_id, state, mark_state=mark_state)
        if failed:
            failures[service_id] = failed

    listed = run_step(
        "list_routing_entries",
        lambda: _list_routing_entries(environment_id),
        critical=False,
        environment_id=environment_id,
    )
    for entry in listed.value or []:
        service_id = entry.get("service_id") or ""
        if service_id in seen:
            continue
        logger.info("[INFO] Routing entry %s/%s has no service state - tearing down from entry", environment_id, service_id)
        failed = _teardown_service(environment_id, entry, mark_state=False)
        if failed:
            failures[service_id] = failed
    return failures


# ---------------------------------------------------------------------------
# Action handlers
# ---------------------------------------------------------------------------


def _create(action: LifecycleAction, current: Optional[Dict[str, Any]], deadline: Optional[float]) -> str:
    environment_id = action.environment_id

    if current and current.get("status") in (ENV_FAILED, ENV_DESTROYED):
        leftovers = {sid: s for sid, s in (current.get("services") or {}).items() if _has_handles(s)}
        if leftovers:
            logger.info(
                "[INFO] Restarting %s over %s record - tearing down %d leftover service(s) first",
                environment_id,
                current["status"],
                len(leftovers),
            )
            _teardown_all(environment_id, leftovers, mark_state=False)

    now = _now_z()
    expires_at = _unix_now() + DEFAULT_TTL_HOURS * 3600
    record = {
        "environment_id": environment_id,
        "status": ENV_CREATING,
        "repository": action.repository,
        "branch": action.branch,
        "commit_ref": action.commit_ref,
        "pr_number": action.pr_number,
        "pr_url": action.pr_url,
        "base_branch": action.base_branch,
        "merged": action.merged,
        "preview_address": preview_address(environment_id),
        "created_at": now,
        "updated_at": now,
        "expires_at": expires_at,
    }
    if not _put_fresh_environment(record):
        # Another writer created a live record between our read and write.
        logger.info("[INFO] Environment %s became live concurrently - merging as UPDATE", environment_id)
        return _update(action, deadline)
    _transition(environment_id, "environment_creating")

    services = services_for_repository(action.repository, action.services)
    if not services:
        logger.warning("[WARNING] No previewable services match repository '%s'", action.repository)
    for service in services:
        _set_service_state(environment_id, service["serviceId"], {"service_id": service["serviceId"], "status": SVC_PENDING})

    states = _deploy_services(environment_id, services, expires_at, deadline)
    summary = _failure_summary(states)
    if summary:
        _set_environment_status(environment_id, ENV_ACTIVE, error=summary)
        logger.warning("[WARNING] %s is ACTIVE with failed services: %s", environment_id, summary)
    else:
        _set_environment_status(environment_id, ENV_ACTIVE, clear_error=True)
    _transition(environment_id, "environment_active", failed_services=sum(1 for s in states if s["status"] == SVC_FAILED))
    logger.info("[SUCCESS] Environment %s is ACTIVE at %s", environment_id, preview_address(environment_id))
    return ENV_ACTIVE


def _update(action: LifecycleAction, deadline: Optional[float]) -> str:
    environment_id = action.environment_id
    expires_at = _unix_now() + DEFAULT_TTL_HOURS * 3600
    record = _begin_update(environment_id, ENV_UPDATING, action.commit_ref, expires_at)
    if record is None:
        logger.info("[INFO] Environment %s vanished before UPDATE - creating instead", environment_id)
        return _create(action, None, deadline)
    _transition(environment_id, "environment_updating")

    domain = _routing_domain()
    compute = _get_compute()
    existing: Dict[str, Any] = record.get("services") or {}
    for service_id, state in sorted(existing.items()):
        # Services without a compute handle (including ones that FAILED on
        # CREATE) are not repaired by UPDATE.
        if not state.get("compute_service_arn"):
            continue
        run_step(
            "force_redeploy",
            lambda arn=state["compute_service_arn"]: compute.force_redeploy(arn),
            critical=False,
            environment_id=environment_id,
            service_id=service_id,
        )
        run_step(
            "refresh_routing_expiry",
            lambda sid=service_id: _refresh_routing_expiry(sid, environment_id, expires_at),
            critical=False,
            environment_id=environment_id,
            service_id=service_id,
        )
        if state.get("priority") not in (None, ""):
            run_step(
                "refresh_priority_expiry",
                lambda p=state["priority"]: refresh(domain, p, environment_id, expires_at),
                critical=False,
                environment_id=environment_id,
                service_id=service_id,
            )

    repository = action.repository or str(record.get("repository") or "")
    new_services = [
        s for s in services_for_repository(repository, action.services) if s["serviceId"] not in existing
    ]
    states = _deploy_services(environment_id, new_services, expires_at, deadline)

    all_states = [dict(s, service_id=sid) for sid, s in existing.items()] + states
    summary = _failure_summary(all_states)
    if summary:
        _set_environment_status(environment_id, ENV_ACTIVE, error=summary)
    else:
        _set_environment_status(environment_id, ENV_ACTIVE, clear_error=True)
    _transition(environment_id, "environment_active", new_services=len(new_services))
    logger.info("[SUCCESS] Environment %s updated to %s", environment_id, action.commit_ref or "<same ref>")
    return ENV_ACTIVE


def _destroy(environment_id: str) -> str:
    record = _set_environment_status(environment_id, ENV_DESTROYING)
    if record is None:
        logger.info("[SKIP] Environment %s not found - nothing to destroy", environment_id)
        return ""
    _transition(environment_id, "environment_destroying")

    failures = _teardown_all(environment_id, record.get("services") or {})
    _mark_destroyed(environment_id, _unix_now() + DESTROYED_RETENTION_HOURS * 3600)
    _transition(environment_id, "environment_destroyed", teardown_failures=len(failures))
    if failures:
        logger.warning("[WARNING] Environment %s DESTROYED with teardown failures: %s", environment_id, failures)
    else:
        logger.info("[SUCCESS] Environment %s destroyed", environment_id)
    return ENV_DESTROYED


def _force_failed(environment_id: str, exc: BaseException) -> None:
    try:
        _set_environment_status(environment_id, ENV_FAILED, error=f"{type(exc).__name__}: {exc}", require_exists=False)
        _transition(environment_id, "environment_failed", error_class=type(exc).__name__)
    except Exception as mark_exc:
        logger.error("[ERROR] Could not record FAILED for %s: %s", environment_id, mark_exc)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def handle(action: LifecycleAction, remaining_ms: Optional[int] = None) -> Dict[str, Any]:
    """Drive one lifecycle action to completion.

    ``remaining_ms`` is the invocation's wall-clock budget; new service
    deployments are not started within ACTION_DEADLINE_MARGIN_SECONDS of it.
    Returns a summary dict; raises after forcing FAILED on unexpected errors.
    EnvironmentBusyError is raised without touching the record so the caller
    redelivers the action later.
    """
    environment_id = action.environment_id
    deadline = None
    if remaining_ms is not None:
        deadline = time.monotonic() + max(0.0, remaining_ms / 1000.0 - ACTION_DEADLINE_MARGIN_SECONDS)

    try:
        current = _get_environment(environment_id)
        current_status = current.get("status") if current else None
        effective = plan_action(action.action, current_status, environment_id)
    except EnvironmentBusyError as exc:
        logger.warning("[WARNING] %s - leaving it for redelivery", exc)
        raise
    except InvalidActionError:
        raise
    except Exception as exc:
        logger.error("[ERROR] Could not load %s before %s: %s", environment_id, action.action, exc, exc_info=True)
        _force_failed(environment_id, exc)
        raise
    logger.info(
        "[START] %s %s (current=%s, effective=%s)",
        action.action,
        environment_id,
        current_status or "<none>",
        effective or "skip",
    )
    summary: Dict[str, Any] = {
        "environment_id": environment_id,
        "requested": action.action,
        "effective": effective,
        "previous_status": current_status,
    }
    if effective is None:
        logger.info("[SKIP] %s ignored for %s in status %s", action.action, environment_id, current_status or "<none>")
        summary["status"] = current_status
        return summary

    try:
        if effective == ACTION_CREATE:
            status = _create(action, current, deadline)
        elif effective == ACTION_UPDATE:
            status = _update(action, deadline)
        elif effective == ACTION_DESTROY:
            status = _destroy(environment_id) or None
        else:
            raise InvalidActionError(f"Unhandled action '{effective}'")
    except Exception as exc:
        logger.error("[ERROR] %s failed for %s: %s", effective, environment_id, exc, exc_info=True)
        _force_failed(environment_id, exc)
        raise

    summary["status"] = status
    logger.info("[END] %s %s -> %s", effective, environment_id, status)
    return summary


def extend_environment(environment_id: str, hours: Optional[float] = None) -> Dict[str, Any]:
    """Push expires_at forward, capped at MAX_TTL_HOURS from now, and mirror it onto routing rows."""
    hours = DEFAULT_TTL_HOURS if hours is None else hours
    if hours <= 0:
        raise ValueError("Extension hours must be positive")
    record = _get_environment(environment_id)
    if record is None:
        raise EnvironmentNotFoundError(f"Environment {environment_id} not found")
    if record.get("status") not in (ENV_ACTIVE, ENV_CREATING, ENV_UPDATING):
        raise InvalidActionError(f"Cannot extend environment {environment_id} in status {record.get('status')}")

    now = _unix_now()
    current_expiry = int(record.get("expires_at") or now)
    new_expiry = min(max(current_expiry, now) + int(hours * 3600), now + MAX_TTL_HOURS * 3600)
    updated = _set_environment_expiry(environment_id, new_expiry)
    if updated is None:
        raise EnvironmentNotFoundError(f"Environment {environment_id} not found")

    domain = _routing_domain()
    for service_id, state in sorted((updated.get("services") or {}).items()):
        run_step(
            "refresh_routing_expiry",
            lambda sid=service_id: _refresh_routing_expiry(sid, environment_id, new_expiry),
            critical=False,
            environment_id=environment_id,
            service_id=service_id,
        )
        if state.get("priority") not in (None, ""):
            run_step(
                "refresh_priority_expiry",
                lambda p=state["priority"]: refresh(domain, p, environment_id, new_expiry),
                critical=False,
                environment_id=environment_id,
                service_id=service_id,
            )
    logger.info("[SUCCESS] Extended %s expiry to %s", environment_id, new_expiry)
    return {
        "environment_id": environment_id,
        "previous_expires_at": current_expiry,
        "expires_at": new_expiry,
        "capped": new_expiry == now + MAX_TTL_HOURS * 3600,
    }
