"""preview_env.models — Lifecycle vocabulary, action parsing and the action merge table.

Records stay plain dicts (that is what the store reads and writes); this
module owns the status names, the error types and the single table that
decides what a requested action means against the current record status.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

__all__ = [
    "ACTION_CREATE",
    "ACTION_DESTROY",
    "ACTION_UPDATE",
    "ENV_ACTIVE",
    "ENV_CREATING",
    "ENV_DESTROYED",
    "ENV_DESTROYING",
    "ENV_FAILED",
    "ENV_UPDATING",
    "EnvironmentBusyError",
    "EnvironmentNotFoundError",
    "InvalidActionError",
    "LifecycleAction",
    "PriorityExhaustedError",
    "SVC_ACTIVE",
    "SVC_DEPLOYING",
    "SVC_DESTROYING",
    "SVC_FAILED",
    "SVC_PENDING",
    "StepFailedError",
    "VALID_ACTIONS",
    "VALID_ENV_STATUSES",
    "environment_id_for_pr",
    "parse_action",
    "plan_action",
]

# ---------------------------------------------------------------------------
# Status and action vocabulary
# ---------------------------------------------------------------------------

ACTION_CREATE = "CREATE"
ACTION_UPDATE = "UPDATE"
ACTION_DESTROY = "DESTROY"
VALID_ACTIONS = (ACTION_CREATE, ACTION_UPDATE, ACTION_DESTROY)

ENV_CREATING = "CREATING"
ENV_ACTIVE = "ACTIVE"
ENV_UPDATING = "UPDATING"
ENV_DESTROYING = "DESTROYING"
ENV_DESTROYED = "DESTROYED"
ENV_FAILED = "FAILED"
VALID_ENV_STATUSES = (ENV_CREATING, ENV_ACTIVE, ENV_UPDATING, ENV_DESTROYING, ENV_DESTROYED, ENV_FAILED)

SVC_PENDING = "PENDING"
SVC_DEPLOYING = "DEPLOYING"
SVC_ACTIVE = "ACTIVE"
SVC_FAILED = "FAILED"
SVC_DESTROYING = "DESTROYING"

# Reachable statuses from each status; None is "no record".
_TRANSITIONS: Dict[Optional[str], set] = {
    None: {ENV_CREATING},
    ENV_CREATING: {ENV_ACTIVE, ENV_UPDATING, ENV_DESTROYING, ENV_FAILED},
    ENV_ACTIVE: {ENV_UPDATING, ENV_DESTROYING, ENV_FAILED},
    ENV_UPDATING: {ENV_ACTIVE, ENV_UPDATING, ENV_DESTROYING, ENV_FAILED},
    ENV_DESTROYING: {ENV_DESTROYED, ENV_DESTROYING, ENV_FAILED},
    ENV_DESTROYED: {ENV_CREATING},
    ENV_FAILED: {ENV_CREATING, ENV_DESTROYING, ENV_FAILED},
}

# Status an effective action moves the record into first.
_ENTRY_STATUS = {
    ACTION_CREATE: ENV_CREATING,
    ACTION_UPDATE: ENV_UPDATING,
    ACTION_DESTROY: ENV_DESTROYING,
}

# Preferred interpretation of each requested action, most literal first.
_CANDIDATES = {
    ACTION_CREATE: (ACTION_CREATE, ACTION_UPDATE),
    ACTION_UPDATE: (ACTION_UPDATE, ACTION_CREATE),
    ACTION_DESTROY: (ACTION_DESTROY,),
}

# UPDATE is never reinterpreted as a fresh CREATE over a DESTROYED record:
# a late "synchronize" for a closed PR must not resurrect its environment.
_BLOCKED = {
    (ACTION_UPDATE, ENV_DESTROYED): True,
}

# CREATE during an in-flight teardown is redelivered by the caller; once the
# record is DESTROYED it lands as a fresh CREATE.
_RETRY_LATER = {
    (ACTION_CREATE, ENV_DESTROYING): True,
}


class InvalidActionError(ValueError):
    """A lifecycle action payload is malformed."""


class EnvironmentNotFoundError(LookupError):
    """No environment record exists for the requested id."""


class EnvironmentBusyError(RuntimeError):
    """The action cannot run against the record yet; the caller should redeliver it."""

    error_code = "ENVIRONMENT_BUSY"

    def __init__(self, environment_id: str, requested: str, current_status: str):
        self.environment_id = environment_id
        self.requested = requested
        self.current_status = current_status
        super().__init__(f"{requested} for {environment_id} must wait: environment is {current_status}")


class PriorityExhaustedError(RuntimeError):
    """Every priority in the reserved range is held: concurrent-environment capacity reached."""

    error_code = "RESOURCE_EXHAUSTED"

    def __init__(self, domain: str, start: int, end: int):
        self.domain = domain
        self.start = start
        self.end = end
        super().__init__(
            f"No available routing priorities in [{start}, {end}] for {domain or '<default>'} - "
            "maximum concurrent environments reached"
        )


class StepFailedError(RuntimeError):
    """A critical provisioning step failed; the owning service deployment is aborted."""

    def __init__(self, step: str, cause: BaseException, error_code: str = ""):
        self.step = step
        self.cause = cause
        self.error_code = error_code or getattr(cause, "error_code", "") or "STEP_FAILED"
        super().__init__(f"{step} failed: {cause}")


def plan_action(requested: str, current_status: Optional[str], environment_id: str = "") -> Optional[str]:
    """Resolve a requested action against the current record status.

    Returns the action to execute, or None when the request is a no-op
    (duplicate DESTROY, stale UPDATE after teardown, UPDATE during an
    in-flight teardown). Raises EnvironmentBusyError for a CREATE that has
    to wait for an in-flight teardown.
    """
    if requested not in _CANDIDATES:
        raise InvalidActionError(f"Unknown action '{requested}'")
    if _RETRY_LATER.get((requested, current_status)):
        raise EnvironmentBusyError(environment_id, requested, str(current_status))
    if _BLOCKED.get((requested, current_status)):
        return None
    allowed = _TRANSITIONS.get(current_status, set())
    for candidate in _CANDIDATES[requested]:
        # A fresh record is only written where none is live.
        if candidate == ACTION_CREATE and current_status not in (None, ENV_DESTROYED, ENV_FAILED):
            continue
        if _ENTRY_STATUS[candidate] in allowed:
            return candidate
    return None


def environment_id_for_pr(pr_number: Any) -> str:
    return f"pr-{int(pr_number)}"


# ---------------------------------------------------------------------------
# Lifecycle action
# ---------------------------------------------------------------------------

_ENV_ID_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")


@dataclass
class LifecycleAction:
    action: str
    environment_id: str
    repository: str = ""
    branch: str = ""
    commit_ref: str = ""
    pr_number: Optional[int] = None
    pr_url: str = ""
    base_branch: Optional[str] = None
    merged: Optional[bool] = None
    services: Optional[List[str]] = None
    reason: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {
            "action": self.action,
            "environmentId": self.environment_id,
            "repository": self.repository,
            "branch": self.branch,
            "commitRef": self.commit_ref,
            "prMetadata": {
                "number": self.pr_number,
                "url": self.pr_url,
            },
        }
        if self.base_branch is not None:
            detail["prMetadata"]["baseBranch"] = self.base_branch
        if self.merged is not None:
            detail["prMetadata"]["merged"] = self.merged
        if self.services:
            detail["services"] = list(self.services)
        if self.reason:
            detail["reason"] = self.reason
        return detail


def _first(detail: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = detail.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_action(detail: Dict[str, Any]) -> LifecycleAction:
    """Build a LifecycleAction from an event detail.

    Accepts the documented camelCase contract (environmentId, commitRef,
    prMetadata) and the legacy producer names (virtualEnvId, commitSha,
    prNumber, prUrl).
    """
    if not isinstance(detail, dict):
        raise InvalidActionError("Lifecycle action detail must be an object")

    action = str(detail.get("action") or "").strip().upper()
    if action not in VALID_ACTIONS:
        raise InvalidActionError(f"Unknown action '{detail.get('action')}'")

    pr_meta = detail.get("prMetadata")
    if not isinstance(pr_meta, dict):
        pr_meta = {}
    pr_number = _first(pr_meta, "number")
    if pr_number is None:
        pr_number = _first(detail, "prNumber")
    if pr_number is not None:
        try:
            pr_number = int(pr_number)
        except (TypeError, ValueError):
            raise InvalidActionError(f"Invalid PR number '{pr_number}'")

    environment_id = str(_first(detail, "environmentId", "virtualEnvId") or "").strip().lower()
    if not environment_id and pr_number is not None:
        environment_id = environment_id_for_pr(pr_number)
    if not environment_id:
        raise InvalidActionError("Lifecycle action is missing environmentId")
    if not _ENV_ID_RE.match(environment_id):
        raise InvalidActionError(f"Invalid environmentId '{environment_id}'")

    services = detail.get("services")
    if services is not None:
        if not isinstance(services, list):
            raise InvalidActionError("services must be a list of service ids")
        services = [str(s).strip() for s in services if str(s).strip()]

    merged = _first(pr_meta, "merged")
    if merged is None:
        merged = detail.get("merged")

    return LifecycleAction(
        action=action,
        environment_id=environment_id,
        repository=str(_first(detail, "repository") or ""),
        branch=str(_first(detail, "branch") or ""),
        commit_ref=str(_first(detail, "commitRef", "commitSha") or ""),
        pr_number=pr_number,
        pr_url=str(_first(pr_meta, "url") or _first(detail, "prUrl") or ""),
        base_branch=_first(pr_meta, "baseBranch") or _first(detail, "baseBranch"),
        merged=bool(merged) if merged is not None else None,
        services=services,
        reason=str(detail.get("reason") or ""),
    )
