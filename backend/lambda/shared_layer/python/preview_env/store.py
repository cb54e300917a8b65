"""preview_env.store — DynamoDB access for environments, routing entries and priority allocations.

The store is the single source of truth shared by every controller and
sweeper instance. Concurrency is handled only through DynamoDB conditional
writes: fresh environment records are created if-absent (or over a terminal
record), priority allocations are created if-absent, and per-service state
is written with document-path updates so concurrent writers touching
different services never overwrite each other.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from botocore.exceptions import ClientError

from .config import (
    ENVIRONMENTS_STATUS_INDEX,
    ENVIRONMENTS_TABLE,
    PRIORITIES_TABLE,
    ROUTING_ENVIRONMENT_INDEX,
    ROUTING_TABLE,
)
from .models import ENV_DESTROYED, ENV_FAILED
from .serialization import _deserialize, _now_z, _serialize, _serialize_item
from .aws_clients import _get_ddb

__all__ = [
    "_begin_update",
    "_count_priority_allocations",
    "_create_priority_allocation",
    "_delete_priority_allocation",
    "_delete_routing_entry",
    "_get_environment",
    "_get_routing_entry",
    "_is_conditional_failure",
    "_list_environments",
    "_list_priority_allocations",
    "_list_routing_entries",
    "_mark_destroyed",
    "_put_fresh_environment",
    "_put_routing_entry",
    "_query_environments_by_status",
    "_refresh_priority_expiry",
    "_refresh_routing_expiry",
    "_remove_service_state",
    "_scan_environments_in_statuses",
    "_set_environment_expiry",
    "_set_environment_status",
    "_set_service_state",
    "_update_environment",
]


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _paginate(method: Callable[..., Dict[str, Any]], **kwargs: Any) -> Iterator[Dict[str, Any]]:
    while True:
        resp = method(**kwargs)
        for raw in resp.get("Items", []):
            yield _deserialize(raw)
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            break
        kwargs["ExclusiveStartKey"] = last_key


# ---------------------------------------------------------------------------
# Environment records
# ---------------------------------------------------------------------------


def _environment_key(environment_id: str) -> Dict[str, Any]:
    return {"environment_id": _serialize(environment_id)}


def _get_environment(environment_id: str) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(
        TableName=ENVIRONMENTS_TABLE,
        Key=_environment_key(environment_id),
        ConsistentRead=True,
    )
    raw = resp.get("Item")
    if not raw:
        return None
    return _deserialize(raw)


def _put_fresh_environment(item: Dict[str, Any]) -> bool:
    """Write a fresh record unless a live one exists.

    Succeeds when there is no record or the existing record is DESTROYED or
    FAILED. Returns False when another writer holds a live record.
    """
    record = dict(item)
    record.setdefault("services", {})
    record["sync_version"] = 1
    try:
        _get_ddb().put_item(
            TableName=ENVIRONMENTS_TABLE,
            Item=_serialize_item(record),
            ConditionExpression="attribute_not_exists(environment_id) OR #status IN (:destroyed, :failed)",
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues={
                ":destroyed": _serialize(ENV_DESTROYED),
                ":failed": _serialize(ENV_FAILED),
            },
        )
        return True
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise


def _update_environment(
    environment_id: str,
    set_fields: Dict[str, Any],
    remove_fields: Sequence[str] = (),
    require_exists: bool = True,
) -> Optional[Dict[str, Any]]:
    """Apply a SET/REMOVE update and bump sync_version.

    With require_exists the update never creates a stub record; a missing
    record returns None instead of raising.
    """
    names: Dict[str, str] = {}
    values: Dict[str, Any] = {":one": _serialize(1)}
    assignments: List[str] = []
    fields = dict(set_fields)
    fields.setdefault("updated_at", _now_z())
    for idx, (name, value) in enumerate(fields.items()):
        names[f"#f{idx}"] = name
        values[f":v{idx}"] = _serialize(value)
        assignments.append(f"#f{idx} = :v{idx}")
    expression = "SET " + ", ".join(assignments)
    removals = []
    for idx, name in enumerate(remove_fields):
        names[f"#r{idx}"] = name
        removals.append(f"#r{idx}")
    if removals:
        expression += " REMOVE " + ", ".join(removals)
    expression += " ADD sync_version :one"

    kwargs: Dict[str, Any] = {
        "TableName": ENVIRONMENTS_TABLE,
        "Key": _environment_key(environment_id),
        "UpdateExpression": expression,
        "ExpressionAttributeNames": names,
        "ExpressionAttributeValues": values,
        "ReturnValues": "ALL_NEW",
    }
    if require_exists:
        kwargs["ConditionExpression"] = "attribute_exists(environment_id)"
    try:
        resp = _get_ddb().update_item(**kwargs)
    except ClientError as exc:
        if require_exists and _is_conditional_failure(exc):
            return None
        raise
    return _deserialize(resp.get("Attributes") or {})


def _set_environment_status(
    environment_id: str,
    status: str,
    error: Optional[str] = None,
    clear_error: bool = False,
    require_exists: bool = True,
    extra: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    fields: Dict[str, Any] = {"status": status}
    if extra:
        fields.update(extra)
    removals: List[str] = []
    if error:
        fields["last_error"] = str(error)[:1000]
    elif clear_error:
        removals.append("last_error")
    return _update_environment(environment_id, fields, removals, require_exists=require_exists)


def _begin_update(environment_id: str, status: str, commit_ref: str, expires_at: int) -> Optional[Dict[str, Any]]:
    fields: Dict[str, Any] = {"status": status, "expires_at": int(expires_at)}
    if commit_ref:
        fields["commit_ref"] = commit_ref
    return _update_environment(environment_id, fields)


def _set_environment_expiry(environment_id: str, expires_at: int) -> Optional[Dict[str, Any]]:
    return _update_environment(environment_id, {"expires_at": int(expires_at)})


def _mark_destroyed(environment_id: str, retain_until: int) -> Optional[Dict[str, Any]]:
    """Logically destroy: status DESTROYED, physically expired by DynamoDB TTL at retain_until."""
    return _update_environment(environment_id, {"status": ENV_DESTROYED, "ttl": int(retain_until)})


def _set_service_state(environment_id: str, service_id: str, state: Dict[str, Any]) -> bool:
    """Write one entry of the services map without touching its siblings."""
    try:
        _get_ddb().update_item(
            TableName=ENVIRONMENTS_TABLE,
            Key=_environment_key(environment_id),
            UpdateExpression="SET #services.#sid = :svc, updated_at = :ts ADD sync_version :one",
            ConditionExpression="attribute_exists(environment_id)",
            ExpressionAttributeNames={"#services": "services", "#sid": service_id},
            ExpressionAttributeValues={
                ":svc": _serialize(state),
                ":ts": _serialize(_now_z()),
                ":one": _serialize(1),
            },
        )
        return True
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise


def _remove_service_state(environment_id: str, service_id: str) -> bool:
    try:
        _get_ddb().update_item(
            TableName=ENVIRONMENTS_TABLE,
            Key=_environment_key(environment_id),
            UpdateExpression="SET updated_at = :ts REMOVE #services.#sid ADD sync_version :one",
            ConditionExpression="attribute_exists(environment_id)",
            ExpressionAttributeNames={"#services": "services", "#sid": service_id},
            ExpressionAttributeValues={":ts": _serialize(_now_z()), ":one": _serialize(1)},
        )
        return True
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise


def _query_environments_by_status(status: str, expires_before: int) -> List[Dict[str, Any]]:
    return list(
        _paginate(
            _get_ddb().query,
            TableName=ENVIRONMENTS_TABLE,
            IndexName=ENVIRONMENTS_STATUS_INDEX,
            KeyConditionExpression="#status = :status AND expires_at < :cutoff",
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues={
                ":status": _serialize(status),
                ":cutoff": _serialize(int(expires_before)),
            },
        )
    )


def _scan_environments_in_statuses(statuses: Iterable[str], expires_before: int) -> List[Dict[str, Any]]:
    statuses = list(statuses)
    if not statuses:
        return []
    values: Dict[str, Any] = {":cutoff": _serialize(int(expires_before))}
    clauses = []
    for idx, status in enumerate(statuses):
        values[f":s{idx}"] = _serialize(status)
        clauses.append(f"#status = :s{idx}")
    return list(
        _paginate(
            _get_ddb().scan,
            TableName=ENVIRONMENTS_TABLE,
            FilterExpression=f"({' OR '.join(clauses)}) AND expires_at < :cutoff",
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues=values,
        )
    )


def _list_environments(status: Optional[str] = None) -> List[Dict[str, Any]]:
    kwargs: Dict[str, Any] = {"TableName": ENVIRONMENTS_TABLE}
    if status:
        kwargs["FilterExpression"] = "#status = :status"
        kwargs["ExpressionAttributeNames"] = {"#status": "status"}
        kwargs["ExpressionAttributeValues"] = {":status": _serialize(status)}
    items = list(_paginate(_get_ddb().scan, **kwargs))
    return sorted(items, key=lambda e: str(e.get("created_at") or ""))


# ---------------------------------------------------------------------------
# Routing entries
# ---------------------------------------------------------------------------


def _routing_key(service_id: str, environment_id: str) -> Dict[str, Any]:
    return {"service_id": _serialize(service_id), "environment_id": _serialize(environment_id)}


def _put_routing_entry(entry: Dict[str, Any]) -> None:
    record = dict(entry)
    record.setdefault("created_at", _now_z())
    if record.get("expires_at") is not None:
        record["ttl"] = int(record["expires_at"])
    _get_ddb().put_item(TableName=ROUTING_TABLE, Item=_serialize_item(record))


def _get_routing_entry(service_id: str, environment_id: str) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(
        TableName=ROUTING_TABLE,
        Key=_routing_key(service_id, environment_id),
        ConsistentRead=True,
    )
    raw = resp.get("Item")
    return _deserialize(raw) if raw else None


def _list_routing_entries(environment_id: str) -> List[Dict[str, Any]]:
    return list(
        _paginate(
            _get_ddb().query,
            TableName=ROUTING_TABLE,
            IndexName=ROUTING_ENVIRONMENT_INDEX,
            KeyConditionExpression="environment_id = :eid",
            ExpressionAttributeValues={":eid": _serialize(environment_id)},
        )
    )


def _refresh_routing_expiry(service_id: str, environment_id: str, expires_at: int) -> bool:
    try:
        _get_ddb().update_item(
            TableName=ROUTING_TABLE,
            Key=_routing_key(service_id, environment_id),
            UpdateExpression="SET expires_at = :exp, #ttl = :exp",
            ConditionExpression="attribute_exists(service_id)",
            ExpressionAttributeNames={"#ttl": "ttl"},
            ExpressionAttributeValues={":exp": _serialize(int(expires_at))},
        )
        return True
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise


def _delete_routing_entry(service_id: str, environment_id: str) -> None:
    _get_ddb().delete_item(TableName=ROUTING_TABLE, Key=_routing_key(service_id, environment_id))


# ---------------------------------------------------------------------------
# Priority allocations
# ---------------------------------------------------------------------------


def _priority_key(domain: str, priority: int) -> Dict[str, Any]:
    return {"routing_domain": _serialize(domain), "priority": _serialize(int(priority))}


def _list_priority_allocations(domain: str) -> List[Dict[str, Any]]:
    return list(
        _paginate(
            _get_ddb().query,
            TableName=PRIORITIES_TABLE,
            KeyConditionExpression="routing_domain = :domain",
            ExpressionAttributeValues={":domain": _serialize(domain)},
            ScanIndexForward=True,
        )
    )


def _count_priority_allocations(domain: str) -> int:
    total = 0
    kwargs: Dict[str, Any] = {
        "TableName": PRIORITIES_TABLE,
        "KeyConditionExpression": "routing_domain = :domain",
        "ExpressionAttributeValues": {":domain": _serialize(domain)},
        "Select": "COUNT",
    }
    ddb = _get_ddb()
    while True:
        resp = ddb.query(**kwargs)
        total += int(resp.get("Count", 0))
        if not resp.get("LastEvaluatedKey"):
            break
        kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
    return total


def _create_priority_allocation(item: Dict[str, Any]) -> bool:
    """Create-if-absent. Returns False when the slot is already held."""
    record = dict(item)
    if record.get("expires_at") is not None:
        record["ttl"] = int(record["expires_at"])
    try:
        _get_ddb().put_item(
            TableName=PRIORITIES_TABLE,
            Item=_serialize_item(record),
            ConditionExpression="attribute_not_exists(routing_domain) AND attribute_not_exists(priority)",
        )
        return True
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise


def _delete_priority_allocation(domain: str, priority: int, owner_environment_id: Optional[str] = None) -> bool:
    """Delete a slot. With an owner, only a row still held by that environment is removed.

    Returns False when the owner guard did not match (already released or
    re-claimed by another environment).
    """
    kwargs: Dict[str, Any] = {
        "TableName": PRIORITIES_TABLE,
        "Key": _priority_key(domain, priority),
    }
    if owner_environment_id:
        kwargs["ConditionExpression"] = "environment_id = :owner"
        kwargs["ExpressionAttributeValues"] = {":owner": _serialize(owner_environment_id)}
    try:
        _get_ddb().delete_item(**kwargs)
        return True
    except ClientError as exc:
        if owner_environment_id and _is_conditional_failure(exc):
            return False
        raise


def _refresh_priority_expiry(domain: str, priority: int, owner_environment_id: str, expires_at: int) -> bool:
    try:
        _get_ddb().update_item(
            TableName=PRIORITIES_TABLE,
            Key=_priority_key(domain, priority),
            UpdateExpression="SET expires_at = :exp, #ttl = :exp",
            ConditionExpression="attribute_exists(priority) AND environment_id = :owner",
            ExpressionAttributeNames={"#ttl": "ttl"},
            ExpressionAttributeValues={
                ":exp": _serialize(int(expires_at)),
                ":owner": _serialize(owner_environment_id),
            },
        )
        return True
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise
