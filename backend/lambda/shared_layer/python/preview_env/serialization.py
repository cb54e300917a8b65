"""preview_env.serialization — DynamoDB serialization, timestamps, observability.

Provides TypeSerializer/TypeDeserializer wrappers, timestamp helpers and the
structured observability line shared by the controller and the sweeper.
"""

from __future__ import annotations

import datetime as dt
import json
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from .config import logger

__all__ = [
    "NOT_FOUND_ERROR_CODES",
    "THROTTLING_ERROR_CODES",
    "_classify_client_error",
    "_client_error_code",
    "_deserialize",
    "_emit_structured_observability",
    "_epoch_to_z",
    "_now_z",
    "_serialize",
    "_serialize_item",
    "_unix_now",
]

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

_SER = TypeSerializer()
_DESER = TypeDeserializer()


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, set):
        return {_plain(v) for v in value}
    return value


def _to_dynamo(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value


def _serialize(value: Any) -> Dict[str, Any]:
    """Serialize a Python value for DynamoDB (floats become Decimal, None map values dropped)."""
    return _SER.serialize(_to_dynamo(value))


def _serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _serialize(v) for k, v in item.items() if v is not None}


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to a plain Python dict."""
    return {k: _plain(_DESER.deserialize(v)) for k, v in item.items()}


def _now_z() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _unix_now() -> int:
    return int(time.time())


def _epoch_to_z(epoch: Optional[int]) -> str:
    if not epoch:
        return ""
    return dt.datetime.fromtimestamp(int(epoch), tz=dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Backend error classification
# ---------------------------------------------------------------------------

NOT_FOUND_ERROR_CODES = {
    "RuleNotFound",
    "TargetGroupNotFound",
    "ServiceNotFoundException",
    "ServiceNotActiveException",
    "ServiceNotFound",
    "ResourceNotFoundException",
    "NoSuchKey",
}
THROTTLING_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
}


def _client_error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return ""


def _classify_client_error(exc: BaseException) -> str:
    code = _client_error_code(exc)
    if not code:
        return "other"
    if code in NOT_FOUND_ERROR_CODES:
        return "not_found"
    if code in THROTTLING_ERROR_CODES:
        return "throttled"
    if code == "ConditionalCheckFailedException":
        return "conditional_check_failed"
    return "other"


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    environment_id: Optional[str] = None,
    service_id: Optional[str] = None,
    step: Optional[str] = None,
    critical: Optional[bool] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "environment_id": str(environment_id or ""),
        "service_id": str(service_id or ""),
        "step": str(step or ""),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if critical is not None:
        payload["critical"] = bool(critical)
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
