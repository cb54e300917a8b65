"""preview_env.service_catalog — Previewable service definitions.

The catalog is resolved in order: PREVIEWABLE_SERVICES_JSON env var, then
the JSON document at s3://SERVICES_CONFIG_BUCKET/SERVICES_CONFIG_KEY, then
the built-in defaults. Resolved catalogs are cached for the container
lifetime (CATALOG_CACHE_TTL seconds).
"""
from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .config import PREVIEWABLE_SERVICES_JSON, SERVICES_CONFIG_BUCKET, SERVICES_CONFIG_KEY, logger
from .aws_clients import _get_s3

__all__ = [
    "DEFAULT_SERVICES",
    "load_catalog",
    "normalize_service",
    "reset_catalog_cache",
    "services_for_repository",
]

CATALOG_CACHE_TTL = 300.0

DEFAULT_SERVICES: List[Dict[str, Any]] = [
    {
        "serviceId": "api-gateway",
        "repository": "org/api-gateway",
        "pathPattern": "/api/*",
        "port": 3000,
        "healthCheckPath": "/health",
        "cpu": 256,
        "memory": 512,
        "imageUri": "amazon/amazon-ecs-sample:latest",
        "environment": {"NODE_ENV": "development"},
        "enabled": True,
    },
    {
        "serviceId": "web-app",
        "repository": "org/web-app",
        "pathPattern": "/*",
        "port": 3000,
        "healthCheckPath": "/health",
        "cpu": 256,
        "memory": 512,
        "imageUri": "amazon/amazon-ecs-sample:latest",
        "environment": {"NODE_ENV": "development"},
        "enabled": True,
    },
]

_catalog: Optional[List[Dict[str, Any]]] = None
_catalog_at: float = 0.0


def normalize_service(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Validate one catalog entry and fill defaults."""
    service_id = str(raw.get("serviceId") or "").strip()
    if not service_id:
        raise ValueError("Service definition is missing serviceId")
    path_pattern = str(raw.get("pathPattern") or "").strip()
    if not path_pattern:
        raise ValueError(f"Service '{service_id}' is missing pathPattern")

    image_uri = str(raw.get("imageUri") or "").strip()
    if not image_uri:
        repo_name = str(raw.get("ecrRepositoryName") or service_id)
        tag = str(raw.get("defaultImageTag") or "latest")
        image_uri = f"{repo_name}:{tag}"

    health = raw.get("healthCheck") if isinstance(raw.get("healthCheck"), dict) else {}
    return {
        "serviceId": service_id,
        "repository": str(raw.get("repository") or "").strip(),
        "pathPattern": path_pattern,
        "port": int(raw.get("port") or 3000),
        "healthCheckPath": str(raw.get("healthCheckPath") or "/health"),
        "cpu": int(raw.get("cpu") or 256),
        "memory": int(raw.get("memory") or 512),
        "imageUri": image_uri,
        "environment": {str(k): str(v) for k, v in (raw.get("environment") or {}).items()},
        "secrets": {str(k): str(v) for k, v in (raw.get("secrets") or {}).items()},
        "enabled": raw.get("enabled") is not False,
        "healthCheck": {
            "interval": int(health.get("interval") or 30),
            "timeout": int(health.get("timeout") or 5),
            "healthyThreshold": int(health.get("healthyThreshold") or 2),
            "unhealthyThreshold": int(health.get("unhealthyThreshold") or 3),
        },
    }


def _read_s3_catalog() -> Optional[List[Dict[str, Any]]]:
    if not SERVICES_CONFIG_BUCKET:
        return None
    try:
        resp = _get_s3().get_object(Bucket=SERVICES_CONFIG_BUCKET, Key=SERVICES_CONFIG_KEY)
        data = json.loads(resp["Body"].read().decode("utf-8"))
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") == "NoSuchKey":
            logger.info(
                "[INFO] No service catalog at s3://%s/%s - using defaults",
                SERVICES_CONFIG_BUCKET,
                SERVICES_CONFIG_KEY,
            )
            return None
        raise
    except BotoCoreError as exc:
        raise RuntimeError(f"Failed reading service catalog from S3: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("services", [])
    return data if isinstance(data, list) else None


def load_catalog(force: bool = False) -> List[Dict[str, Any]]:
    global _catalog, _catalog_at
    now = time.time()
    if not force and _catalog is not None and (now - _catalog_at) < CATALOG_CACHE_TTL:
        return _catalog

    raw: Optional[List[Dict[str, Any]]] = None
    if PREVIEWABLE_SERVICES_JSON.strip():
        parsed = json.loads(PREVIEWABLE_SERVICES_JSON)
        raw = parsed.get("services", []) if isinstance(parsed, dict) else parsed
    if raw is None:
        raw = _read_s3_catalog()
    if raw is None:
        raw = DEFAULT_SERVICES

    _catalog = [normalize_service(entry) for entry in raw]
    _catalog_at = now
    return _catalog


def reset_catalog_cache() -> None:
    global _catalog, _catalog_at
    _catalog = None
    _catalog_at = 0.0


def services_for_repository(repository: str, only: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """Enabled services matched to a repository; an empty or '*' repository matches all."""
    wanted = set(only or [])
    matched = []
    for service in load_catalog():
        if not service["enabled"]:
            continue
        if service["repository"] not in ("", "*") and service["repository"] != repository:
            continue
        if wanted and service["serviceId"] not in wanted:
            continue
        matched.append(service)
    return matched
