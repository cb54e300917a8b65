"""preview_env.config — Environment variables, constants, logging.

Every Lambda that imports the layer reads its configuration from here so
the controller, the sweeper and the admin tool agree on table names, the
routing domain and the reserved priority range.
"""
from __future__ import annotations

import logging
import os

__all__ = [
    "ACTION_DEADLINE_MARGIN_SECONDS",
    "ALB_LISTENER_ARN",
    "AWS_REGION_NAME",
    "COMPUTE_DRAIN_WAIT_SECONDS",
    "DEFAULT_TTL_HOURS",
    "DESTROYED_RETENTION_HOURS",
    "DOMAIN_NAME",
    "ECS_CLUSTER_ARN",
    "ECS_LOG_GROUP_NAME",
    "ECS_SECURITY_GROUP_ID",
    "ENVIRONMENTS_STATUS_INDEX",
    "ENVIRONMENTS_TABLE",
    "EVENT_BUS_NAME",
    "EVENT_DETAIL_TYPE",
    "EVENT_SOURCE",
    "GRACE_PERIOD_MINUTES",
    "MAX_TTL_HOURS",
    "NAMESPACE_ID",
    "PREVIEWABLE_SERVICES_JSON",
    "PRIORITIES_TABLE",
    "PRIORITY_RANGE_END",
    "PRIORITY_RANGE_START",
    "ROUTING_ENVIRONMENT_INDEX",
    "ROUTING_TABLE",
    "SERVICES_CONFIG_BUCKET",
    "SERVICES_CONFIG_KEY",
    "SWEEPER_DISPATCH_MODE",
    "TARGET_DEREGISTRATION_WAIT_SECONDS",
    "TASK_EXECUTION_ROLE_ARN",
    "TASK_ROLE_ARN",
    "VIRTUAL_ENV_HEADER",
    "VPC_ID",
    "VPC_SUBNET_IDS",
    "logger",
]


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in str(raw or "").split(",") if part.strip())


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

AWS_REGION_NAME = os.environ.get("AWS_REGION_NAME", os.environ.get("AWS_REGION", "us-west-2"))

ENVIRONMENTS_TABLE = os.environ.get("ENVIRONMENTS_TABLE", "virtual-environments")
ROUTING_TABLE = os.environ.get("ROUTING_TABLE", "routing-config")
PRIORITIES_TABLE = os.environ.get("PRIORITIES_TABLE", "alb-rule-priorities")
ENVIRONMENTS_STATUS_INDEX = os.environ.get("ENVIRONMENTS_STATUS_INDEX", "status-expiresAt-index")
ROUTING_ENVIRONMENT_INDEX = os.environ.get("ROUTING_ENVIRONMENT_INDEX", "virtualEnvId-serviceId-index")

# Routing domain: the shared listener whose rule-priority space is contended.
ALB_LISTENER_ARN = os.environ.get("ALB_LISTENER_ARN", "")
PRIORITY_RANGE_START = int(os.environ.get("PRIORITY_RANGE_START", "1"))
PRIORITY_RANGE_END = int(os.environ.get("PRIORITY_RANGE_END", "100"))

DEFAULT_TTL_HOURS = int(os.environ.get("DEFAULT_TTL_HOURS", "24"))
MAX_TTL_HOURS = int(os.environ.get("MAX_TTL_HOURS", "72"))
GRACE_PERIOD_MINUTES = int(os.environ.get("GRACE_PERIOD_MINUTES", "30"))
DESTROYED_RETENTION_HOURS = int(os.environ.get("DESTROYED_RETENTION_HOURS", "24"))

COMPUTE_DRAIN_WAIT_SECONDS = float(os.environ.get("COMPUTE_DRAIN_WAIT_SECONDS", "5"))
TARGET_DEREGISTRATION_WAIT_SECONDS = float(os.environ.get("TARGET_DEREGISTRATION_WAIT_SECONDS", "5"))
ACTION_DEADLINE_MARGIN_SECONDS = float(os.environ.get("ACTION_DEADLINE_MARGIN_SECONDS", "30"))

DOMAIN_NAME = os.environ.get("DOMAIN_NAME", "dev.example.com")
VIRTUAL_ENV_HEADER = os.environ.get("VIRTUAL_ENV_HEADER", "x-virtual-env-id")

ECS_CLUSTER_ARN = os.environ.get("ECS_CLUSTER_ARN", "")
VPC_ID = os.environ.get("VPC_ID", "")
VPC_SUBNET_IDS = _split_csv(os.environ.get("VPC_SUBNET_IDS", ""))
ECS_SECURITY_GROUP_ID = os.environ.get("ECS_SECURITY_GROUP_ID", "")
NAMESPACE_ID = os.environ.get("NAMESPACE_ID", "")
TASK_EXECUTION_ROLE_ARN = os.environ.get("TASK_EXECUTION_ROLE_ARN", "")
TASK_ROLE_ARN = os.environ.get("TASK_ROLE_ARN", "")
ECS_LOG_GROUP_NAME = os.environ.get("ECS_LOG_GROUP_NAME", "/preview-env/services")

PREVIEWABLE_SERVICES_JSON = os.environ.get("PREVIEWABLE_SERVICES_JSON", "")
SERVICES_CONFIG_BUCKET = os.environ.get("SERVICES_CONFIG_BUCKET", "")
SERVICES_CONFIG_KEY = os.environ.get("SERVICES_CONFIG_KEY", "preview-env/services.json")

EVENT_BUS_NAME = os.environ.get("EVENT_BUS_NAME", "virtual-env-events")
EVENT_SOURCE = os.environ.get("EVENT_SOURCE", "virtual-env.cleanup")
EVENT_DETAIL_TYPE = os.environ.get("EVENT_DETAIL_TYPE", "PullRequestEvent")
SWEEPER_DISPATCH_MODE = os.environ.get("SWEEPER_DISPATCH_MODE", "eventbridge").strip().lower()


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)
