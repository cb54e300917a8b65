"""preview_env.backends — Compute (ECS), load-balancing (ELBv2) and service-registry (Cloud Map) adapters.

Thin wrappers over the boto3 clients from aws_clients. Create calls raise
ClientError on failure; teardown calls treat an already-absent resource as
success and return False in that case.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from .config import (
    ALB_LISTENER_ARN,
    AWS_REGION_NAME,
    ECS_CLUSTER_ARN,
    ECS_LOG_GROUP_NAME,
    ECS_SECURITY_GROUP_ID,
    NAMESPACE_ID,
    TASK_EXECUTION_ROLE_ARN,
    TASK_ROLE_ARN,
    VIRTUAL_ENV_HEADER,
    VPC_ID,
    VPC_SUBNET_IDS,
    logger,
)
from .serialization import NOT_FOUND_ERROR_CODES
from .aws_clients import _get_ecs, _get_elbv2, _get_servicediscovery

__all__ = [
    "ComputeBackend",
    "LoadBalancerBackend",
    "RegistryBackend",
    "build_match_condition",
    "resource_name",
    "target_group_name",
]


def _is_not_found(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") in NOT_FOUND_ERROR_CODES


def _tags(environment_id: str, service_id: str, key_field: str = "key", value_field: str = "value") -> List[Dict[str, str]]:
    return [
        {key_field: "virtual-env-id", value_field: environment_id},
        {key_field: "service-id", value_field: service_id},
    ]


def resource_name(environment_id: str, service_id: str) -> str:
    return f"{environment_id}-{service_id}"


def target_group_name(environment_id: str, service_id: str) -> str:
    """Target group names: at most 32 alphanumerics/hyphens, no leading or trailing hyphen."""
    raw = f"{environment_id[:20]}-{service_id[:10]}"[:32]
    cleaned = re.sub(r"[^A-Za-z0-9-]", "-", raw).strip("-")
    return cleaned or "preview-target"


def build_match_condition(environment_id: str, path_pattern: str) -> Dict[str, str]:
    return {
        "header_name": VIRTUAL_ENV_HEADER,
        "header_value": environment_id,
        "path_pattern": path_pattern,
    }


# ---------------------------------------------------------------------------
# Compute backend
# ---------------------------------------------------------------------------


class ComputeBackend:
    def __init__(self, cluster_arn: Optional[str] = None):
        self.cluster_arn = cluster_arn or ECS_CLUSTER_ARN

    def register_task_template(self, environment_id: str, service: Dict[str, Any]) -> str:
        name = resource_name(environment_id, service["serviceId"])
        env_vars = [
            {"name": "VIRTUAL_ENV_ID", "value": environment_id},
            {"name": "SERVICE_ID", "value": service["serviceId"]},
        ]
        env_vars.extend({"name": k, "value": v} for k, v in sorted(service.get("environment", {}).items()))
        container: Dict[str, Any] = {
            "name": service["serviceId"],
            "image": service["imageUri"],
            "essential": True,
            "portMappings": [{"containerPort": service["port"], "protocol": "tcp"}],
            "environment": env_vars,
            "logConfiguration": {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-group": ECS_LOG_GROUP_NAME,
                    "awslogs-region": AWS_REGION_NAME,
                    "awslogs-stream-prefix": name,
                },
            },
            "healthCheck": {
                "command": [
                    "CMD-SHELL",
                    f"curl -f http://localhost:{service['port']}{service['healthCheckPath']} || exit 1",
                ],
                "interval": 30,
                "timeout": 5,
                "retries": 3,
                "startPeriod": 60,
            },
        }
        if service.get("secrets"):
            container["secrets"] = [
                {"name": k, "valueFrom": v} for k, v in sorted(service["secrets"].items())
            ]
        kwargs: Dict[str, Any] = {
            "family": name,
            "networkMode": "awsvpc",
            "requiresCompatibilities": ["FARGATE"],
            "cpu": str(service["cpu"]),
            "memory": str(service["memory"]),
            "containerDefinitions": [container],
            "tags": _tags(environment_id, service["serviceId"]),
        }
        if TASK_EXECUTION_ROLE_ARN:
            kwargs["executionRoleArn"] = TASK_EXECUTION_ROLE_ARN
        if TASK_ROLE_ARN:
            kwargs["taskRoleArn"] = TASK_ROLE_ARN
        resp = _get_ecs().register_task_definition(**kwargs)
        arn = (resp.get("taskDefinition") or {}).get("taskDefinitionArn")
        if not arn:
            raise RuntimeError(f"register_task_definition returned no ARN for {name}")
        return arn

    def create_service(
        self,
        environment_id: str,
        service: Dict[str, Any],
        template_ref: str,
        target_ref: str,
        registry_arn: Optional[str] = None,
    ) -> str:
        name = resource_name(environment_id, service["serviceId"])
        kwargs: Dict[str, Any] = {
            "cluster": self.cluster_arn,
            "serviceName": name,
            "taskDefinition": template_ref,
            "desiredCount": 1,
            "launchType": "FARGATE",
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": list(VPC_SUBNET_IDS),
                    "securityGroups": [ECS_SECURITY_GROUP_ID] if ECS_SECURITY_GROUP_ID else [],
                    "assignPublicIp": "DISABLED",
                }
            },
            "loadBalancers": [
                {
                    "targetGroupArn": target_ref,
                    "containerName": service["serviceId"],
                    "containerPort": service["port"],
                }
            ],
            "enableExecuteCommand": True,
            "propagateTags": "SERVICE",
            "tags": _tags(environment_id, service["serviceId"]),
        }
        if registry_arn:
            kwargs["serviceRegistries"] = [{"registryArn": registry_arn}]
        resp = _get_ecs().create_service(**kwargs)
        arn = (resp.get("service") or {}).get("serviceArn")
        if not arn:
            raise RuntimeError(f"create_service returned no ARN for {name}")
        return arn

    def force_redeploy(self, service_ref: str) -> None:
        _get_ecs().update_service(cluster=self.cluster_arn, service=service_ref, forceNewDeployment=True)

    def scale_to_zero(self, service_ref: str) -> bool:
        try:
            _get_ecs().update_service(cluster=self.cluster_arn, service=service_ref, desiredCount=0)
        except ClientError as exc:
            if _is_not_found(exc):
                logger.info("[INFO] Compute service %s already gone", service_ref)
                return False
            raise
        return True

    def delete_service(self, service_ref: str) -> bool:
        try:
            _get_ecs().delete_service(cluster=self.cluster_arn, service=service_ref, force=True)
        except ClientError as exc:
            if _is_not_found(exc):
                logger.info("[INFO] Compute service %s already deleted", service_ref)
                return False
            raise
        return True


# ---------------------------------------------------------------------------
# Load-balancing backend
# ---------------------------------------------------------------------------


class LoadBalancerBackend:
    def __init__(self, listener_arn: Optional[str] = None):
        self.listener_arn = listener_arn or ALB_LISTENER_ARN

    def create_target(self, environment_id: str, service: Dict[str, Any]) -> str:
        health = service.get("healthCheck") or {}
        resp = _get_elbv2().create_target_group(
            Name=target_group_name(environment_id, service["serviceId"]),
            Protocol="HTTP",
            Port=service["port"],
            VpcId=VPC_ID,
            TargetType="ip",
            HealthCheckPath=service["healthCheckPath"],
            HealthCheckProtocol="HTTP",
            HealthCheckIntervalSeconds=int(health.get("interval", 30)),
            HealthCheckTimeoutSeconds=int(health.get("timeout", 5)),
            HealthyThresholdCount=int(health.get("healthyThreshold", 2)),
            UnhealthyThresholdCount=int(health.get("unhealthyThreshold", 3)),
            Tags=_tags(environment_id, service["serviceId"], "Key", "Value"),
        )
        groups = resp.get("TargetGroups") or []
        arn = groups[0].get("TargetGroupArn") if groups else None
        if not arn:
            raise RuntimeError(f"create_target_group returned no ARN for {environment_id}/{service['serviceId']}")
        return arn

    def create_rule(self, match: Dict[str, str], target_ref: str, priority: int, tags: Optional[List[Dict[str, str]]] = None) -> str:
        resp = _get_elbv2().create_rule(
            ListenerArn=self.listener_arn,
            Priority=int(priority),
            Conditions=[
                {
                    "Field": "http-header",
                    "HttpHeaderConfig": {
                        "HttpHeaderName": match["header_name"],
                        "Values": [match["header_value"]],
                    },
                },
                {
                    "Field": "path-pattern",
                    "PathPatternConfig": {"Values": [match["path_pattern"]]},
                },
            ],
            Actions=[{"Type": "forward", "TargetGroupArn": target_ref}],
            Tags=tags or [],
        )
        rules = resp.get("Rules") or []
        arn = rules[0].get("RuleArn") if rules else None
        if not arn:
            raise RuntimeError(f"create_rule returned no ARN at priority {priority}")
        return arn

    def delete_rule(self, rule_ref: str) -> bool:
        try:
            _get_elbv2().delete_rule(RuleArn=rule_ref)
        except ClientError as exc:
            if _is_not_found(exc):
                logger.info("[INFO] Routing rule %s already deleted", rule_ref)
                return False
            raise
        return True

    def delete_target(self, target_ref: str) -> bool:
        try:
            _get_elbv2().delete_target_group(TargetGroupArn=target_ref)
        except ClientError as exc:
            if _is_not_found(exc):
                logger.info("[INFO] Target group %s already deleted", target_ref)
                return False
            raise
        return True


# ---------------------------------------------------------------------------
# Service-registry backend
# ---------------------------------------------------------------------------


class RegistryBackend:
    def __init__(self, namespace_id: Optional[str] = None):
        self.namespace_id = namespace_id or NAMESPACE_ID

    def register(self, environment_id: str, service: Dict[str, Any]) -> Dict[str, str]:
        resp = _get_servicediscovery().create_service(
            Name=resource_name(environment_id, service["serviceId"]),
            NamespaceId=self.namespace_id,
            DnsConfig={
                "DnsRecords": [{"Type": "A", "TTL": 60}],
                "RoutingPolicy": "MULTIVALUE",
            },
            HealthCheckCustomConfig={"FailureThreshold": 1},
            Tags=_tags(environment_id, service["serviceId"], "Key", "Value"),
        )
        registered = resp.get("Service") or {}
        if not registered.get("Id"):
            raise RuntimeError(f"Cloud Map create_service returned no id for {environment_id}/{service['serviceId']}")
        return {"id": registered["Id"], "arn": registered.get("Arn", "")}

    def deregister(self, registry_id: str) -> bool:
        try:
            _get_servicediscovery().delete_service(Id=registry_id)
        except ClientError as exc:
            if _is_not_found(exc):
                logger.info("[INFO] Registry entry %s already deleted", registry_id)
                return False
            raise
        return True
