"""preview_env.aws_clients — Lazy-singleton AWS service clients.

Clients are created on first call and cached for the lifetime of the Lambda
container. Tests install fakes by assigning the module globals directly.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from .config import AWS_REGION_NAME

__all__ = [
    "_get_ddb",
    "_get_ecs",
    "_get_elbv2",
    "_get_events",
    "_get_s3",
    "_get_servicediscovery",
    "reset_clients",
]

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_ecs = None
_elbv2 = None
_servicediscovery = None
_events = None
_s3 = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or AWS_REGION_NAME,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ddb


def _get_ecs(region: Optional[str] = None):
    """Get (or create) the ECS client singleton."""
    global _ecs
    if _ecs is None:
        _ecs = boto3.client(
            "ecs",
            region_name=region or AWS_REGION_NAME,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ecs


def _get_elbv2(region: Optional[str] = None):
    """Get (or create) the Elastic Load Balancing v2 client singleton."""
    global _elbv2
    if _elbv2 is None:
        _elbv2 = boto3.client(
            "elbv2",
            region_name=region or AWS_REGION_NAME,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _elbv2


def _get_servicediscovery(region: Optional[str] = None):
    """Get (or create) the Cloud Map client singleton."""
    global _servicediscovery
    if _servicediscovery is None:
        _servicediscovery = boto3.client(
            "servicediscovery",
            region_name=region or AWS_REGION_NAME,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _servicediscovery


def _get_events(region: Optional[str] = None):
    """Get (or create) the EventBridge client singleton."""
    global _events
    if _events is None:
        _events = boto3.client(
            "events",
            region_name=region or AWS_REGION_NAME,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _events


def _get_s3(region: Optional[str] = None):
    """Get (or create) the S3 client singleton."""
    global _s3
    if _s3 is None:
        _s3 = boto3.client(
            "s3",
            region_name=region or AWS_REGION_NAME,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _s3


def reset_clients() -> None:
    global _ddb, _ecs, _elbv2, _servicediscovery, _events, _s3
    _ddb = None
    _ecs = None
    _elbv2 = None
    _servicediscovery = None
    _events = None
    _s3 = None
