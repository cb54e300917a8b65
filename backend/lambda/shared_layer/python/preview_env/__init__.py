"""preview_env — Shared layer for the preview-environment Lambda functions.

Provides:
    - Lifecycle controller (CREATE / UPDATE / DESTROY per pull request)
    - Routing-priority allocator over a bounded, shared range
    - DynamoDB state store for environments, routing entries, allocations
    - Reconciling sweeper for expired and stuck environments
    - ECS / ELBv2 / Cloud Map backend adapters
"""

__version__ = "1.0.0"
