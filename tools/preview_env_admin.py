#!/usr/bin/env python3
"""Operator CLI for preview environments.

Commands:
  list       environments, optionally filtered by status
  show       one environment record plus its routing entries
  capacity   routing-priority usage and environment counts by status
  extend     push an environment's expiry forward (capped at MAX_TTL_HOURS)
  destroy    request a DESTROY (EventBridge by default, --direct to run it here)

Reads the same environment variables as the Lambda functions
(ENVIRONMENTS_TABLE, ALB_LISTENER_ARN, EVENT_BUS_NAME, ...).
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

_LAYER = Path(__file__).resolve().parents[1] / "backend" / "lambda" / "shared_layer" / "python"
if _LAYER.is_dir() and str(_LAYER) not in sys.path:
    sys.path.insert(0, str(_LAYER))

from botocore.exceptions import BotoCoreError, ClientError

from preview_env import allocator, controller, sweeper
from preview_env.models import (
    ACTION_DESTROY,
    VALID_ENV_STATUSES,
    EnvironmentNotFoundError,
    InvalidActionError,
    LifecycleAction,
)
from preview_env.serialization import _epoch_to_z
from preview_env.store import _get_environment, _list_environments, _list_routing_entries


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _format_rows(envs: List[Dict[str, Any]]) -> List[str]:
    rows = [f"{'ENVIRONMENT':<24} {'STATUS':<11} {'SERVICES':<9} {'EXPIRES':<21} BRANCH"]
    for env in envs:
        services = env.get("services") or {}
        active = sum(1 for s in services.values() if s.get("status") == "ACTIVE")
        rows.append(
            f"{env['environment_id']:<24} {env.get('status', ''):<11} "
            f"{f'{active}/{len(services)}':<9} {_epoch_to_z(env.get('expires_at')):<21} {env.get('branch', '')}"
        )
    return rows


def cmd_list(args: argparse.Namespace) -> int:
    envs = _list_environments(args.status)
    if args.json:
        _print_json(envs)
    else:
        for row in _format_rows(envs):
            print(row)
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    env = _get_environment(args.environment_id)
    if env is None:
        print(f"[ERROR] environment not found: {args.environment_id}", file=sys.stderr)
        return 1
    env["routing_entries"] = _list_routing_entries(args.environment_id)
    _print_json(env)
    return 0


def cmd_capacity(args: argparse.Namespace) -> int:
    report = allocator.capacity_report(args.domain)
    _print_json(report)
    priorities = report["priorities"]
    if priorities["is_critical"]:
        print(f"[ERROR] routing capacity critical: {priorities['percentage']}% used", file=sys.stderr)
    elif priorities["is_warning"]:
        print(f"[WARNING] routing capacity high: {priorities['percentage']}% used", file=sys.stderr)
    return 0


def cmd_extend(args: argparse.Namespace) -> int:
    try:
        result = controller.extend_environment(args.environment_id, args.hours)
    except EnvironmentNotFoundError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1
    except (InvalidActionError, ValueError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2
    result["expires_at_iso"] = _epoch_to_z(result["expires_at"])
    _print_json(result)
    return 0


def cmd_destroy(args: argparse.Namespace) -> int:
    env = _get_environment(args.environment_id)
    if env is None:
        print(f"[ERROR] environment not found: {args.environment_id}", file=sys.stderr)
        return 1
    action = LifecycleAction(
        action=ACTION_DESTROY,
        environment_id=args.environment_id,
        repository=str(env.get("repository") or ""),
        branch=str(env.get("branch") or ""),
        pr_number=env.get("pr_number"),
        pr_url=str(env.get("pr_url") or ""),
        reason="OPERATOR_REQUEST",
    )
    if args.direct:
        _print_json(controller.handle(action))
    else:
        event_id = sweeper.eventbridge_dispatcher(action)
        _print_json({"environment_id": args.environment_id, "event_id": event_id, "dispatched": True})
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Preview environment operations")
    sub = parser.add_subparsers(dest="command", required=True)

    p_list = sub.add_parser("list", help="List environments")
    p_list.add_argument("--status", choices=VALID_ENV_STATUSES)
    p_list.add_argument("--json", action="store_true")
    p_list.set_defaults(func=cmd_list)

    p_show = sub.add_parser("show", help="Show one environment")
    p_show.add_argument("environment_id")
    p_show.set_defaults(func=cmd_show)

    p_capacity = sub.add_parser("capacity", help="Routing-priority capacity report")
    p_capacity.add_argument("--domain", default=None, help="Listener ARN (default: ALB_LISTENER_ARN)")
    p_capacity.set_defaults(func=cmd_capacity)

    p_extend = sub.add_parser("extend", help="Extend an environment's expiry")
    p_extend.add_argument("environment_id")
    p_extend.add_argument("--hours", type=float, default=None)
    p_extend.set_defaults(func=cmd_extend)

    p_destroy = sub.add_parser("destroy", help="Request teardown of an environment")
    p_destroy.add_argument("environment_id")
    p_destroy.add_argument("--direct", action="store_true", help="Run the teardown in this process")
    p_destroy.set_defaults(func=cmd_destroy)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return args.func(args)
    except (ClientError, BotoCoreError) as exc:
        print(f"[ERROR] AWS call failed: {exc}", file=sys.stderr)
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
