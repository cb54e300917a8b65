"""test_layer.py — Unit tests for preview_env layer building blocks.

Run from the repository root:
    python3 -m pytest backend/lambda/shared_layer -v
"""

from __future__ import annotations

import json
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

# Ensure the layer's python/ directory and the fakes are importable.
_HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.join(_HERE, "python"))
sys.path.insert(0, _HERE)

from fake_aws import install_fakes, uninstall_fakes
from preview_env import service_catalog
from preview_env.aws_clients import _get_ddb, _get_ecs
from preview_env.backends import ComputeBackend, LoadBalancerBackend, RegistryBackend, build_match_condition, target_group_name
from preview_env.models import (
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
    InvalidActionError,
    PriorityExhaustedError,
    StepFailedError,
    environment_id_for_pr,
    parse_action,
    plan_action,
)
from preview_env.serialization import (
    _classify_client_error,
    _deserialize,
    _epoch_to_z,
    _now_z,
    _serialize,
    _serialize_item,
    _unix_now,
)
from preview_env.steps import run_step


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "Op")


class SerializationTests(unittest.TestCase):
    def test_serialize_float_as_decimal(self):
        self.assertEqual(_serialize(3.14)["N"], "3.14")

    def test_serialize_drops_none_map_values(self):
        result = _serialize({"a": 1, "b": None})
        self.assertEqual(result, {"M": {"a": {"N": "1"}}})

    def test_serialize_item_skips_none_attributes(self):
        item = _serialize_item({"environment_id": "pr-1", "last_error": None})
        self.assertEqual(set(item), {"environment_id"})

    def test_deserialize_numbers_become_plain(self):
        item = {"priority": {"N": "7"}, "ratio": {"N": "0.5"}, "services": {"M": {"x": {"M": {"priority": {"N": "3"}}}}}}
        result = _deserialize(item)
        self.assertEqual(result["priority"], 7)
        self.assertIsInstance(result["priority"], int)
        self.assertEqual(result["ratio"], 0.5)
        self.assertEqual(result["services"]["x"]["priority"], 3)

    def test_now_z_format(self):
        self.assertRegex(_now_z(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")

    def test_epoch_to_z(self):
        self.assertEqual(_epoch_to_z(0), "")
        self.assertEqual(_epoch_to_z(86400), "1970-01-02T00:00:00Z")

    def test_unix_now(self):
        import time

        self.assertAlmostEqual(_unix_now(), int(time.time()), delta=2)

    def test_classify_client_error(self):
        self.assertEqual(_classify_client_error(_client_error("RuleNotFound")), "not_found")
        self.assertEqual(_classify_client_error(_client_error("ThrottlingException")), "throttled")
        self.assertEqual(_classify_client_error(_client_error("ConditionalCheckFailedException")), "conditional_check_failed")
        self.assertEqual(_classify_client_error(_client_error("AccessDenied")), "other")
        self.assertEqual(_classify_client_error(ValueError("x")), "other")


class PlanActionTests(unittest.TestCase):
    def test_merge_table(self):
        expected = {
            ACTION_CREATE: {
                None: ACTION_CREATE,
                ENV_CREATING: ACTION_UPDATE,
                ENV_ACTIVE: ACTION_UPDATE,
                ENV_UPDATING: ACTION_UPDATE,
                ENV_DESTROYED: ACTION_CREATE,
                ENV_FAILED: ACTION_CREATE,
            },
            ACTION_UPDATE: {
                None: ACTION_CREATE,
                ENV_CREATING: ACTION_UPDATE,
                ENV_ACTIVE: ACTION_UPDATE,
                ENV_UPDATING: ACTION_UPDATE,
                ENV_DESTROYING: None,
                ENV_DESTROYED: None,
                ENV_FAILED: ACTION_CREATE,
            },
            ACTION_DESTROY: {
                None: None,
                ENV_CREATING: ACTION_DESTROY,
                ENV_ACTIVE: ACTION_DESTROY,
                ENV_UPDATING: ACTION_DESTROY,
                ENV_DESTROYING: ACTION_DESTROY,
                ENV_DESTROYED: None,
                ENV_FAILED: ACTION_DESTROY,
            },
        }
        for requested, row in expected.items():
            for status, effective in row.items():
                with self.subTest(requested=requested, status=status):
                    self.assertEqual(plan_action(requested, status), effective)

    def test_create_during_teardown_is_retryable(self):
        with self.assertRaises(EnvironmentBusyError) as ctx:
            plan_action(ACTION_CREATE, ENV_DESTROYING, "pr-1")
        self.assertEqual(ctx.exception.error_code, "ENVIRONMENT_BUSY")
        self.assertEqual(ctx.exception.environment_id, "pr-1")
        self.assertEqual(ctx.exception.current_status, ENV_DESTROYING)

    def test_unknown_action_rejected(self):
        with self.assertRaises(InvalidActionError):
            plan_action("RESTART", ENV_ACTIVE)


class ParseActionTests(unittest.TestCase):
    def test_contract_fields(self):
        action = parse_action(
            {
                "action": "create",
                "environmentId": "PR-42",
                "repository": "org/web-app",
                "branch": "feature/x",
                "commitRef": "abc123",
                "prMetadata": {"number": "42", "url": "https://github.com/org/web-app/pull/42", "merged": False},
            }
        )
        self.assertEqual(action.action, ACTION_CREATE)
        self.assertEqual(action.environment_id, "pr-42")
        self.assertEqual(action.pr_number, 42)
        self.assertEqual(action.commit_ref, "abc123")
        self.assertIs(action.merged, False)

    def test_legacy_fields(self):
        action = parse_action(
            {"action": "DESTROY", "virtualEnvId": "pr-7", "commitSha": "", "prNumber": 7, "reason": "TTL_EXPIRED"}
        )
        self.assertEqual(action.environment_id, "pr-7")
        self.assertEqual(action.reason, "TTL_EXPIRED")

    def test_environment_id_derived_from_pr_number(self):
        action = parse_action({"action": "UPDATE", "prMetadata": {"number": 9}})
        self.assertEqual(action.environment_id, environment_id_for_pr(9))

    def test_invalid_payloads(self):
        bad = [
            "not a dict",
            {"action": "BOGUS", "environmentId": "pr-1"},
            {"action": "CREATE"},
            {"action": "CREATE", "environmentId": "pr_1!"},
            {"action": "CREATE", "environmentId": "pr-1", "services": "web-app"},
            {"action": "CREATE", "prMetadata": {"number": "abc"}},
        ]
        for detail in bad:
            with self.subTest(detail=detail):
                with self.assertRaises(InvalidActionError):
                    parse_action(detail)

    def test_to_detail_round_trips_through_parse(self):
        action = parse_action({"action": "DESTROY", "environmentId": "pr-3", "services": ["web-app"]})
        again = parse_action(action.to_detail())
        self.assertEqual(again.environment_id, "pr-3")
        self.assertEqual(again.services, ["web-app"])


class ErrorTypeTests(unittest.TestCase):
    def test_priority_exhausted_carries_range(self):
        exc = PriorityExhaustedError("listener", 1, 100)
        self.assertEqual(exc.error_code, "RESOURCE_EXHAUSTED")
        self.assertIn("[1, 100]", str(exc))

    def test_step_failed_inherits_cause_code(self):
        exc = StepFailedError("allocate_priority", PriorityExhaustedError("d", 1, 2))
        self.assertEqual(exc.error_code, "RESOURCE_EXHAUSTED")


class RunStepTests(unittest.TestCase):
    def test_success(self):
        result = run_step("noop", lambda: 5, critical=True)
        self.assertTrue(result.ok)
        self.assertEqual(result.value, 5)

    def test_critical_failure_raises(self):
        def boom():
            raise _client_error("ValidationError")

        with self.assertRaises(StepFailedError) as ctx:
            run_step("create_rule", boom, critical=True, environment_id="pr-1", service_id="web")
        self.assertEqual(ctx.exception.step, "create_rule")
        self.assertEqual(ctx.exception.error_code, "ValidationError")

    def test_non_critical_failure_returns_result(self):
        def boom():
            raise RuntimeError("nope")

        with self.assertLogs(level="WARNING"):
            result = run_step("register_discovery", boom, critical=False)
        self.assertFalse(result.ok)
        self.assertEqual(result.error_code, "RuntimeError")
        self.assertEqual(result.error_message, "nope")


class ServiceCatalogTests(unittest.TestCase):
    def setUp(self):
        self.fakes = install_fakes()

    def tearDown(self):
        uninstall_fakes()

    def test_defaults_without_overrides(self):
        ids = [s["serviceId"] for s in service_catalog.load_catalog(force=True)]
        self.assertEqual(ids, ["api-gateway", "web-app"])

    def test_env_override_and_repository_matching(self):
        catalog = [
            {"serviceId": "api", "pathPattern": "/api/*", "repository": "org/api"},
            {"serviceId": "web", "pathPattern": "/*", "repository": "*"},
            {"serviceId": "old", "pathPattern": "/old/*", "enabled": False},
        ]
        with patch.object(service_catalog, "PREVIEWABLE_SERVICES_JSON", json.dumps(catalog)):
            service_catalog.reset_catalog_cache()
            self.assertEqual([s["serviceId"] for s in service_catalog.services_for_repository("org/api")], ["api", "web"])
            self.assertEqual([s["serviceId"] for s in service_catalog.services_for_repository("org/other")], ["web"])
            self.assertEqual(
                [s["serviceId"] for s in service_catalog.services_for_repository("org/api", only=["web"])],
                ["web"],
            )
            self.assertEqual(service_catalog.services_for_repository("org/other", only=["old"]), [])

    def test_s3_catalog(self):
        self.fakes.s3.objects[("cfg-bucket", "preview-env/services.json")] = json.dumps(
            {"services": [{"serviceId": "orders", "pathPattern": "/orders/*", "ecrRepositoryName": "orders", "defaultImageTag": "v2"}]}
        ).encode()
        with patch.object(service_catalog, "SERVICES_CONFIG_BUCKET", "cfg-bucket"):
            catalog = service_catalog.load_catalog(force=True)
        self.assertEqual(catalog[0]["serviceId"], "orders")
        self.assertEqual(catalog[0]["imageUri"], "orders:v2")
        self.assertEqual(catalog[0]["port"], 3000)

    def test_missing_s3_object_falls_back_to_defaults(self):
        with patch.object(service_catalog, "SERVICES_CONFIG_BUCKET", "cfg-bucket"):
            catalog = service_catalog.load_catalog(force=True)
        self.assertEqual(len(catalog), 2)

    def test_invalid_entry_rejected(self):
        with self.assertRaises(ValueError):
            service_catalog.normalize_service({"serviceId": "x"})


class BackendTests(unittest.TestCase):
    def setUp(self):
        self.fakes = install_fakes()
        self.service = service_catalog.normalize_service({"serviceId": "web-app", "pathPattern": "/*", "imageUri": "web:1"})

    def tearDown(self):
        uninstall_fakes()

    def test_target_group_name_is_bounded(self):
        name = target_group_name("pr-123456789012345678901234", "service-with-long-name")
        self.assertLessEqual(len(name), 32)
        self.assertFalse(name.startswith("-") or name.endswith("-"))

    def test_compute_lifecycle_and_not_found_teardown(self):
        compute = ComputeBackend("cluster")
        template = compute.register_task_template("pr-1", self.service)
        target = LoadBalancerBackend("listener").create_target("pr-1", self.service)
        arn = compute.create_service("pr-1", self.service, template, target)
        compute.force_redeploy(arn)
        self.assertEqual(self.fakes.ecs.redeploys[arn], 1)
        self.assertTrue(compute.scale_to_zero(arn))
        self.assertTrue(compute.delete_service(arn))
        self.assertFalse(compute.scale_to_zero(arn))
        self.assertFalse(compute.delete_service(arn))

    def test_rule_uses_header_and_path_conditions(self):
        lb = LoadBalancerBackend("listener")
        target = lb.create_target("pr-1", self.service)
        rule = lb.create_rule(build_match_condition("pr-1", "/*"), target, 5)
        created = self.fakes.elbv2.calls_to("create_rule")[0]
        fields = {c["Field"] for c in created["Conditions"]}
        self.assertEqual(fields, {"http-header", "path-pattern"})
        self.assertEqual(created["Priority"], 5)
        self.assertTrue(lb.delete_rule(rule))
        self.assertFalse(lb.delete_rule(rule))
        self.assertTrue(lb.delete_target(target))
        self.assertFalse(lb.delete_target(target))

    def test_registry_register_and_deregister(self):
        registry = RegistryBackend("ns-1")
        ref = registry.register("pr-1", self.service)
        self.assertTrue(ref["id"].startswith("srv-"))
        self.assertTrue(registry.deregister(ref["id"]))
        self.assertFalse(registry.deregister(ref["id"]))

    def test_teardown_propagates_other_errors(self):
        self.fakes.elbv2.fail("delete_rule", "ThrottlingException")
        with self.assertRaises(ClientError):
            LoadBalancerBackend("listener").delete_rule("arn:rule")


class AwsClientTests(unittest.TestCase):
    @patch("preview_env.aws_clients.boto3")
    def test_get_ddb_singleton(self, mock_boto3):
        import preview_env.aws_clients as clients

        clients.reset_clients()
        mock_boto3.client.return_value = MagicMock()

        self.assertIs(_get_ddb(), _get_ddb())
        mock_boto3.client.assert_called_once()
        self.assertEqual(mock_boto3.client.call_args[0][0], "dynamodb")

        clients.reset_clients()

    @patch("preview_env.aws_clients.boto3")
    def test_clients_are_per_service(self, mock_boto3):
        import preview_env.aws_clients as clients

        clients.reset_clients()
        mock_boto3.client.side_effect = lambda name, **_kw: MagicMock(name=name)
        self.assertIsNot(_get_ddb(), _get_ecs())
        self.assertEqual(mock_boto3.client.call_count, 2)

        clients.reset_clients()


if __name__ == "__main__":
    unittest.main()
