"""test_controller.py — Lifecycle controller behaviour against in-memory AWS fakes.

Covers idempotent CREATE/DESTROY, the action merge rules, partial-failure
convergence, resource exhaustion, reverse-order teardown, compensation on
restart, the action deadline and TTL extension.
"""

from __future__ import annotations

import json
import os
import sys
import unittest
from unittest.mock import patch

_HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.join(_HERE, "python"))
sys.path.insert(0, _HERE)

from botocore.exceptions import ClientError

from fake_aws import install_fakes, uninstall_fakes
from preview_env import allocator, config, controller, service_catalog, store
from preview_env.models import (
    ACTION_CREATE,
    ACTION_DESTROY,
    ACTION_UPDATE,
    ENV_ACTIVE,
    ENV_DESTROYED,
    ENV_DESTROYING,
    ENV_FAILED,
    EnvironmentBusyError,
    EnvironmentNotFoundError,
    InvalidActionError,
    LifecycleAction,
)
from preview_env.serialization import _unix_now

CATALOG = [
    {"serviceId": "api", "pathPattern": "/api/*", "imageUri": "api:1"},
    {"serviceId": "web", "pathPattern": "/*", "imageUri": "web:1"},
]


def _action(kind: str, environment_id: str = "pr-1", **kwargs) -> LifecycleAction:
    fields = {
        "repository": "org/app",
        "branch": "feature/login",
        "commit_ref": "abc123",
        "pr_number": 1,
        "pr_url": "https://github.com/org/app/pull/1",
    }
    fields.update(kwargs)
    return LifecycleAction(action=kind, environment_id=environment_id, **fields)


class _ControllerTestCase(unittest.TestCase):
    catalog = CATALOG

    def setUp(self):
        for name, value in (
            ("COMPUTE_DRAIN_WAIT_SECONDS", 0),
            ("TARGET_DEREGISTRATION_WAIT_SECONDS", 0),
        ):
            patcher = patch.object(controller, name, value)
            patcher.start()
            self.addCleanup(patcher.stop)
        patcher = patch.object(service_catalog, "PREVIEWABLE_SERVICES_JSON", json.dumps(self.catalog))
        patcher.start()
        self.addCleanup(patcher.stop)
        self.fakes = install_fakes()
        self.addCleanup(uninstall_fakes)

    def env(self, environment_id: str = "pr-1"):
        return store._get_environment(environment_id)

    def allocations(self):
        return self.fakes.ddb.items(config.PRIORITIES_TABLE)

    def routing_entries(self):
        return self.fakes.ddb.items(config.ROUTING_TABLE)


class CreateTests(_ControllerTestCase):
    def test_create_provisions_every_service(self):
        summary = controller.handle(_action(ACTION_CREATE))
        self.assertEqual(summary["effective"], ACTION_CREATE)
        self.assertEqual(summary["status"], ENV_ACTIVE)

        env = self.env()
        self.assertEqual(env["status"], ENV_ACTIVE)
        self.assertEqual(env["preview_address"], f"https://pr-1.{config.DOMAIN_NAME}")
        self.assertNotIn("last_error", env)
        self.assertAlmostEqual(env["expires_at"], _unix_now() + config.DEFAULT_TTL_HOURS * 3600, delta=5)
        for service_id in ("api", "web"):
            state = env["services"][service_id]
            self.assertEqual(state["status"], "ACTIVE")
            for handle in ("task_definition_arn", "target_group_arn", "rule_arn", "registry_id", "compute_service_arn"):
                self.assertTrue(state.get(handle), f"{service_id} missing {handle}")

        self.assertEqual(sorted(a["priority"] for a in self.allocations()), [1, 2])
        self.assertEqual(sorted(e["service_id"] for e in self.routing_entries()), ["api", "web"])
        ecs_call = self.fakes.ecs.calls_to("create_service")[0]
        self.assertEqual(ecs_call["desiredCount"], 1)
        self.assertIn("serviceRegistries", ecs_call)

    def test_rule_matches_environment_header_and_path(self):
        controller.handle(_action(ACTION_CREATE))
        conditions = {
            c["Field"]: c for call in self.fakes.elbv2.calls_to("create_rule") for c in call["Conditions"]
        }
        self.assertEqual(conditions["http-header"]["HttpHeaderConfig"]["HttpHeaderName"], config.VIRTUAL_ENV_HEADER)
        self.assertEqual(conditions["http-header"]["HttpHeaderConfig"]["Values"], ["pr-1"])

    def test_duplicate_create_behaves_as_update(self):
        controller.handle(_action(ACTION_CREATE))
        summary = controller.handle(_action(ACTION_CREATE, commit_ref="def456"))
        self.assertEqual(summary["effective"], ACTION_UPDATE)

        self.assertEqual(len(self.fakes.ddb.items(config.ENVIRONMENTS_TABLE)), 1)
        self.assertEqual(self.env()["status"], ENV_ACTIVE)
        self.assertEqual(self.fakes.ecs.call_count("create_service"), 2)
        self.assertEqual(len(self.fakes.elbv2.rules), 2)
        self.assertEqual(len(self.allocations()), 2)
        self.assertEqual(sorted(self.fakes.ecs.redeploys.values()), [1, 1])

    def test_update_before_create_creates(self):
        summary = controller.handle(_action(ACTION_UPDATE))
        self.assertEqual(summary["effective"], ACTION_CREATE)
        self.assertEqual(self.env()["status"], ENV_ACTIVE)

    def test_environments_get_distinct_priorities(self):
        controller.handle(_action(ACTION_CREATE, "pr-1"))
        controller.handle(_action(ACTION_CREATE, "pr-2"))
        priorities = [a["priority"] for a in self.allocations()]
        self.assertEqual(sorted(priorities), [1, 2, 3, 4])

    def test_action_service_filter(self):
        controller.handle(_action(ACTION_CREATE, services=["web"]))
        self.assertEqual(list(self.env()["services"]), ["web"])


class PartialFailureTests(_ControllerTestCase):
    def test_rule_failure_marks_only_that_service_failed(self):
        self.fakes.elbv2.fail_path("/api/*")
        summary = controller.handle(_action(ACTION_CREATE))
        self.assertEqual(summary["status"], ENV_ACTIVE)

        env = self.env()
        self.assertEqual(env["status"], ENV_ACTIVE)
        self.assertEqual(env["services"]["web"]["status"], "ACTIVE")
        api = env["services"]["api"]
        self.assertEqual(api["status"], "FAILED")
        self.assertEqual(api["error_code"], "ValidationError")
        self.assertTrue(env["last_error"])
        self.assertIn("api", env["last_error"])

        # Acquired handles stay for teardown; the unbound priority is returned.
        self.assertTrue(api["task_definition_arn"])
        self.assertTrue(api["target_group_arn"])
        self.assertNotIn("priority", api)
        self.assertEqual([a["service_id"] for a in self.allocations()], ["web"])
        self.assertEqual([e["service_id"] for e in self.routing_entries()], ["web"])

    def test_priority_exhaustion_is_reported_distinctly(self):
        with patch.object(allocator, "PRIORITY_RANGE_START", 1), patch.object(allocator, "PRIORITY_RANGE_END", 1):
            controller.handle(_action(ACTION_CREATE))
        env = self.env()
        self.assertEqual(env["services"]["api"]["status"], "ACTIVE")
        web = env["services"]["web"]
        self.assertEqual(web["status"], "FAILED")
        self.assertEqual(web["error_code"], "RESOURCE_EXHAUSTED")
        self.assertIn("No available routing priorities", env["last_error"])

    def test_registry_failure_is_non_critical(self):
        self.fakes.servicediscovery.fail("create_service", "ThrottlingException")
        controller.handle(_action(ACTION_CREATE))
        env = self.env()
        for state in env["services"].values():
            self.assertEqual(state["status"], "ACTIVE")
            self.assertNotIn("registry_id", state)
        self.assertNotIn("last_error", env)
        self.assertNotIn("serviceRegistries", self.fakes.ecs.calls_to("create_service")[0])

    def test_unexpected_store_error_forces_failed_and_reraises(self):
        self.fakes.ddb.fail(
            "update_item",
            "InternalServerError",
            match=lambda kw: ":svc" in (kw.get("ExpressionAttributeValues") or {}),
        )
        with self.assertRaises(ClientError):
            controller.handle(_action(ACTION_CREATE))
        env = self.env()
        self.assertEqual(env["status"], ENV_FAILED)
        self.assertIn("InternalServerError", env["last_error"])

    def test_failed_initial_read_forces_failed_and_reraises(self):
        controller.handle(_action(ACTION_CREATE))
        self.fakes.ddb.fail("get_item", "InternalServerError", times=1)
        with self.assertRaises(ClientError):
            controller.handle(_action(ACTION_UPDATE))
        env = self.env()
        self.assertEqual(env["status"], ENV_FAILED)
        self.assertIn("InternalServerError", env["last_error"])

    def test_deadline_records_unstarted_services_failed(self):
        controller.handle(_action(ACTION_CREATE), remaining_ms=0)
        env = self.env()
        self.assertEqual(env["status"], ENV_ACTIVE)
        self.assertEqual({s["error_code"] for s in env["services"].values()}, {controller.DEADLINE_EXCEEDED})
        self.assertEqual(self.fakes.ecs.call_count("register_task_definition"), 0)

    def test_generous_deadline_deploys_everything(self):
        controller.handle(_action(ACTION_CREATE), remaining_ms=900_000)
        self.assertEqual({s["status"] for s in self.env()["services"].values()}, {"ACTIVE"})


class UpdateTests(_ControllerTestCase):
    def test_update_redeploys_in_place_and_refreshes_mirrors(self):
        controller.handle(_action(ACTION_CREATE))
        for table in (config.ROUTING_TABLE, config.PRIORITIES_TABLE):
            for row in self.fakes.ddb.items(table):
                row["expires_at"] = 1
                self.fakes.ddb.seed(table, row)

        summary = controller.handle(_action(ACTION_UPDATE, commit_ref="def456"))
        self.assertEqual(summary["status"], ENV_ACTIVE)
        env = self.env()
        self.assertEqual(env["commit_ref"], "def456")
        self.assertEqual(self.fakes.elbv2.call_count("create_rule"), 2)
        self.assertEqual(self.fakes.ecs.call_count("create_service"), 2)
        self.assertEqual(sorted(self.fakes.ecs.redeploys.values()), [1, 1])
        for row in self.routing_entries() + self.allocations():
            self.assertEqual(row["expires_at"], env["expires_at"])

    def test_redeploy_failure_is_non_fatal(self):
        controller.handle(_action(ACTION_CREATE))
        self.fakes.ecs.fail("update_service", "ThrottlingException")
        summary = controller.handle(_action(ACTION_UPDATE))
        self.assertEqual(summary["status"], ENV_ACTIVE)

    def test_update_does_not_repair_failed_services(self):
        # Known limitation: UPDATE only redeploys services holding a compute handle.
        self.fakes.elbv2.fail_path("/*")
        controller.handle(_action(ACTION_CREATE))
        self.fakes.elbv2.clear_failures()

        controller.handle(_action(ACTION_UPDATE, commit_ref="def456"))
        env = self.env()
        self.assertEqual(env["services"]["web"]["status"], "FAILED")
        self.assertEqual(self.fakes.elbv2.call_count("create_rule"), 2)
        self.assertTrue(env["last_error"])

    def test_update_deploys_services_new_to_the_catalog(self):
        with patch.object(service_catalog, "PREVIEWABLE_SERVICES_JSON", json.dumps(CATALOG[:1])):
            service_catalog.reset_catalog_cache()
            controller.handle(_action(ACTION_CREATE))
        self.assertEqual(list(self.env()["services"]), ["api"])

        service_catalog.reset_catalog_cache()
        controller.handle(_action(ACTION_UPDATE))
        env = self.env()
        self.assertEqual(sorted(env["services"]), ["api", "web"])
        self.assertEqual(env["services"]["web"]["status"], "ACTIVE")

    def test_update_after_destroy_does_not_resurrect(self):
        controller.handle(_action(ACTION_CREATE))
        controller.handle(_action(ACTION_DESTROY))
        summary = controller.handle(_action(ACTION_UPDATE))
        self.assertIsNone(summary["effective"])
        self.assertEqual(self.env()["status"], ENV_DESTROYED)
        self.assertEqual(self.fakes.ecs.services, {})


class DestroyTests(_ControllerTestCase):
    def test_destroy_removes_everything_in_reverse_order(self):
        controller.handle(_action(ACTION_CREATE, services=["web"]))
        self.fakes.journal.clear()

        summary = controller.handle(_action(ACTION_DESTROY))
        self.assertEqual(summary["status"], ENV_DESTROYED)
        self.assertEqual(
            self.fakes.teardown_order(),
            [
                ("FakeElbv2", "delete_rule"),
                ("FakeEcs", "update_service"),
                ("FakeEcs", "delete_service"),
                ("FakeElbv2", "delete_target_group"),
                ("FakeServiceDiscovery", "delete_service"),
            ],
        )

        env = self.env()
        self.assertEqual(env["status"], ENV_DESTROYED)
        self.assertAlmostEqual(env["ttl"], _unix_now() + config.DESTROYED_RETENTION_HOURS * 3600, delta=5)
        self.assertEqual(self.fakes.ecs.services, {})
        self.assertEqual(self.fakes.elbv2.rules, {})
        self.assertEqual(self.fakes.elbv2.target_groups, {})
        self.assertEqual(self.fakes.servicediscovery.services, {})
        self.assertEqual(self.allocations(), [])
        self.assertEqual(self.routing_entries(), [])

    def test_destroy_twice_is_idempotent(self):
        controller.handle(_action(ACTION_CREATE))
        controller.handle(_action(ACTION_DESTROY))
        calls_before = len(self.fakes.journal)
        summary = controller.handle(_action(ACTION_DESTROY))
        self.assertIsNone(summary["effective"])
        self.assertEqual(self.env()["status"], ENV_DESTROYED)
        self.assertEqual(len(self.fakes.journal), calls_before)

    def test_destroy_without_record_is_noop(self):
        summary = controller.handle(_action(ACTION_DESTROY, "pr-404"))
        self.assertIsNone(summary["effective"])
        self.assertIsNone(self.env("pr-404"))

    def test_teardown_step_failure_does_not_abort(self):
        controller.handle(_action(ACTION_CREATE))
        self.fakes.elbv2.fail("delete_rule", "ThrottlingException")
        with self.assertLogs(level="WARNING"):
            summary = controller.handle(_action(ACTION_DESTROY))
        self.assertEqual(summary["status"], ENV_DESTROYED)
        self.assertEqual(self.fakes.ecs.services, {})
        self.assertEqual(self.fakes.servicediscovery.services, {})
        self.assertEqual(self.allocations(), [])
        self.assertEqual(self.routing_entries(), [])

    def test_teardown_tolerates_already_absent_resources(self):
        controller.handle(_action(ACTION_CREATE))
        self.fakes.ecs.services.clear()
        self.fakes.servicediscovery.services.clear()
        controller.handle(_action(ACTION_DESTROY))
        self.assertEqual(self.env()["status"], ENV_DESTROYED)
        self.assertEqual(self.fakes.elbv2.rules, {})

    def test_destroy_reenters_stuck_destroying(self):
        controller.handle(_action(ACTION_CREATE))
        store._set_environment_status("pr-1", ENV_DESTROYING)
        summary = controller.handle(_action(ACTION_DESTROY))
        self.assertEqual(summary["effective"], ACTION_DESTROY)
        self.assertEqual(self.env()["status"], ENV_DESTROYED)

    def test_create_during_destroying_waits_for_redelivery(self):
        controller.handle(_action(ACTION_CREATE))
        store._set_environment_status("pr-1", ENV_DESTROYING)
        with self.assertRaises(EnvironmentBusyError):
            controller.handle(_action(ACTION_CREATE))
        self.assertEqual(self.env()["status"], ENV_DESTROYING)

        controller.handle(_action(ACTION_DESTROY))
        summary = controller.handle(_action(ACTION_CREATE))
        self.assertEqual(summary["effective"], ACTION_CREATE)
        self.assertEqual(self.env()["status"], ENV_ACTIVE)
        self.assertEqual(len(self.fakes.elbv2.rules), 2)

    def test_destroy_cleans_routing_entry_missing_from_services_map(self):
        controller.handle(_action(ACTION_CREATE, services=["web"]))
        store._update_environment("pr-1", {"services": {}})
        controller.handle(_action(ACTION_DESTROY))
        self.assertEqual(self.routing_entries(), [])
        self.assertEqual(self.allocations(), [])
        self.assertEqual(self.fakes.elbv2.rules, {})

    def test_recreate_after_destroy(self):
        controller.handle(_action(ACTION_CREATE))
        controller.handle(_action(ACTION_DESTROY))
        summary = controller.handle(_action(ACTION_CREATE))
        self.assertEqual(summary["effective"], ACTION_CREATE)
        env = self.env()
        self.assertEqual(env["status"], ENV_ACTIVE)
        self.assertNotIn("ttl", env)
        self.assertEqual(len(self.allocations()), 2)

    def test_destroy_drops_torn_down_service_state(self):
        controller.handle(_action(ACTION_CREATE))
        controller.handle(_action(ACTION_DESTROY))
        self.assertEqual(self.env()["services"], {})

        self.fakes.journal.clear()
        controller.handle(_action(ACTION_CREATE))
        self.assertEqual(self.fakes.teardown_order(), [])
        self.assertEqual(self.env()["status"], ENV_ACTIVE)

    def test_failed_teardown_keeps_only_remaining_handles(self):
        controller.handle(_action(ACTION_CREATE, services=["web"]))
        self.fakes.elbv2.fail("delete_rule", "ThrottlingException")
        controller.handle(_action(ACTION_DESTROY))

        web = self.env()["services"]["web"]
        self.assertEqual(web["status"], "DESTROYING")
        self.assertTrue(web["rule_arn"])
        self.assertTrue(web["target_group_arn"])
        for handle in ("compute_service_arn", "registry_id", "priority", "task_definition_arn"):
            self.assertNotIn(handle, web)

        self.fakes.elbv2.clear_failures()
        controller.handle(_action(ACTION_CREATE, services=["web"]))
        self.assertEqual(len(self.fakes.elbv2.rules), 1)
        self.assertEqual(len(self.fakes.elbv2.target_groups), 1)


class _Killed(BaseException):
    """Stands in for the runtime ending the invocation mid-call."""


class InterruptedDeployTests(_ControllerTestCase):
    def _interrupt_at_compute(self):
        with patch.object(self.fakes.ecs, "create_service", side_effect=_Killed()):
            with self.assertRaises(_Killed):
                controller.handle(_action(ACTION_CREATE, services=["web"]))

    def test_handles_are_recorded_as_each_step_succeeds(self):
        self._interrupt_at_compute()
        env = self.env()
        self.assertEqual(env["status"], "CREATING")
        web = env["services"]["web"]
        self.assertEqual(web["status"], "DEPLOYING")
        for handle in ("task_definition_arn", "target_group_arn", "priority", "rule_arn", "registry_id"):
            self.assertIn(handle, web)
        entries = self.routing_entries()
        self.assertEqual([e["rule_arn"] for e in entries], [web["rule_arn"]])
        self.assertEqual(entries[0]["priority"], web["priority"])

    def test_destroy_after_interrupted_deploy_removes_everything(self):
        self._interrupt_at_compute()
        summary = controller.handle(_action(ACTION_DESTROY))
        self.assertEqual(summary["status"], ENV_DESTROYED)
        self.assertEqual(self.fakes.elbv2.rules, {})
        self.assertEqual(self.fakes.elbv2.target_groups, {})
        self.assertEqual(self.fakes.servicediscovery.services, {})
        self.assertEqual(self.allocations(), [])
        self.assertEqual(self.routing_entries(), [])
        self.assertEqual(self.env()["services"], {})

    def test_routing_entry_covers_lost_service_state(self):
        self._interrupt_at_compute()
        store._update_environment("pr-1", {"services": {}})
        controller.handle(_action(ACTION_DESTROY))
        self.assertEqual(self.fakes.elbv2.rules, {})
        self.assertEqual(self.fakes.elbv2.target_groups, {})
        self.assertEqual(self.fakes.servicediscovery.services, {})
        self.assertEqual(self.allocations(), [])
        self.assertEqual(self.routing_entries(), [])


class RestartTests(_ControllerTestCase):
    def test_create_over_failed_record_compensates_leftovers(self):
        self.fakes.ecs.fail("create_service", "InvalidParameterException", match=lambda kw: kw["serviceName"].endswith("-web"))
        controller.handle(_action(ACTION_CREATE))
        self.assertEqual(self.env()["services"]["web"]["status"], "FAILED")
        self.assertTrue(self.env()["services"]["web"]["rule_arn"])
        store._set_environment_status("pr-1", ENV_FAILED, error="operator marked failed")
        self.fakes.ecs.clear_failures()

        summary = controller.handle(_action(ACTION_CREATE))
        self.assertEqual(summary["effective"], ACTION_CREATE)
        env = self.env()
        self.assertEqual({s["status"] for s in env["services"].values()}, {"ACTIVE"})
        self.assertEqual(len(self.fakes.elbv2.rules), 2)
        self.assertEqual(len(self.fakes.elbv2.target_groups), 2)
        self.assertEqual(len(self.fakes.ecs.services), 2)
        self.assertEqual(len(self.fakes.servicediscovery.services), 2)
        self.assertEqual(len(self.allocations()), 2)
        self.assertEqual(len(self.routing_entries()), 2)


class ExtendTests(_ControllerTestCase):
    def test_extend_is_capped_and_mirrored(self):
        controller.handle(_action(ACTION_CREATE))
        result = controller.extend_environment("pr-1", 1000)
        cap = _unix_now() + config.MAX_TTL_HOURS * 3600
        self.assertTrue(result["capped"])
        self.assertAlmostEqual(result["expires_at"], cap, delta=5)
        self.assertEqual(self.env()["expires_at"], result["expires_at"])
        for row in self.routing_entries() + self.allocations():
            self.assertEqual(row["expires_at"], result["expires_at"])

    def test_extend_adds_hours(self):
        controller.handle(_action(ACTION_CREATE))
        before = self.env()["expires_at"]
        result = controller.extend_environment("pr-1", 2)
        self.assertEqual(result["expires_at"], before + 7200)
        self.assertFalse(result["capped"])

    def test_extend_rejections(self):
        with self.assertRaises(EnvironmentNotFoundError):
            controller.extend_environment("pr-404", 1)
        controller.handle(_action(ACTION_CREATE))
        with self.assertRaises(ValueError):
            controller.extend_environment("pr-1", 0)
        controller.handle(_action(ACTION_DESTROY))
        with self.assertRaises(InvalidActionError):
            controller.extend_environment("pr-1", 1)


if __name__ == "__main__":
    unittest.main()
