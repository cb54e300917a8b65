"""fake_aws.py — In-memory stand-ins for the AWS clients the preview_env layer uses.

FakeDynamoDB evaluates the condition, key-condition, filter and update
expressions the store issues (AND/OR/NOT, parentheses, comparisons, IN,
BETWEEN, attribute_exists/attribute_not_exists, #name and :value
placeholders, dotted document paths; SET/REMOVE/ADD updates) so conditional
writes behave like the real service, including under threads.

Every fake records its calls and supports injected ClientError failures:

    fakes.elbv2.fail("create_rule", "ValidationError",
                     match=lambda kw: "/api/*" in str(kw["Conditions"]))
"""

from __future__ import annotations

import itertools
import re
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

_SER = TypeSerializer()
_DESER = TypeDeserializer()
_MISSING = object()

ACCOUNT = "123456789012"
REGION = "us-west-2"


def _client_error(code: str, operation: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class _FakeClient:
    def __init__(self, journal: Optional[List[Tuple[str, str]]] = None):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.journal = journal
        self._failures: List[Dict[str, Any]] = []
        self._lock = threading.RLock()
        self._ids = itertools.count(1)

    def fail(
        self,
        method: str,
        code: str = "InternalFailure",
        message: str = "injected failure",
        match: Optional[Callable[[Dict[str, Any]], bool]] = None,
        times: Optional[int] = None,
    ) -> None:
        self._failures.append({"method": method, "code": code, "message": message, "match": match, "times": times})

    def clear_failures(self) -> None:
        self._failures = []

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def _record(self, method: str, kwargs: Dict[str, Any]) -> None:
        with self._lock:
            self.calls.append((method, dict(kwargs)))
            if self.journal is not None:
                self.journal.append((type(self).__name__, method))
            for rule in self._failures:
                if rule["method"] != method:
                    continue
                if rule["match"] is not None and not rule["match"](kwargs):
                    continue
                if rule["times"] is not None:
                    if rule["times"] <= 0:
                        continue
                    rule["times"] -= 1
                raise _client_error(rule["code"], method, rule["message"])


# ---------------------------------------------------------------------------
# Expression evaluation
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(r"\(|\)|,|<>|<=|>=|=|<|>|[A-Za-z_#:][A-Za-z0-9_#:.]*")


def _resolve_name(part: str, names: Dict[str, str]) -> str:
    if part.startswith("#"):
        if part not in names:
            raise _client_error("ValidationException", "Expression", f"Unresolved name placeholder {part}")
        return names[part]
    return part


def _resolve_path(item: Dict[str, Any], path: str, names: Dict[str, str]) -> Any:
    current: Any = item
    for part in path.split("."):
        name = _resolve_name(part, names)
        if not isinstance(current, dict) or name not in current:
            return _MISSING
        current = current[name]
    return current


class _ConditionEvaluator:
    def __init__(self, expression: str, item: Dict[str, Any], names: Dict[str, str], values: Dict[str, Any]):
        self.tokens = _TOKEN_RE.findall(expression or "")
        self.pos = 0
        self.item = item
        self.names = names or {}
        self.values = values or {}

    def evaluate(self) -> bool:
        if not self.tokens:
            return True
        result = self._or()
        if self._peek() is not None:
            raise _client_error("ValidationException", "Expression", f"Unexpected token {self._peek()}")
        return result

    def _peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, expected: Optional[str] = None) -> str:
        token = self._peek()
        if token is None or (expected is not None and token.upper() != expected.upper()):
            raise _client_error("ValidationException", "Expression", f"Expected {expected}, got {token}")
        self.pos += 1
        return token

    def _is_keyword(self, word: str) -> bool:
        token = self._peek()
        return token is not None and token.upper() == word

    def _or(self) -> bool:
        result = self._and()
        while self._is_keyword("OR"):
            self._take()
            right = self._and()
            result = result or right
        return result

    def _and(self) -> bool:
        result = self._not()
        while self._is_keyword("AND"):
            self._take()
            right = self._not()
            result = result and right
        return result

    def _not(self) -> bool:
        if self._is_keyword("NOT"):
            self._take()
            return not self._not()
        return self._primary()

    def _operand(self, token: str) -> Any:
        if token.startswith(":"):
            if token not in self.values:
                raise _client_error("ValidationException", "Expression", f"Unresolved value placeholder {token}")
            return _DESER.deserialize(self.values[token])
        return _resolve_path(self.item, token, self.names)

    def _primary(self) -> bool:
        token = self._take()
        if token == "(":
            result = self._or()
            self._take(")")
            return result
        if token.lower() in ("attribute_exists", "attribute_not_exists"):
            self._take("(")
            present = _resolve_path(self.item, self._take(), self.names) is not _MISSING
            self._take(")")
            return present if token.lower() == "attribute_exists" else not present

        left = self._operand(token)
        op = self._take()
        if op.upper() == "IN":
            self._take("(")
            candidates = [self._operand(self._take())]
            while self._peek() == ",":
                self._take()
                candidates.append(self._operand(self._take()))
            self._take(")")
            return left is not _MISSING and left in candidates
        if op.upper() == "BETWEEN":
            low = self._operand(self._take())
            self._take("AND")
            high = self._operand(self._take())
            return _compare(left, ">=", low) and _compare(left, "<=", high)
        return _compare(left, op, self._operand(self._take()))


def _compare(left: Any, op: str, right: Any) -> bool:
    if left is _MISSING or right is _MISSING:
        return False
    try:
        if op == "=":
            return left == right
        if op == "<>":
            return left != right
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
    except TypeError:
        return False
    raise _client_error("ValidationException", "Expression", f"Unsupported operator {op}")


def _matches(expression: Optional[str], item: Dict[str, Any], names: Dict[str, str], values: Dict[str, Any]) -> bool:
    return _ConditionEvaluator(expression or "", item, names, values).evaluate()


def _set_path(item: Dict[str, Any], path: str, value: Any, names: Dict[str, str]) -> None:
    parts = [_resolve_name(p, names) for p in path.split(".")]
    current = item
    for name in parts[:-1]:
        if not isinstance(current.get(name), dict):
            raise _client_error(
                "ValidationException",
                "UpdateItem",
                "The document path provided in the update expression is invalid for update",
            )
        current = current[name]
    current[parts[-1]] = value


def _remove_path(item: Dict[str, Any], path: str, names: Dict[str, str]) -> None:
    parts = [_resolve_name(p, names) for p in path.split(".")]
    current = item
    for name in parts[:-1]:
        current = current.get(name)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def _apply_update(item: Dict[str, Any], expression: str, names: Dict[str, str], values: Dict[str, Any]) -> None:
    def value_of(token: str) -> Any:
        token = token.strip()
        if token.startswith(":"):
            return _DESER.deserialize(values[token])
        resolved = _resolve_path(item, token, names)
        if resolved is _MISSING:
            raise _client_error("ValidationException", "UpdateItem", f"Attribute {token} not present")
        return resolved

    pieces = re.split(r"\b(SET|REMOVE|ADD|DELETE)\b", expression)
    for keyword, body in zip(pieces[1::2], pieces[2::2]):
        clauses = [c.strip() for c in body.split(",") if c.strip()]
        for clause in clauses:
            if keyword == "SET":
                path, rhs = clause.split("=", 1)
                _set_path(item, path.strip(), value_of(rhs), names)
            elif keyword == "REMOVE":
                _remove_path(item, clause, names)
            elif keyword == "ADD":
                path, token = clause.split()
                increment = value_of(token)
                current = _resolve_path(item, path, names)
                if current is _MISSING:
                    _set_path(item, path, increment, names)
                elif isinstance(current, set):
                    _set_path(item, path, current | increment, names)
                else:
                    _set_path(item, path, current + increment, names)
            else:
                path, token = clause.split()
                current = _resolve_path(item, path, names)
                if isinstance(current, set):
                    _set_path(item, path, current - value_of(token), names)


def _to_wire(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _SER.serialize(v) for k, v in item.items()}


def _from_wire(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _DESER.deserialize(v) for k, v in item.items()}


def _copy(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _copy(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_copy(v) for v in value]
    if isinstance(value, set):
        return set(value)
    return value


# ---------------------------------------------------------------------------
# DynamoDB
# ---------------------------------------------------------------------------


class FakeDynamoDB(_FakeClient):
    """Tables keyed by their declared hash/range attributes, with optional GSIs.

    ``page_size`` forces query/scan pagination so LastEvaluatedKey loops run.
    """

    def __init__(self, schemas: Dict[str, Dict[str, Any]], page_size: Optional[int] = None, journal=None):
        super().__init__(journal)
        self.schemas = schemas
        self.tables: Dict[str, Dict[Tuple[Any, ...], Dict[str, Any]]] = {name: {} for name in schemas}
        self.page_size = page_size

    # helpers

    def _schema(self, table: str) -> Dict[str, Any]:
        if table not in self.schemas:
            raise _client_error("ResourceNotFoundException", "DynamoDB", f"Requested resource not found: {table}")
        return self.schemas[table]

    def _key_of(self, table: str, item: Dict[str, Any]) -> Tuple[Any, ...]:
        schema = self._schema(table)
        names = [schema["hash"]] + ([schema["range"]] if schema.get("range") else [])
        try:
            return tuple(item[name] for name in names)
        except KeyError as exc:
            raise _client_error("ValidationException", "DynamoDB", f"Missing key attribute {exc}") from exc

    def items(self, table: str) -> List[Dict[str, Any]]:
        """Plain-Python snapshot of a table, for assertions."""
        with self._lock:
            return [_copy(item) for item in self.tables[table].values()]

    def seed(self, table: str, item: Dict[str, Any]) -> None:
        with self._lock:
            plain = _from_wire(_to_wire(item))
            self.tables[table][self._key_of(table, plain)] = plain

    def _check(self, condition: Optional[str], existing: Dict[str, Any], kwargs: Dict[str, Any], op: str) -> None:
        if condition and not _matches(
            condition,
            existing,
            kwargs.get("ExpressionAttributeNames") or {},
            kwargs.get("ExpressionAttributeValues") or {},
        ):
            raise _client_error("ConditionalCheckFailedException", op, "The conditional request failed")

    # operations

    def get_item(self, **kwargs):
        self._record("get_item", kwargs)
        with self._lock:
            table = kwargs["TableName"]
            key = self._key_of(table, _from_wire(kwargs["Key"]))
            item = self.tables[table].get(key)
            return {"Item": _to_wire(item)} if item is not None else {}

    def put_item(self, **kwargs):
        self._record("put_item", kwargs)
        with self._lock:
            table = kwargs["TableName"]
            item = _from_wire(kwargs["Item"])
            key = self._key_of(table, item)
            self._check(kwargs.get("ConditionExpression"), self.tables[table].get(key) or {}, kwargs, "PutItem")
            self.tables[table][key] = item
            return {}

    def update_item(self, **kwargs):
        self._record("update_item", kwargs)
        with self._lock:
            table = kwargs["TableName"]
            key_attrs = _from_wire(kwargs["Key"])
            key = self._key_of(table, key_attrs)
            existing = self.tables[table].get(key)
            self._check(kwargs.get("ConditionExpression"), existing or {}, kwargs, "UpdateItem")
            updated = _copy(existing) if existing is not None else dict(key_attrs)
            _apply_update(
                updated,
                kwargs["UpdateExpression"],
                kwargs.get("ExpressionAttributeNames") or {},
                kwargs.get("ExpressionAttributeValues") or {},
            )
            self.tables[table][key] = updated
            if kwargs.get("ReturnValues") == "ALL_NEW":
                return {"Attributes": _to_wire(updated)}
            return {}

    def delete_item(self, **kwargs):
        self._record("delete_item", kwargs)
        with self._lock:
            table = kwargs["TableName"]
            key = self._key_of(table, _from_wire(kwargs["Key"]))
            self._check(kwargs.get("ConditionExpression"), self.tables[table].get(key) or {}, kwargs, "DeleteItem")
            self.tables[table].pop(key, None)
            return {}

    def _page(self, items: List[Dict[str, Any]], kwargs: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
        start = 0
        if kwargs.get("ExclusiveStartKey"):
            start = int(kwargs["ExclusiveStartKey"]["__offset"]["N"])
        limit = kwargs.get("Limit") or self.page_size
        if not limit:
            return items[start:], None
        page = items[start : start + limit]
        if start + limit < len(items):
            return page, {"__offset": {"N": str(start + limit)}}
        return page, None

    def _respond(self, page: List[Dict[str, Any]], last_key: Optional[Dict[str, Any]], kwargs: Dict[str, Any]):
        filtered = [
            item
            for item in page
            if _matches(
                kwargs.get("FilterExpression"),
                item,
                kwargs.get("ExpressionAttributeNames") or {},
                kwargs.get("ExpressionAttributeValues") or {},
            )
        ]
        resp: Dict[str, Any] = {"Count": len(filtered), "ScannedCount": len(page)}
        if kwargs.get("Select") != "COUNT":
            resp["Items"] = [_to_wire(item) for item in filtered]
        if last_key:
            resp["LastEvaluatedKey"] = last_key
        return resp

    def query(self, **kwargs):
        self._record("query", kwargs)
        with self._lock:
            table = kwargs["TableName"]
            schema = self._schema(table)
            if kwargs.get("IndexName"):
                index = schema.get("indexes", {}).get(kwargs["IndexName"])
                if index is None:
                    raise _client_error("ValidationException", "Query", f"Unknown index {kwargs['IndexName']}")
                hash_attr, range_attr = index
            else:
                hash_attr, range_attr = schema["hash"], schema.get("range")
            candidates = [
                item
                for item in self.tables[table].values()
                if hash_attr in item and (not range_attr or range_attr in item)
            ]
            matched = [
                _copy(item)
                for item in candidates
                if _matches(
                    kwargs["KeyConditionExpression"],
                    item,
                    kwargs.get("ExpressionAttributeNames") or {},
                    kwargs.get("ExpressionAttributeValues") or {},
                )
            ]
            if range_attr:
                matched.sort(key=lambda it: it[range_attr], reverse=kwargs.get("ScanIndexForward") is False)
            page, last_key = self._page(matched, kwargs)
            return self._respond(page, last_key, kwargs)

    def scan(self, **kwargs):
        self._record("scan", kwargs)
        with self._lock:
            items = [_copy(item) for item in self.tables[kwargs["TableName"]].values()]
            page, last_key = self._page(items, kwargs)
            return self._respond(page, last_key, kwargs)


def preview_env_tables() -> Dict[str, Dict[str, Any]]:
    from preview_env import config

    return {
        config.ENVIRONMENTS_TABLE: {
            "hash": "environment_id",
            "indexes": {config.ENVIRONMENTS_STATUS_INDEX: ("status", "expires_at")},
        },
        config.ROUTING_TABLE: {
            "hash": "service_id",
            "range": "environment_id",
            "indexes": {config.ROUTING_ENVIRONMENT_INDEX: ("environment_id", "service_id")},
        },
        config.PRIORITIES_TABLE: {"hash": "routing_domain", "range": "priority"},
    }


# ---------------------------------------------------------------------------
# ECS
# ---------------------------------------------------------------------------


class FakeEcs(_FakeClient):
    def __init__(self, journal=None):
        super().__init__(journal)
        self.task_definitions: Dict[str, Dict[str, Any]] = {}
        self.services: Dict[str, Dict[str, Any]] = {}
        self.redeploys: Dict[str, int] = {}
        self._revisions: Dict[str, int] = {}

    def register_task_definition(self, **kwargs):
        self._record("register_task_definition", kwargs)
        with self._lock:
            family = kwargs["family"]
            revision = self._revisions.get(family, 0) + 1
            self._revisions[family] = revision
            arn = f"arn:aws:ecs:{REGION}:{ACCOUNT}:task-definition/{family}:{revision}"
            self.task_definitions[arn] = dict(kwargs)
            return {"taskDefinition": {"taskDefinitionArn": arn, "family": family, "revision": revision}}

    def _find(self, service: str) -> Optional[str]:
        if service in self.services:
            return service
        for arn, svc in self.services.items():
            if svc["serviceName"] == service:
                return arn
        return None

    def create_service(self, **kwargs):
        self._record("create_service", kwargs)
        with self._lock:
            name = kwargs["serviceName"]
            if self._find(name):
                raise _client_error("InvalidParameterException", "CreateService", "Creation of service was not idempotent.")
            arn = f"arn:aws:ecs:{REGION}:{ACCOUNT}:service/preview/{name}"
            self.services[arn] = dict(kwargs, status="ACTIVE")
            return {"service": {"serviceArn": arn, "serviceName": name, "status": "ACTIVE"}}

    def update_service(self, **kwargs):
        self._record("update_service", kwargs)
        with self._lock:
            arn = self._find(kwargs["service"])
            if arn is None:
                raise _client_error("ServiceNotFoundException", "UpdateService", "Service not found.")
            if "desiredCount" in kwargs:
                self.services[arn]["desiredCount"] = kwargs["desiredCount"]
            if kwargs.get("forceNewDeployment"):
                self.redeploys[arn] = self.redeploys.get(arn, 0) + 1
            return {"service": {"serviceArn": arn}}

    def delete_service(self, **kwargs):
        self._record("delete_service", kwargs)
        with self._lock:
            arn = self._find(kwargs["service"])
            if arn is None:
                raise _client_error("ServiceNotFoundException", "DeleteService", "Service not found.")
            if self.services[arn].get("desiredCount", 0) and not kwargs.get("force"):
                raise _client_error("InvalidParameterException", "DeleteService", "The service cannot be stopped while it is scaled above 0.")
            del self.services[arn]
            return {"service": {"serviceArn": arn, "status": "DRAINING"}}


# ---------------------------------------------------------------------------
# ELBv2
# ---------------------------------------------------------------------------


class FakeElbv2(_FakeClient):
    def __init__(self, journal=None):
        super().__init__(journal)
        self.target_groups: Dict[str, Dict[str, Any]] = {}
        self.rules: Dict[str, Dict[str, Any]] = {}

    def fail_path(self, path_pattern: str, code: str = "ValidationError") -> None:
        """Make create_rule fail for one path pattern."""
        self.fail(
            "create_rule",
            code,
            message=f"injected failure for {path_pattern}",
            match=lambda kw: any(
                path_pattern in (c.get("PathPatternConfig") or {}).get("Values", [])
                for c in kw.get("Conditions", [])
            ),
        )

    def create_target_group(self, **kwargs):
        self._record("create_target_group", kwargs)
        with self._lock:
            name = kwargs["Name"]
            if len(name) > 32:
                raise _client_error("ValidationError", "CreateTargetGroup", "Target group name cannot be longer than 32 characters")
            for arn, group in self.target_groups.items():
                if group["Name"] == name:
                    return {"TargetGroups": [{"TargetGroupArn": arn, "TargetGroupName": name}]}
            arn = f"arn:aws:elasticloadbalancing:{REGION}:{ACCOUNT}:targetgroup/{name}/{next(self._ids):016x}"
            self.target_groups[arn] = dict(kwargs)
            return {"TargetGroups": [{"TargetGroupArn": arn, "TargetGroupName": name}]}

    def create_rule(self, **kwargs):
        self._record("create_rule", kwargs)
        with self._lock:
            listener, priority = kwargs["ListenerArn"], kwargs["Priority"]
            for rule in self.rules.values():
                if rule["ListenerArn"] == listener and rule["Priority"] == priority:
                    raise _client_error("PriorityInUse", "CreateRule", f"Priority '{priority}' is currently in use")
            for action in kwargs.get("Actions", []):
                if action.get("TargetGroupArn") not in self.target_groups:
                    raise _client_error("TargetGroupNotFound", "CreateRule", "Target group not found")
            arn = f"arn:aws:elasticloadbalancing:{REGION}:{ACCOUNT}:listener-rule/app/preview/{next(self._ids):016x}"
            self.rules[arn] = dict(kwargs)
            return {"Rules": [{"RuleArn": arn, "Priority": str(priority)}]}

    def delete_rule(self, **kwargs):
        self._record("delete_rule", kwargs)
        with self._lock:
            if kwargs["RuleArn"] not in self.rules:
                raise _client_error("RuleNotFound", "DeleteRule", "One or more rules not found")
            del self.rules[kwargs["RuleArn"]]
            return {}

    def delete_target_group(self, **kwargs):
        self._record("delete_target_group", kwargs)
        with self._lock:
            arn = kwargs["TargetGroupArn"]
            if arn not in self.target_groups:
                raise _client_error("TargetGroupNotFound", "DeleteTargetGroup", "One or more target groups not found")
            for rule in self.rules.values():
                if any(a.get("TargetGroupArn") == arn for a in rule.get("Actions", [])):
                    raise _client_error("ResourceInUse", "DeleteTargetGroup", "Target group is currently in use by a listener or a rule")
            del self.target_groups[arn]
            return {}


# ---------------------------------------------------------------------------
# Cloud Map, EventBridge, S3
# ---------------------------------------------------------------------------


class FakeServiceDiscovery(_FakeClient):
    def __init__(self, journal=None):
        super().__init__(journal)
        self.services: Dict[str, Dict[str, Any]] = {}

    def create_service(self, **kwargs):
        self._record("create_service", kwargs)
        with self._lock:
            service_id = f"srv-{next(self._ids):012d}"
            arn = f"arn:aws:servicediscovery:{REGION}:{ACCOUNT}:service/{service_id}"
            self.services[service_id] = dict(kwargs, Arn=arn)
            return {"Service": {"Id": service_id, "Arn": arn, "Name": kwargs["Name"]}}

    def delete_service(self, **kwargs):
        self._record("delete_service", kwargs)
        with self._lock:
            if kwargs["Id"] not in self.services:
                raise _client_error("ServiceNotFound", "DeleteService", "Service not found")
            del self.services[kwargs["Id"]]
            return {}


class FakeEvents(_FakeClient):
    def __init__(self, journal=None):
        super().__init__(journal)
        self.entries: List[Dict[str, Any]] = []

    def put_events(self, **kwargs):
        self._record("put_events", kwargs)
        with self._lock:
            results = []
            for entry in kwargs["Entries"]:
                self.entries.append(dict(entry))
                results.append({"EventId": f"evt-{next(self._ids):08d}"})
            return {"FailedEntryCount": 0, "Entries": results}


class _Body:
    def __init__(self, data: bytes):
        self._data = data

    def read(self) -> bytes:
        return self._data


class FakeS3(_FakeClient):
    def __init__(self, journal=None):
        super().__init__(journal)
        self.objects: Dict[Tuple[str, str], bytes] = {}

    def get_object(self, **kwargs):
        self._record("get_object", kwargs)
        key = (kwargs["Bucket"], kwargs["Key"])
        if key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject", "The specified key does not exist.")
        return {"Body": _Body(self.objects[key])}


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------


class FakeAws:
    def __init__(self, page_size: Optional[int] = None):
        self.journal: List[Tuple[str, str]] = []
        self.ddb = FakeDynamoDB(preview_env_tables(), page_size=page_size)
        self.ecs = FakeEcs(self.journal)
        self.elbv2 = FakeElbv2(self.journal)
        self.servicediscovery = FakeServiceDiscovery(self.journal)
        self.events = FakeEvents(self.journal)
        self.s3 = FakeS3()

    def teardown_order(self) -> List[Tuple[str, str]]:
        """Backend calls that remove resources, in call order."""
        removing = {"delete_rule", "update_service", "delete_service", "delete_target_group"}
        return [entry for entry in self.journal if entry[1] in removing]


def install_fakes(page_size: Optional[int] = None) -> FakeAws:
    """Point every preview_env client singleton at a fresh set of fakes."""
    from preview_env import aws_clients, controller, service_catalog

    fakes = FakeAws(page_size=page_size)
    aws_clients._ddb = fakes.ddb
    aws_clients._ecs = fakes.ecs
    aws_clients._elbv2 = fakes.elbv2
    aws_clients._servicediscovery = fakes.servicediscovery
    aws_clients._events = fakes.events
    aws_clients._s3 = fakes.s3
    controller.reset_backends()
    service_catalog.reset_catalog_cache()
    return fakes


def uninstall_fakes() -> None:
    from preview_env import aws_clients, controller, service_catalog

    aws_clients.reset_clients()
    controller.reset_backends()
    service_catalog.reset_catalog_cache()


__all__ = [
    "FakeAws",
    "FakeDynamoDB",
    "FakeEcs",
    "FakeElbv2",
    "FakeEvents",
    "FakeS3",
    "FakeServiceDiscovery",
    "install_fakes",
    "preview_env_tables",
    "uninstall_fakes",
]
