import json
import subprocess
import threading
import time
import unittest

import httpx
import pytest
import yaml

from src.common.errors import (
    ConflictError,
    GatewayError,
    GatewayUnavailable,
    NotFoundError,
    OperationCancelled,
)
from src.gateway import kubectl as kubectl_module
from src.gateway.apiserver import ApiServerGateway
from src.gateway.base import matches_selector, parse_selector
from src.gateway.kubectl import KubectlGateway
from src.gateway.memory import InMemoryGateway
from src.gateway.patches import apply_metadata_patch, metadata_patch_ops
from src.gateway.retry import RetryingGateway, RetryPolicy
from src.lifecycle.policy_catalog import PolicyCatalog

NAMESPACE = {
    "apiVersion": "v1",
    "kind": "Namespace",
    "metadata": {
        "name": "team-x-dev",
        "resourceVersion": "7",
        "labels": {"lifecycle.nsgovernor.io/stage": "development"},
        "annotations": {"lifecycle.nsgovernor.io/review-date": "2024-01-31"},
    },
}


class MetadataPatchTests(unittest.TestCase):
    def test_operations_cover_add_replace_remove(self) -> None:
        ops = metadata_patch_ops(
            NAMESPACE,
            labels={"lifecycle.nsgovernor.io/stage": "testing", "owner": "x"},
            annotations={"lifecycle.nsgovernor.io/review-date": None, "absent": None},
            resource_version="7",
        )
        self.assertEqual(ops[0], {"op": "test", "path": "/metadata/resourceVersion", "value": "7"})
        self.assertIn(
            {"op": "replace", "path": "/metadata/labels/lifecycle.nsgovernor.io~1stage", "value": "testing"},
            ops,
        )
        self.assertIn({"op": "add", "path": "/metadata/labels/owner", "value": "x"}, ops)
        self.assertIn({"op": "remove", "path": "/metadata/annotations/lifecycle.nsgovernor.io~1review-date"}, ops)
        self.assertEqual(len(ops), 4)

        patched = apply_metadata_patch(NAMESPACE, ops)
        self.assertEqual(patched["metadata"]["labels"]["lifecycle.nsgovernor.io/stage"], "testing")
        self.assertEqual(patched["metadata"]["annotations"], {})
        self.assertEqual(NAMESPACE["metadata"]["labels"]["lifecycle.nsgovernor.io/stage"], "development")

    def test_missing_section_is_added_whole(self) -> None:
        bare = {"metadata": {"name": "bare"}}
        ops = metadata_patch_ops(bare, annotations={"a": "1", "b": None})
        self.assertEqual(ops, [{"op": "add", "path": "/metadata/annotations", "value": {"a": "1"}}])

    def test_stale_resource_version_conflicts(self) -> None:
        ops = metadata_patch_ops(NAMESPACE, labels={"owner": "x"}, resource_version="6")
        with self.assertRaises(ConflictError):
            apply_metadata_patch(NAMESPACE, ops)

    def test_selector_matching(self) -> None:
        requirements = parse_selector("lifecycle.nsgovernor.io/stage=development, tier==web")
        self.assertTrue(matches_selector({"metadata": {"labels": {
            "lifecycle.nsgovernor.io/stage": "development", "tier": "web"}}}, requirements))
        self.assertFalse(matches_selector(NAMESPACE, requirements))
        with self.assertRaises(ValueError):
            parse_selector("tier")


class FakeKubectl:
    """Stands in for ``subprocess.run`` and replays scripted outcomes."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.commands = []
        self.inputs = []

    def __call__(self, command, input=None, **kwargs):
        self.commands.append(command)
        self.inputs.append(input)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return subprocess.CompletedProcess(command, 0, stdout=outcome, stderr="")


def failed(stderr: str) -> subprocess.CalledProcessError:
    return subprocess.CalledProcessError(1, ["kubectl"], output="", stderr=stderr)


def test_kubectl_get_uses_context(monkeypatch):
    fake = FakeKubectl(json.dumps(NAMESPACE))
    monkeypatch.setattr(kubectl_module.subprocess, "run", fake)
    gateway = KubectlGateway("kubectl", context="kind-dev")
    assert gateway.get("team-x-dev")["metadata"]["resourceVersion"] == "7"
    assert fake.commands[0] == [
        "kubectl", "--context", "kind-dev", "get", "namespace", "team-x-dev", "-o", "json",
    ]


@pytest.mark.parametrize(
    "stderr, expected",
    [
        ('Error from server (NotFound): namespaces "ghost" not found', NotFoundError),
        ('Error from server (AlreadyExists): namespaces "team-x-dev" already exists', ConflictError),
        ("Error from server (Conflict): the object has been modified", ConflictError),
        ("The connection to the server localhost:8080 was refused - connection refused", GatewayUnavailable),
        ("Unable to connect to the server: dial tcp: i/o timeout", GatewayUnavailable),
        ("error: unknown flag: --bogus", GatewayError),
    ],
)
def test_kubectl_error_classification(monkeypatch, stderr, expected):
    monkeypatch.setattr(kubectl_module.subprocess, "run", FakeKubectl(failed(stderr)))
    with pytest.raises(expected):
        KubectlGateway().get("ghost")


def test_kubectl_missing_binary_and_timeout(monkeypatch):
    fake = FakeKubectl(FileNotFoundError("kubectl"), subprocess.TimeoutExpired(["kubectl"], 1.0))
    monkeypatch.setattr(kubectl_module.subprocess, "run", fake)
    gateway = KubectlGateway("/nonexistent/kubectl", timeout_seconds=1.0)
    with pytest.raises(GatewayUnavailable, match="not found"):
        gateway.list()
    with pytest.raises(GatewayUnavailable, match="timed out"):
        gateway.list()


def test_kubectl_list_resources_tolerates_missing_crd(monkeypatch):
    fake = FakeKubectl(
        failed('error: the server doesn\'t have a resource type "servicemonitors"'),
        json.dumps({"items": [{"metadata": {"name": "web"}}]}),
    )
    monkeypatch.setattr(kubectl_module.subprocess, "run", fake)
    gateway = KubectlGateway()
    assert gateway.list_resources("team-x-dev", "ServiceMonitor") == []
    assert gateway.list_resources("team-x-dev", "Deployment") == [{"metadata": {"name": "web"}}]
    assert fake.commands[0][1:3] == ["get", "servicemonitors.monitoring.coreos.com"]
    assert fake.commands[1][1:3] == ["get", "deployments"]


def test_kubectl_patch_and_apply_payloads(monkeypatch):
    fake = FakeKubectl(json.dumps(NAMESPACE), "")
    monkeypatch.setattr(kubectl_module.subprocess, "run", fake)
    gateway = KubectlGateway()
    gateway.patch_metadata("team-x-dev", annotations={"gone": None}, resource_version="7")
    patch = json.loads(fake.commands[0][fake.commands[0].index("-p") + 1])
    assert patch == {"metadata": {"annotations": {"gone": None}, "resourceVersion": "7"}}

    bundle = PolicyCatalog().resolve("development")
    gateway.apply_policy_bundle("team-x-dev", bundle)
    assert fake.commands[1][:4] == ["kubectl", "apply", "-n", "team-x-dev"]
    kinds = [doc["kind"] for doc in yaml.safe_load_all(fake.inputs[1])]
    assert kinds == ["ResourceQuota", "LimitRange"]


class ApiServerGatewayTests(unittest.TestCase):
    def setUp(self) -> None:
        self.requests = []
        self.responses = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        status, body = self.responses.get(key, (404, {"reason": "NotFound", "message": "not found"}))
        return httpx.Response(status, json=body)

    def gateway(self) -> ApiServerGateway:
        return ApiServerGateway("http://127.0.0.1:8001", transport=httpx.MockTransport(self.handler))

    def test_get_and_list(self) -> None:
        self.responses[("GET", "/api/v1/namespaces/team-x-dev")] = (200, NAMESPACE)
        self.responses[("GET", "/api/v1/namespaces")] = (200, {"items": [NAMESPACE]})
        gateway = self.gateway()
        self.assertEqual(gateway.get("team-x-dev")["metadata"]["name"], "team-x-dev")
        self.assertEqual(len(gateway.list("app.kubernetes.io/managed-by=nsgovernor")), 1)
        self.assertEqual(
            self.requests[-1].url.params["labelSelector"], "app.kubernetes.io/managed-by=nsgovernor"
        )

    def test_status_mapping(self) -> None:
        self.responses[("POST", "/api/v1/namespaces")] = (409, {"reason": "AlreadyExists", "message": "exists"})
        self.responses[("DELETE", "/api/v1/namespaces/busy")] = (503, {"message": "etcd leader changed"})
        self.responses[("DELETE", "/api/v1/namespaces/forbidden")] = (403, {"message": "forbidden"})
        gateway = self.gateway()
        with self.assertRaises(NotFoundError):
            gateway.get("ghost")
        with self.assertRaises(ConflictError):
            gateway.create(NAMESPACE)
        with self.assertRaises(GatewayUnavailable):
            gateway.delete("busy")
        with self.assertRaises(GatewayError) as ctx:
            gateway.delete("forbidden")
        self.assertNotIsInstance(ctx.exception, GatewayUnavailable)
        self.assertIn("403", str(ctx.exception))

    def test_patch_sends_json_patch_with_version_test(self) -> None:
        self.responses[("GET", "/api/v1/namespaces/team-x-dev")] = (200, NAMESPACE)
        self.responses[("PATCH", "/api/v1/namespaces/team-x-dev")] = (200, NAMESPACE)
        self.gateway().patch_metadata("team-x-dev", labels={"owner": "x"}, resource_version="7")
        patch = self.requests[-1]
        self.assertEqual(patch.headers["content-type"], "application/json-patch+json")
        ops = json.loads(patch.content)
        self.assertEqual(ops[0]["op"], "test")
        self.assertEqual(ops[1], {"op": "add", "path": "/metadata/labels/owner", "value": "x"})

    def test_rejected_patch_is_a_conflict(self) -> None:
        self.responses[("GET", "/api/v1/namespaces/team-x-dev")] = (200, NAMESPACE)
        self.responses[("PATCH", "/api/v1/namespaces/team-x-dev")] = (422, {"message": "test operation failed"})
        with self.assertRaises(ConflictError):
            self.gateway().patch_metadata("team-x-dev", labels={"owner": "x"}, resource_version="6")

    def test_unchanged_metadata_still_checks_version(self) -> None:
        self.responses[("GET", "/api/v1/namespaces/team-x-dev")] = (200, NAMESPACE)
        gateway = self.gateway()
        unchanged = {"lifecycle.nsgovernor.io/stage": "development"}
        self.assertEqual(gateway.patch_metadata("team-x-dev", labels=unchanged, resource_version="7"), NAMESPACE)
        with self.assertRaises(ConflictError):
            gateway.patch_metadata("team-x-dev", labels=unchanged, resource_version="6")
        self.assertEqual([request.method for request in self.requests], ["GET", "GET"])

    def test_policy_bundle_uses_server_side_apply(self) -> None:
        base = "/api/v1/namespaces/team-x-dev"
        self.responses[("PATCH", f"{base}/resourcequotas/nsgovernor-quota")] = (200, {})
        self.responses[("PATCH", f"{base}/limitranges/nsgovernor-limits")] = (200, {})
        self.gateway().apply_policy_bundle("team-x-dev", PolicyCatalog().resolve("testing"))
        self.assertEqual(len(self.requests), 2)
        for request in self.requests:
            self.assertEqual(request.headers["content-type"], "application/apply-patch+yaml")
            self.assertEqual(request.url.params["fieldManager"], "nsgovernor")

    def test_missing_crd_lists_nothing(self) -> None:
        self.assertEqual(self.gateway().list_resources("team-x-dev", "ServiceMonitor"), [])
        with self.assertRaises(NotFoundError):
            self.gateway().list_resources("team-x-dev", "ConfigMap")

    def test_transport_errors_are_unavailable(self) -> None:
        def broken(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = ApiServerGateway("https://k8s.example", transport=httpx.MockTransport(broken))
        with self.assertRaises(GatewayUnavailable):
            gateway.get("team-x-dev")


def test_apiserver_bearer_token(monkeypatch):
    seen = []

    def handler(request):
        seen.append(request.headers.get("authorization"))
        return httpx.Response(200, json=NAMESPACE)

    monkeypatch.delenv("NSGOV_TOKEN", raising=False)
    with pytest.raises(RuntimeError):
        ApiServerGateway("https://k8s.example", token_env="NSGOV_TOKEN")
    monkeypatch.setenv("NSGOV_TOKEN", "s3cret")
    gateway = ApiServerGateway("https://k8s.example", token_env="NSGOV_TOKEN", transport=httpx.MockTransport(handler))
    gateway.get("team-x-dev")
    assert seen == ["Bearer s3cret"]
    with pytest.raises(ValueError):
        ApiServerGateway("k8s.example")


class Flaky:
    def __init__(self, failures: int, error=GatewayUnavailable):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("transient")
        return "ok"


class RetryPolicyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps = []
        self.policy = RetryPolicy(retries=2, base_delay=0.5, max_delay=3.0, seed=7, sleep=self.sleeps.append)

    def test_recovers_within_budget(self) -> None:
        operation = Flaky(2)
        self.assertEqual(self.policy.call(operation), "ok")
        self.assertEqual(operation.calls, 3)
        self.assertEqual(len(self.sleeps), 2)

    def test_gives_up_after_budget(self) -> None:
        operation = Flaky(5)
        with self.assertRaises(GatewayUnavailable):
            self.policy.call(operation)
        self.assertEqual(operation.calls, 3)

    def test_permanent_errors_are_not_retried(self) -> None:
        for error in (NotFoundError, ConflictError, GatewayError):
            operation = Flaky(1, error)
            with self.assertRaises(error):
                self.policy.call(operation)
            self.assertEqual(operation.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_backoff_grows_and_is_capped(self) -> None:
        for attempt in range(6):
            delay = self.policy.backoff_seconds(attempt)
            floor = min(3.0, 0.5 * 2 ** attempt)
            self.assertGreaterEqual(delay, floor)
            self.assertLessEqual(delay, 3.0)

    def test_deadline_stops_retrying(self) -> None:
        operation = Flaky(1)
        with self.assertRaisesRegex(GatewayUnavailable, "deadline"):
            self.policy.call(operation, deadline=time.monotonic() - 1)
        self.assertEqual(operation.calls, 1)

    def test_cancellation(self) -> None:
        cancel = threading.Event()
        cancel.set()
        operation = Flaky(0)
        with self.assertRaises(OperationCancelled):
            self.policy.call(operation, cancel=cancel)
        self.assertEqual(operation.calls, 0)


class RetryingGatewayTests(unittest.TestCase):
    def test_reads_are_retried_but_create_is_not(self) -> None:
        inner = InMemoryGateway()
        gateway = RetryingGateway(inner, RetryPolicy(retries=2, base_delay=0.0, sleep=lambda _: None))
        inner.failures["get"] = GatewayUnavailable("flaky")
        inner.failures["create"] = GatewayUnavailable("flaky")
        with self.assertRaises(GatewayUnavailable):
            gateway.get("team-x-dev")
        with self.assertRaises(GatewayUnavailable):
            gateway.create(NAMESPACE)
        methods = [method for method, _ in inner.calls]
        self.assertEqual(methods.count("get"), 3)
        self.assertEqual(methods.count("create"), 1)

    def test_passes_results_through(self) -> None:
        inner = InMemoryGateway()
        gateway = RetryingGateway(inner, RetryPolicy(retries=1, sleep=lambda _: None), timeout_seconds=5)
        gateway.create(NAMESPACE)
        patched = gateway.patch_metadata("team-x-dev", labels={"owner": "x"})
        self.assertEqual(patched["metadata"]["labels"]["owner"], "x")
        self.assertEqual([ns["metadata"]["name"] for ns in gateway.list()], ["team-x-dev"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
