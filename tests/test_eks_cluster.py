import json
from typing import Any, Dict, List

import pytest
from botocore.exceptions import ClientError

from eks_deploy_kit import eks_cluster
from eks_deploy_kit.config import DeployConfig
from eks_deploy_kit.errors import ApplyError, CommandError, RolloutTimeoutError
from eks_deploy_kit.subprocess_utils import RunResult


def _cfg(**overrides) -> DeployConfig:
    values = dict(
        aws_account_id="123456789012",
        aws_region="us-east-1",
        eks_cluster_name="demo",
        ecr_repository="my-function",
        k8s_namespace="functions",
        rollout_timeout_seconds=30,
        rollout_poll_interval_seconds=1,
    )
    values.update(overrides)
    return DeployConfig(**values)


def _ok(stdout: str = "") -> RunResult:
    return RunResult(returncode=0, stdout=stdout, stderr="")


def _deployment(generation=2, observed=2, replicas=2, updated=2, total=2, available=2, conditions=None) -> Dict[str, Any]:
    return {
        "metadata": {"name": "my-function", "generation": generation},
        "spec": {"replicas": replicas},
        "status": {
            "observedGeneration": observed,
            "updatedReplicas": updated,
            "replicas": total,
            "availableReplicas": available,
            "conditions": conditions or [],
        },
    }


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(eks_cluster.time, "sleep", lambda seconds: None)


def test_rollout_state_complete() -> None:
    state = eks_cluster.rollout_state(_deployment())
    assert state.done and not state.failed


@pytest.mark.parametrize(
    "kwargs, fragment",
    [
        ({"generation": 3, "observed": 2}, "새 spec"),
        ({"updated": 1}, "1/2"),
        ({"total": 3}, "종료 대기"),
        ({"available": 1}, "1/2"),
    ],
)
def test_rollout_state_waiting(kwargs, fragment) -> None:  # noqa: ANN001
    state = eks_cluster.rollout_state(_deployment(**kwargs))

    assert not state.done
    assert not state.failed
    assert fragment in state.message


def test_rollout_state_deadline_exceeded_is_failure() -> None:
    conditions = [{"type": "Progressing", "status": "False", "reason": "ProgressDeadlineExceeded"}]

    state = eks_cluster.rollout_state(_deployment(updated=1, conditions=conditions))

    assert state.failed


def test_rollout_state_zero_replicas_is_done() -> None:
    state = eks_cluster.rollout_state(_deployment(replicas=0, updated=0, total=0, available=0))
    assert state.done


def test_kubectl_uses_context_when_configured() -> None:
    cmd = eks_cluster._kubectl(_cfg(kube_context="prod"), "get", "pods")
    assert cmd == ["kubectl", "--context", "prod", "get", "pods"]


def test_update_kubeconfig_command(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[list[str]] = []
    monkeypatch.setattr(eks_cluster, "_run", lambda cmd, **kw: calls.append(cmd) or _ok())

    eks_cluster.update_kubeconfig(_cfg(kube_context="demo-ctx"))

    assert calls[0] == [
        "aws", "eks", "update-kubeconfig",
        "--name", "demo", "--region", "us-east-1",
        "--alias", "demo-ctx",
    ]


def test_ensure_namespace_creates_when_not_found(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[list[str]] = []

    def run(cmd, **kw):  # noqa: ANN001, ANN202
        calls.append(cmd)
        if cmd[1] == "get":
            raise CommandError(
                "fail", cmd=cmd, returncode=1,
                output='Error from server (NotFound): namespaces "functions" not found',
            )
        return _ok()

    monkeypatch.setattr(eks_cluster, "_run", run)

    assert eks_cluster.ensure_namespace(_cfg()) is True
    assert calls[1] == ["kubectl", "create", "namespace", "functions"]


def test_ensure_namespace_propagates_other_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def run(cmd, **kw):  # noqa: ANN001, ANN202
        raise CommandError("fail", cmd=cmd, returncode=1, output="Unauthorized")

    monkeypatch.setattr(eks_cluster, "_run", run)

    with pytest.raises(ApplyError):
        eks_cluster.ensure_namespace(_cfg())


def test_apply_manifests_pipes_yaml_to_kubectl(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[Dict[str, Any]] = []

    def run(cmd, **kw):  # noqa: ANN001, ANN202
        calls.append({"cmd": cmd, **kw})
        return _ok("deployment.apps/my-function configured\nservice/my-function unchanged\n")

    monkeypatch.setattr(eks_cluster, "_run", run)
    docs = [{"apiVersion": "v1", "kind": "Service", "metadata": {"name": "my-function"}}]

    lines = eks_cluster.apply_manifests(_cfg(), docs)

    assert calls[0]["cmd"] == ["kubectl", "apply", "-n", "functions", "-f", "-"]
    assert "kind: Service" in calls[0]["input_text"]
    assert lines == ["deployment.apps/my-function configured", "service/my-function unchanged"]


def test_wait_for_rollout_polls_until_done(monkeypatch: pytest.MonkeyPatch) -> None:
    states = [_deployment(updated=0), _deployment(available=1), _deployment()]
    monkeypatch.setattr(eks_cluster, "_run", lambda cmd, **kw: _ok(json.dumps(states.pop(0))))

    message = eks_cluster.wait_for_rollout(_cfg(), "my-function")

    assert "완료" in message
    assert states == []


def test_wait_for_rollout_times_out(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(eks_cluster, "_run", lambda cmd, **kw: _ok(json.dumps(_deployment(available=0))))

    with pytest.raises(RolloutTimeoutError):
        eks_cluster.wait_for_rollout(_cfg(rollout_timeout_seconds=0), "my-function")


def test_wait_for_rollout_fails_fast_on_deadline(monkeypatch: pytest.MonkeyPatch) -> None:
    conditions = [{"type": "Progressing", "reason": "ProgressDeadlineExceeded"}]
    monkeypatch.setattr(
        eks_cluster, "_run", lambda cmd, **kw: _ok(json.dumps(_deployment(updated=1, conditions=conditions)))
    )

    with pytest.raises(ApplyError) as excinfo:
        eks_cluster.wait_for_rollout(_cfg(), "my-function")

    assert not isinstance(excinfo.value, RolloutTimeoutError)


def test_service_endpoint_from_load_balancer(monkeypatch: pytest.MonkeyPatch) -> None:
    service = {
        "spec": {"type": "LoadBalancer"},
        "status": {"loadBalancer": {"ingress": [{"hostname": "abc.elb.amazonaws.com"}]}},
    }
    monkeypatch.setattr(eks_cluster, "_run", lambda cmd, **kw: _ok(json.dumps(service)))

    assert eks_cluster.get_service_endpoint(_cfg(), "my-function") == "abc.elb.amazonaws.com"


def test_service_endpoint_pending_is_none(monkeypatch: pytest.MonkeyPatch) -> None:
    service = {"spec": {"type": "LoadBalancer"}, "status": {"loadBalancer": {}}}
    monkeypatch.setattr(eks_cluster, "_run", lambda cmd, **kw: _ok(json.dumps(service)))

    assert eks_cluster.get_service_endpoint(_cfg(), "my-function") is None


def test_check_cluster_reports_missing_cluster(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeEks:
        def describe_cluster(self, name):  # noqa: ANN001, ANN201
            raise ClientError({"Error": {"Code": "ResourceNotFoundException", "Message": "nope"}}, "DescribeCluster")

    monkeypatch.setattr(eks_cluster, "_eks_client", lambda cfg: FakeEks())
    monkeypatch.setattr(eks_cluster.shutil, "which", lambda name: None)

    results = eks_cluster.check_cluster(_cfg())

    assert [r.level for r in results] == ["critical", "critical"]
    assert "클러스터 없음" in results[0].message


def test_check_cluster_active(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeEks:
        def describe_cluster(self, name):  # noqa: ANN001, ANN201
            return {"cluster": {"name": name, "status": "ACTIVE"}}

    monkeypatch.setattr(eks_cluster, "_eks_client", lambda cfg: FakeEks())
    monkeypatch.setattr(eks_cluster.shutil, "which", lambda name: "/usr/local/bin/kubectl")

    assert all(r.level == "ok" for r in eks_cluster.check_cluster(_cfg()))
