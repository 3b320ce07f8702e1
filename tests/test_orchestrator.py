from dataclasses import replace
from typing import Any, Dict, List

import pytest

from eks_deploy_kit import orchestrator
from eks_deploy_kit.config import DeployConfig
from eks_deploy_kit.errors import PublishError


def _minimal_cfg() -> DeployConfig:
    return DeployConfig(
        aws_account_id="123456789012",
        aws_region="us-east-1",
        eks_cluster_name="demo",
        ecr_repository="my-function",
    )


@pytest.fixture
def fake_pipeline(monkeypatch: pytest.MonkeyPatch) -> List[tuple]:
    """각 단계 호출을 기록만 하는 가짜 구현으로 바꾼다."""
    calls: List[tuple] = []
    docs: List[Dict[str, Any]] = [
        {"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "my-function"}},
        {"apiVersion": "v1", "kind": "Service", "metadata": {"name": "my-function"}},
    ]

    def build(cfg, image_ref, base_dir="."):  # noqa: ANN001, ANN202
        calls.append(("build", image_ref))
        return image_ref

    def push(cfg, image_ref):  # noqa: ANN001, ANN202
        calls.append(("push", image_ref))
        return image_ref.rsplit(":", 1)[0] + "@sha256:123"

    def render(cfg, image_ref):  # noqa: ANN001, ANN202
        calls.append(("render", image_ref))
        return docs

    m = monkeypatch.setattr
    m(orchestrator.image_builder, "build_image", build)
    m(orchestrator.ecr_registry, "ensure_repository", lambda cfg: calls.append(("ensure_repository",)))
    m(orchestrator.ecr_registry, "login", lambda cfg: calls.append(("login",)))
    m(orchestrator.ecr_registry, "push_image", push)
    m(orchestrator.manifest_renderer, "render_manifests", render)
    m(orchestrator.manifest_renderer, "write_manifests", lambda cfg, d, base_dir=".": ["k8s/a.yaml", "k8s/b.yaml"])
    m(orchestrator.manifest_renderer, "load_manifests", lambda cfg, base_dir=".": calls.append(("load",)) or docs)
    m(orchestrator.eks_cluster, "update_kubeconfig", lambda cfg: calls.append(("kubeconfig",)))
    m(orchestrator.eks_cluster, "ensure_namespace", lambda cfg: calls.append(("namespace",)))
    m(orchestrator.eks_cluster, "apply_manifests", lambda cfg, d: calls.append(("apply", len(d))) or [])
    m(orchestrator.eks_cluster, "wait_for_rollout", lambda cfg, name: calls.append(("rollout", name)) or "ok")
    m(orchestrator.eks_cluster, "get_service_endpoint", lambda cfg, name: "lb.example.com")
    return calls


def test_apply_all_runs_sections_in_order(fake_pipeline) -> None:  # noqa: ANN001
    cfg = _minimal_cfg()

    summary, has_failures = orchestrator.apply_all(cfg)

    assert not has_failures
    assert [c[0] for c in fake_pipeline] == [
        "build",
        "ensure_repository",
        "login",
        "push",
        "render",
        "kubeconfig",
        "namespace",
        "apply",
        "rollout",
    ]
    # push 가 돌려준 digest 참조가 render 로 넘어간다
    assert ("render", cfg.repository_uri + "@sha256:123") in fake_pipeline
    assert "endpoint: lb.example.com" in summary
    assert "## Executed sections" in summary
    assert "k8s/a.yaml" in summary


def test_apply_all_failure_blocks_later_sections(fake_pipeline, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    def failing_push(cfg, image_ref):  # noqa: ANN001, ANN202
        raise PublishError("boom")

    monkeypatch.setattr(orchestrator.ecr_registry, "push_image", failing_push)

    summary, has_failures = orchestrator.apply_all(_minimal_cfg())

    assert has_failures
    names = [c[0] for c in fake_pipeline]
    assert "render" not in names
    assert "apply" not in names
    failed_part = summary.split("## Failed sections")[1].split("##")[0]
    blocked_part = summary.split("## Blocked sections")[1]
    assert "- push" in failed_part
    assert "- render" in blocked_part
    assert "- apply" in blocked_part


def test_apply_only_loads_previously_rendered_manifests(fake_pipeline) -> None:  # noqa: ANN001
    summary, has_failures = orchestrator.apply_all(_minimal_cfg(), only_sections=["apply"])

    assert not has_failures
    names = [c[0] for c in fake_pipeline]
    assert names[0] == "load"
    assert "build" not in names and "push" not in names
    skipped_part = summary.split("## Skipped sections")[1].split("##")[0]
    for name in ("build", "push", "render"):
        assert f"- {name}" in skipped_part


def test_toggles_skip_steps_and_sections(fake_pipeline) -> None:  # noqa: ANN001
    cfg = replace(
        _minimal_cfg(),
        build_image=False,
        create_ecr_repository=False,
        update_kubeconfig=False,
        create_namespace=False,
    )

    _, has_failures = orchestrator.apply_all(cfg)

    assert not has_failures
    names = [c[0] for c in fake_pipeline]
    assert "build" not in names
    assert "ensure_repository" not in names
    assert "kubeconfig" not in names
    assert "namespace" not in names
    # build 를 건너뛰면 설정된 ECR 주소를 그대로 푸시한다
    assert ("push", _minimal_cfg().image_uri) in fake_pipeline


def test_render_without_push_uses_configured_image(fake_pipeline) -> None:  # noqa: ANN001
    cfg = _minimal_cfg()

    orchestrator.apply_all(cfg, only_sections=["render"])

    assert fake_pipeline == [("render", cfg.image_uri)]


def test_plan_all_lists_section_status() -> None:
    cfg = replace(_minimal_cfg(), push_image=False)

    report = orchestrator.plan_all(cfg)

    assert "- build: ENABLED" in report
    assert "- push: SKIPPED" in report
    assert cfg.image_uri in report


def test_check_all_classifies_results(monkeypatch: pytest.MonkeyPatch) -> None:
    from eks_deploy_kit import checks

    monkeypatch.setattr(
        orchestrator.image_builder, "check_build_context",
        lambda cfg, base_dir=".": [checks.ok("Build: ok")],
    )
    monkeypatch.setattr(
        orchestrator.ecr_registry, "check_repository",
        lambda cfg: checks.warning("ECR: 리포지토리 없음"),
    )
    monkeypatch.setattr(
        orchestrator.eks_cluster, "check_cluster",
        lambda cfg: [checks.critical("EKS: 클러스터 없음")],
    )

    summary, has_issues = orchestrator.check_all(_minimal_cfg())

    assert has_issues
    assert "### Critical issues" in summary
    assert "EKS: 클러스터 없음" in summary
    assert "ECR: 리포지토리 없음" in summary
    assert "Build: ok" not in summary


def test_check_all_turns_exceptions_into_critical(monkeypatch: pytest.MonkeyPatch) -> None:
    from eks_deploy_kit import checks

    def boom(cfg):  # noqa: ANN001, ANN202
        raise RuntimeError("no credentials")

    monkeypatch.setattr(orchestrator.image_builder, "check_build_context", lambda cfg, base_dir=".": [])
    monkeypatch.setattr(orchestrator.ecr_registry, "check_repository", boom)
    monkeypatch.setattr(orchestrator.eks_cluster, "check_cluster", lambda cfg: [checks.ok("EKS: ok")])

    summary, has_issues = orchestrator.check_all(_minimal_cfg(), show_all=True)

    assert has_issues
    assert "no credentials" in summary
    assert "[ok] EKS: ok" in summary
