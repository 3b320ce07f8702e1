from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from . import checks, ecr_registry, eks_cluster, image_builder, manifest_renderer
from .checks import CheckResult
from .config import DeployConfig
from .logging_utils import get_logger


logger = get_logger(__name__)

# 실행 순서 그대로. 앞 섹션이 실패하면 뒤 섹션은 실행하지 않는다.
ALL_SECTIONS: List[str] = [
    "build",
    "push",
    "render",
    "apply",
]


@dataclass
class PipelineState:
    """섹션 사이에 넘기는 값. 이미지 참조와 렌더링된 문서만 공유한다."""

    image_ref: str
    documents: Optional[List[Dict[str, Any]]] = None
    manifest_files: List[str] = field(default_factory=list)
    endpoint: Optional[str] = None


def _section_enabled(name: str, cfg: DeployConfig) -> bool:
    if name == "build":
        return cfg.build_image
    if name == "push":
        return cfg.push_image
    if name == "render":
        return cfg.render_manifests
    if name == "apply":
        return cfg.apply_manifests
    return False


def _filter_sections(cfg: DeployConfig, only_sections: Optional[Iterable[str]]) -> List[str]:
    """
    토글/only_sections 에 따라 실제 실행 대상 섹션 목록을 결정한다.
    """
    if only_sections:
        requested = {s for s in only_sections}
        return [s for s in ALL_SECTIONS if s in requested and _section_enabled(s, cfg)]
    return [s for s in ALL_SECTIONS if _section_enabled(s, cfg)]


def plan_all(cfg: DeployConfig) -> str:
    """
    현재 설정과 섹션별 활성/비활성 상태를 요약한다. 외부 호출은 하지 않는다.
    """
    lines: List[str] = []
    lines.append("# Deploy plan")
    lines.append(f"- account: {cfg.aws_account_id}")
    lines.append(f"- region: {cfg.aws_region}")
    lines.append(f"- cluster: {cfg.eks_cluster_name}")
    lines.append("")

    lines.append("## Config summary")
    lines.append(f"- image: {cfg.image_uri}")
    lines.append(f"- build_context: {cfg.build_context} (dockerfile={cfg.dockerfile})")
    lines.append(f"- build_platform: {cfg.build_platform or '(default)'}")
    lines.append(f"- push_max_attempts: {cfg.push_max_attempts}")
    lines.append(f"- pin_image_digest: {cfg.pin_image_digest}")
    lines.append(f"- app_name: {cfg.app_name}")
    lines.append(f"- namespace: {cfg.k8s_namespace}")
    lines.append(f"- replicas: {cfg.replicas}")
    lines.append(
        f"- service: {cfg.service_type} {cfg.service_port} -> {cfg.container_port}"
    )
    lines.append(f"- container_env: {', '.join(sorted(cfg.container_env)) or '(none)'}")
    lines.append(f"- manifest_output_dir: {cfg.manifest_output_dir}")
    lines.append(f"- render_serverless_config: {cfg.render_serverless_config}")
    lines.append(f"- kube_context: {cfg.kube_context or '(current)'}")
    lines.append(f"- rollout_timeout_seconds: {cfg.rollout_timeout_seconds}")
    lines.append("")

    lines.append("## Sections")
    for name in ALL_SECTIONS:
        status = "ENABLED" if _section_enabled(name, cfg) else "SKIPPED"
        lines.append(f"- {name}: {status}")

    return "\n".join(lines)


def _run_section(name: str, cfg: DeployConfig, state: PipelineState, base_dir: str) -> None:
    if name == "build":
        state.image_ref = image_builder.build_image(cfg, state.image_ref, base_dir=base_dir)
    elif name == "push":
        if cfg.create_ecr_repository:
            ecr_registry.ensure_repository(cfg)
        ecr_registry.login(cfg)
        state.image_ref = ecr_registry.push_image(cfg, state.image_ref)
    elif name == "render":
        docs = manifest_renderer.render_manifests(cfg, state.image_ref)
        state.manifest_files = manifest_renderer.write_manifests(cfg, docs, base_dir=base_dir)
        if cfg.render_serverless_config:
            state.manifest_files.append(
                manifest_renderer.write_serverless_config(cfg, state.image_ref, base_dir=base_dir)
            )
        state.documents = docs
    elif name == "apply":
        docs = state.documents
        if docs is None:
            docs = manifest_renderer.load_manifests(cfg, base_dir=base_dir)
        if cfg.update_kubeconfig:
            eks_cluster.update_kubeconfig(cfg)
        if cfg.create_namespace:
            eks_cluster.ensure_namespace(cfg)
        eks_cluster.apply_manifests(cfg, docs)
        for doc in docs:
            if doc.get("kind") == "Deployment":
                eks_cluster.wait_for_rollout(cfg, doc["metadata"]["name"])
        for doc in docs:
            if doc.get("kind") == "Service":
                state.endpoint = eks_cluster.get_service_endpoint(cfg, doc["metadata"]["name"])


def _section_list(lines: List[str], title: str, names: List[str]) -> None:
    lines.append(f"## {title}")
    if names:
        for s in names:
            lines.append(f"- {s}")
    else:
        lines.append("- (none)")
    lines.append("")


def apply_all(
    cfg: DeployConfig,
    only_sections: Optional[Iterable[str]] = None,
    base_dir: str = ".",
) -> tuple[str, bool]:
    """
    build -> push -> render -> apply 순서로 섹션을 실행한다.

    한 섹션이 실패하면 그 뒤의 섹션은 blocked 로 표시하고 실행하지 않는다.

    Returns:
        summary: 사람이 읽기 좋은 텍스트 요약
        has_failures: 실패한 섹션이 있는지 여부
    """
    executed: List[str] = []
    skipped: List[str] = []
    failed: List[str] = []
    blocked: List[str] = []

    sections = _filter_sections(cfg, only_sections)
    state = PipelineState(image_ref=cfg.image_uri)

    logger.info("적용 대상 섹션: %s", sections)

    for name in ALL_SECTIONS:
        if name not in sections:
            skipped.append(name)
            continue
        if failed:
            blocked.append(name)
            continue

        logger.info("섹션 실행: %s", name)
        try:
            _run_section(name, cfg, state, base_dir)
        except Exception:  # noqa: BLE001
            failed.append(name)
            logger.exception("섹션 실행 실패: %s", name)
            continue

        executed.append(name)

    lines: List[str] = []
    lines.append("# Deploy summary")
    lines.append(f"- cluster: {cfg.eks_cluster_name} ({cfg.aws_region})")
    lines.append(f"- namespace: {cfg.k8s_namespace}")
    lines.append(f"- image: {state.image_ref}")
    if state.endpoint:
        lines.append(f"- endpoint: {state.endpoint}")
    lines.append("")

    _section_list(lines, "Executed sections", executed)
    _section_list(lines, "Skipped sections", skipped)
    _section_list(lines, "Failed sections", failed)
    _section_list(lines, "Blocked sections (이전 단계 실패)", blocked)

    if state.manifest_files:
        _section_list(lines, "Manifest files", state.manifest_files)

    summary = "\n".join(lines).rstrip()
    return summary, bool(failed)


def check_all(cfg: DeployConfig, base_dir: str = ".", show_all: bool = False) -> tuple[str, bool]:
    """
    실제 리소스 생성 없이 빌드 환경, ECR, EKS 상태를 점검한다.

    Returns:
        summary: 사람이 읽기 좋은 텍스트 요약
        has_issues: 크리티컬 이슈 또는 경고가 있는지 여부
    """
    lines: List[str] = []
    critical: List[str] = []
    warnings: List[str] = []

    lines.append("# Deploy pre-check")
    lines.append(f"- account: {cfg.aws_account_id}")
    lines.append(f"- region: {cfg.aws_region}")
    lines.append(f"- cluster: {cfg.eks_cluster_name}")
    lines.append("")

    groups = [
        ("Build", lambda: image_builder.check_build_context(cfg, base_dir=base_dir), cfg.build_image),
        ("ECR", lambda: [ecr_registry.check_repository(cfg)], cfg.push_image),
        ("EKS", lambda: eks_cluster.check_cluster(cfg), cfg.apply_manifests),
    ]

    for title, run_check, enabled in groups:
        lines.append(f"## {title}")
        if not enabled:
            lines.append("- (섹션 비활성화로 체크 건너뜀)")
            lines.append("")
            continue
        try:
            results: List[CheckResult] = run_check()
        except Exception as e:  # noqa: BLE001
            results = [checks.critical(f"{title}: 체크 중 예외 발생: {e}")]

        for r in results:
            if show_all:
                lines.append(f"- [{r.level}] {r.message}")
            if r.level == checks.CRITICAL:
                critical.append(r.message)
            elif r.level == checks.WARNING:
                warnings.append(r.message)
        lines.append("")

    if show_all:
        lines.append("## Section toggles")
        for name in ALL_SECTIONS:
            status = "ENABLED" if _section_enabled(name, cfg) else "SKIPPED"
            lines.append(f"- {name}: {status}")
        lines.append("")

    lines.append("## Summary")
    if critical:
        lines.append("- 상태: 크리티컬 이슈가 있습니다. 배포 전 반드시 해결해야 합니다.")
    elif warnings:
        lines.append("- 상태: 경고만 있습니다. 배포 시 일부 리소스가 새로 생성됩니다.")
    else:
        lines.append("- 상태: 주요 이슈 없음 (배포 가능 상태로 보입니다)")

    if show_all or critical:
        lines.append("")
        lines.append("### Critical issues")
        for i in critical or ["(none)"]:
            lines.append(f"- {i}")

    if show_all or warnings:
        lines.append("")
        lines.append("### Warnings (리소스가 새로 생성될 예정)")
        for i in warnings or ["(none)"]:
            lines.append(f"- {i}")

    if not show_all:
        lines.append("")
        lines.append("자세한 상태를 보려면 `deploy-eks check -a` 를 실행하세요.")

    return "\n".join(lines), bool(critical or warnings)
