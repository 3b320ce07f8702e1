"""
eks_cluster
-----------

EKS 클러스터에 렌더링된 매니페스트를 적용하고 롤아웃 완료를 기다리는 모듈.

kubeconfig 갱신은 `aws eks update-kubeconfig`, 실제 적용과 상태 조회는 kubectl 로 한다.
"""

from __future__ import annotations

import json
import shutil
import time
from typing import Any, Dict, List, NamedTuple, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from . import checks
from .checks import CheckResult
from .config import DeployConfig
from .errors import ApplyError, CommandError, RolloutTimeoutError
from .logging_utils import get_logger
from .manifest_renderer import dump_manifests
from .subprocess_utils import RunResult, run_command


logger = get_logger(__name__)

KUBECTL_TIMEOUT_SECONDS = 120.0


class RolloutState(NamedTuple):
    done: bool
    message: str
    failed: bool = False


def _eks_client(cfg: DeployConfig):  # noqa: ANN202
    return boto3.client("eks", region_name=cfg.aws_region)


def _run(cmd: list[str], *, timeout: float = KUBECTL_TIMEOUT_SECONDS,
         input_text: str | None = None) -> RunResult:
    # 롤아웃 대기 중 반복 호출되므로 스피너는 끈다.
    return run_command(cmd, timeout=timeout, input_text=input_text, show_progress=False)


def _kubectl(cfg: DeployConfig, *args: str) -> List[str]:
    cmd = ["kubectl"]
    if cfg.kube_context:
        cmd += ["--context", cfg.kube_context]
    cmd += list(args)
    return cmd


def update_kubeconfig(cfg: DeployConfig) -> None:
    """
    kubectl 이 대상 EKS 클러스터를 바라보도록 kubeconfig 를 갱신한다.
    """
    cmd = [
        "aws",
        "eks",
        "update-kubeconfig",
        "--name",
        cfg.eks_cluster_name,
        "--region",
        cfg.aws_region,
    ]
    if cfg.kube_context:
        cmd += ["--alias", cfg.kube_context]

    logger.info("kubeconfig 갱신: cluster=%s region=%s", cfg.eks_cluster_name, cfg.aws_region)
    try:
        _run(cmd)
    except CommandError as e:
        raise ApplyError(f"kubeconfig 갱신 실패: {cfg.eks_cluster_name}\n{e}") from e


def ensure_namespace(cfg: DeployConfig) -> bool:
    """
    네임스페이스가 없으면 생성한다. 새로 만들었으면 True.
    """
    ns = cfg.k8s_namespace
    try:
        _run(_kubectl(cfg, "get", "namespace", ns))
        logger.info("기존 네임스페이스를 사용합니다: %s", ns)
        return False
    except CommandError as e:
        if e.returncode is None or "notfound" not in e.output.replace(" ", "").lower():
            raise ApplyError(f"네임스페이스 조회 실패: {ns}\n{e}") from e

    try:
        _run(_kubectl(cfg, "create", "namespace", ns))
    except CommandError as e:
        if "alreadyexists" in e.output.replace(" ", "").lower():
            return False
        raise ApplyError(f"네임스페이스 생성 실패: {ns}\n{e}") from e

    logger.info("네임스페이스를 생성했습니다: %s", ns)
    return True


def apply_manifests(cfg: DeployConfig, docs: List[Dict[str, Any]]) -> List[str]:
    """
    매니페스트를 stdin 으로 `kubectl apply -f -` 에 넘긴다.

    Returns:
        kubectl 이 출력한 리소스별 결과 라인 (예: "deployment.apps/app configured")
    """
    if not docs:
        raise ApplyError("적용할 매니페스트가 없습니다.")

    try:
        result = _run(
            _kubectl(cfg, "apply", "-n", cfg.k8s_namespace, "-f", "-"),
            input_text=dump_manifests(docs),
        )
    except CommandError as e:
        raise ApplyError(f"매니페스트 적용 실패 (namespace={cfg.k8s_namespace})\n{e}") from e

    lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    for line in lines:
        logger.info("kubectl apply: %s", line)
    return lines


def _condition(status: Dict[str, Any], cond_type: str) -> Optional[Dict[str, Any]]:
    for cond in status.get("conditions") or []:
        if cond.get("type") == cond_type:
            return cond
    return None


def rollout_state(deployment: Dict[str, Any]) -> RolloutState:
    """
    Deployment 객체(JSON)로부터 롤아웃 진행 상태를 판단한다.
    `kubectl rollout status` 와 같은 기준을 사용한다.
    """
    name = deployment.get("metadata", {}).get("name", "?")
    generation = deployment.get("metadata", {}).get("generation", 0)
    spec = deployment.get("spec") or {}
    status = deployment.get("status") or {}

    if generation > status.get("observedGeneration", 0):
        return RolloutState(False, f"Deployment {name}: 새 spec 반영 대기 중")

    progressing = _condition(status, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return RolloutState(False, f"Deployment {name}: progress deadline 초과", failed=True)

    desired = spec.get("replicas", 1)
    updated = status.get("updatedReplicas", 0)
    total = status.get("replicas", 0)
    available = status.get("availableReplicas", 0)

    if updated < desired:
        return RolloutState(False, f"Deployment {name}: {updated}/{desired} 개 replica 업데이트됨")
    if total > updated:
        return RolloutState(False, f"Deployment {name}: 이전 replica {total - updated}개 종료 대기 중")
    if available < updated:
        return RolloutState(False, f"Deployment {name}: {available}/{updated} 개 replica 사용 가능")
    return RolloutState(True, f"Deployment {name}: 롤아웃 완료")


def get_deployment(cfg: DeployConfig, name: str) -> Dict[str, Any]:
    try:
        result = _run(_kubectl(cfg, "get", "deployment", name, "-n", cfg.k8s_namespace, "-o", "json"))
    except CommandError as e:
        raise ApplyError(f"Deployment 조회 실패: {name}\n{e}") from e
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ApplyError(f"kubectl 출력 JSON 파싱 실패: {name} ({e})") from e


def wait_for_rollout(cfg: DeployConfig, name: str) -> str:
    """
    Deployment 롤아웃이 끝날 때까지 ROLLOUT_POLL_INTERVAL_SECONDS 간격으로 폴링한다.
    """
    deadline = time.monotonic() + cfg.rollout_timeout_seconds
    last_message = ""

    logger.info("롤아웃 대기: %s (timeout=%ss)", name, cfg.rollout_timeout_seconds)
    while True:
        state = rollout_state(get_deployment(cfg, name))
        if state.message != last_message:
            logger.info(state.message)
            last_message = state.message

        if state.failed:
            raise ApplyError(state.message)
        if state.done:
            return state.message
        if time.monotonic() >= deadline:
            raise RolloutTimeoutError(
                f"롤아웃이 {cfg.rollout_timeout_seconds}초 안에 끝나지 않았습니다: {last_message}"
            )
        time.sleep(cfg.rollout_poll_interval_seconds)


def get_service_endpoint(cfg: DeployConfig, name: str) -> Optional[str]:
    """
    LoadBalancer 서비스의 외부 주소(hostname 또는 IP)를 반환한다.
    아직 할당 전이거나 LoadBalancer 가 아니면 None.
    """
    try:
        result = _run(_kubectl(cfg, "get", "service", name, "-n", cfg.k8s_namespace, "-o", "json"))
        service = json.loads(result.stdout)
    except (CommandError, json.JSONDecodeError) as e:
        logger.warning("서비스 주소 조회 실패: %s (%s)", name, e)
        return None

    if service.get("spec", {}).get("type") != "LoadBalancer":
        return None

    for ingress in service.get("status", {}).get("loadBalancer", {}).get("ingress") or []:
        address = ingress.get("hostname") or ingress.get("ip")
        if address:
            return address
    return None


def check_cluster(cfg: DeployConfig) -> List[CheckResult]:
    """
    EKS 클러스터 상태와 kubectl 존재 여부를 확인만 한다.
    """
    results: List[CheckResult] = []
    name = cfg.eks_cluster_name

    try:
        resp = _eks_client(cfg).describe_cluster(name=name)
        status = resp.get("cluster", {}).get("status", "UNKNOWN")
        if status == "ACTIVE":
            results.append(checks.ok(f"EKS: 클러스터 ACTIVE ({name})"))
        else:
            results.append(checks.critical(f"EKS: 클러스터 상태 {status} ({name})"))
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code == "ResourceNotFoundException":
            results.append(checks.critical(f"EKS: 클러스터 없음 ({name}, region={cfg.aws_region})"))
        else:
            results.append(checks.critical(f"EKS: 클러스터 조회 실패 ({name}): {e}"))
    except BotoCoreError as e:
        results.append(checks.critical(f"EKS: AWS 자격 증명/연결 문제로 확인 불가: {e}"))

    if shutil.which("kubectl"):
        results.append(checks.ok("EKS: kubectl 명령 사용 가능"))
    else:
        results.append(checks.critical("EKS: kubectl 명령을 찾을 수 없습니다"))

    return results
