from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import dotenv_values, load_dotenv


ENV_FILES_DEFAULT_ORDER = [".env", ".env.infra"]
CONTAINER_ENV_FILE = ".env.app"

SERVICE_TYPES = ("ClusterIP", "NodePort", "LoadBalancer")

_IMAGE_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def load_container_env(base_dir: str = ".",
                       filename: str = CONTAINER_ENV_FILE) -> Dict[str, str]:
    """
    .env.app 의 내용을 컨테이너 환경변수로 쓰기 위해 dict 로 읽는다.
    프로세스 환경에는 로드하지 않는다.
    """
    path = os.path.join(base_dir, filename)
    if not os.path.exists(path):
        return {}
    values = dotenv_values(dotenv_path=path)
    # 값 없이 키만 있는 줄은 None 으로 들어온다
    return {k: v for k, v in values.items() if v is not None}


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_build_args(raw: Optional[str], errors: List[str]) -> Dict[str, str]:
    args: Dict[str, str] = {}
    if not raw:
        return args
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            errors.append(f"BUILD_ARGS 항목은 KEY=VALUE 형식이어야 합니다: {part!r}")
            continue
        key, value = part.split("=", 1)
        args[key.strip()] = value.strip()
    return args


@dataclass
class DeployConfig:
    # 필수 공통
    aws_account_id: str
    aws_region: str
    eks_cluster_name: str
    ecr_repository: str

    app_name: str = ""

    # 이미지 빌드
    image_tag: str = "latest"
    build_context: str = "."
    dockerfile: str = "Dockerfile"
    build_platform: Optional[str] = None
    build_args: Dict[str, str] = field(default_factory=dict)
    handler_command: str = "python handler.py"

    # 레지스트리
    push_max_attempts: int = 3
    push_retry_delay_seconds: float = 5.0
    pin_image_digest: bool = False

    # 매니페스트
    k8s_namespace: str = "default"
    replicas: int = 1
    container_port: int = 8080
    service_port: int = 80
    service_type: str = "LoadBalancer"
    manifest_output_dir: str = "k8s"
    container_env: Dict[str, str] = field(default_factory=dict)
    render_serverless_config: bool = False
    serverless_service_name: str = ""
    serverless_function_name: str = "handler"

    # 클러스터
    kube_context: Optional[str] = None
    rollout_timeout_seconds: float = 300.0
    rollout_poll_interval_seconds: float = 5.0

    # 섹션 토글
    build_image: bool = True
    push_image: bool = True
    render_manifests: bool = True
    apply_manifests: bool = True

    # 단계별 토글
    create_ecr_repository: bool = True
    create_namespace: bool = True
    update_kubeconfig: bool = True

    def __post_init__(self) -> None:
        if not self.app_name:
            # team/app 형태의 리포 이름은 마지막 세그먼트만 사용
            self.app_name = self.ecr_repository.rsplit("/", 1)[-1]
        if not self.serverless_service_name:
            self.serverless_service_name = self.app_name

    @property
    def registry_host(self) -> str:
        suffix = "amazonaws.com.cn" if self.aws_region.startswith("cn-") else "amazonaws.com"
        return f"{self.aws_account_id}.dkr.ecr.{self.aws_region}.{suffix}"

    @property
    def repository_uri(self) -> str:
        return f"{self.registry_host}/{self.ecr_repository}"

    @property
    def image_uri(self) -> str:
        return f"{self.repository_uri}:{self.image_tag}"

    def validate(self) -> List[str]:
        """설정 값의 범위/형식 문제를 모두 모아 리턴한다."""
        problems: List[str] = []

        if not _IMAGE_TAG_RE.match(self.image_tag or ""):
            problems.append(f"IMAGE_TAG 가 올바른 Docker 태그가 아닙니다: {self.image_tag!r}")
        if not _DNS_LABEL_RE.match(self.app_name or ""):
            problems.append(f"APP_NAME 은 RFC 1123 DNS label 이어야 합니다: {self.app_name!r}")
        if not _DNS_LABEL_RE.match(self.k8s_namespace or ""):
            problems.append(f"K8S_NAMESPACE 는 RFC 1123 DNS label 이어야 합니다: {self.k8s_namespace!r}")
        if self.service_type not in SERVICE_TYPES:
            problems.append(
                f"SERVICE_TYPE 은 {', '.join(SERVICE_TYPES)} 중 하나여야 합니다: {self.service_type!r}"
            )
        if self.replicas < 0:
            problems.append("REPLICAS 는 0 이상이어야 합니다.")
        for name, port in (("CONTAINER_PORT", self.container_port), ("SERVICE_PORT", self.service_port)):
            if not 1 <= port <= 65535:
                problems.append(f"{name} 는 1~65535 범위여야 합니다: {port}")
        if self.push_max_attempts < 1:
            problems.append("PUSH_MAX_ATTEMPTS 는 1 이상이어야 합니다.")
        if self.push_retry_delay_seconds < 0:
            problems.append("PUSH_RETRY_DELAY_SECONDS 는 음수일 수 없습니다.")
        if self.rollout_timeout_seconds < 0:
            problems.append("ROLLOUT_TIMEOUT_SECONDS 는 음수일 수 없습니다.")
        if self.rollout_poll_interval_seconds <= 0:
            problems.append("ROLLOUT_POLL_INTERVAL_SECONDS 는 0 보다 커야 합니다.")

        return problems

    @classmethod
    def from_env(cls) -> "DeployConfig":
        # 필수값
        missing: List[str] = []
        errors: List[str] = []

        def req(name: str) -> str:
            val = os.getenv(name)
            if not val:
                missing.append(name)
            return val or ""

        def opt(name: str, default: str = "") -> str:
            val = os.getenv(name)
            return val if val else default

        def num(name: str, default, kind=int):  # noqa: ANN001, ANN202
            raw = os.getenv(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return kind(raw.strip())
            except ValueError:
                errors.append(f"{name} 값이 숫자가 아닙니다: {raw!r}")
                return default

        cfg = cls(
            aws_account_id=req("AWS_ACCOUNT_ID"),
            aws_region=req("AWS_REGION"),
            eks_cluster_name=req("EKS_CLUSTER_NAME"),
            ecr_repository=req("ECR_REPOSITORY"),
            app_name=opt("APP_NAME"),
            image_tag=opt("IMAGE_TAG", "latest"),
            build_context=opt("BUILD_CONTEXT", "."),
            dockerfile=opt("DOCKERFILE", "Dockerfile"),
            build_platform=os.getenv("BUILD_PLATFORM") or None,
            build_args=_parse_build_args(os.getenv("BUILD_ARGS"), errors),
            handler_command=opt("HANDLER_COMMAND", "python handler.py"),
            push_max_attempts=num("PUSH_MAX_ATTEMPTS", 3),
            push_retry_delay_seconds=num("PUSH_RETRY_DELAY_SECONDS", 5.0, float),
            pin_image_digest=_get_bool("PIN_IMAGE_DIGEST", False),
            k8s_namespace=opt("K8S_NAMESPACE", "default"),
            replicas=num("REPLICAS", 1),
            container_port=num("CONTAINER_PORT", 8080),
            service_port=num("SERVICE_PORT", 80),
            service_type=opt("SERVICE_TYPE", "LoadBalancer"),
            manifest_output_dir=opt("MANIFEST_OUTPUT_DIR", "k8s"),
            render_serverless_config=_get_bool("RENDER_SERVERLESS_CONFIG", False),
            serverless_service_name=opt("SERVERLESS_SERVICE_NAME"),
            serverless_function_name=opt("SERVERLESS_FUNCTION_NAME", "handler"),
            kube_context=os.getenv("KUBE_CONTEXT") or None,
            rollout_timeout_seconds=num("ROLLOUT_TIMEOUT_SECONDS", 300.0, float),
            rollout_poll_interval_seconds=num("ROLLOUT_POLL_INTERVAL_SECONDS", 5.0, float),
            build_image=_get_bool("BUILD_IMAGE", True),
            push_image=_get_bool("PUSH_IMAGE", True),
            render_manifests=_get_bool("RENDER_MANIFESTS", True),
            apply_manifests=_get_bool("APPLY_MANIFESTS", True),
            create_ecr_repository=_get_bool("CREATE_ECR_REPOSITORY", True),
            create_namespace=_get_bool("CREATE_NAMESPACE", True),
            update_kubeconfig=_get_bool("UPDATE_KUBECONFIG", True),
        )

        if missing:
            raise ValueError(
                "필수 환경변수가 누락되었습니다: " + ", ".join(sorted(set(missing)))
            )

        problems = errors + cfg.validate()
        if problems:
            raise ValueError("환경변수 값이 올바르지 않습니다:\n" + "\n".join(f"- {p}" for p in problems))

        return cfg
