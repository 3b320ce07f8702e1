"""
ecr_registry
------------

ECR 리포지토리 확인/생성, docker 로그인, 이미지 푸시를 담당하는 모듈.

푸시는 네트워크 일시 장애에 대해서만 재시도하고,
인증 토큰 만료로 보이는 실패는 다시 로그인한 뒤 재시도한다.
"""

from __future__ import annotations

import base64
import time
from typing import Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from . import checks
from .checks import CheckResult
from .config import DeployConfig
from .errors import CommandError, PublishError
from .logging_utils import get_logger
from .subprocess_utils import RunResult, run_command


logger = get_logger(__name__)

PUSH_TIMEOUT_SECONDS = 1800.0

# docker push 출력에서 일시적인 장애로 판단할 문구 (소문자 비교)
_TRANSIENT_MARKERS = (
    "connection reset",
    "connection refused",
    "broken pipe",
    "i/o timeout",
    "tls handshake timeout",
    "client.timeout exceeded",
    "unexpected eof",
    ": eof",
    "no such host",
    "temporary failure in name resolution",
    "500 internal server error",
    "502 bad gateway",
    "503 service unavailable",
    "504 gateway timeout",
    "toomanyrequests",
    "received unexpected http status: 5",
)

_AUTH_MARKERS = (
    "no basic auth credentials",
    "authorization token has expired",
    "your authorization token has expired",
    "denied: your authorization token",
    "401 unauthorized",
)


def _ecr_client(cfg: DeployConfig):  # noqa: ANN202
    return boto3.client("ecr", region_name=cfg.aws_region)


def _run(cmd: list[str], *, timeout: float = PUSH_TIMEOUT_SECONDS, input_text: str | None = None,
         stream_output: bool = False) -> RunResult:
    return run_command(cmd, timeout=timeout, input_text=input_text, stream_output=stream_output)


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _tag_of(image_ref: str) -> str:
    # registry:5000/repo:tag 처럼 호스트에 포트가 있어도 마지막 세그먼트만 본다
    last = image_ref.rsplit("/", 1)[-1]
    if "@" in last or ":" not in last:
        return ""
    return last.rsplit(":", 1)[-1]


def is_transient_push_error(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _TRANSIENT_MARKERS)


def is_auth_error(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _AUTH_MARKERS)


def ensure_repository(cfg: DeployConfig) -> bool:
    """
    ECR 리포지토리가 존재하는지 확인하고, 없으면 생성한다.

    Returns:
        새로 생성했으면 True
    """
    repo = cfg.ecr_repository
    logger.info("ECR 리포지토리 확인: %s (account=%s, region=%s)", repo, cfg.aws_account_id, cfg.aws_region)
    client = _ecr_client(cfg)

    try:
        client.describe_repositories(registryId=cfg.aws_account_id, repositoryNames=[repo])
        logger.info("기존 ECR 리포지토리를 사용합니다: %s", repo)
        return False
    except ClientError as e:
        if _error_code(e) != "RepositoryNotFoundException":
            raise PublishError(f"ECR 리포지토리 조회 실패: {repo} ({e})") from e
        logger.warning("ECR 리포지토리가 없어 생성합니다: %s", repo)
    except BotoCoreError as e:
        raise PublishError(f"ECR 리포지토리 조회 실패: {repo} ({e})") from e

    try:
        client.create_repository(
            registryId=cfg.aws_account_id,
            repositoryName=repo,
            imageTagMutability="MUTABLE",
            imageScanningConfiguration={"scanOnPush": True},
        )
    except ClientError as e:
        # 동시에 다른 배포가 만든 경우
        if _error_code(e) == "RepositoryAlreadyExistsException":
            logger.info("ECR 리포지토리가 이미 생성되어 있습니다: %s", repo)
            return False
        raise PublishError(f"ECR 리포지토리 생성 실패: {repo} ({e})") from e

    logger.info("ECR 리포지토리를 생성했습니다: %s", repo)
    return True


def get_login_credentials(cfg: DeployConfig) -> Tuple[str, str, str]:
    """
    ECR 인증 토큰을 받아 (username, password, endpoint) 로 풀어서 반환한다.
    토큰은 base64("AWS:<password>") 형식이다.
    """
    client = _ecr_client(cfg)
    try:
        resp = client.get_authorization_token(registryIds=[cfg.aws_account_id])
    except (ClientError, BotoCoreError) as e:
        raise PublishError(f"ECR 인증 토큰 발급 실패: {e}") from e

    data = resp.get("authorizationData") or []
    if not data:
        raise PublishError("ECR 인증 토큰 응답이 비어 있습니다.")

    decoded = base64.b64decode(data[0]["authorizationToken"]).decode("utf-8")
    username, _, password = decoded.partition(":")
    endpoint = data[0].get("proxyEndpoint") or f"https://{cfg.registry_host}"
    return username, password, endpoint


def login(cfg: DeployConfig) -> None:
    """
    docker 가 ECR 에 푸시할 수 있도록 로그인한다.
    비밀번호는 stdin 으로만 전달한다.
    """
    username, password, endpoint = get_login_credentials(cfg)
    logger.info("ECR 로그인: %s", endpoint)
    try:
        _run(
            ["docker", "login", "--username", username, "--password-stdin", endpoint],
            timeout=120.0,
            input_text=password,
        )
    except CommandError as e:
        raise PublishError(f"ECR 로그인 실패: {endpoint}\n{e}") from e


def push_image(cfg: DeployConfig, image_ref: str) -> str:
    """
    이미지를 ECR 로 푸시하고, 이후 단계에서 사용할 이미지 참조를 반환한다.

    PIN_IMAGE_DIGEST 가 켜져 있으면 태그 대신 digest 로 고정된 참조를 반환한다.
    """
    attempts = cfg.push_max_attempts
    for attempt in range(1, attempts + 1):
        logger.info("이미지 푸시 (%d/%d): %s", attempt, attempts, image_ref)
        try:
            _run(["docker", "push", image_ref], stream_output=True)
            break
        except CommandError as e:
            text = f"{e}\n{e.output}"
            auth = is_auth_error(text)
            transient = e.timed_out or is_transient_push_error(text)

            if not (auth or transient):
                raise PublishError(f"이미지 푸시 실패: {image_ref}\n{e}") from e
            if attempt >= attempts:
                raise PublishError(
                    f"이미지 푸시가 {attempts}회 시도 후에도 실패했습니다: {image_ref}\n{e}"
                ) from e

            delay = cfg.push_retry_delay_seconds * attempt
            logger.warning(
                "이미지 푸시 실패 (%s), %.1f초 후 재시도합니다.",
                "인증 만료" if auth else "일시 장애",
                delay,
            )
            time.sleep(delay)
            if auth:
                login(cfg)

    logger.info("이미지 푸시 완료: %s", image_ref)

    if cfg.pin_image_digest:
        return resolve_image_digest(cfg, _tag_of(image_ref) or cfg.image_tag)
    return image_ref


def resolve_image_digest(cfg: DeployConfig, tag: str) -> str:
    """
    태그의 digest 를 조회하여 `<repo_uri>@sha256:...` 형태로 반환한다.
    """
    client = _ecr_client(cfg)
    try:
        resp = client.describe_images(
            registryId=cfg.aws_account_id,
            repositoryName=cfg.ecr_repository,
            imageIds=[{"imageTag": tag}],
        )
    except (ClientError, BotoCoreError) as e:
        raise PublishError(f"이미지 digest 조회 실패: {cfg.ecr_repository}:{tag} ({e})") from e

    details = resp.get("imageDetails") or []
    if not details or not details[0].get("imageDigest"):
        raise PublishError(f"이미지 digest 를 찾을 수 없습니다: {cfg.ecr_repository}:{tag}")

    pinned = f"{cfg.repository_uri}@{details[0]['imageDigest']}"
    logger.info("digest 고정 이미지 참조: %s", pinned)
    return pinned


def check_repository(cfg: DeployConfig) -> CheckResult:
    """
    ECR 리포지토리 존재 여부를 확인만 하고, 생성하지 않는다.
    """
    repo = cfg.ecr_repository
    try:
        _ecr_client(cfg).describe_repositories(registryId=cfg.aws_account_id, repositoryNames=[repo])
    except ClientError as e:
        if _error_code(e) == "RepositoryNotFoundException":
            msg = f"ECR: 리포지토리 없음 ({repo})"
            if cfg.create_ecr_repository:
                return checks.warning(msg + " - 배포 시 생성됩니다")
            return checks.critical(msg + " - CREATE_ECR_REPOSITORY=false")
        return checks.critical(f"ECR: 리포지토리 조회 실패 ({repo}): {e}")
    except BotoCoreError as e:
        return checks.critical(f"ECR: AWS 자격 증명/연결 문제로 확인 불가: {e}")

    return checks.ok(f"ECR: 리포지토리 존재함 ({repo})")
