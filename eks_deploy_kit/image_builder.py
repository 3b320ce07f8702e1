"""
image_builder
-------------

로컬 Docker 로 함수 핸들러 이미지를 빌드하고 태그를 붙이는 모듈.
레지스트리 로그인/푸시는 ecr_registry 가 담당한다.
"""

from __future__ import annotations

import os
import shlex
import shutil
from typing import List, Optional

from . import checks
from .checks import CheckResult
from .config import DeployConfig
from .errors import BuildError, CommandError
from .logging_utils import get_logger
from .manifest_renderer import render_template
from .subprocess_utils import RunResult, run_command


logger = get_logger(__name__)

BUILD_TIMEOUT_SECONDS = 1800.0


def _run(cmd: list[str], *, timeout: float = BUILD_TIMEOUT_SECONDS) -> RunResult:
    # 빌드 로그는 길고 오래 걸리므로 실시간으로 흘려보낸다.
    return run_command(cmd, timeout=timeout, stream_output=True, spinner_message="이미지 빌드 중")


def resolve_build_paths(cfg: DeployConfig, base_dir: str = ".") -> tuple[str, str]:
    """
    (빌드 컨텍스트 디렉토리, Dockerfile 경로) 를 리턴한다.

    상대 경로 BUILD_CONTEXT 는 base_dir 기준, 상대 경로 DOCKERFILE 은 컨텍스트 기준이다.
    """
    context_dir = cfg.build_context
    if not os.path.isabs(context_dir):
        context_dir = os.path.normpath(os.path.join(base_dir, context_dir))

    dockerfile = cfg.dockerfile
    if not os.path.isabs(dockerfile):
        dockerfile = os.path.join(context_dir, dockerfile)

    return context_dir, dockerfile


def build_command(cfg: DeployConfig, image_ref: str, context_dir: str, dockerfile: str) -> List[str]:
    cmd = ["docker", "build", "-t", image_ref, "-f", dockerfile]
    if cfg.build_platform:
        cmd += ["--platform", cfg.build_platform]
    for key, value in sorted(cfg.build_args.items()):
        cmd += ["--build-arg", f"{key}={value}"]
    cmd.append(context_dir)
    return cmd


def build_image(cfg: DeployConfig, image_ref: Optional[str] = None, base_dir: str = ".") -> str:
    """
    docker build 로 이미지를 만들고, 빌드된 이미지 참조(태그)를 반환한다.

    image_ref 를 주지 않으면 ECR 최종 주소(cfg.image_uri)로 바로 태그한다.
    """
    image_ref = image_ref or cfg.image_uri
    context_dir, dockerfile = resolve_build_paths(cfg, base_dir)

    if not os.path.isdir(context_dir):
        raise BuildError(f"빌드 컨텍스트 디렉토리가 없습니다: {context_dir}")
    if not os.path.isfile(dockerfile):
        raise BuildError(
            f"Dockerfile 을 찾을 수 없습니다: {dockerfile} (`deploy-eks init` 으로 템플릿을 만들 수 있습니다)"
        )

    logger.info("이미지 빌드: %s (context=%s, platform=%s)", image_ref, context_dir, cfg.build_platform or "default")

    try:
        _run(build_command(cfg, image_ref, context_dir, dockerfile))
    except CommandError as e:
        raise BuildError(f"이미지 빌드에 실패했습니다: {image_ref}\n{e}") from e

    logger.info("이미지 빌드 완료: %s", image_ref)
    return image_ref


def check_build_context(cfg: DeployConfig, base_dir: str = ".") -> List[CheckResult]:
    """
    실제 빌드 없이 컨텍스트/Dockerfile/docker 명령 존재 여부만 확인한다.
    """
    results: List[CheckResult] = []
    context_dir, dockerfile = resolve_build_paths(cfg, base_dir)

    if os.path.isdir(context_dir):
        results.append(checks.ok(f"Build: 컨텍스트 존재함 ({context_dir})"))
    else:
        results.append(checks.critical(f"Build: 컨텍스트 디렉토리 없음 ({context_dir})"))

    if os.path.isfile(dockerfile):
        results.append(checks.ok(f"Build: Dockerfile 존재함 ({dockerfile})"))
    else:
        results.append(checks.critical(f"Build: Dockerfile 없음 ({dockerfile})"))

    if shutil.which("docker"):
        results.append(checks.ok("Build: docker 명령 사용 가능"))
    else:
        results.append(checks.critical("Build: docker 명령을 찾을 수 없습니다"))

    return results


def scaffold_dockerfile(cfg: DeployConfig, base_dir: str = ".") -> Optional[str]:
    """
    Dockerfile 이 없을 때 템플릿으로 생성하고 경로를 반환한다.
    이미 있으면 건드리지 않고 None.
    """
    _, dockerfile = resolve_build_paths(cfg, base_dir)
    if os.path.exists(dockerfile):
        logger.info("Dockerfile 이 이미 존재하여 건너뜁니다: %s", dockerfile)
        return None

    content = render_template(
        "Dockerfile.j2",
        container_port=cfg.container_port,
        command=shlex.split(cfg.handler_command),
    )
    os.makedirs(os.path.dirname(dockerfile) or ".", exist_ok=True)
    with open(dockerfile, "w", encoding="utf-8") as f:
        f.write(content)

    logger.info("Dockerfile 템플릿을 생성했습니다: %s", dockerfile)
    return dockerfile
