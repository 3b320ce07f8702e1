import os
import sys
from dataclasses import replace
from typing import Optional

import click
from dotenv import dotenv_values

from . import image_builder, manifest_renderer
from .config import CONTAINER_ENV_FILE, DeployConfig, load_container_env, load_env_files
from .logging_utils import get_logger, setup_logging
from .orchestrator import ALL_SECTIONS, apply_all, check_all, plan_all
from .subprocess_utils import configure_cli_progress


logger = get_logger(__name__)

EXAMPLE_FILES = ("env.infra.example", "env.app.example")


@click.group()
@click.option(
    "-C",
    "--chdir",
    "chdir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=".",
    help="작업 디렉토리 (기본: 현재 디렉토리)",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="로그 레벨을 DEBUG로 올립니다. (-vv 는 boto3/botocore 로그까지 출력)",
)
@click.option(
    "--no-progress",
    "no_progress",
    is_flag=True,
    help="오래 걸리는 명령 실행 중 진행 표시(스피너)를 끕니다.",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int, no_progress: bool) -> None:
    """함수 핸들러 이미지를 빌드해 ECR 에 올리고 EKS 에 배포하는 CLI"""
    setup_logging(verbose)
    if no_progress:
        configure_cli_progress(show_progress=False)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = chdir
    ctx.obj["verbose"] = verbose


def _load_config_from_ctx(ctx: click.Context) -> DeployConfig:
    base_dir: str = ctx.obj["chdir"]
    load_env_files(base_dir)
    cfg = DeployConfig.from_env()
    cfg.container_env = load_container_env(base_dir)
    logger.debug("Config loaded: %s", replace(cfg, container_env={k: "***" for k in cfg.container_env}))
    return cfg


def _load_config_or_exit(ctx: click.Context) -> DeployConfig:
    try:
        return _load_config_from_ctx(ctx)
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)


def _build_env_dump(base_dir: str) -> str:
    """
    .env / .env.infra / .env.app 의 내용을 그대로 덤프한다.
    (주석/빈 줄은 제외)
    """
    lines: list[str] = []
    for filename in (".env", ".env.infra", CONTAINER_ENV_FILE):
        lines.append(f"## {filename}")
        path_values = dotenv_values(dotenv_path=os.path.join(base_dir, filename))
        if not path_values:
            lines.append("- (파일이 없거나 비어 있습니다)")
        else:
            for k, v in sorted(path_values.items()):
                if v is None:
                    continue
                lines.append(f"- {k}={v}")
        lines.append("")
    return "\n".join(lines).rstrip()


@main.command()
@click.option(
    "-a",
    "--all",
    "show_all",
    is_flag=True,
    help=".env/.env.infra/.env.app 에서 설정한 모든 값을 함께 출력합니다.",
)
@click.pass_context
def plan(ctx: click.Context, show_all: bool) -> None:
    """현재 설정 요약과 섹션별 ENABLED/SKIPPED 상태를 출력"""
    cfg = _load_config_or_exit(ctx)

    report = plan_all(cfg)

    if show_all:
        env_dump = _build_env_dump(ctx.obj["chdir"])
        report = report + "\n\n" + "## Raw env from files\n" + env_dump

    click.echo(report)


@main.command(name="deploy")
@click.option(
    "--only",
    "only",
    type=str,
    default="",
    help="쉼표로 구분된 섹션 이름(build,push,render,apply). "
    "기본 동작은 .env.infra 의 BUILD_IMAGE/PUSH_IMAGE/RENDER_MANIFESTS/APPLY_MANIFESTS 토글을 사용합니다.",
)
@click.option("--tag", "tag", type=str, default=None, help="IMAGE_TAG 를 이번 실행에 한해 덮어씁니다.")
@click.pass_context
def deploy(ctx: click.Context, only: str, tag: Optional[str]) -> None:
    """이미지 빌드 -> ECR 푸시 -> 매니페스트 렌더링 -> EKS 적용"""
    cfg = _load_config_or_exit(ctx)

    if tag:
        cfg = replace(cfg, image_tag=tag)
        problems = cfg.validate()
        if problems:
            click.echo("[ERROR] " + "; ".join(problems), err=True)
            sys.exit(1)

    only_list: Optional[list[str]] = None
    if only.strip():
        only_list = [p.strip() for p in only.split(",") if p.strip()]

        invalid = sorted({s for s in only_list if s not in ALL_SECTIONS})
        if invalid:
            click.echo(
                "[ERROR] 잘못된 섹션 이름이 있습니다: "
                + ", ".join(invalid)
                + f"\n허용되는 섹션: {', '.join(ALL_SECTIONS)}",
                err=True,
            )
            sys.exit(1)

    try:
        summary, has_failures = apply_all(cfg, only_sections=only_list, base_dir=ctx.obj["chdir"])
    except Exception as e:  # noqa: BLE001
        logger.exception("배포 중 오류 발생")
        click.echo(f"[ERROR] 배포 실패: {e}", err=True)
        sys.exit(1)

    click.echo(summary)

    if has_failures:
        sys.exit(1)


@main.command()
@click.option("--image", "image", type=str, default=None, help="렌더링에 사용할 이미지 참조 (기본: ECR 주소:IMAGE_TAG)")
@click.option(
    "--output-dir",
    "output_dir",
    type=click.Path(file_okay=False, dir_okay=True),
    default=None,
    help="매니페스트 저장 디렉토리 (기본: MANIFEST_OUTPUT_DIR)",
)
@click.pass_context
def render(ctx: click.Context, image: Optional[str], output_dir: Optional[str]) -> None:
    """클러스터에 적용하지 않고 매니페스트만 렌더링하여 저장"""
    cfg = _load_config_or_exit(ctx)
    if output_dir:
        cfg = replace(cfg, manifest_output_dir=output_dir)

    base_dir: str = ctx.obj["chdir"]
    image_ref = image or cfg.image_uri

    try:
        docs = manifest_renderer.render_manifests(cfg, image_ref)
        paths = manifest_renderer.write_manifests(cfg, docs, base_dir=base_dir)
        if cfg.render_serverless_config:
            paths.append(manifest_renderer.write_serverless_config(cfg, image_ref, base_dir=base_dir))
    except Exception as e:  # noqa: BLE001
        logger.exception("렌더링 중 오류 발생")
        click.echo(f"[ERROR] 렌더링 실패: {e}", err=True)
        sys.exit(1)

    for path in paths:
        click.echo(path)


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """
    env 템플릿(env.infra.example, env.app.example)과 Dockerfile 템플릿을 생성한다.
    이미 있는 파일은 건드리지 않는다.
    """
    from importlib import resources

    base_dir: str = ctx.obj["chdir"]

    for name in EXAMPLE_FILES:
        target = os.path.join(base_dir, name)
        if os.path.exists(target):
            click.echo(f"{name} 이(가) 이미 존재하여 건너뜀")
            continue
        try:
            with resources.files("eks_deploy_kit.examples").joinpath(name).open("r", encoding="utf-8") as src, open(
                target, "w", encoding="utf-8"
            ) as dst:
                dst.write(src.read())
            click.echo(f"{name} 템플릿을 생성했습니다.")
        except FileNotFoundError:
            click.echo(f"템플릿 {name} 을(를) 패키지에서 찾을 수 없습니다.", err=True)

    # Dockerfile 은 설정 값(포트/핸들러)이 필요하다. 필수 env 가 아직 없으면 기본값으로 만든다.
    try:
        load_env_files(base_dir)
        cfg = DeployConfig.from_env()
    except ValueError:
        cfg = DeployConfig(
            aws_account_id="000000000000",
            aws_region="us-east-1",
            eks_cluster_name="cluster",
            ecr_repository="app",
        )

    path = image_builder.scaffold_dockerfile(cfg, base_dir=base_dir)
    if path:
        click.echo(f"Dockerfile 템플릿을 생성했습니다: {path}")
    else:
        click.echo("Dockerfile 이(가) 이미 존재하여 건너뜀")


@main.command()
@click.option(
    "-a",
    "--all",
    "show_all",
    is_flag=True,
    help="모든 체크 항목의 상세 상태를 출력합니다. (기본은 이슈만 요약)",
)
@click.pass_context
def check(ctx: click.Context, show_all: bool) -> None:
    """
    배포 전에 빌드 환경, ECR, EKS 상태를 점검한다.
    (실제 리소스 생성/변경은 하지 않는다)
    """
    cfg = _load_config_or_exit(ctx)

    try:
        report, has_issues = check_all(cfg, base_dir=ctx.obj["chdir"], show_all=show_all)
    except Exception as e:  # noqa: BLE001
        logger.exception("사전 체크 중 오류 발생")
        click.echo(f"[ERROR] 체크 실패: {e}", err=True)
        sys.exit(1)

    click.echo(report)

    if has_issues:
        sys.exit(1)
