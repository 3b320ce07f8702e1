"""
manifest_renderer
-----------------

Jinja2 템플릿으로 Deployment/Service 매니페스트를 렌더링하고,
푸시된 이미지 참조와 네임스페이스를 채워 넣는 모듈.

렌더링 결과는 dict 문서 리스트로 다루며, 파일로 쓰거나
kubectl apply 용 multi-document YAML 로 덤프할 수 있다.
"""

from __future__ import annotations

import glob
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from .config import DeployConfig
from .errors import ManifestValidationError, RenderError
from .logging_utils import get_logger


logger = get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

MANIFEST_TEMPLATES = ["deployment.yaml.j2", "service.yaml.j2"]
SERVERLESS_CONFIG_FILENAME = "serverless.yml"

_env: Optional[Environment] = None


def _environment() -> Environment:
    global _env
    if _env is None:
        _env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
    return _env


def render_template(name: str, **context: Any) -> str:
    try:
        return _environment().get_template(name).render(**context)
    except TemplateError as e:
        raise RenderError(f"템플릿 렌더링 실패: {name} ({e})") from e


def _template_context(cfg: DeployConfig, image_ref: str) -> Dict[str, Any]:
    return {
        "app_name": cfg.app_name,
        "namespace": cfg.k8s_namespace,
        "image": image_ref,
        "replicas": cfg.replicas,
        "container_port": cfg.container_port,
        "service_port": cfg.service_port,
        "service_type": cfg.service_type,
        "env": dict(cfg.container_env),
    }


def render_manifests(cfg: DeployConfig, image_ref: str) -> List[Dict[str, Any]]:
    """
    Deployment, Service 순서로 렌더링하여 검증된 문서 리스트를 반환한다.
    """
    if not image_ref:
        raise RenderError("이미지 참조가 비어 있어 매니페스트를 렌더링할 수 없습니다.")

    context = _template_context(cfg, image_ref)
    docs: List[Dict[str, Any]] = []
    for name in MANIFEST_TEMPLATES:
        text = render_template(name, **context)
        try:
            docs.extend(d for d in yaml.safe_load_all(text) if d is not None)
        except yaml.YAMLError as e:
            raise RenderError(f"렌더링된 YAML 파싱 실패: {name} ({e})") from e

    validate_manifests(docs)
    logger.info(
        "매니페스트 렌더링 완료: %s (namespace=%s, image=%s)",
        ", ".join(f"{d['kind']}/{d['metadata']['name']}" for d in docs),
        cfg.k8s_namespace,
        image_ref,
    )
    return docs


def _get(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


def validate_manifests(docs: List[Dict[str, Any]]) -> None:
    """
    문서 구조를 점검하고, 문제가 하나라도 있으면 모두 모아 ManifestValidationError 를 던진다.
    """
    problems: List[str] = []
    if not docs:
        raise ManifestValidationError(["매니페스트 문서가 없습니다."])

    container_ports: set = set()
    services: List[Dict[str, Any]] = []

    for idx, doc in enumerate(docs):
        if not isinstance(doc, dict):
            problems.append(f"문서 #{idx}: 매핑(dict)이 아닙니다.")
            continue

        label = f"{doc.get('kind', '?')}/{_get(doc, 'metadata.name') or '?'}"
        for field in ("apiVersion", "kind", "metadata.name"):
            if not _get(doc, field):
                problems.append(f"{label}: 필수 필드 누락 ({field})")

        kind = doc.get("kind")
        if kind == "Deployment":
            containers = _get(doc, "spec.template.spec.containers") or []
            if not containers:
                problems.append(f"{label}: 컨테이너가 없습니다.")
            for c in containers:
                if not c.get("image"):
                    problems.append(f"{label}: 컨테이너 {c.get('name', '?')} 의 image 가 비어 있습니다.")
                for port in c.get("ports") or []:
                    container_ports.add(port.get("containerPort"))

            selector = _get(doc, "spec.selector.matchLabels") or {}
            pod_labels = _get(doc, "spec.template.metadata.labels") or {}
            if not selector:
                problems.append(f"{label}: spec.selector.matchLabels 가 없습니다.")
            elif any(pod_labels.get(k) != v for k, v in selector.items()):
                problems.append(f"{label}: selector 가 pod template 라벨과 일치하지 않습니다.")
        elif kind == "Service":
            services.append(doc)

    # Deployment 가 같이 있을 때만 targetPort 를 교차 검증한다.
    if container_ports:
        for svc in services:
            label = f"Service/{_get(svc, 'metadata.name') or '?'}"
            for port in _get(svc, "spec.ports") or []:
                target = port.get("targetPort", port.get("port"))
                if isinstance(target, int) and target not in container_ports:
                    problems.append(
                        f"{label}: targetPort {target} 가 컨테이너 포트({sorted(container_ports)})와 맞지 않습니다."
                    )

    if problems:
        raise ManifestValidationError(problems)


def dump_manifests(docs: List[Dict[str, Any]]) -> str:
    return yaml.safe_dump_all(docs, sort_keys=False, default_flow_style=False)


def manifest_dir(cfg: DeployConfig, base_dir: str = ".") -> str:
    out = cfg.manifest_output_dir
    if not os.path.isabs(out):
        out = os.path.join(base_dir, out)
    return out


def write_manifests(cfg: DeployConfig, docs: List[Dict[str, Any]], base_dir: str = ".") -> List[str]:
    """
    `<app>-<kind>.yaml` 파일로 저장하고 경로 리스트를 반환한다.
    """
    out_dir = manifest_dir(cfg, base_dir)
    os.makedirs(out_dir, exist_ok=True)

    paths: List[str] = []
    for doc in docs:
        filename = f"{doc['metadata']['name']}-{doc['kind'].lower()}.yaml"
        path = os.path.join(out_dir, filename)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(doc, f, sort_keys=False, default_flow_style=False)
        paths.append(path)
        logger.info("매니페스트 저장: %s", path)
    return paths


def load_manifests(cfg: DeployConfig, base_dir: str = ".") -> List[Dict[str, Any]]:
    """
    이전에 write_manifests 로 저장한 `<app>-<kind>.yaml` 매니페스트를 다시 읽는다.
    render 단계를 건너뛰고 apply 만 실행할 때 사용한다.
    같은 디렉토리의 다른 앱 파일은 읽지 않는다.
    """
    out_dir = manifest_dir(cfg, base_dir)
    prefix = f"{cfg.app_name}-"
    paths = sorted(
        p
        for p in glob.glob(os.path.join(out_dir, glob.escape(prefix) + "*.yaml"))
        # kind 에는 "-" 가 없으므로 "my-function-*.yaml" 은 "my" 앱 파일이 아니다
        if "-" not in os.path.basename(p)[len(prefix):-len(".yaml")]
    )
    if not paths:
        raise RenderError(
            f"렌더링된 매니페스트가 없습니다: {out_dir} (render 섹션을 먼저 실행하세요)"
        )

    docs: List[Dict[str, Any]] = []
    for path in paths:
        with open(path, "r", encoding="utf-8") as f:
            try:
                docs.extend(d for d in yaml.safe_load_all(f) if d is not None)
            except yaml.YAMLError as e:
                raise RenderError(f"YAML 파싱 실패: {path} ({e})") from e

    validate_manifests(docs)
    logger.info("저장된 매니페스트 %d개를 읽었습니다: %s", len(docs), out_dir)
    return docs


def render_serverless_config(cfg: DeployConfig, image_ref: str) -> str:
    """
    Serverless Framework 설정(serverless.yml)을 렌더링한다. 실행은 하지 않는다.
    """
    text = render_template(
        "serverless.yml.j2",
        service_name=cfg.serverless_service_name,
        function_name=cfg.serverless_function_name,
        app_name=cfg.app_name,
        region=cfg.aws_region,
        account_id=cfg.aws_account_id,
        image=image_ref,
    )
    try:
        yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise RenderError(f"serverless 설정 YAML 이 올바르지 않습니다: {e}") from e
    return text


def write_serverless_config(cfg: DeployConfig, image_ref: str, base_dir: str = ".") -> str:
    out_dir = manifest_dir(cfg, base_dir)
    os.makedirs(out_dir, exist_ok=True)
    # *.yaml 이 아니므로 load_manifests 대상에서 빠진다.
    path = os.path.join(out_dir, SERVERLESS_CONFIG_FILENAME)
    with open(path, "w", encoding="utf-8") as f:
        f.write(render_serverless_config(cfg, image_ref))
    logger.info("serverless 설정 저장: %s", path)
    return path
