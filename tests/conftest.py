"""
pytest 설정:

site-packages 에 다른 버전의 eks_deploy_kit 이 설치되어 있어도
항상 현재 레포의 소스를 대상으로 테스트하도록 repo root 를 sys.path 최상단에 고정한다.
"""

from __future__ import annotations

import os
import sys

import pytest


def pytest_configure() -> None:
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


_CONFIG_ENV_NAMES = (
    "AWS_ACCOUNT_ID", "AWS_REGION", "EKS_CLUSTER_NAME", "ECR_REPOSITORY", "APP_NAME",
    "IMAGE_TAG", "BUILD_CONTEXT", "DOCKERFILE", "BUILD_PLATFORM", "BUILD_ARGS", "HANDLER_COMMAND",
    "PUSH_MAX_ATTEMPTS", "PUSH_RETRY_DELAY_SECONDS", "PIN_IMAGE_DIGEST",
    "K8S_NAMESPACE", "REPLICAS", "CONTAINER_PORT", "SERVICE_PORT", "SERVICE_TYPE",
    "MANIFEST_OUTPUT_DIR", "RENDER_SERVERLESS_CONFIG", "SERVERLESS_SERVICE_NAME", "SERVERLESS_FUNCTION_NAME",
    "KUBE_CONTEXT", "ROLLOUT_TIMEOUT_SECONDS", "ROLLOUT_POLL_INTERVAL_SECONDS",
    "BUILD_IMAGE", "PUSH_IMAGE", "RENDER_MANIFESTS", "APPLY_MANIFESTS",
    "CREATE_ECR_REPOSITORY", "CREATE_NAMESPACE", "UPDATE_KUBECONFIG",
    "CLI_SHOW_PROGRESS", "CLI_PROGRESS_IDLE_SECONDS", "CLI_PROGRESS_STYLE", "CLI_PROGRESS_INTERVAL_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_deploy_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # 개발자 셸의 설정값이 테스트에 섞이지 않도록 비운다.
    for name in _CONFIG_ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
