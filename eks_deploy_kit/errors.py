"""
errors
------

배포 파이프라인 각 단계에서 사용하는 예외 계층.
모두 RuntimeError 계열이므로 기존처럼 RuntimeError 로 잡아도 동작한다.
"""

from __future__ import annotations

from typing import Optional, Sequence


class DeployError(RuntimeError):
    """배포 도구에서 발생하는 모든 예외의 기반 클래스."""


class CommandError(DeployError):
    """
    외부 명령(docker/aws/kubectl) 실행 실패.

    returncode 가 None 이면 명령을 찾지 못했거나 timeout 으로 종료된 경우다.
    """

    def __init__(
        self,
        message: str,
        *,
        cmd: Sequence[str],
        returncode: Optional[int] = None,
        output: str = "",
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output
        self.timed_out = timed_out


class BuildError(DeployError):
    """이미지 빌드 실패."""


class PublishError(DeployError):
    """ECR 로그인/푸시 실패."""


class RenderError(DeployError):
    """매니페스트 렌더링 실패."""


class ManifestValidationError(RenderError):
    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = list(problems)
        super().__init__("매니페스트 검증 실패:\n" + "\n".join(f"- {p}" for p in self.problems))


class ApplyError(DeployError):
    """클러스터 적용 또는 롤아웃 실패."""


class RolloutTimeoutError(ApplyError):
    pass
