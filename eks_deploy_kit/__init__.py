"""
eks_deploy_kit
--------------

함수 핸들러를 컨테이너 이미지로 빌드해 ECR 에 푸시하고,
Kubernetes 매니페스트를 렌더링해 EKS 클러스터에 배포하는 CLI 패키지.
build -> push -> render -> apply 를 한 번에 실행하는 것을 목표로 한다.
"""

__all__ = [
    "config",
    "orchestrator",
]
