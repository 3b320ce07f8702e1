"""
checks
------

사전 점검(check) 결과 표현용 타입.
"""

from __future__ import annotations

from typing import NamedTuple


OK = "ok"
WARNING = "warning"
CRITICAL = "critical"


class CheckResult(NamedTuple):
    level: str
    message: str

    def __str__(self) -> str:
        return self.message


def ok(message: str) -> CheckResult:
    return CheckResult(OK, message)


def warning(message: str) -> CheckResult:
    return CheckResult(WARNING, message)


def critical(message: str) -> CheckResult:
    return CheckResult(CRITICAL, message)
