from __future__ import annotations

import os
import queue
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from textwrap import shorten
from typing import Callable, Mapping, Sequence

from .errors import CommandError
from .logging_utils import get_logger


logger = get_logger(__name__)


# -----------------------------
# CLI progress indicator config
# -----------------------------
_cli_progress_lock = threading.Lock()
_cli_show_progress: bool = True
_cli_progress_idle_seconds: float = 2.0
_cli_progress_style: str = "braille"  # braille | ascii
_cli_progress_interval: float = 0.12

_BRAILLE_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]
_ASCII_FRAMES = ["|", "/", "-", "\\"]

_OUTPUT_EXCERPT_WIDTH = 2000


def configure_cli_progress(
    *,
    show_progress: bool | None = None,
    idle_seconds: float | None = None,
    style: str | None = None,
    interval: float | None = None,
) -> None:
    """
    전역 CLI 진행 표시 설정.

    CLI 엔트리포인트에서 한 번 호출해 기본값을 바꾸는 용도.
    """
    global _cli_show_progress, _cli_progress_idle_seconds, _cli_progress_style, _cli_progress_interval
    with _cli_progress_lock:
        if show_progress is not None:
            _cli_show_progress = bool(show_progress)
        if idle_seconds is not None:
            _cli_progress_idle_seconds = float(idle_seconds)
        if style is not None:
            _cli_progress_style = str(style)
        if interval is not None:
            _cli_progress_interval = float(interval)


def _is_tty(stream) -> bool:  # noqa: ANN001
    try:
        return bool(getattr(stream, "isatty") and stream.isatty())
    except Exception:  # noqa: BLE001
        return False


def _parse_env_bool(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_env_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


@dataclass(frozen=True)
class _ProgressSettings:
    show: bool
    idle_seconds: float
    style: str
    interval: float


def _resolve_progress_settings(
    show_progress: bool | None,
    idle_seconds: float | None,
    style: str | None,
    interval: float | None,
) -> _ProgressSettings:
    # 우선순위: 호출 인자 > env > 전역 기본값
    with _cli_progress_lock:
        defaults = (_cli_show_progress, _cli_progress_idle_seconds, _cli_progress_style, _cli_progress_interval)

    env_values = (
        _parse_env_bool("CLI_SHOW_PROGRESS"),
        _parse_env_float("CLI_PROGRESS_IDLE_SECONDS"),
        os.getenv("CLI_PROGRESS_STYLE"),
        _parse_env_float("CLI_PROGRESS_INTERVAL_SECONDS"),
    )
    explicit = (show_progress, idle_seconds, style, interval)

    resolved = []
    for arg, env_val, default in zip(explicit, env_values, defaults):
        if arg is not None:
            resolved.append(arg)
        elif env_val is not None:
            resolved.append(env_val)
        else:
            resolved.append(default)

    return _ProgressSettings(
        show=bool(resolved[0]),
        idle_seconds=float(resolved[1]),
        style=str(resolved[2]),
        interval=float(resolved[3]),
    )


def _format_elapsed(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:0.1f}s"
    minutes = int(seconds // 60)
    sec = int(seconds % 60)
    return f"{minutes}m{sec:02d}s"


def _default_progress_message(cmd: Sequence[str]) -> str:
    return shorten(" ".join(cmd), width=72, placeholder="…")


class _IdleProgressIndicator:
    """
    명령이 일정 시간 아무것도 출력하지 않을 때만 stderr 에 스피너를 그린다.

    docker push / kubectl 처럼 중간에 조용한 구간이 긴 명령에서
    멈춘 것처럼 보이지 않게 하기 위함.
    """

    def __init__(self, message: str, settings: _ProgressSettings, *, stream=None) -> None:  # noqa: ANN001
        self._message = message
        self._stream = stream if stream is not None else sys.stderr
        self._frames = _ASCII_FRAMES if settings.style.strip().lower() == "ascii" else _BRAILLE_FRAMES
        self._interval = max(settings.interval, 0.02)
        self._idle_seconds = max(settings.idle_seconds, 0.0)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._render_lock = threading.Lock()
        self._last_len = 0
        self._shown = False

    def _render(self, frame_idx: int, elapsed_seconds: float) -> None:
        frame = self._frames[frame_idx % len(self._frames)]
        text = f"{frame} {self._message}  {_format_elapsed(elapsed_seconds)}"
        with self._render_lock:
            self._last_len = max(self._last_len, len(text))
            self._stream.write("\r" + text)
            self._stream.flush()
            self._shown = True

    def clear(self) -> None:
        with self._render_lock:
            if not self._shown or self._last_len <= 0:
                return
            self._stream.write("\r" + (" " * self._last_len) + "\r")
            self._stream.flush()
            self._shown = False

    def start(self, *, start_time: float, last_activity: Callable[[], float]) -> None:
        if self._thread is not None:
            return

        def _loop() -> None:
            idx = 0
            while not self._stop.is_set():
                now = time.monotonic()
                idle = now - last_activity()
                if idle < self._idle_seconds:
                    self.clear()
                    time.sleep(min(self._interval, max(self._idle_seconds - idle, 0.02)))
                    continue
                self._render(idx, now - start_time)
                idx += 1
                time.sleep(self._interval)

        self._thread = threading.Thread(target=_loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        self.clear()


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str


def _not_found_error(cmd: Sequence[str]) -> CommandError:
    return CommandError(
        f"필요한 명령을 찾을 수 없습니다: {cmd[0]} (docker/aws/kubectl 이 설치되어 있는지 확인하세요)",
        cmd=cmd,
    )


def _timeout_error(cmd: Sequence[str], timeout: float | None, output: str = "") -> CommandError:
    return CommandError(
        f"명령 실행이 {timeout}초 안에 끝나지 않았습니다: {' '.join(cmd)}",
        cmd=cmd,
        output=output,
        timed_out=True,
    )


def _failure_error(cmd: Sequence[str], returncode: int, stdout: str, stderr: str) -> CommandError:
    stdout = (stdout or "").strip()
    stderr = (stderr or "").strip()
    detail = ""
    if stderr:
        detail = "\nstderr:\n" + shorten(stderr, width=_OUTPUT_EXCERPT_WIDTH)
    elif stdout:
        detail = "\nstdout:\n" + shorten(stdout, width=_OUTPUT_EXCERPT_WIDTH)
    return CommandError(
        f"명령 실행 실패: {' '.join(cmd)} (exit={returncode}){detail}",
        cmd=cmd,
        returncode=returncode,
        output="\n".join(s for s in (stderr, stdout) if s),
    )


def run_command(
    cmd: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = 900.0,
    stream_output: bool = False,
    input_text: str | None = None,
    spinner_message: str | None = None,
    show_progress: bool | None = None,
    progress_idle_seconds: float | None = None,
    progress_style: str | None = None,
    progress_interval: float | None = None,
) -> RunResult:
    """
    subprocess 실행 공통 유틸.

    - stream_output=False: stdout/stderr 캡처, 실패 시 요약을 CommandError 에 포함
    - stream_output=True : stdout/stderr 를 합쳐 실시간으로 터미널에 흘린다
    - input_text: stdin 으로 전달할 문자열. 로그에는 남기지 않는다(비밀번호 등).
    """
    logger.info("명령 실행: %s", " ".join(cmd))

    settings = _resolve_progress_settings(
        show_progress, progress_idle_seconds, progress_style, progress_interval
    )
    message = spinner_message or _default_progress_message(cmd)
    indicator: _IdleProgressIndicator | None = None
    if settings.show and _is_tty(sys.stderr):
        indicator = _IdleProgressIndicator(message, settings, stream=sys.stderr)

    run = _run_streaming if stream_output else _run_captured
    return run(cmd, cwd=cwd, env=env, timeout=timeout, input_text=input_text, indicator=indicator)


def _run_streaming(
    cmd: Sequence[str],
    *,
    cwd: str | None,
    env: Mapping[str, str] | None,
    timeout: float | None,
    input_text: str | None,
    indicator: _IdleProgressIndicator | None,
) -> RunResult:
    # docker/aws 는 진행 로그를 stderr 로도 내보내므로 STDOUT 으로 합친다.
    try:
        proc = subprocess.Popen(  # noqa: S603
            list(cmd),
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=subprocess.PIPE if input_text is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
    except FileNotFoundError as e:
        raise _not_found_error(cmd) from e

    if input_text is not None:
        assert proc.stdin is not None
        proc.stdin.write(input_text)
        proc.stdin.close()

    out_lines: list[str] = []
    started = time.monotonic()
    deadline = None if timeout is None else started + float(timeout)

    activity_lock = threading.Lock()
    last_activity = started

    def _get_last_activity() -> float:
        with activity_lock:
            return last_activity

    def _touch_activity() -> None:
        nonlocal last_activity
        with activity_lock:
            last_activity = time.monotonic()

    if indicator is not None:
        indicator.start(start_time=started, last_activity=_get_last_activity)

    lines: queue.Queue[str | None] = queue.Queue()

    def _reader() -> None:
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                lines.put(line)
        finally:
            lines.put(None)

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    try:
        while True:
            now = time.monotonic()
            if deadline is not None and now >= deadline:
                proc.kill()
                raise _timeout_error(cmd, timeout, "".join(out_lines))

            remaining = None if deadline is None else max(deadline - now, 0.0)
            get_timeout = 0.1 if remaining is None else min(0.1, remaining)

            try:
                item = lines.get(timeout=get_timeout)
            except queue.Empty:
                if proc.poll() is not None:
                    # reader 종료까지 잠깐 더 기다림
                    try:
                        item = lines.get(timeout=0.2)
                    except queue.Empty:
                        break
                else:
                    continue

            if item is None:
                break

            if indicator is not None:
                indicator.clear()
            out_lines.append(item)
            sys.stdout.write(item)
            sys.stdout.flush()
            _touch_activity()

        reader_thread.join(timeout=1.0)

        wait_timeout = None
        if deadline is not None:
            wait_timeout = max(deadline - time.monotonic(), 0.0)
        returncode = proc.wait(timeout=wait_timeout)
    except subprocess.TimeoutExpired as e:
        proc.kill()
        raise _timeout_error(cmd, timeout, "".join(out_lines)) from e
    finally:
        if proc.stdout is not None:
            proc.stdout.close()
        if indicator is not None:
            indicator.stop()

    combined = "".join(out_lines)
    if returncode != 0:
        raise _failure_error(cmd, returncode, combined, "")

    return RunResult(returncode=returncode, stdout=combined, stderr="")


def _run_captured(
    cmd: Sequence[str],
    *,
    cwd: str | None,
    env: Mapping[str, str] | None,
    timeout: float | None,
    input_text: str | None,
    indicator: _IdleProgressIndicator | None,
) -> RunResult:
    # capture 모드는 출력이 끝까지 보이지 않으므로 시작 시각을 마지막 활동으로 본다.
    started = time.monotonic()
    if indicator is not None:
        indicator.start(start_time=started, last_activity=lambda: started)

    try:
        result = subprocess.run(  # noqa: S603
            list(cmd),
            check=True,
            capture_output=True,
            text=True,
            input=input_text,
            timeout=timeout,
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as e:
        raise _not_found_error(cmd) from e
    except subprocess.TimeoutExpired as e:
        partial = e.stdout if isinstance(e.stdout, str) else ""
        raise _timeout_error(cmd, timeout, partial) from e
    except subprocess.CalledProcessError as e:
        raise _failure_error(cmd, e.returncode, e.stdout, e.stderr) from e
    finally:
        if indicator is not None:
            indicator.stop()

    if result.stdout:
        logger.debug("명령 stdout: %s", shorten(result.stdout.strip(), width=_OUTPUT_EXCERPT_WIDTH))
    if result.stderr:
        logger.debug("명령 stderr: %s", shorten(result.stderr.strip(), width=_OUTPUT_EXCERPT_WIDTH))
    return RunResult(returncode=result.returncode, stdout=result.stdout or "", stderr=result.stderr or "")
