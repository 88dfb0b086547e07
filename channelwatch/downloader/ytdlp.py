"""yt-dlp 다운로더 - 외부 프로세스로 영상을 내려받고 진행률을 파싱"""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections import deque
from collections.abc import Callable
from pathlib import Path

from channelwatch.errors import TaskExecutionError
from channelwatch.logger import get_logger
from channelwatch.models import Item

logger = get_logger("downloader")

DEFAULT_QUALITY = "720p"

QUALITY_FORMATS = {
    "1080p": "bestvideo[height<=1080]+bestaudio/best",
    "720p": "bestvideo[height<=720]+bestaudio/best",
    "480p": "bestvideo[height<=480]+bestaudio/best",
}

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

MAX_FILE_NAME_LENGTH = 200

# 예: [download]  45.8% of 125.50MiB at 5.20MiB/s ETA 00:20
_PROGRESS_RE = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")
_SPEED_RE = re.compile(r"\bat\s+(\S+)")
_INVALID_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE_RE = re.compile(r"\s+")

ProgressCallback = Callable[[float, str], None]


def parse_progress_line(line: str) -> tuple[float, str] | None:
    """진행률 출력 한 줄에서 (퍼센트, 전송 속도)를 추출합니다."""
    progress_match = _PROGRESS_RE.search(line)
    if not progress_match:
        return None
    speed_match = _SPEED_RE.search(line)
    speed = speed_match.group(1) if speed_match else ""
    return float(progress_match.group(1)), speed


def sanitize_file_name(title: str, max_length: int = MAX_FILE_NAME_LENGTH) -> str:
    """파일 시스템에서 허용되지 않는 문자를 치환하고 길이를 제한합니다."""
    cleaned = _INVALID_CHARS_RE.sub("_", title)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    return cleaned[:max_length] or "untitled"


async def run_ytdlp(
    binary: str, args: list[str], timeout_seconds: float
) -> tuple[int, str, str]:
    """yt-dlp를 실행하고 (종료 코드, stdout, stderr)를 반환합니다.

    시간 초과 시 프로세스를 종료하고 asyncio.TimeoutError를 발생시킵니다.
    """
    proc = await asyncio.create_subprocess_exec(
        binary,
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout_seconds)
    finally:
        await _terminate(proc)

    return (
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """아직 살아 있는 프로세스를 강제 종료합니다."""
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    await proc.wait()


class YtDlpDownloader:
    """yt-dlp 프로세스로 항목을 다운로드합니다.

    출력 파일 이름은 항목 제목으로부터 결정적으로 계산되며,
    yt-dlp에도 같은 이름을 지정하여 기록된 경로와 실제 파일이 일치합니다.
    """

    def __init__(
        self,
        output_dir: str,
        binary: str = "yt-dlp",
        timeout_seconds: int = 3600,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    def output_path_for(self, title: str) -> Path:
        return self.output_dir / f"{sanitize_file_name(title)}.mp4"

    def build_args(self, uri: str, quality: str, output_path: Path) -> list[str]:
        fmt = QUALITY_FORMATS.get(quality, QUALITY_FORMATS[DEFAULT_QUALITY])
        template = str(output_path.with_suffix("")) + ".%(ext)s"
        return [
            "-f", fmt,
            "--merge-output-format", "mp4",
            "-o", template,
            "--newline",
            "--write-thumbnail",
            "--convert-thumbnails", "jpg",
            "--user-agent", USER_AGENT,
            "--no-check-certificate",
            "--add-header", "Accept-Language:en-US,en;q=0.9",
            uri,
        ]

    async def download(
        self,
        item: Item,
        quality: str,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """항목을 다운로드하고 결과 파일 경로를 반환합니다.

        Raises:
            TaskExecutionError: 실행 실패, 0이 아닌 종료 코드, 시간 초과
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.output_path_for(item.title)
        args = self.build_args(item.uri, quality, output_path)

        logger.debug("yt-dlp 실행: %s %s", self.binary, " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TaskExecutionError(f"다운로드 도구 실행 실패: {e}") from e

        stderr_tail: deque[str] = deque(maxlen=20)
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    self._read_progress(proc, on_progress),
                    self._read_stderr(proc, stderr_tail),
                ),
                self.timeout_seconds,
            )
            return_code = await proc.wait()
        except asyncio.TimeoutError as e:
            raise TaskExecutionError(
                f"다운로드 시간 초과 ({self.timeout_seconds}초)"
            ) from e
        finally:
            # 취소/시간 초과 시 자식 프로세스가 남지 않도록 정리
            await _terminate(proc)

        if return_code != 0:
            detail = stderr_tail[-1] if stderr_tail else ""
            raise TaskExecutionError(
                f"yt-dlp 종료 코드: {return_code} {detail}".strip(),
                exit_code=return_code,
            )

        return output_path

    async def _read_progress(
        self,
        proc: asyncio.subprocess.Process,
        on_progress: ProgressCallback | None,
    ) -> None:
        assert proc.stdout is not None
        async for raw in proc.stdout:
            parsed = parse_progress_line(raw.decode("utf-8", errors="replace"))
            if parsed and on_progress is not None:
                on_progress(*parsed)

    async def _read_stderr(
        self, proc: asyncio.subprocess.Process, tail: deque[str]
    ) -> None:
        assert proc.stderr is not None
        async for raw in proc.stderr:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                tail.append(line[:200])
                logger.debug("yt-dlp 경고: %s", line[:200])
