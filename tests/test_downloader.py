"""yt-dlp 다운로더 테스트 - 가짜 실행 파일(셸 스크립트) 사용"""

import stat
import sys

import pytest

from channelwatch.downloader.ytdlp import (
    MAX_FILE_NAME_LENGTH,
    QUALITY_FORMATS,
    YtDlpDownloader,
    parse_progress_line,
    run_ytdlp,
    sanitize_file_name,
)
from channelwatch.errors import TaskExecutionError
from channelwatch.models import Item

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX 셸 필요")


def make_script(tmp_path, body):
    """가짜 yt-dlp 실행 파일 생성"""
    script = tmp_path / "fake-ytdlp"
    script.write_text("#!/bin/sh\n" + body + "\n")
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


def make_item(title="테스트 영상"):
    return Item(id="vid1", source_id="ch_1", title=title, uri="https://www.youtube.com/watch?v=vid1")


class TestParseProgressLine:
    """진행률 파싱 테스트"""

    def test_progress_with_speed(self):
        line = "[download]  45.8% of 125.50MiB at 5.20MiB/s ETA 00:20"
        assert parse_progress_line(line) == (45.8, "5.20MiB/s")

    def test_progress_without_speed(self):
        assert parse_progress_line("[download] 100% of 10.00MiB") == (100.0, "")

    def test_non_progress_line(self):
        assert parse_progress_line("[youtube] vid1: Downloading webpage") is None
        assert parse_progress_line("[download] Destination: a.mp4") is None


class TestSanitizeFileName:
    """파일 이름 정리 테스트"""

    def test_invalid_characters_replaced(self):
        assert sanitize_file_name('a<b>c:d"e/f\\g|h?i*j') == "a_b_c_d_e_f_g_h_i_j"

    def test_whitespace_collapsed(self):
        assert sanitize_file_name("  hello \t  world \n ") == "hello world"

    def test_length_capped(self):
        assert len(sanitize_file_name("가" * 500)) == MAX_FILE_NAME_LENGTH

    def test_empty_title(self):
        assert sanitize_file_name("   ") == "untitled"

    def test_deterministic(self):
        """같은 제목은 항상 같은 파일 이름"""
        title = "Episode #1: 시작 | Part 2?"
        assert sanitize_file_name(title) == sanitize_file_name(title)


class TestYtDlpDownloader:
    """YtDlpDownloader 테스트"""

    def test_output_path(self, tmp_path):
        downloader = YtDlpDownloader(output_dir=str(tmp_path))
        assert downloader.output_path_for("a/b: c") == tmp_path / "a_b_ c.mp4"

    def test_build_args(self, tmp_path):
        downloader = YtDlpDownloader(output_dir=str(tmp_path))
        output_path = downloader.output_path_for("영상")
        args = downloader.build_args("https://x/v", "1080p", output_path)

        assert args[args.index("-f") + 1] == QUALITY_FORMATS["1080p"]
        assert args[args.index("-o") + 1] == str(tmp_path / "영상") + ".%(ext)s"
        assert "--newline" in args
        assert args[-1] == "https://x/v"

    def test_unknown_quality_falls_back(self, tmp_path):
        downloader = YtDlpDownloader(output_dir=str(tmp_path))
        args = downloader.build_args("https://x/v", "4k", tmp_path / "a.mp4")
        assert args[args.index("-f") + 1] == QUALITY_FORMATS["720p"]

    @pytest.mark.asyncio
    async def test_download_success(self, tmp_path):
        """진행률 콜백 호출 및 결과 경로 반환"""
        binary = make_script(
            tmp_path,
            'echo "[download]  10.0% of 1.00MiB at 1.00MiB/s ETA 00:01"\n'
            'echo "[download] 100% of 1.00MiB at 2.00MiB/s"\n'
            "exit 0",
        )
        downloader = YtDlpDownloader(output_dir=str(tmp_path / "out"), binary=binary)
        progress = []

        result = await downloader.download(
            make_item(), "720p", lambda p, s: progress.append((p, s))
        )

        assert result == tmp_path / "out" / "테스트 영상.mp4"
        assert progress == [(10.0, "1.00MiB/s"), (100.0, "2.00MiB/s")]

    @pytest.mark.asyncio
    async def test_download_nonzero_exit(self, tmp_path):
        binary = make_script(tmp_path, 'echo "ERROR: video unavailable" >&2\nexit 1')
        downloader = YtDlpDownloader(output_dir=str(tmp_path), binary=binary)

        with pytest.raises(TaskExecutionError) as exc_info:
            await downloader.download(make_item(), "720p")

        assert exc_info.value.exit_code == 1
        assert "video unavailable" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_download_timeout(self, tmp_path):
        binary = make_script(tmp_path, "exec sleep 5")
        downloader = YtDlpDownloader(output_dir=str(tmp_path), binary=binary, timeout_seconds=0.2)

        with pytest.raises(TaskExecutionError) as exc_info:
            await downloader.download(make_item(), "720p")
        assert "시간 초과" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_download_missing_binary(self, tmp_path):
        downloader = YtDlpDownloader(
            output_dir=str(tmp_path), binary=str(tmp_path / "missing")
        )
        with pytest.raises(TaskExecutionError):
            await downloader.download(make_item(), "720p")


class TestRunYtdlp:
    """run_ytdlp 테스트"""

    @pytest.mark.asyncio
    async def test_captures_output(self, tmp_path):
        binary = make_script(tmp_path, 'echo "$1"\necho err >&2\nexit 3')
        code, stdout, stderr = await run_ytdlp(binary, ["hello"], 5)
        assert code == 3
        assert stdout.strip() == "hello"
        assert stderr.strip() == "err"
