"""예외 계층 정의"""

from __future__ import annotations


class ChannelWatchError(Exception):
    """ChannelWatch 공통 기본 예외"""


class SourceFetchError(ChannelWatchError):
    """소스 목록 조회 실패 (네트워크/도구 오류). 해당 소스만 건너뜁니다."""

    def __init__(self, source_uri: str, reason: str) -> None:
        super().__init__(f"소스 조회 실패: {source_uri} ({reason})")
        self.source_uri = source_uri
        self.reason = reason


class TaskExecutionError(ChannelWatchError):
    """다운로드 프로세스 실패 또는 타임아웃. 재시도 정책을 구동합니다."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class StoreCorruptionError(ChannelWatchError):
    """저장 파일을 파싱할 수 없음. 파일을 격리하고 빈 상태로 시작합니다."""


class ConfigError(ChannelWatchError):
    """필수 외부 도구 누락 등 기능을 비활성화해야 하는 설정 오류"""
