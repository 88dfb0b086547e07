"""프로세스 내부 이벤트 발행 - 상태 화면(웹/소켓 등)이 구독하는 진행 이벤트"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from channelwatch.logger import get_logger

logger = get_logger("events")

Listener = Callable[[str, dict[str, Any]], None]

# 발행되는 이벤트 이름
DOWNLOAD_PROGRESS = "download:progress"
DOWNLOAD_COMPLETE = "download:complete"
DOWNLOAD_RETRY = "download:retry"
DOWNLOAD_FAILED = "download:failed"
MONITORING_NEW_ITEM = "monitoring:new-item"
MONITORING_CHECK_COMPLETE = "monitoring:check-complete"


class EventEmitter:
    """구독자에게 이벤트를 동기적으로 전달합니다.

    구독자의 오류는 기록만 하고 발행 측으로 전파하지 않습니다.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """구독자를 등록하고 해제 함수를 반환합니다."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        logger.debug("이벤트 발행: %s %s", event, payload)
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("이벤트 구독자 처리 실패: %s", event)
