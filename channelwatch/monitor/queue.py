"""다운로드 대기열 - 동시 실행 수 제한, 상태 전이, 재시도 처리"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Coroutine
from typing import Any, Protocol

from channelwatch.database.store import Store
from channelwatch.delivery.events import (
    DOWNLOAD_COMPLETE,
    DOWNLOAD_FAILED,
    DOWNLOAD_PROGRESS,
    DOWNLOAD_RETRY,
    EventEmitter,
)
from channelwatch.delivery.telegram import TelegramNotifier
from channelwatch.downloader.ytdlp import ProgressCallback
from channelwatch.errors import TaskExecutionError
from channelwatch.logger import get_logger
from channelwatch.models import MAX_RETRIES, Item, Task, TaskState

logger = get_logger("queue")

MAX_ERROR_LENGTH = 500


class Downloader(Protocol):
    async def download(
        self, item: Item, quality: str, on_progress: ProgressCallback | None = None
    ) -> Any: ...


class ProgressThrottle:
    """진행률이 5%p 이상 증가했거나 100%일 때만 이벤트를 내보냅니다."""

    def __init__(self, step: float = 5.0) -> None:
        self.step = step
        self.last = 0.0

    def should_emit(self, progress: float) -> bool:
        # 영상/음성 스트림이 따로 받아지면 진행률이 0부터 다시 시작
        if progress < self.last:
            self.last = 0.0
        if progress - self.last >= self.step or (progress >= 100 and self.last < 100):
            self.last = progress
            return True
        return False


class DownloadQueue:
    """다운로드 작업 대기열

    상태 전이:
        pending -(선점)-> active -(성공)-> completed
        active -(실패, 재시도 < MAX)-> pending
        active -(실패, 재시도 == MAX)-> failed

    디스패치 루프 하나만 작업을 선점하므로 동시 실행 수는 max_concurrent를
    넘지 않습니다. 빈 대기열/용량 초과 시에는 일정 시간 대기하며,
    작업 추가나 실행 종료 시 즉시 깨어납니다.
    """

    def __init__(
        self,
        store: Store,
        downloader: Downloader,
        max_concurrent: int = 3,
        notifier: TelegramNotifier | None = None,
        events: EventEmitter | None = None,
        busy_delay: float = 5.0,
        idle_delay: float = 10.0,
        stop_poll_interval: float = 1.0,
    ) -> None:
        self.store = store
        self.downloader = downloader
        self.max_concurrent = max(1, max_concurrent)
        self.notifier = notifier
        self.events = events
        self.busy_delay = busy_delay
        self.idle_delay = idle_delay
        self.stop_poll_interval = stop_poll_interval

        self.is_running = False
        self._active: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._wakeup = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def enqueue(self, item_id: str, quality: str) -> str:
        """항목을 대기열에 추가하고 작업 ID를 반환합니다."""
        task_id = await self.store.create_task(item_id, quality)
        logger.info("다운로드 대기열 추가: %s [%s] (작업 ID: %s)", item_id, quality, task_id)

        if self.is_running and self.active_count < self.max_concurrent:
            self._wakeup.set()

        return task_id

    async def start(self) -> None:
        if self.is_running:
            logger.warning("다운로드 대기열이 이미 실행 중입니다.")
            return

        logger.info("다운로드 대기열 시작 (최대 동시 실행: %d)", self.max_concurrent)
        self.is_running = True
        self._loop_task = asyncio.create_task(self._dispatch_loop(), name="download-dispatch")

    async def stop(self) -> None:
        """새 작업 선점을 멈추고 실행 중인 다운로드가 모두 끝날 때까지 기다립니다."""
        logger.info("다운로드 대기열 중지 중...")
        self.is_running = False
        self._wakeup.set()

        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        if self._active:
            logger.info("실행 중인 다운로드 %d개 완료 대기...", self.active_count)
        while self._active:
            await asyncio.sleep(self.stop_poll_interval)

        if self._background:
            await asyncio.wait(set(self._background), timeout=5)

        logger.info("다운로드 대기열 중지 완료")

    async def abort(self) -> None:
        """실행 중인 다운로드를 강제로 취소합니다 (종료 시간 초과 시).

        취소된 작업은 저장소에 active로 남으며 다음 시작 시 pending으로 복구됩니다.
        """
        self.is_running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        runners = list(self._active.values())
        if not runners:
            return
        logger.warning("다운로드 %d개를 강제 종료합니다.", len(runners))
        for runner in runners:
            runner.cancel()
        await asyncio.gather(*runners, return_exceptions=True)

    # ──────────────────────────────────────────────
    # 디스패치
    # ──────────────────────────────────────────────
    async def _dispatch_loop(self) -> None:
        while self.is_running:
            try:
                delay = await self._dispatch_once()
            except Exception:
                logger.exception("대기열 처리 오류")
                delay = self.idle_delay

            if delay and self.is_running:
                await self._wait(delay)

    async def _dispatch_once(self) -> float:
        """작업 하나를 선점해 실행합니다. 다음 확인까지 대기할 시간을 반환합니다."""
        if self.active_count >= self.max_concurrent:
            return self.busy_delay

        pending = await self.store.list_pending_tasks(limit=1)
        if not pending:
            return self.idle_delay

        task = await self.store.claim_task(pending[0].id)
        if task is None:
            return 0

        runner = asyncio.create_task(self._execute(task), name=f"download-{task.id}")
        self._active[task.id] = runner
        runner.add_done_callback(lambda _: self._on_execution_done(task.id))
        return 0

    async def _wait(self, delay: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
        self._wakeup.clear()

    def _on_execution_done(self, task_id: str) -> None:
        self._active.pop(task_id, None)
        self._wakeup.set()

    # ──────────────────────────────────────────────
    # 실행
    # ──────────────────────────────────────────────
    async def _execute(self, task: Task) -> None:
        try:
            await self._run_task(task)
        except Exception:
            logger.exception("다운로드 처리 중 예외 (작업 ID: %s)", task.id)

    async def _run_task(self, task: Task) -> None:
        item = await self.store.get_item(task.item_id)
        if item is None:
            logger.error("항목 정보가 존재하지 않습니다: %s", task.item_id)
            await self.store.update_task_state(
                task.id, TaskState.FAILED, error_message="항목 정보가 존재하지 않습니다."
            )
            return

        logger.info("다운로드 시작: %s [%s]", item.title, task.quality)
        throttle = ProgressThrottle()

        def on_progress(progress: float, speed: str) -> None:
            if throttle.should_emit(progress):
                self._emit(
                    DOWNLOAD_PROGRESS,
                    {
                        "task_id": task.id,
                        "item_id": item.id,
                        "title": item.title,
                        "progress": progress,
                        "speed": speed,
                        "state": TaskState.ACTIVE.value,
                    },
                )

        try:
            result = await self.downloader.download(item, task.quality, on_progress)
        except TaskExecutionError as e:
            await self._handle_failure(task, item, str(e))
            return
        except Exception as e:
            logger.exception("다운로드 예외 [%s]", item.id)
            await self._handle_failure(task, item, str(e) or type(e).__name__)
            return

        file_path = str(result)
        await self.store.update_task_state(task.id, TaskState.COMPLETED, file_path=file_path)
        logger.info("다운로드 완료: %s", item.title)

        self._emit(
            DOWNLOAD_COMPLETE,
            {
                "task_id": task.id,
                "item_id": item.id,
                "title": item.title,
                "file_path": file_path,
                "state": TaskState.COMPLETED.value,
            },
        )

        if self.notifier is not None:
            self._spawn_background(self._notify_complete(item, file_path))

    async def _handle_failure(self, task: Task, item: Item, error_message: str) -> None:
        """재시도 한도 안이면 pending으로 되돌리고, 아니면 최종 실패 처리합니다."""
        current = await self.store.get_task(task.id)
        retry_count = current.retry_count if current else task.retry_count

        if retry_count < MAX_RETRIES and await self.store.retry_task(task.id):
            logger.warning(
                "다운로드 실패, 재시도 예정 (%d/%d): %s - %s",
                retry_count + 1,
                MAX_RETRIES,
                item.id,
                error_message,
            )
            self._emit(
                DOWNLOAD_RETRY,
                {"task_id": task.id, "item_id": item.id, "retry_count": retry_count + 1},
            )
            self._wakeup.set()
            return

        logger.error("다운로드 최종 실패 (재시도 %d회): %s - %s", retry_count, item.id, error_message)
        truncated = error_message[:MAX_ERROR_LENGTH]
        await self.store.update_task_state(task.id, TaskState.FAILED, error_message=truncated)

        self._emit(
            DOWNLOAD_FAILED,
            {"task_id": task.id, "item_id": item.id, "error_message": truncated},
        )

        if self.notifier is not None:
            self._spawn_background(self._notify_failure(item, truncated))

    # ──────────────────────────────────────────────
    # 알림 (비동기, 실패해도 작업 상태에 영향 없음)
    # ──────────────────────────────────────────────
    def _spawn_background(self, coro: Coroutine[Any, Any, Any]) -> None:
        background = asyncio.create_task(coro)
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    async def _notify_complete(self, item: Item, file_path: str) -> None:
        assert self.notifier is not None
        try:
            source = await self.store.get_source(item.source_id)
            await self.notifier.notify_complete(item, source, file_path)
        except Exception as e:
            logger.error("완료 알림 전송 예외: %s", e)

    async def _notify_failure(self, item: Item, error_message: str) -> None:
        assert self.notifier is not None
        try:
            source = await self.store.get_source(item.source_id)
            await self.notifier.notify_failure(item, source, error_message)
        except Exception as e:
            logger.error("실패 알림 전송 예외: %s", e)

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        if self.events is not None:
            self.events.emit(event, payload)

    async def get_status(self) -> dict[str, Any]:
        """대기열 상태를 반환합니다."""
        stats = await self.store.task_stats()
        return {
            "running": self.is_running,
            "active_count": self.active_count,
            "pending": stats[TaskState.PENDING.value],
            "completed": stats[TaskState.COMPLETED.value],
            "failed": stats[TaskState.FAILED.value],
            "max_concurrent": self.max_concurrent,
        }
