"""파일 정리 서비스 - 보관 기간이 지난 다운로드 파일 삭제 (중복 체크 기록은 유지)"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from channelwatch.database.store import Store
from channelwatch.logger import get_logger
from channelwatch.models import Task, TaskState

logger = get_logger("cleanup")

THUMBNAIL_SUFFIXES = (".jpg", ".webp", ".png")


def seconds_until(hour: int, now: datetime | None = None) -> float:
    """다음 hour시 정각까지 남은 초를 반환합니다."""
    now = now or datetime.now()
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class CleanupService:
    """매일 정해진 시각에 오래된 다운로드 파일을 정리합니다."""

    def __init__(
        self,
        store: Store,
        enabled: bool = True,
        retention_days: int = 5,
        run_at_hour: int = 3,
        startup_delay_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.enabled = enabled
        self.retention_days = retention_days
        self.run_at_hour = run_at_hour
        self.startup_delay_seconds = startup_delay_seconds
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if not self.enabled:
            logger.info("파일 정리 서비스가 비활성화되어 있습니다.")
            return
        if self._task is not None:
            logger.warning("파일 정리 서비스가 이미 실행 중입니다.")
            return

        logger.info("파일 정리 서비스 시작 (매일 %02d:00)", self.run_at_hour)
        self._task = asyncio.create_task(self._run_loop(), name="cleanup")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("파일 정리 서비스 중지")

    async def _run_loop(self) -> None:
        await asyncio.sleep(self.startup_delay_seconds)
        await self.cleanup_now()
        while True:
            await asyncio.sleep(seconds_until(self.run_at_hour))
            await self.cleanup_now()

    async def cleanup_now(self) -> dict[str, Any]:
        """보관 기간이 지난 파일을 즉시 삭제하고 결과를 반환합니다."""
        result = {"deleted": 0, "errors": 0, "freed_bytes": 0}
        try:
            stale = await self.store.list_stale_completed_tasks(self.retention_days)
        except Exception:
            logger.exception("정리 대상 조회 실패")
            return result

        if not stale:
            logger.info("정리할 파일이 없습니다.")
            return result

        logger.info("%d일이 지난 파일 %d개 정리 시작", self.retention_days, len(stale))

        for task in stale:
            try:
                deleted, size = await asyncio.to_thread(self._delete_files, task)
            except OSError as e:
                result["errors"] += 1
                logger.error("파일 삭제 실패 [%s]: %s", task.id, e)
                continue

            if deleted:
                result["deleted"] += 1
                result["freed_bytes"] += size
                logger.info("삭제 완료: %s", Path(task.file_path or "").name)
            else:
                result["errors"] += 1

            # 기록은 남기고 파일 경로만 비움
            try:
                await self.store.update_task_state(
                    task.id, TaskState.COMPLETED, file_path=None
                )
            except OSError as e:
                result["errors"] += 1
                logger.error("파일 경로 갱신 실패 [%s]: %s", task.id, e)

        logger.info(
            "정리 완료: %d개 삭제, %d개 실패, %.2f MB 확보",
            result["deleted"],
            result["errors"],
            result["freed_bytes"] / 1024 / 1024,
        )
        return result

    @staticmethod
    def _delete_files(task: Task) -> tuple[bool, int]:
        """영상 파일과 같은 이름의 썸네일을 삭제합니다."""
        if not task.file_path:
            return False, 0

        video_path = Path(task.file_path)
        deleted_video = False
        total_size = 0

        if video_path.exists():
            total_size += video_path.stat().st_size
            video_path.unlink()
            deleted_video = True

        for suffix in THUMBNAIL_SUFFIXES:
            thumbnail = video_path.with_suffix(suffix)
            if thumbnail.exists():
                total_size += thumbnail.stat().st_size
                thumbnail.unlink()

        return deleted_video, total_size

    async def get_stats(self) -> dict[str, Any]:
        """정리 대상 파일 통계를 반환합니다."""
        stale = await self.store.list_stale_completed_tasks(self.retention_days)

        total_size = 0
        file_count = 0
        for task in stale:
            path = Path(task.file_path or "")
            if task.file_path and path.exists():
                total_size += path.stat().st_size
                file_count += 1

        return {
            "enabled": self.enabled,
            "retention_days": self.retention_days,
            "old_file_count": file_count,
            "estimated_size": total_size,
            "estimated_size_mb": round(total_size / 1024 / 1024, 2),
        }
