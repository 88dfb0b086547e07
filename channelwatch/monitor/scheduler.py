"""모니터링 스케줄러 - 활성 소스를 주기적으로 검사해 새 항목을 대기열에 추가"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from channelwatch.database.store import Store
from channelwatch.delivery.events import (
    MONITORING_CHECK_COMPLETE,
    MONITORING_NEW_ITEM,
    EventEmitter,
)
from channelwatch.logger import get_logger
from channelwatch.models import CheckSummary, DiscoveredItem, Source, now_iso
from channelwatch.monitor.queue import DownloadQueue

logger = get_logger("scheduler")

DETAILS_CONCURRENCY = 3


class Collector(Protocol):
    async def fetch_latest_items(self, source: Source, limit: int) -> list[DiscoveredItem]: ...

    async def fetch_item_details(self, item_id: str, uri: str) -> dict[str, Any]: ...


class MonitoringScheduler:
    """모니터링 스케줄러

    주기 트리거는 검사를 별도 태스크로 시작만 하므로, stop()은 트리거만
    취소하고 진행 중인 검사는 끝까지 수행됩니다. 검사가 겹치지 않도록
    진행 중 플래그로 재진입을 막습니다.
    """

    def __init__(
        self,
        store: Store,
        queue: DownloadQueue,
        collector: Collector,
        interval_minutes: int = 5,
        latest_items_count: int = 3,
        default_quality: str = "720p",
        source_delay_seconds: float = 5.0,
        startup_delay_seconds: float = 5.0,
        fetch_details: bool = False,
        events: EventEmitter | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.collector = collector
        self.interval_minutes = max(1, interval_minutes)
        self.latest_items_count = latest_items_count
        self.default_quality = default_quality
        self.source_delay_seconds = source_delay_seconds
        self.startup_delay_seconds = startup_delay_seconds
        self.fetch_details = fetch_details
        self.events = events

        self.last_summary: CheckSummary | None = None
        self._is_checking = False
        self._trigger_task: asyncio.Task[None] | None = None
        self._check_task: asyncio.Task[CheckSummary | None] | None = None

    @property
    def is_running(self) -> bool:
        return self._trigger_task is not None

    @property
    def is_checking(self) -> bool:
        return self._is_checking

    def start(self) -> None:
        """주기 트리거를 설치하고, 시작 직후 한 번 검사합니다."""
        if self._trigger_task is not None:
            logger.warning("스케줄러가 이미 실행 중입니다.")
            return

        logger.info("모니터링 스케줄러 시작 (간격: %d분)", self.interval_minutes)
        self._trigger_task = asyncio.create_task(self._trigger_loop(), name="monitoring-trigger")

    async def stop(self) -> None:
        """주기 트리거를 취소합니다. 진행 중인 검사는 중단하지 않습니다."""
        if self._trigger_task is None:
            return

        self._trigger_task.cancel()
        try:
            await self._trigger_task
        except asyncio.CancelledError:
            pass
        self._trigger_task = None
        logger.info("모니터링 스케줄러 중지")

    async def wait_idle(self) -> None:
        """진행 중인 검사가 있으면 끝날 때까지 기다립니다."""
        if self._check_task is not None and not self._check_task.done():
            await asyncio.shield(self._check_task)

    async def _trigger_loop(self) -> None:
        await asyncio.sleep(self.startup_delay_seconds)
        while True:
            self._fire()
            await asyncio.sleep(self.interval_minutes * 60)

    def _fire(self) -> None:
        if self._is_checking:
            logger.info("검사가 이미 진행 중이어서 이번 트리거를 건너뜁니다.")
            return
        self._check_task = asyncio.create_task(self.check_all_now(), name="monitoring-check")

    async def check_all_now(self) -> CheckSummary | None:
        """모든 활성 소스를 즉시 검사합니다.

        이미 검사 중이면 아무것도 하지 않고 None을 반환합니다.
        """
        if self._is_checking:
            logger.info("검사가 이미 진행 중이어서 요청을 건너뜁니다.")
            return None

        self._is_checking = True
        try:
            return await self._check_all()
        finally:
            self._is_checking = False

    async def _check_all(self) -> CheckSummary:
        sources = await self.store.list_sources(enabled_only=True)
        summary = CheckSummary(sources_checked=len(sources))

        if not sources:
            logger.info("활성화된 모니터링 소스가 없습니다.")
        else:
            logger.info("═══ %d개 소스 검사 시작 ═══", len(sources))

        # 업스트림 rate limit을 고려해 소스를 순차적으로 검사
        for index, source in enumerate(sources):
            try:
                summary.new_items += await self.check_source(source)
            except Exception as e:
                summary.errors += 1
                logger.error("소스 검사 실패 [%s]: %s", source.label, e)

            if index < len(sources) - 1 and self.source_delay_seconds > 0:
                await asyncio.sleep(self.source_delay_seconds)

        summary.completed_at = now_iso()
        self.last_summary = summary
        logger.info(
            "검사 완료: 새 항목 %d개, 오류 %d개", summary.new_items, summary.errors
        )
        self._emit(MONITORING_CHECK_COMPLETE, summary.to_dict())
        return summary

    async def check_source(self, source: Source) -> int:
        """소스 하나를 검사하고 새로 발견한 항목 수를 반환합니다."""
        logger.info("소스 검사: %s", source.label)

        discovered = await self.collector.fetch_latest_items(
            source, self.latest_items_count
        )

        new_items: list[DiscoveredItem] = []
        for item in discovered:
            if await self.store.item_exists(item.id):
                continue
            # 같은 목록에 중복 ID가 있어도 add_item이 한 번만 True를 반환
            if not await self.store.add_item(source.id, item):
                continue

            task_id = await self.queue.enqueue(item.id, self.default_quality)
            new_items.append(item)
            logger.info("대기열 추가: %s [%s]", item.title, item.id)
            self._emit(
                MONITORING_NEW_ITEM,
                {
                    "source_id": source.id,
                    "source_name": source.display_name,
                    "item": {
                        "id": item.id,
                        "title": item.title,
                        "uri": item.uri,
                        "thumbnail_uri": item.thumbnail_uri,
                    },
                    "task_id": task_id,
                },
            )

        if new_items:
            logger.info("새 항목 %d개 발견: %s", len(new_items), source.label)
            if self.fetch_details:
                await self._enrich_items(new_items)
        else:
            logger.info("새 항목 없음: %s", source.label)

        await self.store.touch_source_checked_at(source.id)
        return len(new_items)

    async def _enrich_items(self, items: list[DiscoveredItem]) -> None:
        """새 항목의 상세 정보(길이, 게시일)를 제한된 동시성으로 채웁니다."""
        semaphore = asyncio.Semaphore(DETAILS_CONCURRENCY)

        async def enrich(item: DiscoveredItem) -> bool:
            async with semaphore:
                try:
                    details = await self.collector.fetch_item_details(item.id, item.uri)
                except Exception as e:
                    logger.warning("상세 정보 조회 실패 [%s]: %s", item.id, e)
                    return False
                return await self.store.update_item_details(
                    item.id,
                    duration_seconds=details.get("duration_seconds"),
                    published_at=details.get("published_at"),
                )

        results = await asyncio.gather(*(enrich(item) for item in items))
        logger.info("상세 정보 조회: %d/%d 성공", sum(results), len(items))

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        if self.events is not None:
            self.events.emit(event, payload)

    def get_status(self) -> dict[str, Any]:
        """스케줄러 상태를 반환합니다."""
        return {
            "running": self.is_running,
            "checking": self._is_checking,
            "interval_minutes": self.interval_minutes,
            "latest_items_count": self.latest_items_count,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }
