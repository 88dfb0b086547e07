"""MonitoringScheduler 테스트 - 가짜 수집기 사용"""

import asyncio

import pytest

from channelwatch.database.store import Store
from channelwatch.delivery.events import (
    MONITORING_CHECK_COMPLETE,
    MONITORING_NEW_ITEM,
    EventEmitter,
)
from channelwatch.errors import SourceFetchError
from channelwatch.models import DiscoveredItem
from channelwatch.monitor.queue import DownloadQueue
from channelwatch.monitor.scheduler import MonitoringScheduler


def make_item(item_id):
    return DiscoveredItem(
        id=item_id,
        title=f"영상 {item_id}",
        uri=f"https://www.youtube.com/watch?v={item_id}",
    )


class FakeCollector:
    """소스 URI별로 정해진 목록을 반환하는 가짜 수집기"""

    def __init__(self, listings, delay=0.0, details=None):
        self.listings = listings
        self.delay = delay
        self.details = details or {}
        self.calls = []
        self.detail_calls = []

    async def fetch_latest_items(self, source, limit):
        self.calls.append(source.uri)
        await asyncio.sleep(self.delay)
        listing = self.listings.get(source.uri)
        if isinstance(listing, Exception):
            raise listing
        return list(listing or [])[:limit]

    async def fetch_item_details(self, item_id, uri):
        self.detail_calls.append(item_id)
        detail = self.details.get(item_id)
        if isinstance(detail, Exception):
            raise detail
        return detail or {}


class NullDownloader:
    async def download(self, item, quality, on_progress=None):
        raise AssertionError("대기열은 시작하지 않음")


@pytest.fixture
async def store(tmp_path):
    s = Store(tmp_path / "storage.json")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def queue(store):
    return DownloadQueue(store, NullDownloader())


def make_scheduler(store, queue, collector, **kwargs):
    kwargs.setdefault("source_delay_seconds", 0)
    kwargs.setdefault("startup_delay_seconds", 0)
    return MonitoringScheduler(store, queue, collector, **kwargs)


class TestMonitoringScheduler:
    """MonitoringScheduler 테스트"""

    @pytest.mark.asyncio
    async def test_new_items_enqueued(self, store, queue):
        """새 항목은 저장되고 대기열에 추가"""
        source_id = await store.add_source("https://www.youtube.com/@a", "채널 A")
        events = EventEmitter()
        received = []
        events.subscribe(lambda name, payload: received.append((name, payload)))
        collector = FakeCollector({"https://www.youtube.com/@a": [make_item("v1"), make_item("v2")]})
        scheduler = make_scheduler(store, queue, collector, events=events, default_quality="1080p")

        summary = await scheduler.check_all_now()

        assert summary.sources_checked == 1
        assert summary.new_items == 2
        assert summary.errors == 0
        assert summary.completed_at is not None

        tasks = await store.list_pending_tasks()
        assert [t.item_id for t in tasks] == ["v1", "v2"]
        assert all(t.quality == "1080p" for t in tasks)
        assert (await store.get_item("v1")).source_id == source_id

        names = [name for name, _ in received]
        assert names == [MONITORING_NEW_ITEM, MONITORING_NEW_ITEM, MONITORING_CHECK_COMPLETE]
        assert received[0][1]["source_name"] == "채널 A"
        assert received[0][1]["item"]["id"] == "v1"
        assert (await store.get_source(source_id)).last_checked_at is not None

    @pytest.mark.asyncio
    async def test_no_duplicates_across_checks(self, store, queue):
        """이미 본 항목은 다시 대기열에 넣지 않음"""
        await store.add_source("https://www.youtube.com/@a")
        listing = {"https://www.youtube.com/@a": [make_item("v1")]}
        scheduler = make_scheduler(store, queue, FakeCollector(listing))

        first = await scheduler.check_all_now()
        second = await scheduler.check_all_now()

        assert first.new_items == 1
        assert second.new_items == 0
        assert len(await store.list_tasks()) == 1

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_listing(self, store, queue):
        """같은 목록 안의 중복 ID는 한 번만 처리"""
        await store.add_source("https://www.youtube.com/@a")
        listing = {"https://www.youtube.com/@a": [make_item("v1"), make_item("v1")]}
        scheduler = make_scheduler(store, queue, FakeCollector(listing))

        summary = await scheduler.check_all_now()
        assert summary.new_items == 1
        assert len(await store.list_tasks()) == 1

    @pytest.mark.asyncio
    async def test_source_failure_isolated(self, store, queue):
        """한 소스의 실패가 다른 소스 검사에 영향 없음"""
        a = await store.add_source("https://www.youtube.com/@a")
        b = await store.add_source("https://www.youtube.com/@b")
        collector = FakeCollector(
            {
                "https://www.youtube.com/@a": SourceFetchError("https://www.youtube.com/@a", "timeout"),
                "https://www.youtube.com/@b": [make_item("v1")],
            }
        )
        scheduler = make_scheduler(store, queue, collector)

        summary = await scheduler.check_all_now()

        assert summary.sources_checked == 2
        assert summary.errors == 1
        assert summary.new_items == 1
        assert collector.calls == ["https://www.youtube.com/@a", "https://www.youtube.com/@b"]
        # 실패한 소스는 마지막 검사 시각을 갱신하지 않음
        assert (await store.get_source(a)).last_checked_at is None
        assert (await store.get_source(b)).last_checked_at is not None

    @pytest.mark.asyncio
    async def test_disabled_sources_skipped(self, store, queue):
        a = await store.add_source("https://www.youtube.com/@a")
        await store.set_source_enabled(a, False)
        collector = FakeCollector({"https://www.youtube.com/@a": [make_item("v1")]})
        scheduler = make_scheduler(store, queue, collector)

        summary = await scheduler.check_all_now()
        assert summary.sources_checked == 0
        assert collector.calls == []

    @pytest.mark.asyncio
    async def test_overlapping_checks_skipped(self, store, queue):
        """검사 중 재요청은 건너뜀"""
        await store.add_source("https://www.youtube.com/@a")
        collector = FakeCollector({"https://www.youtube.com/@a": [make_item("v1")]}, delay=0.1)
        scheduler = make_scheduler(store, queue, collector)

        results = await asyncio.gather(scheduler.check_all_now(), scheduler.check_all_now())

        assert sum(r is None for r in results) == 1
        assert len(collector.calls) == 1
        assert scheduler.is_checking is False

    @pytest.mark.asyncio
    async def test_latest_items_count_limit(self, store, queue):
        await store.add_source("https://www.youtube.com/@a")
        listing = {"https://www.youtube.com/@a": [make_item(f"v{i}") for i in range(10)]}
        scheduler = make_scheduler(store, queue, FakeCollector(listing), latest_items_count=3)

        summary = await scheduler.check_all_now()
        assert summary.new_items == 3

    @pytest.mark.asyncio
    async def test_fetch_details(self, store, queue):
        """상세 정보 조회 실패는 검사 결과에 영향 없음"""
        await store.add_source("https://www.youtube.com/@a")
        collector = FakeCollector(
            {"https://www.youtube.com/@a": [make_item("v1"), make_item("v2")]},
            details={
                "v1": {"duration_seconds": 300, "published_at": "2024-05-01"},
                "v2": SourceFetchError("https://x", "boom"),
            },
        )
        scheduler = make_scheduler(store, queue, collector, fetch_details=True)

        summary = await scheduler.check_all_now()

        assert summary.new_items == 2
        assert sorted(collector.detail_calls) == ["v1", "v2"]
        item = await store.get_item("v1")
        assert item.duration_seconds == 300
        assert item.published_at == "2024-05-01"

    @pytest.mark.asyncio
    async def test_start_runs_initial_check(self, store, queue):
        """start 직후 첫 검사가 실행되고 stop은 트리거만 취소"""
        await store.add_source("https://www.youtube.com/@a")
        collector = FakeCollector({"https://www.youtube.com/@a": [make_item("v1")]})
        scheduler = make_scheduler(store, queue, collector, interval_minutes=60)

        scheduler.start()
        assert scheduler.is_running is True
        while scheduler.last_summary is None:
            await asyncio.sleep(0.01)
        await scheduler.stop()
        await scheduler.wait_idle()

        assert scheduler.is_running is False
        assert scheduler.last_summary.new_items == 1
        status = scheduler.get_status()
        assert status["running"] is False
        assert status["last_summary"]["new_items"] == 1
