"""파일 정리 서비스 테스트"""

from datetime import datetime, timedelta

import pytest

from channelwatch.database.store import Store
from channelwatch.models import TaskState
from channelwatch.monitor.cleanup import CleanupService, seconds_until


@pytest.fixture
async def store(tmp_path):
    s = Store(tmp_path / "storage.json")
    await s.initialize()
    yield s
    await s.close()


async def completed_task(store, item_id, file_path, days_ago):
    task_id = await store.create_task(item_id, "720p")
    await store.claim_task(task_id)
    completed_at = (datetime.now() - timedelta(days=days_ago)).isoformat()
    await store.update_task_state(
        task_id,
        TaskState.COMPLETED,
        file_path=str(file_path) if file_path else None,
        completed_at=completed_at,
    )
    return task_id


class TestSecondsUntil:
    def test_later_today(self):
        now = datetime(2024, 1, 1, 1, 30)
        assert seconds_until(3, now) == 90 * 60

    def test_tomorrow(self):
        now = datetime(2024, 1, 1, 3, 0)
        assert seconds_until(3, now) == 24 * 60 * 60


class TestCleanupService:
    """CleanupService 테스트"""

    @pytest.mark.asyncio
    async def test_deletes_old_files_keeps_records(self, store, tmp_path):
        """오래된 파일은 삭제하고 기록은 유지"""
        video = tmp_path / "old.mp4"
        video.write_bytes(b"x" * 1024)
        thumbnail = tmp_path / "old.jpg"
        thumbnail.write_bytes(b"y" * 10)
        recent_video = tmp_path / "new.mp4"
        recent_video.write_bytes(b"z")

        old_id = await completed_task(store, "vid1", video, days_ago=10)
        recent_id = await completed_task(store, "vid2", recent_video, days_ago=1)

        service = CleanupService(store, retention_days=5)
        result = await service.cleanup_now()

        assert result == {"deleted": 1, "errors": 0, "freed_bytes": 1034}
        assert not video.exists()
        assert not thumbnail.exists()
        assert recent_video.exists()

        old_task = await store.get_task(old_id)
        assert old_task.state == TaskState.COMPLETED
        assert old_task.file_path is None
        assert (await store.get_task(recent_id)).file_path == str(recent_video)

        # 두 번째 실행에서는 정리 대상 없음
        assert (await service.cleanup_now())["deleted"] == 0

    @pytest.mark.asyncio
    async def test_missing_file_clears_path(self, store, tmp_path):
        """이미 없어진 파일은 오류로 집계하고 경로를 비움"""
        task_id = await completed_task(store, "vid1", tmp_path / "gone.mp4", days_ago=10)

        result = await CleanupService(store, retention_days=5).cleanup_now()

        assert result["deleted"] == 0
        assert result["errors"] == 1
        assert (await store.get_task(task_id)).file_path is None

    @pytest.mark.asyncio
    async def test_persist_error_does_not_abort_sweep(self, store, tmp_path, monkeypatch):
        """경로 갱신 저장 실패는 기록만 하고 나머지 파일 정리를 계속"""
        first = tmp_path / "first.mp4"
        first.write_bytes(b"a")
        second = tmp_path / "second.mp4"
        second.write_bytes(b"b")
        first_id = await completed_task(store, "vid1", first, days_ago=10)
        second_id = await completed_task(store, "vid2", second, days_ago=10)

        original_update = store.update_task_state

        async def failing_update(task_id, state, **patch):
            if task_id == first_id:
                raise OSError("disk full")
            return await original_update(task_id, state, **patch)

        monkeypatch.setattr(store, "update_task_state", failing_update)

        result = await CleanupService(store, retention_days=5).cleanup_now()

        assert result["deleted"] == 2
        assert result["errors"] == 1
        assert not first.exists()
        assert not second.exists()
        assert (await store.get_task(second_id)).file_path is None

    @pytest.mark.asyncio
    async def test_get_stats(self, store, tmp_path):
        video = tmp_path / "old.mp4"
        video.write_bytes(b"x" * 2048)
        await completed_task(store, "vid1", video, days_ago=10)

        stats = await CleanupService(store, retention_days=5).get_stats()

        assert stats["enabled"] is True
        assert stats["old_file_count"] == 1
        assert stats["estimated_size"] == 2048

    @pytest.mark.asyncio
    async def test_disabled_service_does_not_start(self, store):
        service = CleanupService(store, enabled=False)
        service.start()
        assert service._task is None
        await service.stop()
