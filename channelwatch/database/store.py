"""JSON 파일 저장소 - 소스/항목/작업 상태의 영속화와 중복 체크"""

from __future__ import annotations

import asyncio
import json
import os
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from channelwatch.errors import StoreCorruptionError
from channelwatch.logger import get_logger
from channelwatch.models import (
    MAX_RETRIES,
    DiscoveredItem,
    Item,
    Source,
    Task,
    TaskState,
    now_iso,
)

logger = get_logger("database")

# 허용되는 상태 전이 (재시도에 의한 pending 복귀는 retry_task 전용)
_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.PENDING: {TaskState.PENDING, TaskState.ACTIVE, TaskState.FAILED},
    TaskState.ACTIVE: {TaskState.ACTIVE, TaskState.COMPLETED, TaskState.FAILED},
    TaskState.COMPLETED: {TaskState.COMPLETED},
    TaskState.FAILED: {TaskState.FAILED},
}

_TOP_LEVEL_KEYS = {"sources", "items", "tasks"}

_PATCHABLE_FIELDS = {
    "file_path",
    "error_message",
    "retry_count",
    "started_at",
    "completed_at",
}


class Store:
    """단일 JSON 파일 기반 저장소

    소스, 항목, 작업 컬렉션을 독점 소유합니다. 모든 변경은 잠금 안에서
    메모리 갱신 후 즉시 파일에 원자적으로 기록됩니다 (임시 파일 → rename).
    호출자에게는 항상 복사본을 반환합니다.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._sources: list[Source] = []
        self._items: dict[str, Item] = {}
        self._tasks: list[Task] = []

    # ──────────────────────────────────────────────
    # 초기화 / 영속화
    # ──────────────────────────────────────────────
    async def initialize(self) -> None:
        """저장 파일을 로드하거나 새로 생성합니다.

        손상된 파일은 백업 경로로 옮긴 뒤 빈 상태로 시작하며,
        비정상 종료로 남은 active 작업은 pending으로 되돌립니다.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            if self.path.exists():
                try:
                    self._load()
                    logger.info("저장 파일 로드 완료: %s", self.path)
                except StoreCorruptionError as e:
                    backup_path = self._quarantine()
                    logger.warning(
                        "손상된 저장 파일을 백업했습니다: %s (%s)", backup_path, e
                    )
                    self._reset()
            else:
                logger.info("새 저장 파일 생성: %s", self.path)

            reset_count = 0
            for task in self._tasks:
                if task.state == TaskState.ACTIVE:
                    task.state = TaskState.PENDING
                    reset_count += 1
            if reset_count:
                logger.info("미완료 다운로드 작업 %d개를 pending으로 재설정", reset_count)

            await self._persist()

    async def save(self) -> None:
        """현재 상태 전체를 파일에 원자적으로 기록합니다."""
        async with self._lock:
            await self._persist()

    async def close(self) -> None:
        """종료 전 마지막 저장"""
        await self.save()
        logger.info("저장소 종료: %s", self.path)

    def _reset(self) -> None:
        self._sources = []
        self._items = {}
        self._tasks = []

    def _load(self) -> None:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StoreCorruptionError(f"JSON 파싱 실패: {e}") from e

        if not isinstance(raw, dict):
            raise StoreCorruptionError("최상위 값이 객체가 아닙니다.")

        # 키가 다른 JSON(빈 객체, 구버전/외부 문서)을 빈 저장소로 덮어쓰지 않도록 격리
        if set(raw) != _TOP_LEVEL_KEYS:
            raise StoreCorruptionError(
                f"최상위 키가 올바르지 않습니다: {sorted(raw)}"
            )

        sources_raw = raw["sources"]
        items_raw = raw["items"]
        tasks_raw = raw["tasks"]
        if not (
            isinstance(sources_raw, list)
            and isinstance(items_raw, dict)
            and isinstance(tasks_raw, list)
        ):
            raise StoreCorruptionError("sources/items/tasks 형식이 올바르지 않습니다.")

        migrated = 0
        try:
            sources = [Source.from_dict(s) for s in sources_raw]
            items: dict[str, Item] = {}
            for item_id, item_raw in items_raw.items():
                # 구버전 데이터: ID 필드가 없는 항목은 키에서 채움
                if not item_raw.get("id"):
                    item_raw = {**item_raw, "id": item_id}
                    migrated += 1
                items[item_id] = Item.from_dict(item_raw)
            tasks = [Task.from_dict(t) for t in tasks_raw]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StoreCorruptionError(f"레코드 형식 오류: {e}") from e

        if migrated:
            logger.info("ID 필드가 없는 항목 %d개를 마이그레이션했습니다.", migrated)

        self._sources = sources
        self._items = items
        self._tasks = tasks

    def _quarantine(self) -> Path:
        backup_path = self.path.with_name(
            f"{self.path.name}.backup.{int(time.time() * 1000)}"
        )
        os.replace(self.path, backup_path)
        return backup_path

    def _snapshot(self) -> dict[str, Any]:
        return {
            "sources": [s.to_dict() for s in self._sources],
            "items": {item_id: item.to_dict() for item_id, item in self._items.items()},
            "tasks": [t.to_dict() for t in self._tasks],
        }

    async def _persist(self) -> None:
        # 직렬화는 잠금 안에서 수행하여 일관된 스냅샷을 기록
        payload = json.dumps(self._snapshot(), ensure_ascii=False, indent=2)
        await asyncio.to_thread(self._write_atomic, payload)

    def _write_atomic(self, payload: str) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self.path)

    # ──────────────────────────────────────────────
    # 소스 관리
    # ──────────────────────────────────────────────
    async def add_source(self, uri: str, name: str | None = None) -> str:
        """소스를 등록하고 ID를 반환합니다. 이미 등록된 URI면 기존 ID를 반환합니다."""
        async with self._lock:
            for source in self._sources:
                if source.uri == uri:
                    return source.id

            source = Source(
                id=f"ch_{uuid.uuid4().hex[:12]}",
                uri=uri,
                display_name=name or None,
            )
            self._sources.append(source)
            await self._persist()
            logger.info("소스 등록 (id=%s): %s", source.id, uri)
            return source.id

    async def list_sources(self, enabled_only: bool = False) -> list[Source]:
        async with self._lock:
            return [
                replace(s) for s in self._sources if s.enabled or not enabled_only
            ]

    async def get_source(self, source_id: str) -> Source | None:
        async with self._lock:
            source = self._find_source(source_id)
            return replace(source) if source else None

    async def set_source_enabled(self, source_id: str, enabled: bool) -> bool:
        async with self._lock:
            source = self._find_source(source_id)
            if source is None:
                return False
            source.enabled = enabled
            await self._persist()
            return True

    async def remove_source(self, source_id: str) -> bool:
        """소스를 삭제합니다. 해당 소스의 항목/작업 기록은 중복 체크를 위해 유지됩니다."""
        async with self._lock:
            before = len(self._sources)
            self._sources = [s for s in self._sources if s.id != source_id]
            if len(self._sources) == before:
                return False
            await self._persist()
            logger.info("소스 삭제 (id=%s)", source_id)
            return True

    async def touch_source_checked_at(self, source_id: str) -> None:
        async with self._lock:
            source = self._find_source(source_id)
            if source is None:
                return
            source.last_checked_at = now_iso()
            await self._persist()

    def _find_source(self, source_id: str) -> Source | None:
        return next((s for s in self._sources if s.id == source_id), None)

    # ──────────────────────────────────────────────
    # 항목 (중복 제거)
    # ──────────────────────────────────────────────
    async def item_exists(self, item_id: str) -> bool:
        async with self._lock:
            return item_id in self._items

    async def add_item(self, source_id: str, data: DiscoveredItem) -> bool:
        """항목을 저장합니다. 새로 추가되면 True, 이미 있으면 False."""
        async with self._lock:
            if data.id in self._items:
                return False

            self._items[data.id] = Item(
                id=data.id,
                source_id=source_id,
                title=data.title,
                uri=data.uri,
                thumbnail_uri=data.thumbnail_uri,
                duration_seconds=data.duration_seconds,
                published_at=data.published_at,
            )
            await self._persist()
            return True

    async def get_item(self, item_id: str) -> Item | None:
        async with self._lock:
            item = self._items.get(item_id)
            return replace(item) if item else None

    async def update_item_details(
        self,
        item_id: str,
        duration_seconds: int | None = None,
        published_at: str | None = None,
    ) -> bool:
        """뒤늦게 조회된 상세 정보(길이, 게시일)를 채웁니다."""
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return False
            if duration_seconds is not None:
                item.duration_seconds = duration_seconds
            if published_at is not None:
                item.published_at = published_at
            await self._persist()
            return True

    # ──────────────────────────────────────────────
    # 다운로드 작업
    # ──────────────────────────────────────────────
    async def create_task(self, item_id: str, quality: str) -> str:
        """다운로드 작업을 생성합니다.

        같은 항목에 pending/active 작업이 이미 있으면 그 ID를 반환합니다.
        """
        async with self._lock:
            existing = self._find_open_task(item_id)
            if existing is not None:
                return existing.id

            task = Task(
                id=f"dl_{uuid.uuid4().hex[:12]}",
                item_id=item_id,
                quality=quality,
            )
            self._tasks.append(task)
            await self._persist()
            return task.id

    async def get_task(self, task_id: str) -> Task | None:
        async with self._lock:
            task = self._find_task(task_id)
            return replace(task) if task else None

    async def list_pending_tasks(self, limit: int | None = None) -> list[Task]:
        """pending 작업을 등록 순서(FIFO)로 반환합니다."""
        async with self._lock:
            pending = [replace(t) for t in self._tasks if t.state == TaskState.PENDING]
            return pending if limit is None else pending[:limit]

    async def list_tasks(
        self, state: TaskState | None = None, limit: int | None = None
    ) -> list[Task]:
        async with self._lock:
            tasks = [
                replace(t) for t in self._tasks if state is None or t.state == state
            ]
            return tasks if limit is None else tasks[:limit]

    async def claim_task(self, task_id: str) -> Task | None:
        """pending 작업을 active로 전환하고 반환합니다. 이미 선점되었으면 None."""
        async with self._lock:
            task = self._find_task(task_id)
            if task is None or task.state != TaskState.PENDING:
                return None
            task.state = TaskState.ACTIVE
            if task.started_at is None:
                task.started_at = now_iso()
            await self._persist()
            return replace(task)

    async def update_task_state(
        self, task_id: str, state: TaskState, **patch: Any
    ) -> bool:
        """작업 상태를 갱신합니다.

        Args:
            task_id: 작업 ID
            state: 새 상태 (pending 복귀는 retry_task를 사용)
            **patch: file_path, error_message 등 함께 갱신할 필드

        Returns:
            작업 존재 여부
        """
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"갱신할 수 없는 필드: {sorted(unknown)}")

        async with self._lock:
            task = self._find_task(task_id)
            if task is None:
                return False

            if state not in _TRANSITIONS[task.state]:
                raise ValueError(
                    f"허용되지 않는 상태 전이: {task.state.value} -> {state.value}"
                )

            previous = task.state
            task.state = state
            for key, value in patch.items():
                setattr(task, key, value)

            if state == TaskState.ACTIVE and task.started_at is None:
                task.started_at = now_iso()
            if (
                state in (TaskState.COMPLETED, TaskState.FAILED)
                and previous != state
                and "completed_at" not in patch
            ):
                task.completed_at = now_iso()

            await self._persist()
            return True

    async def retry_task(self, task_id: str) -> bool:
        """작업을 pending으로 되돌리고 재시도 횟수를 증가시킵니다.

        재시도 한도(MAX_RETRIES)를 넘었거나 같은 항목에 다른 진행 중 작업이
        있으면 False를 반환합니다.
        """
        async with self._lock:
            task = self._find_task(task_id)
            if task is None or task.state not in (TaskState.ACTIVE, TaskState.FAILED):
                return False
            if task.retry_count >= MAX_RETRIES:
                return False
            other = self._find_open_task(task.item_id)
            if other is not None and other.id != task.id:
                return False

            task.state = TaskState.PENDING
            task.retry_count += 1
            task.error_message = None
            task.completed_at = None
            await self._persist()
            return True

    async def task_stats(self) -> dict[str, int]:
        """상태별 작업 수를 반환합니다."""
        async with self._lock:
            stats = {state.value: 0 for state in TaskState}
            for task in self._tasks:
                stats[task.state.value] += 1
            return stats

    async def list_stale_completed_tasks(self, older_than_days: int) -> list[Task]:
        """파일이 남아 있고 완료된 지 N일이 지난 작업을 반환합니다."""
        cutoff = datetime.now() - timedelta(days=older_than_days)
        async with self._lock:
            stale = []
            for task in self._tasks:
                if (
                    task.state != TaskState.COMPLETED
                    or not task.completed_at
                    or not task.file_path
                ):
                    continue
                if datetime.fromisoformat(task.completed_at) < cutoff:
                    stale.append(replace(task))
            return stale

    async def item_history(self, item_id: str) -> dict[str, Any] | None:
        """항목 정보와 해당 항목의 작업 이력을 결합한 뷰를 반환합니다."""
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return None
            source = self._find_source(item.source_id)
            tasks = [t.to_dict() for t in self._tasks if t.item_id == item_id]
            return {
                "item": item.to_dict(),
                "source_name": source.label if source else None,
                "tasks": tasks,
                "latest_state": tasks[-1]["state"] if tasks else None,
            }

    def _find_task(self, task_id: str) -> Task | None:
        return next((t for t in self._tasks if t.id == task_id), None)

    def _find_open_task(self, item_id: str) -> Task | None:
        return next(
            (t for t in self._tasks if t.item_id == item_id and t.is_open), None
        )
