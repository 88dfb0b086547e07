"""데이터 모델 정의 - 시스템 전반에서 사용되는 데이터 클래스"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MAX_RETRIES = 2


def now_iso() -> str:
    """현재 시각을 ISO-8601 문자열로 반환합니다."""
    return datetime.now().isoformat()


class TaskState(Enum):
    """다운로드 작업 상태"""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


OPEN_STATES = (TaskState.PENDING, TaskState.ACTIVE)


@dataclass
class Source:
    """모니터링 대상 소스 (채널)"""

    id: str
    uri: str
    display_name: str | None = None
    enabled: bool = True
    last_checked_at: str | None = None
    created_at: str = field(default_factory=now_iso)

    @property
    def label(self) -> str:
        return self.display_name or self.uri

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Source:
        return cls(
            id=raw["id"],
            uri=raw["uri"],
            display_name=raw.get("display_name"),
            enabled=bool(raw.get("enabled", True)),
            last_checked_at=raw.get("last_checked_at"),
            created_at=raw.get("created_at") or now_iso(),
        )


@dataclass
class DiscoveredItem:
    """소스 목록 조회로 얻은 항목 (아직 저장 전)"""

    id: str
    title: str
    uri: str
    thumbnail_uri: str | None = None
    duration_seconds: int | None = None
    published_at: str | None = None


@dataclass
class Item:
    """저장된 항목. 외부 ID가 중복 제거 키입니다."""

    id: str
    source_id: str
    title: str
    uri: str
    thumbnail_uri: str | None = None
    duration_seconds: int | None = None
    published_at: str | None = None
    discovered_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Item:
        return cls(
            id=raw["id"],
            source_id=raw.get("source_id", ""),
            title=raw.get("title") or "",
            uri=raw.get("uri") or "",
            thumbnail_uri=raw.get("thumbnail_uri"),
            duration_seconds=raw.get("duration_seconds"),
            published_at=raw.get("published_at"),
            discovered_at=raw.get("discovered_at") or now_iso(),
        )


@dataclass
class Task:
    """항목 하나에 대한 다운로드 작업"""

    id: str
    item_id: str
    quality: str
    state: TaskState = TaskState.PENDING
    file_path: str | None = None
    retry_count: int = 0
    error_message: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        return cls(
            id=raw["id"],
            item_id=raw["item_id"],
            quality=raw.get("quality") or "",
            state=TaskState(raw.get("state", TaskState.PENDING.value)),
            file_path=raw.get("file_path"),
            retry_count=int(raw.get("retry_count") or 0),
            error_message=raw.get("error_message"),
            started_at=raw.get("started_at"),
            completed_at=raw.get("completed_at"),
        )


@dataclass
class CheckSummary:
    """모니터링 검사 1회의 결과 요약"""

    sources_checked: int = 0
    new_items: int = 0
    errors: int = 0
    started_at: str = field(default_factory=now_iso)
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
