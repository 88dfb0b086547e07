"""채널 수집기 - yt-dlp 목록 조회 및 RSS 피드를 통한 최신 항목 추출"""

from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime
from typing import Any

import feedparser

from channelwatch.downloader.ytdlp import run_ytdlp
from channelwatch.errors import SourceFetchError
from channelwatch.logger import get_logger
from channelwatch.models import DiscoveredItem, Source

logger = get_logger("collector.channel")

_FEED_URI_RE = re.compile(r"(feeds/videos\.xml|\.xml$|\.rss$|/feed/?$|/rss/?$)")


def is_feed_uri(uri: str) -> bool:
    """RSS/Atom 피드 주소인지 판별합니다."""
    return bool(_FEED_URI_RE.search(uri.split("#", 1)[0]))


def _format_upload_date(raw: str | None) -> str | None:
    """yt-dlp의 YYYYMMDD 날짜를 ISO 형식으로 변환합니다."""
    if not raw or len(raw) != 8 or not raw.isdigit():
        return None
    return f"{raw[:4]}-{raw[4:6]}-{raw[6:]}"


def _thumbnail_from(data: dict[str, Any], video_id: str) -> str:
    thumbnails = data.get("thumbnails") or []
    if thumbnails and thumbnails[0].get("url"):
        return thumbnails[0]["url"]
    return f"https://i.ytimg.com/vi/{video_id}/mqdefault.jpg"


def _item_uri_from(data: dict[str, Any], video_id: str) -> str:
    for key in ("webpage_url", "url"):
        value = data.get(key)
        if isinstance(value, str) and value.startswith("http"):
            return value
    return f"https://www.youtube.com/watch?v={video_id}"


def parse_flat_playlist(output: str) -> list[DiscoveredItem]:
    """--flat-playlist --dump-json 출력(줄마다 JSON)을 항목 목록으로 변환합니다."""
    items = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue

        data = json.loads(line)
        video_id = data.get("id")
        if not video_id:
            continue

        duration = data.get("duration")
        items.append(
            DiscoveredItem(
                id=video_id,
                title=data.get("title") or data.get("url") or "제목 없음",
                uri=_item_uri_from(data, video_id),
                thumbnail_uri=_thumbnail_from(data, video_id),
                duration_seconds=int(duration) if duration else None,
                published_at=_format_upload_date(data.get("upload_date")),
            )
        )
    return items


def parse_feed_entries(feed: Any, limit: int) -> list[DiscoveredItem]:
    """feedparser 결과에서 최신 항목을 추출합니다."""
    items = []
    for entry in feed.entries[:limit]:
        link = entry.get("link", "")
        item_id = entry.get("yt_videoid") or entry.get("id") or link
        if not item_id or not link:
            continue

        published_at = None
        if entry.get("published_parsed"):
            published_at = datetime(*entry.published_parsed[:6]).isoformat()

        thumbnail = None
        if entry.get("media_thumbnail"):
            thumbnail = entry.media_thumbnail[0].get("url")

        items.append(
            DiscoveredItem(
                id=item_id,
                title=entry.get("title", "제목 없음"),
                uri=link,
                thumbnail_uri=thumbnail,
                published_at=published_at,
            )
        )
    return items


class ChannelCollector:
    """모니터링 소스에서 최신 항목을 빠르게(얕게) 조회합니다."""

    def __init__(
        self,
        binary: str = "yt-dlp",
        timeout_seconds: int = 120,
        details_timeout_seconds: int = 60,
    ) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.details_timeout_seconds = details_timeout_seconds

    async def fetch_latest_items(self, source: Source, limit: int) -> list[DiscoveredItem]:
        """소스의 최신 항목 N개를 조회합니다.

        Raises:
            SourceFetchError: 네트워크/도구/파싱 오류
        """
        try:
            if is_feed_uri(source.uri):
                items = await self._fetch_from_rss(source, limit)
            else:
                items = await self._fetch_from_ytdlp(source, limit)
        except SourceFetchError:
            raise
        except Exception as e:
            raise SourceFetchError(source.uri, str(e)) from e

        logger.info("%s에서 %d개 항목 조회", source.label, len(items))
        return items

    async def _fetch_from_ytdlp(self, source: Source, limit: int) -> list[DiscoveredItem]:
        """yt-dlp 평면 목록 모드로 기본 정보만 조회합니다."""
        args = [
            "--flat-playlist",
            "--dump-json",
            "--skip-download",
            "--ignore-errors",
            "--no-warnings",
            "--playlist-end", str(limit),
            source.uri,
        ]
        return_code, stdout, stderr = await self._run(source.uri, args, self.timeout_seconds)
        if return_code != 0:
            raise SourceFetchError(
                source.uri, stderr.strip()[:200] or f"종료 코드 {return_code}"
            )

        try:
            return parse_flat_playlist(stdout)[:limit]
        except json.JSONDecodeError as e:
            raise SourceFetchError(source.uri, f"목록 데이터 파싱 실패: {e}") from e

    async def _fetch_from_rss(self, source: Source, limit: int) -> list[DiscoveredItem]:
        """RSS 피드에서 최신 항목을 조회합니다."""
        feed = await asyncio.to_thread(feedparser.parse, source.uri)

        if feed.bozo and not feed.entries:
            raise SourceFetchError(source.uri, f"RSS 파싱 실패 - {feed.bozo_exception}")

        return parse_feed_entries(feed, limit)

    async def fetch_item_details(self, item_id: str, uri: str) -> dict[str, Any]:
        """단일 항목의 상세 정보(길이, 게시일)를 조회합니다."""
        args = ["--dump-json", "--skip-download", "--no-warnings", uri]
        return_code, stdout, stderr = await self._run(uri, args, self.details_timeout_seconds)
        if return_code != 0:
            raise SourceFetchError(uri, f"상세 정보 조회 실패: {item_id}")

        try:
            data = json.loads(stdout.strip())
        except json.JSONDecodeError as e:
            raise SourceFetchError(uri, f"상세 정보 파싱 실패: {e}") from e

        duration = data.get("duration")
        return {
            "duration_seconds": int(duration) if duration else None,
            "published_at": _format_upload_date(data.get("upload_date")),
        }

    async def _run(
        self, uri: str, args: list[str], timeout_seconds: int
    ) -> tuple[int, str, str]:
        try:
            return await run_ytdlp(self.binary, args, timeout_seconds)
        except asyncio.TimeoutError as e:
            raise SourceFetchError(uri, f"시간 초과 ({timeout_seconds}초)") from e
        except OSError as e:
            raise SourceFetchError(uri, f"도구 실행 실패: {e}") from e
