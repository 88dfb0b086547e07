"""ChannelWatch - 메인 오케스트레이터

Usage:
    python -m channelwatch.main                         # 서비스 실행 (Ctrl+C로 종료)
    python -m channelwatch.main --once                  # 1회 검사 후 대기열 소진 시 종료
    python -m channelwatch.main --add-source URL --name 이름
    python -m channelwatch.main --list-sources
    python -m channelwatch.main --status
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any

from channelwatch.collector.channel_collector import ChannelCollector
from channelwatch.config import Settings, require_binary
from channelwatch.database.store import Store
from channelwatch.delivery.events import EventEmitter
from channelwatch.delivery.telegram import TelegramNotifier
from channelwatch.downloader.ytdlp import YtDlpDownloader
from channelwatch.errors import ConfigError
from channelwatch.logger import get_logger, setup_logger
from channelwatch.monitor.cleanup import CleanupService
from channelwatch.monitor.queue import DownloadQueue
from channelwatch.monitor.scheduler import MonitoringScheduler

logger = get_logger("main")


class ChannelWatchService:
    """저장소, 다운로드 대기열, 스케줄러, 정리 서비스를 묶는 조립 지점"""

    def __init__(self, settings: Settings, events: EventEmitter | None = None) -> None:
        self.settings = settings
        self.events = events or EventEmitter()
        self.fetch_enabled = False

        self.store = Store(settings.storage.path)
        self.notifier: TelegramNotifier | None = None
        if settings.telegram.enabled:
            self.notifier = TelegramNotifier(
                bot_token=settings.telegram.bot_token,
                chat_id=settings.telegram.chat_id,
                on_complete=settings.telegram.on_complete,
                on_failure=settings.telegram.on_failure,
                include_source_name=settings.telegram.include_source_name,
                max_retries=settings.telegram.max_attempts,
                retry_delay=settings.telegram.retry_delay_seconds,
            )

        self.queue = DownloadQueue(
            store=self.store,
            downloader=YtDlpDownloader(
                output_dir=settings.downloads.output_dir,
                binary=settings.downloads.binary,
                timeout_seconds=settings.downloads.timeout_seconds,
            ),
            max_concurrent=settings.monitoring.max_concurrent_downloads,
            notifier=self.notifier,
            events=self.events,
        )
        self.scheduler = MonitoringScheduler(
            store=self.store,
            queue=self.queue,
            collector=ChannelCollector(binary=settings.downloads.binary),
            interval_minutes=settings.monitoring.check_interval_minutes,
            latest_items_count=settings.monitoring.latest_items_count,
            default_quality=settings.monitoring.default_quality,
            source_delay_seconds=settings.monitoring.source_delay_seconds,
            fetch_details=settings.monitoring.fetch_details,
            events=self.events,
        )
        self.cleanup = CleanupService(
            store=self.store,
            enabled=settings.cleanup.enabled,
            retention_days=settings.cleanup.retention_days,
            run_at_hour=settings.cleanup.run_at_hour,
        )

    async def initialize(self, verify_notifier: bool = True) -> None:
        """리소스 초기화. 저장소 초기화 실패(파일 시스템 오류)만 치명적입니다.

        Args:
            verify_notifier: 텔레그램 봇 연결 확인 여부 (알림을 보내지 않는 명령은 False)
        """
        await self.store.initialize()

        for entry in self.settings.sources:
            if entry.url:
                await self.store.add_source(entry.url, entry.name or None)

        try:
            require_binary(self.settings.downloads.binary)
            self.fetch_enabled = True
        except ConfigError as e:
            logger.error("%s - 모니터링과 다운로드를 비활성화합니다.", e)
            self.fetch_enabled = False

        if self.notifier is not None and verify_notifier:
            await self.notifier.initialize()

    async def start(self) -> None:
        if not self.fetch_enabled:
            logger.warning("다운로드 도구가 없어 백그라운드 서비스를 시작하지 않습니다.")
        else:
            await self.queue.start()
            if self.settings.monitoring.enabled:
                self.scheduler.start()
            else:
                logger.info("모니터링이 비활성화되어 있습니다.")
        self.cleanup.start()

    async def shutdown(self) -> None:
        """스케줄러 → 정리 서비스 → 대기열(시간 제한) → 저장 순으로 종료합니다."""
        logger.info("서비스 종료 중...")
        timeout = self.settings.downloads.shutdown_timeout_seconds

        await self.scheduler.stop()
        # 항목 저장과 대기열 추가 사이에서 검사가 끊기지 않도록 진행 중인 검사를 기다림
        try:
            await asyncio.wait_for(self.scheduler.wait_idle(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("진행 중인 검사 종료 대기 시간 초과 (%d초)", timeout)

        await self.cleanup.stop()

        try:
            await asyncio.wait_for(self.queue.stop(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("대기열 종료 시간 초과 (%d초) - 실행 중인 다운로드를 중단합니다.", timeout)
            await self.queue.abort()

        await self.store.close()
        if self.notifier is not None:
            await self.notifier.close()
        logger.info("서비스 종료 완료")

    async def run_once(self) -> None:
        """1회 검사 후 대기열이 빌 때까지 처리하고 종료합니다."""
        if not self.fetch_enabled:
            return
        await self.queue.start()
        await self.scheduler.check_all_now()
        while True:
            status = await self.queue.get_status()
            if status["pending"] == 0 and status["active_count"] == 0:
                break
            await asyncio.sleep(1)

    async def status(self) -> dict[str, Any]:
        """외부 상태 화면용 통합 상태"""
        return {
            "fetch_enabled": self.fetch_enabled,
            "queue": await self.queue.get_status(),
            "scheduler": self.scheduler.get_status(),
            "cleanup": await self.cleanup.get_stats(),
        }


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """CLI 인자를 파싱합니다."""
    parser = argparse.ArgumentParser(
        description="ChannelWatch - 채널 모니터링 및 자동 다운로드",
    )
    parser.add_argument(
        "--config",
        default="config/settings.yaml",
        help="설정 파일 경로 (기본: config/settings.yaml)",
    )
    parser.add_argument(
        "--env",
        default="config/.env",
        help="환경 변수 파일 경로 (기본: config/.env)",
    )
    parser.add_argument("--add-source", metavar="URL", help="모니터링 소스 등록 후 종료")
    parser.add_argument("--name", help="--add-source와 함께 사용할 표시 이름")
    parser.add_argument("--list-sources", action="store_true", help="등록된 소스 출력 후 종료")
    parser.add_argument("--status", action="store_true", help="상태 출력 후 종료")
    parser.add_argument(
        "--once",
        action="store_true",
        help="1회 검사 후 대기열을 모두 처리하고 종료",
    )
    return parser.parse_args(argv)


async def _serve(service: ChannelWatchService) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows 이벤트 루프는 시그널 핸들러를 지원하지 않음
            pass

    await service.start()
    logger.info("ChannelWatch 실행 중. Ctrl+C로 종료합니다.")
    await stop_event.wait()


async def main(argv: list[str] | None = None) -> int:
    """메인 엔트리포인트"""
    args = parse_args(argv)

    settings = Settings.load(config_path=args.config, env_path=args.env)
    setup_logger(level=settings.logging.level, log_dir=settings.logging.dir)

    for warning in settings.validate():
        logger.warning("설정 경고: %s", warning)

    service = ChannelWatchService(settings)
    one_shot_command = bool(args.add_source or args.list_sources or args.status)
    await service.initialize(verify_notifier=not one_shot_command)

    try:
        if args.add_source:
            source_id = await service.store.add_source(args.add_source, args.name)
            print(source_id)
        elif args.list_sources:
            for source in await service.store.list_sources():
                state = "on " if source.enabled else "off"
                print(f"{source.id}\t{state}\t{source.label}\t{source.last_checked_at or '-'}")
        elif args.status:
            print(json.dumps(await service.status(), ensure_ascii=False, indent=2))
        elif args.once:
            await service.run_once()
        else:
            await _serve(service)
    finally:
        await service.shutdown()

    return 0


def run() -> None:
    """콘솔 스크립트 엔트리포인트"""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
