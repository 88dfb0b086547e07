"""텔레그램 알림 모듈 - 다운로드 완료/실패 메시지 전송"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path

from telegram import Bot, LinkPreviewOptions
from telegram.constants import ParseMode
from telegram.error import BadRequest, NetworkError, RetryAfter, TelegramError
from telegram.helpers import escape_markdown

from channelwatch.logger import get_logger
from channelwatch.models import Item, Source

logger = get_logger("delivery")


class TelegramNotifier:
    """텔레그램 채팅으로 다운로드 결과를 알립니다.

    알림 실패는 로그로만 남기며 작업 상태에 영향을 주지 않습니다.
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        enabled: bool = True,
        on_complete: bool = True,
        on_failure: bool = False,
        include_source_name: bool = True,
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.enabled = enabled
        self.on_complete = on_complete
        self.on_failure = on_failure
        self.include_source_name = include_source_name
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._bot: Bot | None = None

    def _get_bot(self) -> Bot:
        """Bot 인스턴스를 반환합니다."""
        if self._bot is None:
            self._bot = Bot(token=self.bot_token)
        return self._bot

    async def initialize(self) -> bool:
        """설정을 확인하고 봇 연결을 검증합니다. 실패하면 알림을 비활성화합니다."""
        if not self.enabled:
            return False

        if not self.bot_token or not self.chat_id:
            logger.warning("텔레그램 설정이 불완전하여 알림을 건너뜁니다.")
            self.enabled = False
            return False

        if not await self.verify_connection():
            self.enabled = False
        return self.enabled

    async def verify_connection(self) -> bool:
        """텔레그램 봇 연결을 확인합니다."""
        try:
            bot = self._get_bot()
            me = await bot.get_me()
            logger.info("텔레그램 봇 연결 확인: @%s", me.username)
            return True
        except TelegramError as e:
            logger.error("텔레그램 봇 연결 실패: %s", e)
            return False

    async def close(self) -> None:
        if self._bot is not None:
            await self._bot.shutdown()
            self._bot = None

    async def notify_complete(
        self, item: Item, source: Source | None, file_path: str
    ) -> bool:
        """다운로드 완료 알림을 전송합니다."""
        if not self.enabled or not self.on_complete:
            return False
        return await self.send_message(self.format_complete_message(item, source, file_path))

    async def notify_failure(
        self, item: Item, source: Source | None, error_message: str
    ) -> bool:
        """다운로드 최종 실패 알림을 전송합니다."""
        if not self.enabled or not self.on_failure:
            return False
        return await self.send_message(
            self.format_failure_message(item, source, error_message)
        )

    async def send_message(self, text: str) -> bool:
        """메시지를 전송합니다. 일시적 오류는 지연을 늘려가며 재시도합니다."""
        bot = self._get_bot()

        for attempt in range(1, self.max_retries + 1):
            try:
                await bot.send_message(
                    chat_id=self.chat_id,
                    text=text,
                    parse_mode=ParseMode.MARKDOWN_V2,
                    link_preview_options=LinkPreviewOptions(is_disabled=True),
                )
                return True

            except RetryAfter as e:
                wait_time = e.retry_after
                if isinstance(wait_time, timedelta):
                    wait_time = wait_time.total_seconds()
                logger.warning(
                    "텔레그램 rate limit, %s초 대기 (시도 %d/%d)",
                    wait_time,
                    attempt,
                    self.max_retries,
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(float(wait_time))

            except BadRequest as e:
                logger.error("텔레그램 메시지 형식 오류: %s", e)
                return False

            except NetworkError as e:
                logger.warning(
                    "텔레그램 네트워크 오류 (시도 %d/%d): %s",
                    attempt,
                    self.max_retries,
                    e,
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay * attempt)

            except TelegramError as e:
                logger.error("텔레그램 전송 실패: %s", e)
                return False

        logger.error("텔레그램 전송 최종 실패")
        return False

    def format_complete_message(
        self, item: Item, source: Source | None, file_path: str
    ) -> str:
        lines = [
            "✅ *다운로드 완료*",
            "",
            f"📺 *영상*: {escape_markdown(item.title, version=2)}",
        ]
        # 소스를 찾지 못하면 채널 줄만 생략
        if self.include_source_name and source is not None:
            lines.append(f"📁 *채널*: {escape_markdown(source.label, version=2)}")
        file_name = escape_markdown(Path(file_path).name, version=2, entity_type="code")
        lines.append(f"🗂️ *파일*: `{file_name}`")
        lines.append(f"⏱️ *시간*: {self._timestamp()}")
        return "\n".join(lines)

    def format_failure_message(
        self, item: Item, source: Source | None, error_message: str
    ) -> str:
        lines = [
            "❌ *다운로드 실패*",
            "",
            f"📺 *영상*: {escape_markdown(item.title, version=2)}",
        ]
        if self.include_source_name and source is not None:
            lines.append(f"📁 *채널*: {escape_markdown(source.label, version=2)}")
        lines.append(f"⚠️ *오류*: {escape_markdown(error_message[:300], version=2)}")
        lines.append(f"⏱️ *시간*: {self._timestamp()}")
        return "\n".join(lines)

    @staticmethod
    def _timestamp() -> str:
        return escape_markdown(datetime.now().strftime("%Y-%m-%d %H:%M:%S"), version=2)
