"""환경 설정 검증 스크립트

Usage:
    python -m channelwatch.check_setup
"""

from __future__ import annotations

import asyncio
import shutil
import sys
from pathlib import Path


def check_python_version() -> bool:
    """Python 버전 확인"""
    version = sys.version_info
    ok = version >= (3, 11)
    status = "✅" if ok else "❌"
    print(f"{status} Python {version.major}.{version.minor}.{version.micro} ... {'OK' if ok else 'Python 3.11+ 필요'}")
    return ok


def check_binary(name: str, required: bool = True) -> bool:
    """외부 실행 파일이 PATH에 있는지 확인"""
    path = shutil.which(name)
    if path:
        print(f"✅ {name} ... OK ({path})")
        return True
    status = "❌" if required else "⚠️ "
    print(f"{status} {name} ... 찾을 수 없음")
    return not required


def check_storage_dir(storage_path: str) -> bool:
    """저장소 디렉토리 쓰기 가능 여부 확인"""
    directory = Path(storage_path).parent
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"❌ Storage directory ... 생성 실패 ({e})")
        return False
    print(f"✅ Storage directory ... OK ({directory})")
    return True


async def check_telegram_bot(bot_token: str) -> bool:
    """텔레그램 봇 연결 확인"""
    if not bot_token:
        print("⚠️  Telegram bot connection ... 봇 토큰 미설정")
        return False

    try:
        from telegram import Bot

        bot = Bot(token=bot_token)
        async with bot:
            me = await bot.get_me()
        print(f"✅ Telegram bot connection ... OK (@{me.username})")
        return True
    except Exception as e:
        print(f"❌ Telegram bot connection ... 실패 ({e})")
        return False


def check_config_files() -> bool:
    """설정 파일 존재 확인"""
    settings_exists = Path("config/settings.yaml").exists()
    env_exists = Path("config/.env").exists()

    if settings_exists:
        print("✅ config/settings.yaml ... OK")
    else:
        print("⚠️  config/settings.yaml ... 없음 (cp config/settings.example.yaml config/settings.yaml)")

    if env_exists:
        print("✅ config/.env ... OK")
    else:
        print("⚠️  config/.env ... 없음 (cp config/.env.example config/.env)")

    return settings_exists


async def main() -> None:
    """모든 설정 항목을 검증합니다."""
    print("=" * 50)
    print("  ChannelWatch - 환경 설정 검증")
    print("=" * 50)
    print()

    results = []

    results.append(check_python_version())
    results.append(check_binary("ffmpeg", required=False))
    print()

    results.append(check_config_files())
    print()

    try:
        from channelwatch.config import Settings

        settings = Settings.load()

        results.append(check_binary(settings.downloads.binary))
        results.append(check_storage_dir(settings.storage.path))
        if settings.telegram.enabled:
            results.append(await check_telegram_bot(settings.telegram.bot_token))
        for warning in settings.validate():
            print(f"⚠️  {warning}")
    except FileNotFoundError:
        print("⚠️  설정 파일 없음 - 세부 검증 스킵")
        print("   config/settings.example.yaml을 복사하여 config/settings.yaml을 생성하세요.")

    print()
    print("=" * 50)

    if all(results):
        print("✅ All checks passed!")
    else:
        failed = results.count(False)
        print(f"⚠️  {failed}개 항목에 주의가 필요합니다.")

    print("=" * 50)


if __name__ == "__main__":
    asyncio.run(main())
