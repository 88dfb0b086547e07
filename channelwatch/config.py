"""설정 관리 모듈 - YAML + .env 기반 설정 로드 및 검증"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import load_dotenv

from channelwatch.errors import ConfigError

QUALITY_PRESETS = ("1080p", "720p", "480p")


@dataclass
class MonitoringConfig:
    """채널 모니터링 설정"""

    enabled: bool = True
    check_interval_minutes: int = 5
    latest_items_count: int = 3
    max_concurrent_downloads: int = 3
    default_quality: str = "720p"
    source_delay_seconds: float = 5.0
    fetch_details: bool = False


@dataclass
class SourceEntry:
    """시작 시 등록할 모니터링 소스"""

    url: str = ""
    name: str = ""


@dataclass
class StorageConfig:
    """저장소 설정"""

    path: str = "data/storage.json"


@dataclass
class DownloadConfig:
    """다운로드 설정"""

    output_dir: str = "downloads"
    binary: str = "yt-dlp"
    timeout_seconds: int = 3600
    shutdown_timeout_seconds: int = 30


@dataclass
class CleanupConfig:
    """파일 정리 설정"""

    enabled: bool = True
    retention_days: int = 5
    run_at_hour: int = 3


@dataclass
class TelegramConfig:
    """텔레그램 알림 설정"""

    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""
    on_complete: bool = True
    on_failure: bool = False
    include_source_name: bool = True
    max_attempts: int = 3
    retry_delay_seconds: float = 2.0


@dataclass
class LoggingConfig:
    """로깅 설정"""

    level: str = "INFO"
    dir: str | None = "data/logs"


@dataclass
class Settings:
    """전체 애플리케이션 설정"""

    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    sources: list[SourceEntry] = field(default_factory=list)
    storage: StorageConfig = field(default_factory=StorageConfig)
    downloads: DownloadConfig = field(default_factory=DownloadConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(
        cls,
        config_path: str = "config/settings.yaml",
        env_path: str = "config/.env",
    ) -> Settings:
        """설정 파일과 환경 변수를 로드하여 Settings 인스턴스를 생성합니다."""
        env_file = Path(env_path)
        if env_file.exists():
            load_dotenv(env_file)

        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(
                f"설정 파일을 찾을 수 없습니다: {config_path}\n"
                f"config/settings.example.yaml을 복사하여 생성해 주세요."
            )

        with open(config_file, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        settings = cls._from_dict(raw)

        # LOG_LEVEL 환경 변수가 YAML 값보다 우선
        env_level = os.getenv("LOG_LEVEL")
        if env_level:
            settings.logging.level = env_level

        return settings

    @classmethod
    def _from_dict(cls, raw: dict) -> Settings:
        """딕셔너리에서 Settings 인스턴스를 생성합니다."""
        mon_raw = raw.get("monitoring") or {}
        monitoring = MonitoringConfig(
            enabled=bool(mon_raw.get("enabled", True)),
            check_interval_minutes=int(mon_raw.get("check_interval_minutes", 5)),
            latest_items_count=int(mon_raw.get("latest_items_count", 3)),
            max_concurrent_downloads=int(mon_raw.get("max_concurrent_downloads", 3)),
            default_quality=mon_raw.get("default_quality", "720p"),
            source_delay_seconds=float(mon_raw.get("source_delay_seconds", 5.0)),
            fetch_details=bool(mon_raw.get("fetch_details", False)),
        )

        sources = [
            SourceEntry(url=src.get("url", ""), name=src.get("name", ""))
            for src in raw.get("sources") or []
        ]

        st_raw = raw.get("storage") or {}
        storage = StorageConfig(path=st_raw.get("path", "data/storage.json"))

        dl_raw = raw.get("downloads") or {}
        downloads = DownloadConfig(
            output_dir=dl_raw.get("output_dir", "downloads"),
            binary=dl_raw.get("binary", "yt-dlp"),
            timeout_seconds=int(dl_raw.get("timeout_seconds", 3600)),
            shutdown_timeout_seconds=int(dl_raw.get("shutdown_timeout_seconds", 30)),
        )

        cl_raw = raw.get("cleanup") or {}
        cleanup = CleanupConfig(
            enabled=bool(cl_raw.get("enabled", True)),
            retention_days=int(cl_raw.get("retention_days", 5)),
            run_at_hour=int(cl_raw.get("run_at_hour", 3)),
        )

        tg_raw = raw.get("telegram") or {}
        notif_raw = tg_raw.get("notifications") or {}
        retry_raw = tg_raw.get("retry") or {}
        telegram = TelegramConfig(
            enabled=cls._resolve_bool(tg_raw.get("enabled", False)),
            bot_token=cls._resolve_env(tg_raw.get("bot_token", "")),
            chat_id=str(cls._resolve_env(tg_raw.get("chat_id", ""))),
            on_complete=bool(notif_raw.get("on_complete", True)),
            on_failure=bool(notif_raw.get("on_failure", False)),
            include_source_name=bool(notif_raw.get("include_source_name", True)),
            max_attempts=int(retry_raw.get("max_attempts", 3)),
            retry_delay_seconds=float(retry_raw.get("delay_seconds", 2.0)),
        )

        log_raw = raw.get("logging") or {}
        logging_config = LoggingConfig(
            level=log_raw.get("level", "INFO"),
            dir=log_raw.get("dir", "data/logs"),
        )

        return cls(
            monitoring=monitoring,
            sources=sources,
            storage=storage,
            downloads=downloads,
            cleanup=cleanup,
            telegram=telegram,
            logging=logging_config,
        )

    @staticmethod
    def _resolve_env(value: str) -> str:
        """${ENV_VAR} 형식의 값을 환경 변수로 치환합니다."""
        if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
            env_key = value[2:-1]
            return os.getenv(env_key, "")
        return value

    @classmethod
    def _resolve_bool(cls, value: bool | str) -> bool:
        """불리언 또는 ${ENV_VAR} 문자열을 불리언으로 변환합니다."""
        if isinstance(value, bool):
            return value
        resolved = cls._resolve_env(str(value))
        return resolved.strip().lower() in {"1", "true", "yes", "on"}

    def validate(self) -> list[str]:
        """설정 값의 유효성을 검사하고 경고 메시지 리스트를 반환합니다."""
        warnings = []

        if self.monitoring.default_quality not in QUALITY_PRESETS:
            warnings.append(
                f"알 수 없는 기본 화질입니다: {self.monitoring.default_quality} "
                f"(720p로 다운로드됩니다)"
            )

        if self.monitoring.max_concurrent_downloads < 1:
            warnings.append("최대 동시 다운로드 수는 1 이상이어야 합니다.")

        if self.monitoring.check_interval_minutes < 1:
            warnings.append("검사 간격은 1분 이상이어야 합니다.")

        if self.telegram.enabled and not self.telegram.bot_token:
            warnings.append("텔레그램 봇 토큰이 설정되지 않았습니다.")

        if self.telegram.enabled and not self.telegram.chat_id:
            warnings.append("텔레그램 채팅 ID가 설정되지 않았습니다.")

        if shutil.which(self.downloads.binary) is None:
            warnings.append(f"다운로드 도구를 찾을 수 없습니다: {self.downloads.binary}")

        return warnings


def require_binary(binary: str) -> str:
    """외부 도구의 실행 경로를 반환합니다. 없으면 ConfigError를 발생시킵니다."""
    path = shutil.which(binary)
    if path is None:
        raise ConfigError(f"필수 외부 도구를 찾을 수 없습니다: {binary}")
    return path
