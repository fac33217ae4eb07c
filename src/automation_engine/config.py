"""
引擎配置
"""
import os
from dataclasses import dataclass
from typing import Callable, Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError


ENV_PREFIX = "AUTOMATION_"


@dataclass
class EngineSettings:
    """引擎运行参数"""
    poll_interval_seconds: float = 30.0
    maintenance_interval_seconds: float = 900.0
    scheduled_interval_seconds: float = 3600.0  # 无 cron 表达式时的固定间隔
    ai_probe_timeout: float = 2.0
    ai_generation_timeout: float = 10.0
    action_timeout: float = 300.0
    message_chunk_limit: int = 4096
    trigger_fetch_limit: int = 1
    history_retention_days: int = 30
    processed_retention_days: int = 30
    approval_timeout_minutes: float = 60.0
    database_url: str = "sqlite+aiosqlite:///automation.db"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "EngineSettings":
        """从环境变量（及 .env 文件）加载配置"""
        load_dotenv(env_file)
        defaults = cls()
        return cls(
            poll_interval_seconds=_read("POLL_INTERVAL_SECONDS", float, defaults.poll_interval_seconds),
            maintenance_interval_seconds=_read(
                "MAINTENANCE_INTERVAL_SECONDS", float, defaults.maintenance_interval_seconds
            ),
            scheduled_interval_seconds=_read(
                "SCHEDULED_INTERVAL_SECONDS", float, defaults.scheduled_interval_seconds
            ),
            ai_probe_timeout=_read("AI_PROBE_TIMEOUT", float, defaults.ai_probe_timeout),
            ai_generation_timeout=_read("AI_GENERATION_TIMEOUT", float, defaults.ai_generation_timeout),
            action_timeout=_read("ACTION_TIMEOUT", float, defaults.action_timeout),
            message_chunk_limit=_read("MESSAGE_CHUNK_LIMIT", int, defaults.message_chunk_limit),
            trigger_fetch_limit=_read("TRIGGER_FETCH_LIMIT", int, defaults.trigger_fetch_limit),
            history_retention_days=_read("HISTORY_RETENTION_DAYS", int, defaults.history_retention_days),
            processed_retention_days=_read(
                "PROCESSED_RETENTION_DAYS", int, defaults.processed_retention_days
            ),
            approval_timeout_minutes=_read(
                "APPROVAL_TIMEOUT_MINUTES", float, defaults.approval_timeout_minutes
            ),
            database_url=os.getenv(f"{ENV_PREFIX}DATABASE_URL", defaults.database_url),
            log_level=os.getenv(f"{ENV_PREFIX}LOG_LEVEL", defaults.log_level).upper(),
        )


def _read(name: str, cast: Callable, default):
    """读取并转换单个环境变量"""
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError(
            f"Invalid value for {ENV_PREFIX}{name}: {raw!r}",
            {"variable": f"{ENV_PREFIX}{name}"}
        )
    if value <= 0:
        raise ConfigurationError(
            f"{ENV_PREFIX}{name} must be positive, got {raw!r}",
            {"variable": f"{ENV_PREFIX}{name}"}
        )
    return value
