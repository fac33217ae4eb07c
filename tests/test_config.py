"""
配置加载测试
"""
import pytest

from automation_engine.config import EngineSettings
from automation_engine.exceptions import ConfigurationError


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("POLL_INTERVAL_SECONDS", "ACTION_TIMEOUT", "LOG_LEVEL", "TRIGGER_FETCH_LIMIT", "DATABASE_URL"):
        # 先设置再删除，测试结束后恢复为未设置状态
        monkeypatch.setenv(f"AUTOMATION_{name}", "placeholder")
        monkeypatch.delenv(f"AUTOMATION_{name}")
    return monkeypatch


class TestEngineSettings:

    def test_defaults(self, clean_env):
        settings = EngineSettings.from_env()

        assert settings.poll_interval_seconds == 30.0
        assert settings.scheduled_interval_seconds == 3600.0
        assert settings.trigger_fetch_limit == 1
        assert settings.log_level == "INFO"

    def test_values_from_environment(self, clean_env):
        clean_env.setenv("AUTOMATION_POLL_INTERVAL_SECONDS", "5")
        clean_env.setenv("AUTOMATION_TRIGGER_FETCH_LIMIT", "10")
        clean_env.setenv("AUTOMATION_LOG_LEVEL", "debug")
        clean_env.setenv("AUTOMATION_DATABASE_URL", "sqlite+aiosqlite:///test.db")

        settings = EngineSettings.from_env()

        assert settings.poll_interval_seconds == 5.0
        assert settings.trigger_fetch_limit == 10
        assert settings.log_level == "DEBUG"
        assert settings.database_url == "sqlite+aiosqlite:///test.db"

    @pytest.mark.parametrize("value", ["soon", "0", "-3"])
    def test_invalid_values(self, clean_env, value):
        clean_env.setenv("AUTOMATION_ACTION_TIMEOUT", value)

        with pytest.raises(ConfigurationError) as exc_info:
            EngineSettings.from_env()

        assert exc_info.value.details == {"variable": "AUTOMATION_ACTION_TIMEOUT"}

    def test_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("AUTOMATION_ACTION_TIMEOUT=42\nAUTOMATION_LOG_LEVEL=warning\n")

        settings = EngineSettings.from_env(str(env_file))

        assert settings.action_timeout == 42.0
        assert settings.log_level == "WARNING"
