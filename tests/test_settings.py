"""Tests for YAML settings loading."""
from pathlib import Path

from config.settings import get_settings, load_settings, reset_settings


SETTINGS_YAML = """
app_name: TestBot
debug: true
telegram:
  bot_token: "${TELEGRAM_BOT_TOKEN}"
  admin_chat_id: "${ADMIN_CHAT_ID}"
  timeout_seconds: 5
database:
  store_backend: file
  store_file_dir: /tmp/flowbot-test
flows:
  definitions_path: my_flows.yaml
  step_chain_limit: 20
"""


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.app_name == "FlowBot"
        assert settings.database.store_backend == "memory"
        assert settings.telegram.parse_mode == "HTML"
        assert settings.flows.step_chain_limit == 50
        assert Path(settings.flows.definitions_path).name == "flows.yaml"

    def test_yaml_with_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        monkeypatch.setenv("ADMIN_CHAT_ID", "-100500")
        path = tmp_path / "settings.yaml"
        path.write_text(SETTINGS_YAML)

        settings = load_settings(str(path))

        assert settings.app_name == "TestBot"
        assert settings.debug is True
        assert settings.telegram.bot_token == "123:abc"
        assert settings.telegram.admin_chat_id == -100500
        assert settings.telegram.timeout_seconds == 5.0
        assert settings.database.store_backend == "file"
        assert settings.flows.definitions_path == str(tmp_path / "my_flows.yaml")
        assert settings.flows.step_chain_limit == 20

    def test_unset_admin_chat_is_none(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ADMIN_CHAT_ID", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text(SETTINGS_YAML)
        assert load_settings(str(path)).telegram.admin_chat_id is None

    def test_env_fallback_value(self, tmp_path, monkeypatch):
        monkeypatch.delenv("FLOWBOT_BACKEND", raising=False)
        monkeypatch.setenv("FLOWBOT_DEBUG", "yes")
        path = tmp_path / "settings.yaml"
        path.write_text(
            'debug: "${FLOWBOT_DEBUG}"\n'
            'database:\n  store_backend: "${FLOWBOT_BACKEND:-sql}"\n'
        )
        settings = load_settings(str(path))
        assert settings.debug is True
        assert settings.database.store_backend == "sql"
        assert settings.database.store_file_dir == "./data"


    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("app_name: FromEnv\n")
        monkeypatch.setenv("FLOWBOT_CONFIG", str(path))
        assert load_settings().app_name == "FromEnv"

    def test_shipped_settings_load(self, monkeypatch):
        monkeypatch.delenv("FLOWBOT_CONFIG", raising=False)
        settings = load_settings()
        assert Path(settings.flows.definitions_path).exists()


class TestGetSettings:
    def test_cached_until_reset(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("app_name: Cached\n")
        monkeypatch.setenv("FLOWBOT_CONFIG", str(path))
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first
