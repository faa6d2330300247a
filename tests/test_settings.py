"""Tests for YAML settings loading."""
import pytest

from config.settings import Settings, load_settings

SAMPLE = """
app_name: Remesas Bot
engine:
  cancel_keyword: "0"
  max_invalid_attempts: 2
  default_flow_id: main
  default_flows:
    1: main
    7: sales_main
  not_a_setting: true
timeouts:
  fallback: agent
database:
  url: ${FLOWDESK_TEST_DB_URL}
  store_backend: file
backend:
  base_url: https://crm.example.com
  auth_credentials:
    token: ${FLOWDESK_TEST_TOKEN}
"""


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(SAMPLE)
    return path


class TestLoadSettings:
    def test_sections_are_loaded(self, settings_file, monkeypatch):
        monkeypatch.setenv("FLOWDESK_TEST_DB_URL", "postgresql://u:p@db/flowdesk")
        monkeypatch.setenv("FLOWDESK_TEST_TOKEN", "s3cret")
        settings = load_settings(str(settings_file))
        assert settings.app_name == "Remesas Bot"
        assert settings.engine.max_invalid_attempts == 2
        assert settings.engine.default_flows == {"1": "main", "7": "sales_main"}
        assert settings.timeouts.fallback == "agent"
        assert settings.database.url == "postgresql://u:p@db/flowdesk"
        assert settings.backend.auth_credentials == {"token": "s3cret"}

    def test_unset_env_var_is_left_verbatim(self, settings_file, monkeypatch):
        monkeypatch.delenv("FLOWDESK_TEST_DB_URL", raising=False)
        settings = load_settings(str(settings_file))
        assert settings.database.url == "${FLOWDESK_TEST_DB_URL}"

    def test_missing_sections_keep_defaults(self, settings_file):
        settings = load_settings(str(settings_file))
        assert settings.cache.flow_ttl_seconds == 300.0
        assert settings.flows.source == "yaml"
        assert settings.database.store_file_dir == "./data"

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()

    def test_bundled_settings_load(self):
        settings = load_settings()
        assert settings.engine.default_flow_id == "main"
