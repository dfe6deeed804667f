"""
load_config / validate_production_config against the bundled YAML.
"""

import pytest

from ari_orchestrator.config import (
    AppConfig,
    DEFAULT_SCRIPT,
    load_config,
    validate_production_config,
)


@pytest.fixture
def env(monkeypatch, tmp_path):
    for var in (
        "ASTERISK_HOST", "ASTERISK_ARI_PORT", "ASTERISK_ARI_USERNAME", "ASTERISK_ARI_PASSWORD",
        "ELEVENLABS_API_KEY", "NLU_URL", "SOUNDS_DIR", "CALL_LOG_ENABLED",
        "DASHBOARD_HOST", "DASHBOARD_PORT", "AUTODIAL_ENABLED", "AUTODIAL_RESOURCE",
        "ORCHESTRATOR_CONFIG", "LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("ARI_USERNAME", "asterisk")
    monkeypatch.setenv("ARI_PASSWORD", "asterisk-secret")
    monkeypatch.setenv("ELEVEN_API_KEY", "el-key-123")
    monkeypatch.setenv("CALL_LOG_DB_PATH", str(tmp_path / "calls.db"))
    return monkeypatch


class TestLoadConfig:

    def test_bundled_yaml_loads_with_original_defaults(self, env):
        config = load_config("config/call-orchestrator.yaml")

        assert config.asterisk.base_url == "http://127.0.0.1:8088/ari"
        assert config.asterisk.app_name == "hello-world"
        assert config.asterisk.username == "asterisk"
        assert config.synthesis.api_key == "el-key-123"
        assert config.synthesis.voice_settings.similarity_boost == 0.75
        assert config.playback.max_attempts == 5
        assert config.playback.timeout_sec == 10
        assert config.nlu.timeout_sec == 7
        assert config.dialogue.script == list(DEFAULT_SCRIPT)
        assert config.recording.max_duration_seconds == 3600
        assert config.policies.on_answer_failure == "leave"
        assert config.call_log.db_path.endswith("calls.db")

    def test_env_path_used_when_no_argument(self, env, tmp_path):
        cfg = tmp_path / "mini.yaml"
        cfg.write_text("dialogue:\n  script: ['One line']\n")
        env.setenv("ORCHESTRATOR_CONFIG", str(cfg))

        config = load_config()

        assert config.dialogue.script == ['One line']
        assert config.nlu.base_url == "http://rasa:5005"


class TestValidateProductionConfig:

    def test_valid_config_has_no_errors(self, env):
        config = load_config("config/call-orchestrator.yaml")
        errors, warnings = validate_production_config(config)

        assert errors == []
        assert any("0.0.0.0" in w for w in warnings)

    def test_missing_credentials_are_errors(self, env):
        config = AppConfig()
        errors, _ = validate_production_config(config)

        assert any("ARI credentials" in e for e in errors)
        assert any("API key" in e for e in errors)

    def test_invalid_policy_rejected(self, env):
        config = load_config("config/call-orchestrator.yaml")
        config.policies.on_recording_failure = "explode"

        errors, _ = validate_production_config(config)

        assert any("on_recording_failure" in e for e in errors)

    def test_empty_script_warns(self, env):
        config = load_config("config/call-orchestrator.yaml")
        config.dialogue.script = []

        errors, warnings = validate_production_config(config)

        assert errors == []
        assert any("script is empty" in w for w in warnings)
