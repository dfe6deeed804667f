"""
Unit tests for config.defaults module.

Tests cover:
- Sounds directory defaults
- Call-log datastore defaults
- Dashboard bind overrides
- Auto-dial enablement
"""

import pytest

from ari_orchestrator.config.defaults import (
    apply_autodial_defaults,
    apply_call_log_defaults,
    apply_dashboard_defaults,
    apply_media_defaults,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in (
        "SOUNDS_DIR",
        "CALL_LOG_DB_PATH",
        "CALL_LOG_ENABLED",
        "DASHBOARD_HOST",
        "DASHBOARD_PORT",
        "AUTODIAL_ENABLED",
        "AUTODIAL_RESOURCE",
    ):
        monkeypatch.delenv(var, raising=False)


class TestApplyMediaDefaults:

    def test_default_sounds_dir(self):
        config_data = {}
        apply_media_defaults(config_data)

        assert config_data['media']['sounds_dir'] == '/var/lib/asterisk/sounds'

    def test_yaml_value_kept(self):
        config_data = {'media': {'sounds_dir': '/srv/sounds'}}
        apply_media_defaults(config_data)

        assert config_data['media']['sounds_dir'] == '/srv/sounds'

    def test_env_overrides_yaml(self, monkeypatch):
        monkeypatch.setenv('SOUNDS_DIR', '/tmp/sounds')

        config_data = {'media': {'sounds_dir': '/srv/sounds'}}
        apply_media_defaults(config_data)

        assert config_data['media']['sounds_dir'] == '/tmp/sounds'


class TestApplyCallLogDefaults:

    def test_default_db_path(self):
        config_data = {}
        apply_call_log_defaults(config_data)

        assert config_data['call_log']['db_path'] == 'data/call_logs.db'
        assert 'enabled' not in config_data['call_log']

    @pytest.mark.parametrize("raw,expected", [("0", False), ("false", False), ("1", True), ("yes", True)])
    def test_enabled_from_env(self, monkeypatch, raw, expected):
        monkeypatch.setenv('CALL_LOG_ENABLED', raw)

        config_data = {}
        apply_call_log_defaults(config_data)

        assert config_data['call_log']['enabled'] is expected


class TestApplyDashboardDefaults:

    def test_env_port_is_int(self, monkeypatch):
        monkeypatch.setenv('DASHBOARD_PORT', '4000')
        monkeypatch.setenv('DASHBOARD_HOST', '127.0.0.1')

        config_data = {'dashboard': {'port': 3002}}
        apply_dashboard_defaults(config_data)

        assert config_data['dashboard']['port'] == 4000
        assert config_data['dashboard']['host'] == '127.0.0.1'

    def test_missing_block_created(self):
        config_data = {}
        apply_dashboard_defaults(config_data)

        assert config_data['dashboard'] == {}


class TestApplyAutodialDefaults:

    def test_env_enables_and_targets(self, monkeypatch):
        monkeypatch.setenv('AUTODIAL_ENABLED', '1')
        monkeypatch.setenv('AUTODIAL_RESOURCE', 'frontdesk')

        config_data = {'autodial': {'enabled': False}}
        apply_autodial_defaults(config_data)

        assert config_data['autodial']['enabled'] is True
        assert config_data['autodial']['resource'] == 'frontdesk'
