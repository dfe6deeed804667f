"""
Log processors: secret redaction and call id binding.
"""

import asyncio

import pytest

from ari_orchestrator.logging_config import add_call_id, bind_call_id, call_id_var, sanitize_secrets


class TestLogSanitization:
    """Tests for secret sanitization processor."""

    def test_redact_api_key(self):
        event_dict = {
            'message': 'Synthesizing',
            'api_key': 'sk-1234567890abcdef',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['api_key'] == 'sk***REDACTED***'
        assert result['message'] == 'Synthesizing'

    def test_redact_provider_header(self):
        result = sanitize_secrets(None, None, {'xi-api-key': 'abcdef123456'})

        assert result['xi-api-key'] == 'ab***REDACTED***'

    def test_short_value_fully_redacted(self):
        result = sanitize_secrets(None, None, {'password': 'abc'})

        assert result['password'] == '***REDACTED***'

    def test_nested_dict_sanitization(self):
        event_dict = {
            'message': 'Config loaded',
            'asterisk': {
                'host': 'asterisk',
                'password': 'ari-secret',
            },
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['asterisk']['host'] == 'asterisk'
        assert 'REDACTED' in result['asterisk']['password']

    def test_suffix_match_without_false_positive(self):
        event_dict = {
            'ari_password': 'secret123',
            'passthrough': 'keep-me',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert 'REDACTED' in result['ari_password']
        assert result['passthrough'] == 'keep-me'

    def test_none_and_empty_preserved(self):
        result = sanitize_secrets(None, None, {'api_key': None, 'token': ''})

        assert result['api_key'] is None
        assert result['token'] == ''


class TestCallIdBinding:

    def test_add_call_id_when_bound(self):
        token = bind_call_id("chan-42")
        try:
            event = add_call_id(None, None, {'event': 'x'})
        finally:
            call_id_var.reset(token)

        assert event['call_id'] == "chan-42"

    def test_explicit_call_id_not_overwritten(self):
        token = bind_call_id("chan-1")
        try:
            event = add_call_id(None, None, {'event': 'x', 'call_id': 'other'})
        finally:
            call_id_var.reset(token)

        assert event['call_id'] == 'other'

    @pytest.mark.asyncio
    async def test_binding_is_task_local(self):
        seen = {}

        async def session(channel_id):
            bind_call_id(channel_id)
            await asyncio.sleep(0)
            seen[channel_id] = add_call_id(None, None, {})['call_id']

        await asyncio.gather(
            asyncio.create_task(session("a")),
            asyncio.create_task(session("b")),
        )

        assert seen == {"a": "a", "b": "b"}
