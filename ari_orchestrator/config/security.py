"""
Security-critical configuration injection.

This module handles:
- Asterisk ARI credentials (ONLY from environment variables)
- Text-to-speech provider API key (ONLY from environment variables)
- NLU endpoint override

SECURITY POLICY:
- API keys and passwords MUST NEVER be in YAML files
- All credentials MUST come from environment variables only
"""

import os
from typing import Any, Dict


def _is_nonempty_string(val: Any) -> bool:
    """True if val is a string with non-whitespace content."""
    return isinstance(val, str) and val.strip() != ""


def expand_string_tokens(value: str) -> str:
    """
    Expand ${VAR} and $VAR tokens in a string.

    Undefined variables are left unchanged.
    """
    return os.path.expandvars(value or "")


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    block = config_data.get(name)
    return block if isinstance(block, dict) else {}


def inject_asterisk_credentials(config_data: Dict[str, Any]) -> None:
    """
    Inject ARI host and credentials from environment variables ONLY.

    Any username/password present in YAML is discarded.

    Environment variables:
    - ASTERISK_HOST (default: 127.0.0.1)
    - ASTERISK_ARI_PORT (default: YAML port or 8088)
    - ASTERISK_ARI_USERNAME or ARI_USERNAME
    - ASTERISK_ARI_PASSWORD or ARI_PASSWORD
    """
    asterisk_yaml = _section(config_data, 'asterisk')

    asterisk = {
        "host": os.getenv("ASTERISK_HOST", asterisk_yaml.get("host", "127.0.0.1")),
        "port": int(os.getenv("ASTERISK_ARI_PORT", asterisk_yaml.get("port", 8088))),
        "username": os.getenv("ASTERISK_ARI_USERNAME") or os.getenv("ARI_USERNAME"),
        "password": os.getenv("ASTERISK_ARI_PASSWORD") or os.getenv("ARI_PASSWORD"),
        "app_name": asterisk_yaml.get("app_name", "hello-world"),
    }
    for key in ("connect_attempts", "connect_interval_sec"):
        if key in asterisk_yaml:
            asterisk[key] = asterisk_yaml[key]
    config_data['asterisk'] = asterisk


def inject_synthesis_api_key(config_data: Dict[str, Any]) -> None:
    """
    Inject the TTS provider API key from the environment ONLY.

    Environment variables:
    - ELEVEN_API_KEY or ELEVENLABS_API_KEY
    """
    synthesis = _section(config_data, 'synthesis')
    synthesis['api_key'] = os.getenv('ELEVEN_API_KEY') or os.getenv('ELEVENLABS_API_KEY')
    config_data['synthesis'] = synthesis


def inject_nlu_config(config_data: Dict[str, Any]) -> None:
    """
    Resolve the NLU base URL.

    Precedence: NLU_URL env > YAML nlu.base_url > default. The fallback
    reply accepts ${VAR} placeholders.
    """
    nlu = _section(config_data, 'nlu')
    env_url = os.getenv('NLU_URL')
    if _is_nonempty_string(env_url):
        nlu['base_url'] = env_url.strip()
    fallback = nlu.get('fallback_reply')
    if _is_nonempty_string(fallback):
        nlu['fallback_reply'] = expand_string_tokens(fallback)
    config_data['nlu'] = nlu
