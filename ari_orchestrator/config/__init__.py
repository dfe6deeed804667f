"""
Configuration for the ARI call orchestrator.

Pydantic models validate the YAML file after credentials and environment
defaults have been injected by the helpers in this package:
- loaders: YAML file loading and parsing
- security: credential and API key injection
- defaults: environment-driven default values
"""

import os
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field
import structlog

from .loaders import resolve_config_path, load_yaml_with_env_expansion
from .security import inject_asterisk_credentials, inject_synthesis_api_key, inject_nlu_config
from .defaults import (
    apply_media_defaults,
    apply_call_log_defaults,
    apply_dashboard_defaults,
    apply_autodial_defaults,
)

logger = structlog.get_logger(__name__)

DEFAULT_SCRIPT = (
    "Hello!",
    "Can you tell me my balance?",
    "Yes, that's right.",
    "No, that's wrong.",
    "Goodbye!",
)


class AsteriskConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8088)
    username: Optional[str] = None
    password: Optional[str] = None
    app_name: str = Field(default="hello-world")
    connect_attempts: int = Field(default=30)
    connect_interval_sec: float = Field(default=3.0)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}/ari"


class MediaConfig(BaseModel):
    sounds_dir: str = Field(default="/var/lib/asterisk/sounds")


class VoiceSettings(BaseModel):
    stability: float = Field(default=0.5)
    similarity_boost: float = Field(default=0.75)


class SynthesisConfig(BaseModel):
    api_key: Optional[str] = None
    base_url: str = Field(default="https://api.elevenlabs.io")
    voice_id: str = Field(default="8DzKSPdgEQPaK5vKG0Rs")
    model_id: str = Field(default="eleven_monolingual_v1")
    voice_settings: VoiceSettings = Field(default_factory=VoiceSettings)
    transcoder: str = Field(default="ffmpeg")
    sample_rate_hz: int = Field(default=8000)
    min_raw_bytes: int = Field(default=1000)
    min_file_bytes: int = Field(default=2000)
    min_duration_sec: float = Field(default=0.5)


class PlaybackConfig(BaseModel):
    timeout_sec: float = Field(default=10.0)
    max_attempts: int = Field(default=5)
    backoff_sec: float = Field(default=1.0)
    min_file_bytes: int = Field(default=2000)


class NLUConfig(BaseModel):
    base_url: str = Field(default="http://rasa:5005")
    webhook_path: str = Field(default="/webhooks/rest/webhook")
    status_path: str = Field(default="/status")
    timeout_sec: float = Field(default=7.0)
    fallback_reply: str = Field(default="Sorry, I didn't understand that.")
    wait_for_ready: bool = Field(default=True)
    ready_attempts: int = Field(default=50)
    ready_interval_sec: float = Field(default=3.0)


class DialogueConfig(BaseModel):
    script: List[str] = Field(default_factory=lambda: list(DEFAULT_SCRIPT))
    greeting_text: str = Field(default="Good morning! Let's start your session.")
    greeting_name: str = Field(default="greeting_good_morning")
    inter_turn_delay_sec: float = Field(default=0.25)


class RecordingConfig(BaseModel):
    format: str = Field(default="wav")
    max_duration_seconds: int = Field(default=3600)
    if_exists: str = Field(default="overwrite")
    beep: bool = Field(default=False)


class PolicyConfig(BaseModel):
    # leave | hangup
    on_answer_failure: str = Field(default="leave")
    # continue | hangup
    on_recording_failure: str = Field(default="continue")


class CallLogConfig(BaseModel):
    enabled: bool = Field(default=True)
    db_path: str = Field(default="data/call_logs.db")


class AutoDialConfig(BaseModel):
    enabled: bool = Field(default=False)
    tech: str = Field(default="SIP")
    resource: str = Field(default="msuser")
    app_args: str = Field(default="1001")
    caller_id: str = Field(default="1000")
    initial_delay_sec: float = Field(default=10.0)
    poll_interval_sec: float = Field(default=5.0)
    max_attempts: Optional[int] = None


class DashboardConfig(BaseModel):
    enabled: bool = Field(default=True)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3002)
    dial_tech: str = Field(default="SIP")
    dial_caller_id: str = Field(default="1000")
    cors_origin: Optional[str] = Field(default="http://localhost:5173")


class LoggingConfig(BaseModel):
    level: str = Field(default="info")  # debug|info|warning|error|critical


class AppConfig(BaseModel):
    asterisk: AsteriskConfig = Field(default_factory=AsteriskConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    playback: PlaybackConfig = Field(default_factory=PlaybackConfig)
    nlu: NLUConfig = Field(default_factory=NLUConfig)
    dialogue: DialogueConfig = Field(default_factory=DialogueConfig)
    recording: RecordingConfig = Field(default_factory=RecordingConfig)
    policies: PolicyConfig = Field(default_factory=PolicyConfig)
    call_log: CallLogConfig = Field(default_factory=CallLogConfig)
    autodial: AutoDialConfig = Field(default_factory=AutoDialConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load and validate configuration from a YAML file.

    Args:
        path: YAML path (absolute or relative to project root). Defaults to
              $ORCHESTRATOR_CONFIG or config/call-orchestrator.yaml.

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        pydantic.ValidationError: If values don't match the schema
    """
    path = path or os.getenv("ORCHESTRATOR_CONFIG", "config/call-orchestrator.yaml")
    path = resolve_config_path(path)
    config_data = load_yaml_with_env_expansion(path)

    inject_asterisk_credentials(config_data)
    inject_synthesis_api_key(config_data)
    inject_nlu_config(config_data)

    apply_media_defaults(config_data)
    apply_call_log_defaults(config_data)
    apply_dashboard_defaults(config_data)
    apply_autodial_defaults(config_data)

    return AppConfig(**config_data)


def validate_production_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """Validate configuration before the engine starts.

    Returns:
        (errors, warnings): errors block startup, warnings are only logged.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not config.asterisk.username or not config.asterisk.password:
        errors.append("ARI credentials missing (set ARI_USERNAME and ARI_PASSWORD)")
    if not config.synthesis.api_key:
        errors.append("TTS provider API key missing (set ELEVEN_API_KEY)")
    if config.policies.on_answer_failure not in ("leave", "hangup"):
        errors.append(f"Invalid policies.on_answer_failure: {config.policies.on_answer_failure} (must be leave or hangup)")
    if config.policies.on_recording_failure not in ("continue", "hangup"):
        errors.append(f"Invalid policies.on_recording_failure: {config.policies.on_recording_failure} (must be continue or hangup)")
    if config.playback.max_attempts < 1:
        errors.append("playback.max_attempts must be at least 1")
    if config.recording.if_exists not in ("fail", "overwrite", "append"):
        errors.append(f"Invalid recording.if_exists: {config.recording.if_exists}")

    if not config.dialogue.script:
        warnings.append("Dialogue script is empty; calls will hang up right after recording starts")
    if config.synthesis.sample_rate_hz != 8000:
        warnings.append(f"synthesis.sample_rate_hz={config.synthesis.sample_rate_hz}; telephony playback expects 8000")
    if os.getenv('LOG_LEVEL', 'info').lower() == 'debug':
        warnings.append("Debug logging enabled (security/performance risk in production)")
    if config.dashboard.enabled and config.dashboard.host == "0.0.0.0":
        warnings.append("Dashboard bound to 0.0.0.0; ensure firewall/segmentation is in place")

    return errors, warnings


__all__ = [
    'AsteriskConfig',
    'MediaConfig',
    'VoiceSettings',
    'SynthesisConfig',
    'PlaybackConfig',
    'NLUConfig',
    'DialogueConfig',
    'RecordingConfig',
    'PolicyConfig',
    'CallLogConfig',
    'AutoDialConfig',
    'DashboardConfig',
    'LoggingConfig',
    'AppConfig',
    'DEFAULT_SCRIPT',
    'load_config',
    'validate_production_config',
]
