"""
Default value application for configuration.

This module handles environment-driven defaults for:
- Media directory shared with Asterisk (sounds_dir)
- Call-log database path
- Dashboard bind address
- Auto-dial enablement and target endpoint
"""

import os
from typing import Any, Dict


def _truthy(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def apply_media_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply the shared media directory.

    Environment variables:
    - SOUNDS_DIR: directory Asterisk reads sound:/recording: media from
      (default: /var/lib/asterisk/sounds)
    """
    media = config_data.get('media') or {}
    if 'SOUNDS_DIR' in os.environ:
        media['sounds_dir'] = os.environ['SOUNDS_DIR']
    media.setdefault('sounds_dir', '/var/lib/asterisk/sounds')
    config_data['media'] = media


def apply_call_log_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply call-log datastore defaults.

    Environment variables:
    - CALL_LOG_DB_PATH (default: data/call_logs.db)
    - CALL_LOG_ENABLED (default: true)
    """
    call_log = config_data.get('call_log') or {}
    if 'CALL_LOG_DB_PATH' in os.environ:
        call_log['db_path'] = os.environ['CALL_LOG_DB_PATH']
    if 'CALL_LOG_ENABLED' in os.environ:
        call_log['enabled'] = _truthy(os.environ['CALL_LOG_ENABLED'])
    call_log.setdefault('db_path', 'data/call_logs.db')
    config_data['call_log'] = call_log


def apply_dashboard_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply dashboard HTTP defaults.

    Environment variables:
    - DASHBOARD_HOST (default: 0.0.0.0)
    - DASHBOARD_PORT (default: 3002)
    """
    dashboard = config_data.get('dashboard') or {}
    if 'DASHBOARD_HOST' in os.environ:
        dashboard['host'] = os.environ['DASHBOARD_HOST']
    if 'DASHBOARD_PORT' in os.environ:
        dashboard['port'] = int(os.environ['DASHBOARD_PORT'])
    config_data['dashboard'] = dashboard


def apply_autodial_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply auto-dial defaults.

    Environment variables:
    - AUTODIAL_ENABLED: 0|1
    - AUTODIAL_RESOURCE: endpoint resource to watch (e.g. msuser)
    """
    autodial = config_data.get('autodial') or {}
    if 'AUTODIAL_ENABLED' in os.environ:
        autodial['enabled'] = _truthy(os.environ['AUTODIAL_ENABLED'])
    if 'AUTODIAL_RESOURCE' in os.environ:
        autodial['resource'] = os.environ['AUTODIAL_RESOURCE']
    config_data['autodial'] = autodial
