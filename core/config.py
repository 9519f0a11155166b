"""
Centralized configuration for server.py and the flow engine.
All environment variable access should go through this Config class.
NO side effects at import time - no connections, no threads.
"""
import os


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Config:
    DEFAULT_INACTIVITY_TIMEOUT_MINUTES = 10
    DEFAULT_BROADCAST_DELAY_SECONDS = 5
    DEFAULT_PUBLISH_TIMEOUT_SECONDS = 30

    @staticmethod
    def get_port():
        return int(os.environ.get('PORT', 5000))

    @staticmethod
    def get_admin_token():
        return os.environ.get('ADMIN_TOKEN')

    @staticmethod
    def is_dev_mode():
        return os.environ.get('DEV_MODE', '').lower() in ('1', 'true', 'yes')

    @staticmethod
    def get_inactivity_timeout_seconds() -> float:
        """Repeating inactivity nudge interval, configured in minutes."""
        minutes = _float_env('INACTIVITY_TIMEOUT_MINUTES', Config.DEFAULT_INACTIVITY_TIMEOUT_MINUTES)
        if minutes <= 0:
            minutes = Config.DEFAULT_INACTIVITY_TIMEOUT_MINUTES
        return minutes * 60

    @staticmethod
    def get_broadcast_delay_seconds() -> float:
        delay = _float_env('BROADCAST_DELAY_SECONDS', Config.DEFAULT_BROADCAST_DELAY_SECONDS)
        return max(delay, 0)

    @staticmethod
    def get_publish_timeout_seconds() -> float:
        """How long a publish waits for in-flight conversations before giving up."""
        timeout = _float_env('PUBLISH_TIMEOUT_SECONDS', Config.DEFAULT_PUBLISH_TIMEOUT_SECONDS)
        if timeout <= 0:
            timeout = Config.DEFAULT_PUBLISH_TIMEOUT_SECONDS
        return timeout

    @staticmethod
    def get_telegram_api_id():
        raw_id = os.environ.get('TELEGRAM_API_ID', '')
        return int(raw_id) if raw_id.isdigit() else None

    @staticmethod
    def get_telegram_api_hash():
        return os.environ.get('TELEGRAM_API_HASH')

    @staticmethod
    def get_telegram_phone():
        return os.environ.get('TELEGRAM_PHONE')

    @staticmethod
    def get_session_dir():
        return os.environ.get('TELETHON_SESSION_DIR', '/tmp/telethon_sessions')

    @staticmethod
    def get_session_name():
        return os.environ.get('TELETHON_SESSION_NAME', 'flowbot')
