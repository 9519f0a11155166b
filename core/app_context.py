"""
Application Context - Centralized container for application state and availability flags.

This module provides AppContext and create_app_context(), which are PURE:
- NO side effects at import time
- NO network calls
- NO background threads or event loops

All side effects happen in bootstrap.start_app(ctx).
"""
from dataclasses import dataclass
from typing import Any, Optional

from core.config import Config


@dataclass
class AppContext:
    """
    Centralized application context holding availability flags and services.

    engine and client are filled in by bootstrap.start_app(); request
    handlers reach them through handler.ctx.
    """
    telegram_configured: bool = False
    admin_token_configured: bool = False

    engine: Optional[Any] = None
    client: Optional[Any] = None
    listener_started: bool = False

    config: Optional[Config] = None

    @property
    def transport_available(self) -> bool:
        return self.client is not None and self.client.is_connected()


def create_app_context() -> AppContext:
    """
    Create the application context with availability flags.

    This is a PURE function:
    - NO Telethon client construction
    - NO network calls
    - NO background threads

    All side effects are deferred to bootstrap.start_app(ctx).

    Returns:
        AppContext with availability flags set based on environment.
    """
    ctx = AppContext(config=Config())

    ctx.telegram_configured = bool(
        Config.get_telegram_api_id() and Config.get_telegram_api_hash()
    )
    ctx.admin_token_configured = bool(Config.get_admin_token())

    return ctx
