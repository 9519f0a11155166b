"""
Application Bootstrap - Start the application with all side effects.

This module contains start_app(ctx) which is the ONLY place that:
- Starts the background asyncio loop
- Builds the Telethon client and the conversation engine
- Connects to Telegram and starts the inbound listener

All deferred imports happen here to avoid import-time side effects.
"""
from core.app_context import AppContext
from core.logging import get_logger

logger = get_logger(__name__)

_started = False


def connect_transport(ctx: AppContext) -> bool:
    """
    Connect the Telethon client and attach the inbound listener.

    Safe to call again after a disconnect; used by start_app() and
    POST /api/connect.
    """
    from integrations.telegram.user_listener import start_listener_sync

    if ctx.client is None:
        logger.warning("No Telegram client built, cannot connect")
        return False

    if not ctx.client.connect_sync():
        logger.warning(f"Telegram connect failed (status={ctx.client.status})")
        ctx.listener_started = False
        return False

    ctx.listener_started = start_listener_sync(ctx.client, ctx.engine)
    return ctx.listener_started


def start_app(ctx: AppContext) -> None:
    """
    Start the application with ALL side effects.

    This function is IDEMPOTENT - calling it multiple times has no effect
    after the first call (protected by _started flag).

    Side effects performed:
    1. Start the background event loop
    2. Build the Telethon client and the conversation engine
    3. Connect to Telegram and start the listener (if credentials are configured)

    Args:
        ctx: The AppContext created by create_app_context()
    """
    global _started

    if _started:
        logger.info("Already started, skipping")
        return

    _started = True
    logger.info("Starting application...")

    from core.background_loop import ensure_bg_loop
    from domains.flows.engine import ConversationEngine
    from integrations.telegram.user_client import get_client

    ensure_bg_loop()

    ctx.client = get_client()
    ctx.engine = ConversationEngine(ctx.client)
    logger.info(f"Conversation engine ready (inactivity timeout {ctx.engine.inactivity_timeout_seconds}s)")

    if not ctx.admin_token_configured:
        logger.warning("ADMIN_TOKEN not set - all protected API routes will answer 401")

    if ctx.telegram_configured:
        try:
            if connect_transport(ctx):
                logger.info("Telegram connected and listening")
        except Exception as e:
            logger.exception(f"Telegram startup failed: {e}")
    else:
        logger.warning("TELEGRAM_API_ID/TELEGRAM_API_HASH not set - Telegram disabled")

    logger.info("Application started")
