"""
Telethon inbound message listener for the flow engine.

Routes incoming private messages on the user client to
ConversationEngine.handle_inbound_message, and resets every conversation
when the client disconnects.
"""
import asyncio
from typing import Optional, Callable

from telethon import events

from core.background_loop import run_in_bg
from core.logging import get_logger, clear_request_context

logger = get_logger('telethon_listener')

_handler: Optional[Callable] = None
_watcher: Optional[asyncio.Task] = None


def is_listening() -> bool:
    return _handler is not None


async def start_listener(client, engine) -> bool:
    global _handler, _watcher
    if _handler is not None:
        logger.info("Listener already running")
        return True

    if not client.raw_client or not client.is_connected():
        logger.warning("Cannot start listener - client not connected")
        return False

    tc = client.raw_client

    if not await tc.is_user_authorized():
        logger.warning("Cannot start listener - client not authorized")
        return False

    me = await tc.get_me()
    if not me:
        logger.warning("Cannot start listener - get_me() returned None")
        return False
    my_id = me.id

    @tc.on(events.NewMessage(incoming=True))
    async def _handle_incoming(event):
        try:
            if not event.is_private:
                return

            chat_id = event.chat_id
            from_self = event.out or event.sender_id == my_id

            logger.debug(f"Incoming DM: chat={chat_id}, sender={event.sender_id}")
            await engine.handle_inbound_message(chat_id, event.raw_text or '', from_self=from_self)
        except Exception as e:
            logger.exception(f"Error handling incoming message: {e}")
        finally:
            clear_request_context()

    _handler = _handle_incoming
    _watcher = asyncio.get_running_loop().create_task(_watch_disconnect(tc, engine))
    logger.info(f"Listener started for user id={my_id}")
    return True


async def _watch_disconnect(tc, engine):
    try:
        await tc.disconnected
        reason = 'client disconnected'
    except Exception as e:
        reason = str(e) or type(e).__name__
    logger.warning(f"Telethon disconnect detected: {reason}")
    _detach(tc)
    try:
        await engine.handle_disconnect(reason)
    except Exception as e:
        logger.exception(f"Reset after disconnect failed: {e}")


def _detach(tc):
    global _handler, _watcher
    handler, _handler = _handler, None
    _watcher = None
    if handler is not None and tc is not None:
        tc.remove_event_handler(handler)


async def _stop_listener_async(client):
    global _watcher
    watcher = _watcher
    _detach(client.raw_client)
    if watcher is not None and not watcher.done():
        watcher.cancel()
    logger.info("Listener stopped")


def start_listener_sync(client, engine) -> bool:
    try:
        return run_in_bg(start_listener(client, engine))
    except Exception as e:
        logger.exception(f"Failed to start listener: {e}")
        return False


def stop_listener(client):
    global _handler, _watcher
    try:
        run_in_bg(_stop_listener_async(client))
    except Exception:
        _handler = None
        _watcher = None
        logger.info("Listener stopped (cleanup)")
