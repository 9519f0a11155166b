"""
Background asyncio loop shared by the transport and the flow engine.

The HTTP server runs in plain threads; everything that touches conversation
state or the Telegram client runs on this single loop. Thread code reaches it
through run_in_bg() (wait for the result) or submit_in_bg() (fire and forget).
"""
import asyncio
import concurrent.futures
import threading
from concurrent.futures import Future
from typing import Optional

from core.logging import get_logger

logger = get_logger(__name__)

_bg_loop: Optional[asyncio.AbstractEventLoop] = None
_bg_thread: Optional[threading.Thread] = None
_bg_lock = threading.Lock()


def ensure_bg_loop() -> asyncio.AbstractEventLoop:
    global _bg_loop, _bg_thread
    with _bg_lock:
        if _bg_loop is not None and _bg_loop.is_running():
            return _bg_loop

        loop = asyncio.new_event_loop()
        started = threading.Event()

        def _run():
            asyncio.set_event_loop(loop)
            loop.call_soon(started.set)
            loop.run_forever()

        _bg_loop = loop
        _bg_thread = threading.Thread(target=_run, daemon=True, name='flowbot-loop')
        _bg_thread.start()
        started.wait(timeout=5)
        logger.info("Background event loop started")
        return _bg_loop


def run_in_bg(coro, timeout: float = 120):
    """Run a coroutine on the background loop and block until it finishes.

    On timeout the coroutine is cancelled before the TimeoutError propagates.
    """
    loop = ensure_bg_loop()
    future = asyncio.run_coroutine_threadsafe(coro, loop)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        future.cancel()
        raise


def submit_in_bg(coro) -> Future:
    """Schedule a coroutine on the background loop without waiting for it."""
    loop = ensure_bg_loop()
    return asyncio.run_coroutine_threadsafe(coro, loop)


def stop_bg_loop() -> None:
    global _bg_loop, _bg_thread
    with _bg_lock:
        if _bg_loop is None:
            return
        _bg_loop.call_soon_threadsafe(_bg_loop.stop)
        if _bg_thread is not None:
            _bg_thread.join(timeout=5)
        _bg_loop = None
        _bg_thread = None
        logger.info("Background event loop stopped")
