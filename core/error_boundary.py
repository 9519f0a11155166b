"""
Guarded execution for entry points that must not die silently.

server.py wraps bootstrap in run_guarded(); every timer firing goes through
run_guarded_async() with exit_on_error=False so one broken callback only
costs that callback. A failure is logged with its traceback and passed to
notify_error(). In DEV_MODE it is re-raised so it surfaces while developing.

Usage:
    from core.error_boundary import run_guarded_async

    await run_guarded_async(
        lambda: callback(token),
        context={'timer': 'upsell'},
        reraise_in_dev=False,
        exit_on_error=False,
    )
"""
import sys
import traceback
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from core.alerts import notify_error
from core.config import Config
from core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


def is_dev_mode() -> bool:
    return Config.is_dev_mode()


def _report(exc: Exception, fn: Callable, chat_id: Optional[Any],
            context: Optional[Dict[str, Any]], label: str) -> None:
    details = {
        "exception_type": type(exc).__name__,
        "module": getattr(fn, '__module__', 'unknown'),
        "function": getattr(fn, '__name__', 'anonymous'),
    }
    details.update(context or {})

    logger.error(f"Guarded {label} failed: {exc}\n{traceback.format_exc()}")
    notify_error(f"{type(exc).__name__} in guarded {label}: {exc}", chat_id=chat_id, context=details)


def _should_reraise(reraise_in_dev: bool, exit_on_error: bool, exit_code: int) -> bool:
    if is_dev_mode() and reraise_in_dev:
        return True
    if exit_on_error:
        logger.error(f"Guarded call failed, exiting with code {exit_code}")
        sys.exit(exit_code)
    return False


def run_guarded(
    fn: Callable[[], T],
    *,
    chat_id: Optional[Any] = None,
    context: Optional[Dict[str, Any]] = None,
    reraise_in_dev: bool = True,
    exit_on_error: bool = True,
    exit_code: int = 1
) -> Optional[T]:
    """
    Call fn() and report any exception it raises.

    After reporting, the exception is re-raised in dev mode (reraise_in_dev),
    the process exits (exit_on_error), or None is returned.
    """
    try:
        return fn()
    except Exception as exc:
        _report(exc, fn, chat_id, context, 'call')
        if _should_reraise(reraise_in_dev, exit_on_error, exit_code):
            raise
        return None


async def run_guarded_async(
    fn: Callable[[], Awaitable[T]],
    *,
    chat_id: Optional[Any] = None,
    context: Optional[Dict[str, Any]] = None,
    reraise_in_dev: bool = True,
    exit_on_error: bool = True,
    exit_code: int = 1
) -> Optional[T]:
    """run_guarded() for coroutine functions."""
    try:
        return await fn()
    except Exception as exc:
        _report(exc, fn, chat_id, context, 'coroutine')
        if _should_reraise(reraise_in_dev, exit_on_error, exit_code):
            raise
        return None
