"""
Alert hook for flowbot.

Failed sends, aborted broadcasts and crashed timer callbacks all end up in
notify_error(). Alerts are written as [ALERT] log lines so they can be
grepped out of the stream next to the conversation that raised them.

Usage:
    from core.alerts import notify_error

    result = await client.send_message(chat_id, text)
    if not result['success']:
        notify_error(f"Send failed: {result['error']}", chat_id=chat_id)
"""
from typing import Any, Dict, Optional
from core.logging import get_logger

logger = get_logger(__name__)


def notify_error(
    message: str,
    chat_id: Optional[Any] = None,
    context: Optional[Dict[str, Any]] = None
) -> None:
    """
    Record an alert for an operator.

    Args:
        message: What went wrong, one line
        chat_id: Conversation the alert is about, when there is one
        context: Extra fields appended to the line (job_id, phase, node id)
    """
    suffix = f" context={context}" if context else ""
    target = f" chat={chat_id}:" if chat_id is not None else ""
    logger.warning(f"[ALERT]{target} {message}{suffix}")
