"""
Flow domain handlers.

These handle the flow, conversation, broadcast and connection API endpoints.
Every handler reads the engine and Telegram client from handler.ctx and runs
engine coroutines on the background loop.
"""
import asyncio
import concurrent.futures
from urllib.parse import urlparse

from core.background_loop import run_in_bg
from core.config import Config
from core.logging import get_logger
from utils.response import read_json_body, send_error, send_json
from . import broadcast

logger = get_logger(__name__)


def handle_status(handler):
    """GET /api/status"""
    ctx = handler.ctx
    try:
        engine = ctx.engine
        flow = engine.current_flow if engine else None
        from integrations.telegram.user_listener import is_listening

        send_json(handler, {
            'transport': ctx.client.get_status() if ctx.client else None,
            'listening': is_listening(),
            'flow': {
                'version': flow.version,
                'startNodeId': flow.start_node_id,
                'nodeCount': len(flow.nodes),
            } if flow else None,
            'activeConversations': len(engine.store) if engine else 0,
            'inactivityTimeoutSeconds': engine.inactivity_timeout_seconds if engine else None,
        })
    except Exception as e:
        logger.exception("Error building status")
        send_error(handler, str(e), status=500)


def handle_flow_current(handler):
    """GET /api/flows/current"""
    flow = handler.ctx.engine.current_flow
    if flow is None:
        send_error(handler, 'No flow published', status=404)
        return
    send_json(handler, {'success': True, 'flow': flow.to_dict()})


def handle_conversations(handler):
    """GET /api/conversations"""
    try:
        conversations = handler.ctx.engine.list_active_conversations()
        send_json(handler, {'conversations': conversations, 'count': len(conversations)})
    except Exception as e:
        logger.exception("Error listing conversations")
        send_error(handler, str(e), status=500)


def handle_flow_publish(handler):
    """POST /api/flows/publish"""
    try:
        data = read_json_body(handler)
    except ValueError:
        send_error(handler, 'Invalid request format', status=400)
        return

    if isinstance(data, dict) and 'flow' in data:
        document = data['flow']
    else:
        document = data

    timeout = Config.get_publish_timeout_seconds()
    try:
        result = run_in_bg(
            asyncio.wait_for(handler.ctx.engine.publish_flow(document), timeout=timeout),
            timeout=timeout + 5,
        )
    except (asyncio.TimeoutError, concurrent.futures.TimeoutError):
        logger.warning(f"Flow publish timed out after {timeout}s waiting for active conversations")
        send_error(handler, 'Publish timed out waiting for active conversations; flow unchanged', status=503)
        return
    except Exception as e:
        logger.exception("Flow publish error")
        send_error(handler, str(e), status=500)
        return

    send_json(handler, result, status=200 if result.get('success') else 400)


def handle_broadcast(handler):
    """POST /api/broadcast"""
    ctx = handler.ctx
    try:
        data = read_json_body(handler) or {}
    except ValueError:
        send_error(handler, 'Invalid request format', status=400)
        return

    if not isinstance(data, dict):
        send_error(handler, 'Invalid request format', status=400)
        return

    message = data.get('message')
    if not isinstance(message, str) or not message.strip():
        send_error(handler, 'Message is required', status=400)
        return

    delay = data.get('delaySeconds')
    if delay is None:
        delay = Config.get_broadcast_delay_seconds()
    elif isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
        send_error(handler, 'delaySeconds must be a non-negative number', status=400)
        return

    audience = data.get('audience') or broadcast.AUDIENCE_KNOWN

    try:
        job = broadcast.send_broadcast(message, float(delay), audience, ctx.engine, ctx.client)
    except ValueError as e:
        send_error(handler, str(e), status=400)
        return
    except Exception as e:
        logger.exception("Broadcast error")
        send_error(handler, str(e), status=500)
        return

    send_json(handler, {'success': True, 'job': job.to_dict()}, status=202)


def handle_broadcast_status(handler):
    """GET /api/broadcast-status/<id>"""
    parsed_path = urlparse(handler.path)
    try:
        job_id = int(parsed_path.path.rstrip('/').split('/')[-1])
    except ValueError:
        send_error(handler, 'Invalid job id', status=400)
        return

    job = broadcast.get_job(job_id)
    if job is None:
        send_error(handler, 'Job not found', status=404)
        return
    send_json(handler, job.to_dict())


def handle_broadcast_jobs(handler):
    """GET /api/broadcast-jobs"""
    jobs = broadcast.list_jobs(limit=20)
    send_json(handler, {'jobs': [job.to_dict() for job in jobs]})


def handle_connect(handler):
    """POST /api/connect"""
    ctx = handler.ctx
    if not ctx.telegram_configured or ctx.client is None:
        send_error(handler, 'Telegram credentials not configured', status=503)
        return

    from core.bootstrap import connect_transport
    try:
        connected = connect_transport(ctx)
    except Exception as e:
        logger.exception("Connect error")
        send_error(handler, str(e), status=500)
        return

    send_json(handler, {
        'success': connected,
        'listening': ctx.listener_started,
        'transport': ctx.client.get_status(),
    }, status=200 if connected else 503)
