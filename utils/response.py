"""
HTTP response helpers for server.py and the domain handlers.
NO side effects at import time.
"""
import json


def send_json(handler, data, status: int = 200):
    """
    Send a JSON response.

    Usage:
        send_json(handler, {'success': True, 'flow': flow})
        send_json(handler, {'error': 'Not found'}, status=404)
    """
    body = json.dumps(data).encode()
    handler.send_response(status)
    handler.send_header('Content-type', 'application/json')
    handler.send_header('Content-Length', str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def send_error(handler, message: str, status: int = 500):
    """
    Send a JSON error response shaped {'success': False, 'error': message}.

    Usage:
        send_error(handler, 'Telegram client not connected', status=503)
        send_error(handler, str(e), status=500)
    """
    send_json(handler, {'success': False, 'error': message}, status=status)


def read_json_body(handler):
    """
    Parse the request body as JSON.

    Returns None for an empty body.

    Raises:
        json.JSONDecodeError: If the body is not valid JSON
    """
    content_length = int(handler.headers.get('Content-Length') or 0)
    if content_length <= 0:
        return None
    post_data = handler.rfile.read(content_length)
    return json.loads(post_data.decode('utf-8'))
