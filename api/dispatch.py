"""
Centralized request dispatcher for the HTTP API.

Provides a single entry point for routing requests through the route table
and applying middleware checks.
"""
from typing import List
from urllib.parse import urlparse

from api.routes import Route, match_route
from api.middleware import apply_route_checks

from core.logging import get_logger
logger = get_logger(__name__)


def dispatch_request(handler, method: str, path: str, routes: List[Route],
                     transport_available: bool) -> bool:
    """
    Dispatch a request through the routing table.

    This function:
    1. Normalizes trailing slashes (redirect /api/foo/ to /api/foo)
    2. Matches the route
    3. If no match: returns False (caller sends 404)
    4. If match: applies route checks (auth, transport requirements)
    5. If middleware denies: returns True (response already sent)
    6. Otherwise: calls the handler method and returns True

    Args:
        handler: The FlowbotRequestHandler instance
        method: HTTP method ('GET', 'POST')
        path: The URL path (query string allowed)
        routes: List of Route objects to match against
        transport_available: Whether the Telegram client is connected

    Returns:
        True if request was handled (even if error response sent)
        False if no route matched
    """
    parsed_path = urlparse(path)
    clean_path = parsed_path.path

    if method == 'GET' and clean_path.startswith('/api/') and clean_path.endswith('/') and len(clean_path) > 5:
        if not match_route(method, clean_path, [r for r in routes if r.is_prefix]):
            normalized = clean_path.rstrip('/')
            query = parsed_path.query
            if query:
                normalized += '?' + query
            handler.send_response(301)
            handler.send_header('Location', normalized)
            handler.end_headers()
            return True

    route = match_route(method, clean_path, routes)
    if not route:
        return False

    if not apply_route_checks(route, handler, transport_available):
        return True

    handler_method = getattr(handler, route.handler, None)
    if handler_method:
        handler_method()
        return True

    logger.warning(f"Handler method not found: {route.handler}")
    return False
