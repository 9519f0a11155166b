"""
Route definitions for the HTTP API.

Each Route maps (method, path) to a handler method name on FlowbotRequestHandler.
Handler names are validated at startup to fail fast if any are missing.
"""
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class Route:
    """
    A route definition mapping HTTP method + path to a handler.

    Attributes:
        method: HTTP method ('GET' or 'POST')
        path: URL path (exact match or prefix if is_prefix=True)
        handler: Method name on FlowbotRequestHandler (validated at startup)
        auth_required: If True, the admin bearer token must be presented
        transport_required: If True, the Telegram client must be connected
        is_prefix: If True, match path.startswith() instead of ==
    """
    method: str
    path: str
    handler: str
    auth_required: bool = True
    transport_required: bool = False
    is_prefix: bool = False


# ============================================================================
# GET Routes
# ============================================================================

GET_ROUTES: List[Route] = [
    Route('GET', '/api/health', 'handle_api_health', auth_required=False),
    Route('GET', '/api/status', 'handle_api_status'),

    # Flows
    Route('GET', '/api/flows/current', 'handle_api_flow_current'),
    Route('GET', '/api/conversations', 'handle_api_conversations'),

    # Broadcast
    Route('GET', '/api/broadcast-status/', 'handle_api_broadcast_status', is_prefix=True),
    Route('GET', '/api/broadcast-jobs', 'handle_api_broadcast_jobs'),
]


# ============================================================================
# POST Routes
# ============================================================================

POST_ROUTES: List[Route] = [
    Route('POST', '/api/flows/publish', 'handle_api_flow_publish'),
    Route('POST', '/api/broadcast', 'handle_api_broadcast', transport_required=True),
    Route('POST', '/api/connect', 'handle_api_connect'),
]


# Combined routes for easy lookup
ALL_ROUTES = GET_ROUTES + POST_ROUTES


def match_route(method: str, path: str, routes: List[Route]) -> Optional[Route]:
    """
    Find a matching route for the given method and path.

    Routes are checked in order, so more specific patterns should come first.

    Args:
        method: HTTP method ('GET' or 'POST')
        path: URL path to match
        routes: List of routes to search

    Returns:
        Matching Route or None
    """
    for route in routes:
        if route.method != method:
            continue

        if route.is_prefix:
            if path.startswith(route.path):
                return route
        elif path == route.path:
            return route

    return None


def validate_routes(handler_class) -> None:
    """
    Validate that all route handlers exist on the handler class.

    Call this at startup to fail fast if any handlers are missing.

    Raises:
        AttributeError: If any handler method is missing
    """
    missing = []
    for route in ALL_ROUTES:
        if not hasattr(handler_class, route.handler):
            missing.append(f"{route.method} {route.path} -> {route.handler}")

    if missing:
        raise AttributeError(
            f"Missing handler methods on {handler_class.__name__}:\n" +
            "\n".join(f"  - {m}" for m in missing)
        )
