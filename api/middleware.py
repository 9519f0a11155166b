"""
Middleware for API routes.

Thin wrappers that apply auth and availability checks before calling handlers.
"""
import hmac
from typing import Optional

from api.routes import Route
from core.config import Config
from core.logging import get_logger
from utils.response import send_error

logger = get_logger(__name__)


def send_unauthorized(handler_instance) -> None:
    """Send a 401 Unauthorized response."""
    send_error(handler_instance, 'Unauthorized', status=401)


def send_transport_unavailable(handler_instance) -> None:
    """Send a 503 Service Unavailable response for the Telegram client."""
    send_error(handler_instance, 'Telegram client not connected', status=503)


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def is_authorized(headers) -> bool:
    """
    Check the Authorization header against ADMIN_TOKEN.

    With no ADMIN_TOKEN configured every protected route is denied.
    """
    expected = Config.get_admin_token()
    if not expected:
        logger.warning("ADMIN_TOKEN not configured, denying request")
        return False

    token = extract_bearer_token(headers.get('Authorization'))
    if not token:
        logger.debug("No bearer token in request")
        return False

    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(token.encode('utf-8'), expected.encode('utf-8'))


def apply_route_checks(route: Route, handler_instance, transport_available: bool) -> bool:
    """
    Apply middleware checks for a route before calling the handler.

    Order:
    1. Authentication (if auth_required)
    2. Transport availability (if transport_required)

    Returns:
        True if all checks pass and handler should be called
        False if a check failed and response was already sent
    """
    if route.auth_required and not handler_instance.check_auth():
        path = handler_instance.path.split('?')[0]
        logger.warning(f"401 Unauthorized: {route.method} {path}")
        send_unauthorized(handler_instance)
        return False

    if route.transport_required and not transport_available:
        send_transport_unavailable(handler_instance)
        return False

    return True
