#!/usr/bin/env python3
import http.server
import uuid
from urllib.parse import urlparse
from dotenv import load_dotenv

load_dotenv()

from core.logging import configure_logging, get_logger, set_request_context, clear_request_context
logger = get_logger(__name__)

from core.config import Config
from core.app_context import AppContext, create_app_context
from api.routes import GET_ROUTES, POST_ROUTES, validate_routes
from api.dispatch import dispatch_request
from api.middleware import is_authorized
from domains.flows import handlers as flow_handlers
from utils.response import send_error, send_json

PORT = Config.get_port()


class FlowbotRequestHandler(http.server.BaseHTTPRequestHandler):
    ctx: AppContext = AppContext()

    def end_headers(self):
        self.send_header('Cache-Control', 'no-cache, no-store, must-revalidate')
        super().end_headers()

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")

    def check_auth(self):
        return is_authorized(self.headers)

    def _dispatch(self, method, routes):
        set_request_context(request_id=uuid.uuid4().hex[:8])
        try:
            handled = dispatch_request(self, method, self.path, routes, self.ctx.transport_available)
            if not handled:
                path = urlparse(self.path).path
                logger.debug(f"No route for {method} {path}")
                send_error(self, 'Not found', status=404)
        except Exception as e:
            logger.exception(f"Unhandled error in {method} {self.path}")
            try:
                send_error(self, str(e), status=500)
            except Exception:
                logger.debug("Could not send 500 response, client gone")
        finally:
            clear_request_context()

    def do_GET(self):
        self._dispatch('GET', GET_ROUTES)

    def do_POST(self):
        self._dispatch('POST', POST_ROUTES)

    # ------------------------------------------------------------------
    # Route handlers (names referenced by api.routes)
    # ------------------------------------------------------------------

    def handle_api_health(self):
        send_json(self, {'status': 'ok'})

    def handle_api_status(self):
        flow_handlers.handle_status(self)

    def handle_api_flow_current(self):
        flow_handlers.handle_flow_current(self)

    def handle_api_conversations(self):
        flow_handlers.handle_conversations(self)

    def handle_api_broadcast_status(self):
        flow_handlers.handle_broadcast_status(self)

    def handle_api_broadcast_jobs(self):
        flow_handlers.handle_broadcast_jobs(self)

    def handle_api_flow_publish(self):
        flow_handlers.handle_flow_publish(self)

    def handle_api_broadcast(self):
        flow_handlers.handle_broadcast(self)

    def handle_api_connect(self):
        flow_handlers.handle_connect(self)


def create_server(ctx: AppContext, port: int = PORT) -> http.server.ThreadingHTTPServer:
    validate_routes(FlowbotRequestHandler)
    FlowbotRequestHandler.ctx = ctx
    http.server.ThreadingHTTPServer.allow_reuse_address = True
    return http.server.ThreadingHTTPServer(("0.0.0.0", port), FlowbotRequestHandler)


def shutdown(ctx: AppContext) -> None:
    from core.background_loop import stop_bg_loop
    from integrations.telegram.user_listener import stop_listener

    if ctx.client is not None:
        stop_listener(ctx.client)
        ctx.client.disconnect_sync()
    stop_bg_loop()


if __name__ == "__main__":
    configure_logging()

    from core.bootstrap import start_app
    from core.error_boundary import run_guarded

    ctx = create_app_context()
    run_guarded(lambda: start_app(ctx), context={'phase': 'bootstrap'})

    with create_server(ctx) as httpd:
        logger.info(f"Server running at http://0.0.0.0:{PORT}/")
        logger.info("API endpoints:")
        for route in GET_ROUTES + POST_ROUTES:
            suffix = '<id>' if route.is_prefix else ''
            auth = ' (requires auth)' if route.auth_required else ''
            logger.info(f"  {route.method:<4} {route.path}{suffix}{auth}")
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutting down")
        finally:
            shutdown(ctx)
