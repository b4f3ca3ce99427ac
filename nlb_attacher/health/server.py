import logging
import threading
from typing import Callable

from flask import Flask
from werkzeug.serving import make_server

logger = logging.getLogger(__name__)


def create_app(is_healthy: Callable[[], bool] = None) -> Flask:
    """Build the liveness app. is_healthy defaults to always healthy."""
    app = Flask(__name__)

    @app.route('/', methods=['GET'])
    def index():
        return "nlb-attacher", 200

    @app.route('/healthcheck', methods=['GET'])
    def health_check():
        if is_healthy is None or is_healthy():
            return "healthy", 200
        return "unhealthy", 503

    return app


class HealthServer:
    """Serves the liveness app from a background thread until shutdown() is called."""

    def __init__(self, host: str, port: int, is_healthy: Callable[[], bool] = None):
        self.app = create_app(is_healthy)
        self._server = make_server(host, port, self.app, threaded=True)
        self._thread = None

    @property
    def port(self) -> int:
        return self._server.server_port

    def start(self):
        self._thread = threading.Thread(target=self._server.serve_forever, name="health-server", daemon=True)
        self._thread.start()
        logger.info(f"Started health server on port {self.port}")

    def shutdown(self):
        if self._thread is None:
            return
        logger.warning("Health server received shutdown signal. Shutting down...")
        self._server.shutdown()
        self._thread.join()
        self._thread = None
