"""Scratch HTTP file server exposed to the guest during provisioning."""

from __future__ import annotations

import functools
import random
import socket
import threading
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import urlparse

from pvelxcbuild.pipeline.sequencer import Step, StepAction
from pvelxcbuild.pipeline.state import BuildState
from pvelxcbuild.utils.logging import get_logger

logger = get_logger(__name__)


class _ReadOnlyHandler(SimpleHTTPRequestHandler):
    """GET/HEAD only; directory listings are allowed."""

    def do_POST(self):
        self.send_error(405)

    do_PUT = do_DELETE = do_PATCH = do_POST

    def log_message(self, format, *args):
        logger.debug(f"http: {self.address_string()} {format % args}")


def bind_in_range(address: str, port_min: int, port_max: int, directory: str) -> ThreadingHTTPServer:
    """Bind the first free port from a shuffled [port_min, port_max] range."""
    ports = list(range(port_min, port_max + 1))
    random.shuffle(ports)
    handler = functools.partial(_ReadOnlyHandler, directory=directory)
    last_error: Optional[OSError] = None
    for port in ports:
        try:
            return ThreadingHTTPServer((address, port), handler)
        except OSError as e:
            last_error = e
    raise OSError(f"no free port in {port_min}-{port_max} on {address}: {last_error}")


def outbound_ip(target_host: str, target_port: int = 8006) -> str:
    """Local address the kernel would use to reach `target_host`."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.connect((target_host, target_port))
        return s.getsockname()[0]


class ServeHTTP(Step):
    """Serve http_directory to the guest for the lifetime of the build."""

    name = "http_server"

    def __init__(self):
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def run(self, state: BuildState) -> StepAction:
        config = state.config
        if not config.http_directory:
            logger.debug("No http_directory configured, not starting HTTP server")
            return StepAction.CONTINUE

        address = config.http_bind_address
        try:
            self._server = bind_in_range(address, config.http_port_min, config.http_port_max, config.http_directory)
        except OSError as e:
            return self.halt(state, f"Error starting HTTP server: {e}", e)

        port = self._server.server_address[1]
        state.ui.say(f"Starting HTTP server on port {port}")
        self._thread = threading.Thread(target=self._server.serve_forever, name="http-server", daemon=True)
        self._thread.start()

        if address in ("0.0.0.0", ""):
            try:
                http_ip = outbound_ip(urlparse(config.proxmox_url).hostname or "127.0.0.1")
            except OSError as e:
                logger.warning(f"Could not determine local address for guests: {e}")
                http_ip = "127.0.0.1"
        else:
            http_ip = address

        state.http_port = port
        state.http_ip = http_ip
        state.generated_data["HTTPIP"] = http_ip
        state.generated_data["HTTPPort"] = port
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        logger.debug("HTTP server stopped")
        self._server = None
        self._thread = None
