"""
Single-client TCP accept loop shared by the PGenerator and UPGCI servers.

Lifecycle: bind with SO_REUSEADDR, accept one client with a short timeout so
the loop can notice ``stop()``, hand the client to ``handle_client()`` until
it disconnects, then rebind and repeat. Only one client is served at a time.
"""

import logging
import socket
import threading

from pgen_server.signal_state import SignalState

logger = logging.getLogger(__name__)

ACCEPT_TIMEOUT = 2.0
JOIN_TIMEOUT = 3.0


class SingleClientServer:
    """Base class; subclasses implement ``handle_client``."""

    name = "Server"
    default_port = 0

    def __init__(self, state: SignalState, host: str = "", port: int | None = None,
                 accept_timeout: float = ACCEPT_TIMEOUT):
        self.state = state
        self.host = host
        self.port = self.default_port if port is None else port
        self.accept_timeout = accept_timeout
        self._running = False
        self._listener: socket.socket | None = None
        self._client: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._running

    @property
    def bound_port(self) -> int | None:
        """Port of the current listening socket (useful when port=0)."""
        listener = self._listener
        if listener is None:
            return None
        try:
            return listener.getsockname()[1]
        except OSError:
            return None

    def start(self) -> None:
        """Bind in the caller's thread, then serve on a daemon thread.

        A bind failure (e.g. port in use) raises ``OSError`` here.
        """
        if self._running:
            return
        self._listener = self._bind()
        self._running = True
        self._thread = threading.Thread(target=self.serve_forever,
                                        name=f"{self.name}-Server", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = JOIN_TIMEOUT) -> None:
        self._running = False
        with self._lock:
            _close(self._client, shutdown=True)
            _close(self._listener, shutdown=True)
        self.state.clear_pending()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("%s thread did not exit within %.1fs", self.name, timeout)
        self._thread = None

    def serve_forever(self) -> None:
        """Accept loop. Blocks until ``stop()``."""
        self._running = True
        started = False
        try:
            while self._running:
                if self._listener is None:
                    self._listener = self._bind()
                if not started:
                    self.on_started()
                    started = True
                self.on_listening()
                if not self._running:
                    break

                client = self._accept()
                if client is None:
                    continue

                with self._lock:
                    self._client = client
                    _close(self._listener, shutdown=True)
                    self._listener = None
                    if not self._running:
                        break
                self.on_client_connected(client)
                try:
                    self.handle_client(client)
                except OSError:
                    if self._running:
                        logger.exception("%s client communication error", self.name)
                logger.info("%s client disconnected. Reopening server socket.", self.name)
                with self._lock:
                    _close(client, shutdown=True)
                    self._client = None
        except OSError as e:
            if self._running:
                logger.error("%s server error: %s", self.name, e)
                self.state.connection_status = f"{self.name} error: {e}"
        finally:
            self._running = False
            with self._lock:
                _close(self._listener, shutdown=True)
                _close(self._client, shutdown=True)
                self._listener = None
                self._client = None
            self.on_stopped(started)
            logger.info("%s server stopped", self.name)

    # ------------------------------------------------------------------
    # Socket helpers
    # ------------------------------------------------------------------
    def _bind(self) -> socket.socket:
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((self.host, self.port))
            s.listen(1)
            s.settimeout(self.accept_timeout)
        except OSError:
            s.close()
            raise
        return s

    def _accept(self) -> socket.socket | None:
        while self._running:
            listener = self._listener
            if listener is None:
                return None
            try:
                client, addr = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._running:
                    raise
                return None
            client.settimeout(None)
            client.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            logger.info("%s client connected from %s", self.name, addr[0])
            return client
        return None

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------
    def on_started(self) -> None:
        pass

    def on_listening(self) -> None:
        self.state.connection_status = f"{self.name}: Waiting on port {self.bound_port}..."

    def on_client_connected(self, client: socket.socket) -> None:
        self.state.connection_status = f"{self.name}: Client connected"

    def handle_client(self, client: socket.socket) -> None:
        raise NotImplementedError

    def on_stopped(self, started: bool) -> None:
        self.state.connection_status = f"{self.name}: Stopped"

    def close_client(self) -> None:
        """Drop the current client connection (the accept loop continues)."""
        with self._lock:
            _close(self._client, shutdown=True)


def _close(sock: socket.socket | None, shutdown: bool = False) -> None:
    if sock is None:
        return
    if shutdown:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
    try:
        sock.close()
    except OSError:
        pass
