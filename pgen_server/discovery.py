"""
UDP discovery responder (port 1977).

Calibration software broadcasts ``Who is a PGenerator``; we answer
``I am a PGenerator <device-name>`` to the sender's address and port.
"""

import logging
import socket
import threading

logger = logging.getLogger(__name__)

DISCOVERY_PORT = 1977
DISCOVERY_MSG = b"Who is a PGenerator"
DISCOVERY_REPLY = b"I am a PGenerator"
DEFAULT_DEVICE_NAME = "PGeneratorPlus"
MAX_DATAGRAM = 1024
POLL_TIMEOUT = 1.0


def discovery_reply(payload: bytes, device_name: str) -> bytes | None:
    """Reply for *payload*, or None if it is not an exact discovery probe."""
    if payload != DISCOVERY_MSG:
        return None
    return DISCOVERY_REPLY + b" " + device_name.encode("utf-8")


class DiscoveryResponder:
    def __init__(self, device_name: str = DEFAULT_DEVICE_NAME, host: str = "",
                 port: int = DISCOVERY_PORT):
        self.device_name = device_name
        self.host = host
        self.port = port
        self._active = threading.Event()
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._active.is_set()

    @property
    def bound_port(self) -> int | None:
        sock = self._sock
        if sock is None:
            return None
        try:
            return sock.getsockname()[1]
        except OSError:
            return None

    def start(self) -> None:
        """Bind and start answering. Bind errors propagate to the caller."""
        if self.running:
            return
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((self.host, self.port))
            s.settimeout(POLL_TIMEOUT)
        except OSError:
            s.close()
            raise
        self._sock = s
        self._active.set()
        self._thread = threading.Thread(target=self._serve, name="PGen-Discovery",
                                        daemon=True)
        self._thread.start()
        logger.info("Discovery service listening on UDP port %s", self.bound_port)

    def stop(self, timeout: float = 1.0) -> None:
        self._active.clear()
        sock = self._sock
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _serve(self) -> None:
        sock = self._sock
        try:
            while self._active.is_set():
                try:
                    data, addr = sock.recvfrom(MAX_DATAGRAM)
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._active.is_set():
                        logger.error("UDP discovery error: %s", e)
                    break
                reply = discovery_reply(data, self.device_name)
                if reply is None:
                    continue
                try:
                    sock.sendto(reply, addr)
                    logger.info("Sent discovery response to %s", addr[0])
                except OSError as e:
                    if self._active.is_set():
                        logger.error("UDP discovery error: %s", e)
        finally:
            try:
                sock.close()
            except OSError:
                pass
            self._sock = None
            logger.info("Discovery service stopped")
