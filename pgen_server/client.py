"""
Companion clients for the generator's control ports.

PGenerator (port 85): commands are sent as ``<cmd>\\x02\\r`` and replies end
with ``\\x00``. The Calman port (2100) uses ``\\x02 ... \\x03`` framing and
``\\x06`` ACKs instead.
"""

import socket
import threading
import time

from pgen_server.discovery import DISCOVERY_MSG, DISCOVERY_PORT, DISCOVERY_REPLY
from pgen_server.framing import (
    ACK,
    PGEN_REPLY_END,
    encode_pgen_request,
    encode_upgci_request,
)
from pgen_server.pgen import TCP_PORT as PGEN_PORT
from pgen_server.upgci import TCP_PORT as UPGCI_PORT


class _BlockingClient:
    default_port = 0

    def __init__(self, host: str, port: int | None = None, timeout: float = 5.0):
        self.host = host
        self.port = self.default_port if port is None else port
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    def connect(self) -> None:
        self.close()
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        s.settimeout(self.timeout)
        s.connect((self.host, self.port))
        self._sock = s

    def close(self) -> None:
        if self._sock:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def __enter__(self):
        if not self.connected:
            self.connect()
        return self

    def __exit__(self, *exc):
        self.close()

    def _require_socket(self) -> socket.socket:
        if not self._sock:
            raise ConnectionError("Not connected")
        return self._sock


class PGenClient(_BlockingClient):
    """Blocking TCP client for the PGenerator port (85)."""

    default_port = PGEN_PORT

    # ------------------------------------------------------------------
    # Low-level
    # ------------------------------------------------------------------
    def send(self, cmd: str) -> None:
        """Send *cmd* without waiting for a reply."""
        with self._lock:
            self._require_socket().sendall(encode_pgen_request(cmd))

    def query(self, cmd: str) -> str:
        """Send *cmd* and read the reply up to the NUL terminator."""
        with self._lock:
            self._require_socket().sendall(encode_pgen_request(cmd))
            return self._recv()

    def _recv(self) -> str:
        buf = b""
        while not buf.endswith(PGEN_REPLY_END):
            chunk = self._sock.recv(4096)
            if not chunk:
                raise ConnectionError("Connection closed before reply")
            buf += chunk
        return buf[:-len(PGEN_REPLY_END)].decode(errors="replace")

    # ------------------------------------------------------------------
    # High-level helpers
    # ------------------------------------------------------------------
    def cmd(self, command: str) -> str:
        """Send CMD:<command> and return the response after 'OK:'."""
        resp = self.query(f"CMD:{command}")
        if resp.startswith("OK:"):
            return resp[3:]
        return resp

    def get_resolution(self) -> str:
        return self.cmd("GET_RESOLUTION")

    def get_gpu_memory(self) -> str:
        return self.cmd("GET_GPU_MEMORY")

    def send_rectangle(self, width: int, height: int, rgb: tuple[int, int, int],
                       bg: tuple[int, int, int] = (0, 0, 0)) -> None:
        r, g, b = rgb
        bg_r, bg_g, bg_b = bg
        self.send(f"RGB=RECTANGLE;{width};{height};0;{r};{g};{b};{bg_r};{bg_g};{bg_b}")

    def test_template(self, name: str = "") -> None:
        self.send(f"TESTTEMPLATE:{name}")


class UpgciClient(_BlockingClient):
    """Blocking TCP client for the CalMAN UPGCI port (2100)."""

    default_port = UPGCI_PORT

    def send(self, cmd: str) -> bool:
        """Send one framed command; True if it was ACKed."""
        with self._lock:
            sock = self._require_socket()
            sock.sendall(encode_upgci_request(cmd))
            reply = sock.recv(1)
        if not reply:
            raise ConnectionError("Connection closed before ACK")
        return reply == ACK

    def init(self, version: str = "2.0") -> bool:
        return self.send(f"INIT:{version}")

    def rgb(self, r10: int, g10: int, b10: int, window: int = 100) -> bool:
        return self.send(f"RGB_S:{r10},{g10},{b10},{window}")

    def conf_hdr(self, hdr_type: str, max_cll: int, max_fall: int, max_dml: int) -> bool:
        primaries = "0.708,0.292,0.170,0.797,0.131,0.046,0.3127,0.3290,0"
        return self.send(f"CONF_HDR:{hdr_type},{primaries},{max_cll},{max_fall},{max_dml}")

    def conf_level(self, param: str) -> bool:
        return self.send(f"CONF_LEVEL:{param}")

    def shutdown(self) -> bool:
        return self.send("SHUTDOWN")


# Discovery
def discover(timeout: float = 3.0, port: int = DISCOVERY_PORT,
             address: str = "<broadcast>") -> list[tuple[str, str]]:
    """Broadcast UDP discovery. Returns ``(ip, device_name)`` for each reply."""
    found: list[tuple[str, str]] = []
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
    sock.settimeout(timeout)
    sock.bind(("", 0))
    try:
        sock.sendto(DISCOVERY_MSG, (address, port))
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            sock.settimeout(max(deadline - time.monotonic(), 0.01))
            try:
                data, addr = sock.recvfrom(256)
            except socket.timeout:
                break
            if data.startswith(DISCOVERY_REPLY):
                name = data[len(DISCOVERY_REPLY):].decode(errors="replace").strip()
                found.append((addr[0], name))
    finally:
        sock.close()
    return found
