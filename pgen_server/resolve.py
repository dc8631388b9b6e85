"""
Resolve-XML pattern client.

Connects out to a Resolve / DisplayCAL / LightSpace / Calman XML pattern
server (default port 20002). Each frame is a 4-byte big-endian length
followed by that many bytes of UTF-8 XML, e.g.::

    <calibration>
      <color red="255" green="0" blue="0" bits="8"/>
      <background red="0" green="0" blue="0" bits="8"/>
      <geometry x="0.25" y="0.25" cx="0.5" cy="0.5"/>
    </calibration>

The LightSpace variant lists shapes instead::

    <calibration>
      <shapes>
        <rectangle>
          <color red="940" green="940" blue="940" bits="10"/>
          <geometry x="0" y="0" cx="1" cy="1"/>
        </rectangle>
      </shapes>
    </calibration>

Geometry is given as fractions of the screen with a top-left origin.
"""

import logging
import math
import socket
import threading
import xml.etree.ElementTree as ET

from pgen_server.draw import Color, DrawCommand
from pgen_server.framing import RESOLVE_HEADER, FrameReader
from pgen_server.signal_state import PatternMode, SignalState

logger = logging.getLogger(__name__)

DEFAULT_PORT = 20002
MAX_FRAME_SIZE = 1 << 20
CONNECT_TIMEOUT = 5.0
RECONNECT_DELAY = 2.0


class ResolveFormatError(ValueError):
    """Frame payload is not a pattern document we understand."""


# ---------------------------------------------------------------------------
# XML decoding
# ---------------------------------------------------------------------------
def _number(element: ET.Element, name: str, default: float = 0.0) -> float:
    raw = element.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ResolveFormatError(f"<{element.tag}> {name}={raw!r} is not a number") from None
    if not math.isfinite(value):
        raise ResolveFormatError(f"<{element.tag}> {name}={raw!r} is not finite")
    return value


def parse_color(element: ET.Element) -> Color:
    bits = _number(element, "bits", 8.0)
    if not bits.is_integer() or bits <= 0 or bits > 16:
        raise ResolveFormatError(f"<{element.tag}> has unsupported bits={bits:g}")
    max_value = float((1 << int(bits)) - 1)
    return tuple(
        min(max(_number(element, channel) / max_value, 0.0), 1.0)
        for channel in ("red", "green", "blue")
    )


def parse_geometry(element: ET.Element | None) -> tuple[float, float, float, float]:
    if element is None:
        return (0.0, 0.0, 1.0, 1.0)
    return (
        _number(element, "x"),
        _number(element, "y"),
        _number(element, "cx", 1.0),
        _number(element, "cy", 1.0),
    )


def _shape(color: ET.Element, geometry: ET.Element | None) -> DrawCommand:
    x, y, cx, cy = parse_geometry(geometry)
    return DrawCommand.from_fractions(x, y, cx, cy, parse_color(color))


def parse_resolve_xml(payload: bytes | str) -> list[DrawCommand]:
    """Decode one frame payload into a draw-command list."""
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as e:
        raise ResolveFormatError(f"malformed XML: {e}") from None

    commands = []
    background = root.find("background")
    if background is not None:
        commands.append(DrawCommand.full_field(parse_color(background)))

    rectangles = list(root.iter("rectangle"))
    if rectangles:
        for rect in rectangles:
            color = rect.find("color")
            if color is None:
                continue
            commands.append(_shape(color, rect.find("geometry")))
        return commands

    color = root.find("color")
    if color is not None:
        commands.append(_shape(color, root.find("geometry")))
    return commands


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class ResolveClient:
    def __init__(self, state: SignalState, host: str, port: int = DEFAULT_PORT,
                 hdr: bool = False, connect_timeout: float = CONNECT_TIMEOUT,
                 reconnect_delay: float = RECONNECT_DELAY, debug: bool = False):
        self.state = state
        self.host = host
        self.port = port
        self.hdr = hdr
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self.debug = debug
        self._stop = threading.Event()
        self._sock: socket.socket | None = None
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.frames_received = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self.state.pattern_mode = PatternMode.RESOLVE_HDR if self.hdr else PatternMode.RESOLVE_SDR
        self._thread = threading.Thread(target=self.run, name="Resolve-Client", daemon=True)
        self._thread.start()
        logger.info("Resolve mode: connecting to %s:%d", self.host, self.port)

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        with self._lock:
            sock = self._sock
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def run(self) -> None:
        """Connect/read/reconnect until ``stop()``."""
        try:
            while not self._stop.is_set():
                try:
                    self._session()
                except OSError as e:
                    if not self._stop.is_set():
                        logger.warning("Resolve connection to %s:%d failed: %s",
                                       self.host, self.port, e)
                        self.state.connection_status = f"Resolve: {e}"
                if self._stop.wait(self.reconnect_delay):
                    break
        finally:
            self.state.connection_status = "Resolve: Stopped"
            logger.info("Resolve client stopped")

    def _session(self) -> None:
        self.state.connection_status = f"Resolve: Connecting to {self.host}:{self.port}..."
        sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        sock.settimeout(None)
        with self._lock:
            self._sock = sock
        try:
            if self._stop.is_set():
                return
            logger.info("Connected to Resolve server %s:%d", self.host, self.port)
            self.state.connection_status = f"Resolve: Connected to {self.host}:{self.port}"
            reader = FrameReader(sock)
            while not self._stop.is_set():
                if not self._read_frame(reader):
                    break
            logger.info("Resolve server closed the connection")
        finally:
            with self._lock:
                self._sock = None
            try:
                sock.close()
            except OSError:
                pass

    def _read_frame(self, reader: FrameReader) -> bool:
        header = reader.read_exact(RESOLVE_HEADER.size)
        if header is None:
            return False
        (length,) = RESOLVE_HEADER.unpack(header)
        if length > MAX_FRAME_SIZE:
            logger.error("Resolve frame of %d bytes exceeds limit, dropping connection", length)
            return False
        payload = reader.read_exact(length)
        if payload is None:
            return False
        if self.debug:
            logger.debug("Received: %s", payload.decode("utf-8", errors="replace"))
        try:
            commands = parse_resolve_xml(payload)
        except ResolveFormatError as e:
            logger.warning("Ignoring Resolve frame: %s", e)
            return True
        except Exception:
            logger.exception("Ignoring undecodable Resolve frame")
            return True
        self.frames_received += 1
        self.state.set_commands(commands)
        return True
