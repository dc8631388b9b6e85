"""
PGenerator protocol server (TCP port 85).

Compatible with HCFR, LightSpace CMS and DeviceControl. Requests end with
``\\x02\\r``; replies (only for ``CMD:GET_*`` queries) end with ``\\x00``.
Each request is applied and handed to the render consumer before the next
one is read, so the calling software never gets ahead of the screen.
"""

import logging
import socket
from dataclasses import dataclass

from pgen_server.draw import DrawCommand, rgb8
from pgen_server.framing import (
    PGEN_END,
    FrameReader,
    decode_text,
    encode_pgen_reply,
)
from pgen_server.service import SingleClientServer
from pgen_server.signal_state import PatternMode, SignalState

logger = logging.getLogger(__name__)

TCP_PORT = 85
MAX_MESSAGE_SIZE = 1024
SCREEN_WIDTH = 3840
SCREEN_HEIGHT = 2160
GPU_MEMORY = 192


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class GetResolution:
    pass


@dataclass(frozen=True)
class GetGpuMemory:
    pass


@dataclass(frozen=True)
class ShowPassive:
    """``TESTTEMPLATE:...``: reapply the passive pattern."""


@dataclass(frozen=True)
class Rectangle:
    width: int
    height: int
    rgb: tuple[int, int, int]
    background: tuple[int, int, int]


@dataclass(frozen=True)
class Ignored:
    """Recognised but not renderable (``RGB=TEXT``, ``RGB=IMAGE``)."""

    kind: str


@dataclass(frozen=True)
class Blank:
    """Unknown command: show nothing."""

    message: str


@dataclass(frozen=True)
class Skip:
    """Malformed command: leave the screen as it is."""

    reason: str


PGenCommand = GetResolution | GetGpuMemory | ShowPassive | Rectangle | Ignored | Blank | Skip


def parse_rectangle(message: str) -> Rectangle | Skip:
    """``RGB=RECTANGLE;<w>;<h>;<unused>;<r>;<g>;<b>;<bgR>;<bgG>;<bgB>``"""
    _, _, rest = message.partition(";")
    parts = rest.split(";")
    if len(parts) < 9:
        return Skip(f"RGB=RECTANGLE needs 9 fields, got {len(parts)}")
    try:
        width, height = int(parts[0]), int(parts[1])
        rgb = (int(parts[3]), int(parts[4]), int(parts[5]))
        bg = (int(parts[6]), int(parts[7]), int(parts[8]))
    except ValueError as e:
        return Skip(f"RGB=RECTANGLE has a non-numeric field: {e}")
    return Rectangle(width, height, rgb, bg)


def parse_message(message: str) -> PGenCommand:
    if message == "CMD:GET_RESOLUTION":
        return GetResolution()
    if message == "CMD:GET_GPU_MEMORY":
        return GetGpuMemory()
    if message.startswith("TESTTEMPLATE:"):
        return ShowPassive()
    if message.startswith("RGB=RECTANGLE"):
        return parse_rectangle(message)
    if message.startswith("RGB=TEXT"):
        return Ignored("TEXT")
    if message.startswith("RGB=IMAGE"):
        return Ignored("IMAGE")
    return Blank(message)


def build_rectangle(cmd: Rectangle, screen_width: int = SCREEN_WIDTH,
                    screen_height: int = SCREEN_HEIGHT,
                    max_value: float = 255.0) -> list[DrawCommand]:
    """Full-field background, then the centered foreground rectangle."""
    return [
        DrawCommand.full_field(rgb8(*cmd.background, max_value)),
        DrawCommand.centered_pixels(cmd.width, cmd.height, screen_width,
                                    screen_height, rgb8(*cmd.rgb, max_value)),
    ]


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------
class PGenServer(SingleClientServer):
    """PGenerator protocol server.

    *passive* is an optional ``(r, g, b)`` full field shown while waiting
    for a client and on ``TESTTEMPLATE``.
    """

    name = "PGen"
    default_port = TCP_PORT

    def __init__(self, state: SignalState, hdr: bool = False,
                 passive: tuple[int, int, int] | None = None,
                 resolution: tuple[int, int] = (SCREEN_WIDTH, SCREEN_HEIGHT),
                 debug: bool = False, **kwargs):
        super().__init__(state, **kwargs)
        self.hdr = hdr
        self.width, self.height = resolution
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"resolution must be positive, got {self.width}x{self.height}")
        self.debug = debug
        self.passive_pattern = self._build_passive_pattern(passive)

    @staticmethod
    def _build_passive_pattern(passive) -> list[DrawCommand]:
        if passive is None:
            return []
        return [DrawCommand.full_field_rgb8(*passive)]

    # ------------------------------------------------------------------
    # Accept-loop hooks
    # ------------------------------------------------------------------
    def on_started(self) -> None:
        self.state.wait_pending()
        self.state.set_mode(8, self.hdr)
        self.state.pattern_mode = PatternMode.PGEN
        logger.info("PGen server ready (8-bit %s)", "HDR" if self.hdr else "SDR")

    def on_listening(self) -> None:
        self.state.wait_pending()
        if not self.running:
            return
        self.state.set_commands(self.passive_pattern)
        super().on_listening()

    def on_stopped(self, started: bool) -> None:
        if started:
            self.state.set_commands([])
        super().on_stopped(started)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    def handle_client(self, client: socket.socket) -> None:
        reader = FrameReader(client)
        while self.running:
            self.state.wait_pending()
            if not self.running:
                break
            frame = reader.read_until(PGEN_END, MAX_MESSAGE_SIZE - 1)
            if frame is None:
                break
            message = decode_text(frame)
            if self.debug:
                logger.debug("Received: %s", message)

            response = self.apply(parse_message(message))
            self.state.set_pending()
            if response is not None:
                client.sendall(encode_pgen_reply(response))

    def apply(self, command: PGenCommand) -> str | None:
        """Apply one parsed command; return the reply text, if any."""
        if isinstance(command, GetResolution):
            return f"OK:{self.width}x{self.height}"
        if isinstance(command, GetGpuMemory):
            return f"OK:{GPU_MEMORY}"
        if isinstance(command, ShowPassive):
            self.state.set_commands(self.passive_pattern)
        elif isinstance(command, Rectangle):
            self.state.set_commands(build_rectangle(command, self.width, self.height))
        elif isinstance(command, Ignored):
            logger.debug("Ignoring RGB=%s command", command.kind)
        elif isinstance(command, Skip):
            logger.warning("Invalid PGen command: %s", command.reason)
        else:
            self.state.set_commands([])
        return None
