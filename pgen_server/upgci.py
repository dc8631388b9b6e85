"""
CalMAN UPGCI (Unified Pattern Generator Control Interface) server.

Implements the UPGCI v2.0 protocol on TCP port 2100. CalMAN drives both the
pattern and the output signal (HDR/SDR, EOTF, bit depth, static metadata)
through it.

Framing: requests are ``\\x02 <payload> \\x03``; every request, understood or
not, is answered with one ACK byte (``\\x06``) right after it is applied.
CalMAN has a short ACK timeout, so nothing here waits on the renderer.

Command types::

    INIT:2.0                                  protocol init
    STATUS | IS_ALIVE                         queries, answered by the ACK
    RGB_S:rrrr,gggg,bbbb,www                  standard window
    RGB_B:rrrr,gggg,bbbb,www                  bordered window
    RGB_A:rrrr,gggg,bbbb,RRRR,GGGG,BBBB,www   window with explicit background
    CONF_HDR:type,Rx,Ry,Gx,Gy,Bx,By,Wx,Wy,?,MaxCLL,MaxFALL,MaxDML
    CONF_FORMAT:...                           logged only
    CONF_LEVEL:Bits n | Range r | Format f | Gamma-HDR | Gamma-SDR
    SPECIALTY:BRIGHTNESS | CONTRAST
    UPDATE[:...]                              logged only
    SHUTDOWN | QUIT                           close the connection

Color values are 10-bit (0-1023) and truncated to 8-bit with
``floor(v * 256 / 1024)``.
"""

import logging
import socket
from dataclasses import dataclass

from pgen_server.draw import DrawCommand, ten_to_eight
from pgen_server.framing import ACK, ETX, FrameReader, strip_upgci_frame
from pgen_server.hdr import HdrSink, ModeChangeCallback
from pgen_server.service import SingleClientServer
from pgen_server.signal_state import VALID_BIT_DEPTHS, Colorimetry, Eotf, SignalState

logger = logging.getLogger(__name__)

TCP_PORT = 2100
MAX_MESSAGE_SIZE = 4096
DEFAULT_WINDOW_PCT = 18.0
BRIGHTNESS_LEVEL = 20
CONTRAST_LEVEL = 235

SDR_TYPES = ("OFF", "SDR", "NONE")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Init:
    version: str


@dataclass(frozen=True)
class Query:
    """STATUS / IS_ALIVE and friends; the ACK is the whole answer."""

    name: str


@dataclass(frozen=True)
class Shutdown:
    name: str


@dataclass(frozen=True)
class Update:
    params: str


@dataclass(frozen=True)
class RgbPattern:
    """Already converted to 8-bit."""

    kind: str
    rgb: tuple[int, int, int]
    background: tuple[int, int, int]
    window_pct: int


@dataclass(frozen=True)
class ConfHdr:
    hdr_type: str
    eotf: Eotf
    max_cll: int | None = None
    max_fall: int | None = None
    max_dml: int | None = None

    @property
    def has_metadata(self) -> bool:
        return self.max_cll is not None or self.max_fall is not None or self.max_dml is not None


@dataclass(frozen=True)
class ConfLevel:
    param: str


@dataclass(frozen=True)
class ConfFormat:
    params: str


@dataclass(frozen=True)
class Specialty:
    name: str


@dataclass(frozen=True)
class Unknown:
    message: str


@dataclass(frozen=True)
class Skip:
    reason: str


UpgciCommand = (Init | Query | Shutdown | Update | RgbPattern | ConfHdr
                | ConfLevel | ConfFormat | Specialty | Unknown | Skip)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def map_hdr_type(hdr_type: str) -> Eotf:
    """Map a CONF_HDR type string to an EOTF (PQ unless told otherwise)."""
    t = hdr_type.upper()
    if t in SDR_TYPES:
        return Eotf.SDR
    if "HLG" in t:
        return Eotf.HLG
    if "DOLBY" in t or "DOVI" in t:
        return Eotf.DOLBY_VISION_PQ_TRANSPORT
    return Eotf.PQ


def _int_or_none(text: str) -> int | None:
    try:
        return int(text.strip())
    except ValueError:
        return None


def parse_rgb(kind: str, params: str) -> RgbPattern | Skip:
    """Only the fields a variant uses are converted; trailing extras are ignored."""
    parts = params.split(",")
    if len(parts) < 3:
        return Skip(f"not enough values in {kind}:{params!r}")
    try:
        rgb = tuple(ten_to_eight(int(p.strip())) for p in parts[:3])
        background = (0, 0, 0)
        if kind == "RGB_A" and len(parts) >= 7:
            background = tuple(ten_to_eight(int(p.strip())) for p in parts[3:6])
            window = int(parts[6].strip())
        elif len(parts) >= 4:
            window = int(parts[3].strip())
        else:
            window = 100
    except ValueError:
        return Skip(f"non-numeric value in {kind}:{params!r}")
    return RgbPattern(kind, rgb, background, window)


def parse_conf_hdr(params: str) -> ConfHdr:
    parts = params.split(",")
    hdr_type = parts[0].strip().upper()
    eotf = map_hdr_type(hdr_type)
    if eotf == Eotf.SDR or len(parts) < 13:
        return ConfHdr(hdr_type, eotf)
    return ConfHdr(hdr_type, eotf,
                   max_cll=_int_or_none(parts[10]),
                   max_fall=_int_or_none(parts[11]),
                   max_dml=_int_or_none(parts[12]))


def _parse_simple(message: str) -> UpgciCommand:
    if message.startswith("INIT"):
        return Init(message[4:].strip())
    if message in ("STATUS", "GETSTATUS", "IS_ALIVE", "ISALIVE"):
        return Query(message)
    if message == "UPDATE":
        return Update("")
    if message in ("SHUTDOWN", "QUIT"):
        return Shutdown(message)
    return Unknown(message)


def parse_message(message: str) -> UpgciCommand:
    kind, sep, params = message.partition(":")
    if not sep:
        return _parse_simple(message)
    if kind.startswith("RGB"):
        return parse_rgb(kind, params)
    if kind == "INIT":
        return Init(params)
    if kind == "CONF_HDR":
        return parse_conf_hdr(params)
    if kind == "CONF_FORMAT":
        return ConfFormat(params)
    if kind == "CONF_LEVEL":
        return ConfLevel(params.strip())
    if kind == "SPECIALTY":
        return Specialty(params.strip().upper())
    if kind == "UPDATE":
        return Update(params)
    return Unknown(message)


def build_rgb_pattern(cmd: RgbPattern) -> list[DrawCommand]:
    if cmd.window_pct >= 100:
        return [DrawCommand.full_field_rgb8(*cmd.rgb)]
    window = cmd.window_pct if cmd.window_pct > 0 else DEFAULT_WINDOW_PCT
    return [
        DrawCommand.full_field_rgb8(*cmd.background),
        DrawCommand.window_rgb8(window, *cmd.rgb),
    ]


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------
class UpgciServer(SingleClientServer):
    """CalMAN UPGCI server.

    *on_mode_change* is called with ``(is_hdr, bit_depth, eotf)`` whenever
    CalMAN changes the signal; *hdr_sink* receives static metadata.
    """

    name = "UPGCI"
    default_port = TCP_PORT

    def __init__(self, state: SignalState,
                 on_mode_change: ModeChangeCallback | None = None,
                 hdr_sink: HdrSink | None = None, debug: bool = False, **kwargs):
        super().__init__(state, **kwargs)
        self.on_mode_change = on_mode_change
        self.hdr_sink = hdr_sink
        self.debug = debug

    def on_started(self) -> None:
        logger.info("UPGCI server ready (%s)", "HDR" if self.state.is_hdr else "SDR")

    def on_listening(self) -> None:
        self.state.set_commands([])
        super().on_listening()

    def on_client_connected(self, client: socket.socket) -> None:
        self.state.connection_status = "UPGCI: CalMAN connected"

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    def handle_client(self, client: socket.socket) -> None:
        reader = FrameReader(client)
        while self.running:
            frame = reader.read_until(ETX, MAX_MESSAGE_SIZE - 1)
            if frame is None:
                break
            message = strip_upgci_frame(frame)
            if self.debug:
                logger.debug("Received: %s", message)
            close = self.process(message)
            client.sendall(ACK)
            if close:
                logger.info("%s received, closing connection", message)
                break

    def process(self, message: str) -> bool:
        """Parse and apply one message. Returns True if the client should go."""
        try:
            command = parse_message(message)
            return self.apply(command)
        except Exception:
            logger.exception("Command processing error: %s", message)
            return False

    def apply(self, command: UpgciCommand) -> bool:
        if isinstance(command, RgbPattern):
            logger.debug("%s: 8-bit%s window=%d bg=%s", command.kind, command.rgb,
                         command.window_pct, command.background)
            self.state.set_commands(build_rgb_pattern(command))
        elif isinstance(command, ConfHdr):
            self._conf_hdr(command)
        elif isinstance(command, ConfLevel):
            self._conf_level(command.param)
        elif isinstance(command, Specialty):
            self._specialty(command.name)
        elif isinstance(command, Init):
            logger.info("CalMAN INIT v%s", command.version)
        elif isinstance(command, ConfFormat):
            logger.info("CONF_FORMAT: %s", command.params)
        elif isinstance(command, Update):
            logger.debug("UPDATE: %s", command.params)
        elif isinstance(command, Query):
            logger.debug("%s check", command.name)
        elif isinstance(command, Shutdown):
            return True
        elif isinstance(command, Skip):
            logger.warning("Invalid UPGCI command: %s", command.reason)
        else:
            logger.debug("Unhandled command: %s", command.message)
        return False

    # ------------------------------------------------------------------
    # Signal mode
    # ------------------------------------------------------------------
    def _notify(self, is_hdr: bool, bits: int, eotf: Eotf) -> None:
        if self.on_mode_change is None:
            return
        try:
            self.on_mode_change(is_hdr, bits, eotf)
        except Exception:
            logger.exception("Mode-change callback failed")

    def _enter_sdr(self) -> int:
        state = self.state
        with state.mode_transaction():
            state.set_mode(state.bit_depth, False)
            state.apply_eotf_mode(Eotf.SDR)
            return state.bit_depth

    def _enter_hdr(self, eotf: Eotf) -> int:
        """Switch to an HDR EOTF, promoting colorimetry and bit depth."""
        state = self.state
        with state.mode_transaction():
            state.apply_eotf_mode(eotf)
            state.configure_signal(colorimetry=Colorimetry.BT2020)
            bits = max(state.bit_depth, 10)
            state.set_mode(bits, True)
            return bits

    def _conf_hdr(self, command: ConfHdr) -> None:
        if command.eotf == Eotf.SDR:
            bits = self._enter_sdr()
            logger.info("Switching to SDR mode (CalMAN request)")
            self._notify(False, bits, Eotf.SDR)
            return

        if command.eotf == Eotf.DOLBY_VISION_PQ_TRANSPORT:
            logger.info("Dolby Vision requested by CalMAN")
        bits = self._enter_hdr(command.eotf)

        if command.has_metadata:
            self.state.set_static_metadata(command.max_cll, command.max_fall, command.max_dml)
            self._forward_metadata(command)

        logger.info("Switching to HDR mode: %s (EOTF=%s)", command.hdr_type, command.eotf.name)
        self._notify(True, bits, command.eotf)

    def _forward_metadata(self, command: ConfHdr) -> None:
        max_cll = command.max_cll or 0
        if self.hdr_sink is None or max_cll <= 0:
            return
        max_fall = command.max_fall if command.max_fall and command.max_fall > 0 else max_cll
        max_dml = command.max_dml if command.max_dml and command.max_dml > 0 else max_cll
        try:
            self.hdr_sink.apply_static_metadata(max_cll, max_fall, max_dml)
        except Exception:
            logger.exception("HDR sink rejected static metadata")

    def _conf_level(self, param: str) -> None:
        logger.info("CONF_LEVEL: %s", param)
        state = self.state
        lowered = param.lower()
        if lowered.startswith("bits "):
            bits = _int_or_none(param[5:])
            if bits not in VALID_BIT_DEPTHS:
                logger.warning("Unsupported bit depth: %s", param[5:].strip())
                return
            state.set_mode(bits, state.is_hdr)
            logger.info("Bit depth set to %d by CalMAN", bits)
            self._notify(state.is_hdr, bits, state.eotf)
        elif lowered.startswith("range "):
            logger.info("Video range set to: %s", param[6:].strip())
        elif lowered.startswith("format "):
            logger.info("Color format set to: %s", param[7:].strip())
        elif lowered == "gamma-hdr":
            if not state.is_hdr:
                bits = self._enter_hdr(Eotf.PQ)
                logger.info("Switching to HDR mode (Gamma-HDR)")
                self._notify(True, bits, state.eotf)
        elif lowered == "gamma-sdr":
            if state.is_hdr:
                bits = self._enter_sdr()
                logger.info("Switching to SDR mode (Gamma-SDR)")
                self._notify(False, bits, Eotf.SDR)
        else:
            logger.debug("Unknown CONF_LEVEL param: %s", param)

    def _specialty(self, name: str) -> None:
        logger.info("SPECIALTY pattern: %s", name)
        if name == "BRIGHTNESS":
            level = BRIGHTNESS_LEVEL
        elif name == "CONTRAST":
            level = CONTRAST_LEVEL
        else:
            logger.debug("Unknown specialty: %s", name)
            return
        self.state.set_commands([DrawCommand.full_field_rgb8(level, level, level)])
