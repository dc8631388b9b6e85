"""
Shared signal/render state, the one object every protocol service mutates.

The render consumer reads the draw-command list and the signal configuration
from here. PGenerator's request/response cycle is paced through the
``pending`` flag: a service marks an update pending, the consumer applies it
and clears the flag, and ``wait_pending()`` lets the service block until that
has happened.
"""

import enum
import logging
import threading
from dataclasses import dataclass

from pgen_server.draw import DrawCommand

logger = logging.getLogger(__name__)


class Eotf(enum.IntEnum):
    """Transfer function. Values match the HDMI InfoFrame numbering."""

    SDR = 0
    PQ = 2
    HLG = 3
    DOLBY_VISION_PQ_TRANSPORT = 4


class ColorFormat(enum.IntEnum):
    RGB = 0
    YCBCR444 = 1
    YCBCR422 = 2


class Colorimetry(enum.IntEnum):
    BT709 = 0
    BT2020 = 1


class QuantRange(enum.IntEnum):
    AUTO = 0
    LIMITED = 1
    FULL = 2


class PatternMode(enum.Enum):
    MANUAL = "manual"
    PGEN = "pgen"
    RESOLVE_SDR = "resolve_sdr"
    RESOLVE_HDR = "resolve_hdr"


VALID_BIT_DEPTHS = (8, 10, 12)


@dataclass(frozen=True)
class HdrStaticMetadata:
    """CTA-861.3 static metadata, all values in nits."""

    max_cll: int
    max_fall: int
    max_mastering_luminance: int


@dataclass(frozen=True)
class SignalConfiguration:
    """Snapshot of the requested output signal."""

    bit_depth: int = 8
    eotf: Eotf = Eotf.SDR
    color_format: ColorFormat = ColorFormat.RGB
    colorimetry: Colorimetry = Colorimetry.BT709
    quant_range: QuantRange = QuantRange.AUTO
    hdr_static_metadata: HdrStaticMetadata | None = None

    @property
    def is_hdr(self) -> bool:
        return self.eotf != Eotf.SDR


class SignalState:
    """Process-wide signal configuration plus the current draw-command list.

    Scalar fields are plain attributes: reads are lock-free and only
    eventually consistent, which is fine for display purposes. Multi-field
    mode transitions are serialised by ``_config_lock``. The command list and
    the pending flag live behind a condition variable so that they can be
    read as a consistent pair.
    """

    def __init__(self):
        self._config_lock = threading.RLock()
        self._cond = threading.Condition()
        self._commands: tuple[DrawCommand, ...] = ()
        self._pending = False
        self._set_defaults()

    def _set_defaults(self):
        self.bit_depth = 8
        self.hdr = False
        self.eotf = Eotf.SDR
        self.color_format = ColorFormat.RGB
        self.colorimetry = Colorimetry.BT709
        self.quant_range = QuantRange.AUTO
        self.max_cll: int | None = None
        self.max_fall: int | None = None
        self.max_dml: int | None = None
        self.mode_changed = False
        self.pattern_mode = PatternMode.MANUAL
        self.connection_status = "Idle"

    # ------------------------------------------------------------------
    # Draw commands
    # ------------------------------------------------------------------
    def set_commands(self, commands) -> None:
        """Replace the command list and wake any waiter."""
        snapshot = tuple(commands)
        with self._cond:
            self._commands = snapshot
            self._pending = True
            self._cond.notify_all()

    def get_commands(self) -> tuple[DrawCommand, ...]:
        return self._commands

    def snapshot(self) -> tuple[tuple[DrawCommand, ...], bool]:
        """Return ``(commands, pending)`` read under the monitor."""
        with self._cond:
            return self._commands, self._pending

    # ------------------------------------------------------------------
    # Pending hand-off
    # ------------------------------------------------------------------
    def set_pending(self) -> None:
        with self._cond:
            self._pending = True
            self._cond.notify_all()

    def clear_pending(self) -> None:
        with self._cond:
            self._pending = False
            self._cond.notify_all()

    def is_pending(self) -> bool:
        with self._cond:
            return self._pending

    def wait_pending(self, timeout: float | None = None) -> bool:
        """Block until no update is pending.

        Returns False only when *timeout* expired with the flag still set.
        """
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending, timeout)

    def wait_for_update(self, timeout: float | None = None) -> tuple[DrawCommand, ...] | None:
        """Consumer side: block until an update is pending.

        Returns the current command snapshot, or None on timeout. The caller
        acknowledges the update with ``clear_pending()`` once it is on screen.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._pending, timeout):
                return None
            return self._commands

    # ------------------------------------------------------------------
    # Signal mode
    # ------------------------------------------------------------------
    @property
    def is_hdr(self) -> bool:
        return self.hdr

    @property
    def dolby_vision(self) -> bool:
        return self.eotf == Eotf.DOLBY_VISION_PQ_TRANSPORT

    @property
    def max_value(self) -> float:
        return float((1 << self.bit_depth) - 1)

    def set_mode(self, bits: int, is_hdr: bool) -> None:
        """Coarse bit depth + HDR on/off switch used by PGenerator.

        Turning HDR on keeps an already negotiated EOTF and falls back to PQ
        otherwise; turning it off forces SDR.
        """
        with self._config_lock:
            self.bit_depth = bits
            self.hdr = is_hdr
            if not is_hdr:
                self.eotf = Eotf.SDR
            elif self.eotf == Eotf.SDR:
                self.eotf = Eotf.PQ
            self.mode_changed = True

    def apply_eotf_mode(self, eotf: Eotf) -> None:
        """Set the EOTF explicitly.

        Bit depth and colorimetry are left alone; callers that enter HDR
        through here promote them themselves.
        """
        eotf = Eotf(eotf)
        with self._config_lock:
            self.eotf = eotf
            self.hdr = eotf != Eotf.SDR
            self.mode_changed = True

    def parse_mode_string(self, mode: str) -> bool:
        modes = {
            "8": (8, False),
            "8_hdr": (8, True),
            "10": (10, False),
            "10_hdr": (10, True),
        }
        entry = modes.get(mode.strip().lower())
        if entry is None:
            return False
        self.set_mode(*entry)
        return True

    def configure_signal(self, color_format=None, colorimetry=None,
                         quant_range=None) -> None:
        with self._config_lock:
            if color_format is not None:
                self.color_format = ColorFormat(color_format)
            if colorimetry is not None:
                self.colorimetry = Colorimetry(colorimetry)
            if quant_range is not None:
                self.quant_range = QuantRange(quant_range)
            self.mode_changed = True

    def set_static_metadata(self, max_cll: int | None, max_fall: int | None,
                            max_dml: int | None) -> None:
        with self._config_lock:
            self.max_cll = max_cll
            self.max_fall = max_fall
            self.max_dml = max_dml

    def mode_transaction(self):
        """Context manager grouping several mode mutations into one step.

        ``configuration()`` never observes a half-applied transition.
        """
        return self._config_lock

    def consume_mode_change(self) -> bool:
        """Return and clear the mode-changed flag."""
        with self._config_lock:
            changed = self.mode_changed
            self.mode_changed = False
            return changed

    def configuration(self) -> SignalConfiguration:
        with self._config_lock:
            metadata = None
            if self.eotf != Eotf.SDR and self.max_cll is not None:
                metadata = HdrStaticMetadata(
                    self.max_cll,
                    self.max_fall if self.max_fall is not None else -1,
                    self.max_dml if self.max_dml is not None else -1,
                )
            return SignalConfiguration(
                bit_depth=self.bit_depth,
                eotf=self.eotf,
                color_format=self.color_format,
                colorimetry=self.colorimetry,
                quant_range=self.quant_range,
                hdr_static_metadata=metadata,
            )

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------
    def reset(self) -> None:
        with self._config_lock:
            self._set_defaults()
        with self._cond:
            self._commands = ()
            self._pending = False
            self._cond.notify_all()
        logger.debug("Signal state reset to defaults")
