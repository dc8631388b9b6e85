"""
HDR-control collaborator interface.

The native side (InfoFrame / DRM metadata writes, EGL colorspace selection)
lives outside this package. Services talk to it through ``HdrSink``.
"""

import collections
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Protocol

from pgen_server.signal_state import ColorFormat, Colorimetry, Eotf

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 64

ModeChangeCallback = Callable[[bool, int, Eotf], None]


class HdrSink(Protocol):
    def apply_static_metadata(self, max_cll: int, max_fall: int,
                              max_mastering_luminance: int) -> None: ...

    def apply_signal_settings(self, eotf: Eotf, color_format: ColorFormat,
                              colorimetry: Colorimetry, bit_depth: int) -> None: ...


@dataclass(frozen=True)
class SignalSettings:
    eotf: Eotf
    color_format: ColorFormat
    colorimetry: Colorimetry
    bit_depth: int


@dataclass(frozen=True)
class StaticMetadata:
    max_cll: int
    max_fall: int
    max_mastering_luminance: int


class RecordingHdrSink:
    """Default sink: logs every request and keeps the last one of each kind.

    ``history`` holds the most recent *history_limit* requests in order.
    """

    def __init__(self, history_limit: int = HISTORY_LIMIT):
        self._lock = threading.Lock()
        self.signal_settings: SignalSettings | None = None
        self.static_metadata: StaticMetadata | None = None
        self.history: collections.deque[SignalSettings | StaticMetadata] = \
            collections.deque(maxlen=history_limit)

    def apply_static_metadata(self, max_cll, max_fall, max_mastering_luminance):
        entry = StaticMetadata(max_cll, max_fall, max_mastering_luminance)
        logger.info("HDR metadata: MaxCLL=%d MaxFALL=%d MaxDML=%d",
                    max_cll, max_fall, max_mastering_luminance)
        with self._lock:
            self.static_metadata = entry
            self.history.append(entry)

    def apply_signal_settings(self, eotf, color_format, colorimetry, bit_depth):
        entry = SignalSettings(Eotf(eotf), ColorFormat(color_format),
                               Colorimetry(colorimetry), bit_depth)
        logger.info("Signal settings: eotf=%s format=%s colorimetry=%s bits=%d",
                    entry.eotf.name, entry.color_format.name,
                    entry.colorimetry.name, bit_depth)
        with self._lock:
            self.signal_settings = entry
            self.history.append(entry)
