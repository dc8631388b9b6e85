"""Network-controlled display test-pattern generator (PGenerator / UPGCI / Resolve)."""

from pgen_server.draw import DrawCommand
from pgen_server.signal_state import (
    ColorFormat,
    Colorimetry,
    Eotf,
    QuantRange,
    SignalConfiguration,
    SignalState,
)

__version__ = "1.0.0"

__all__ = [
    "ColorFormat",
    "Colorimetry",
    "DrawCommand",
    "Eotf",
    "QuantRange",
    "SignalConfiguration",
    "SignalState",
]
