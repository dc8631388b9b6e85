"""
Runtime configuration.

All ``PGEN_*`` environment parsing happens here; the CLI in ``app`` layers
its flags on top of the result.
"""

import os
from dataclasses import dataclass
from typing import Mapping

from pgen_server.discovery import DEFAULT_DEVICE_NAME
from pgen_server.pgen import SCREEN_HEIGHT, SCREEN_WIDTH
from pgen_server.resolve import DEFAULT_PORT as RESOLVE_DEFAULT_PORT
from pgen_server.signal_state import (
    VALID_BIT_DEPTHS,
    ColorFormat,
    Colorimetry,
    Eotf,
    QuantRange,
)

MODES = ("pgen", "resolve", "manual")


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    val = raw.strip().lower()
    if val in {"1", "true", "yes", "on"}:
        return True
    if val in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw, 10)
    except ValueError:
        return default


def _env_str(env: Mapping[str, str], name: str, default: str | None = None) -> str | None:
    raw = env.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw if raw else default


def _env_enum(env: Mapping[str, str], name: str, enum_type, default):
    raw = _env_str(env, name)
    if raw is None:
        return default
    try:
        return parse_enum(enum_type, raw)
    except ValueError:
        return default


def parse_enum(enum_type, text: str):
    """Accept either the member name (case-insensitive) or its number."""
    text = text.strip()
    try:
        return enum_type(int(text))
    except ValueError:
        pass
    key = text.upper().replace("-", "_").replace(".", "")
    try:
        return enum_type[key]
    except KeyError:
        raise ValueError(f"{text!r} is not a valid {enum_type.__name__}") from None


def parse_rgb(text: str | None) -> tuple[int, int, int] | None:
    """``"r,g,b"`` -> tuple, None for empty input."""
    if text is None or text.strip() == "":
        return None
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 3:
        raise ValueError(f"expected r,g,b, got {text!r}")
    values = tuple(int(p) for p in parts)
    if any(v < 0 or v > 255 for v in values):
        raise ValueError(f"color values must be 0-255, got {text!r}")
    return values


def parse_resolution(text: str) -> tuple[int, int]:
    width, _, height = text.lower().partition("x")
    width, height = int(width), int(height)
    if width <= 0 or height <= 0:
        raise ValueError(f"resolution must be positive, got {text!r}")
    return width, height


@dataclass(frozen=True)
class ServerConfig:
    mode: str = "pgen"
    device_name: str = DEFAULT_DEVICE_NAME
    host: str = ""
    width: int = SCREEN_WIDTH
    height: int = SCREEN_HEIGHT

    # Initial signal
    bit_depth: int = 8
    hdr: bool = False
    eotf: Eotf = Eotf.SDR
    color_format: ColorFormat = ColorFormat.RGB
    colorimetry: Colorimetry = Colorimetry.BT709
    quant_range: QuantRange = QuantRange.AUTO

    # PGen / UPGCI / discovery
    passive_rgb: tuple[int, int, int] | None = None
    enable_discovery: bool = True
    enable_upgci: bool = True

    # Resolve
    resolve_host: str = "192.168.1.100"
    resolve_port: int = RESOLVE_DEFAULT_PORT

    # Manual
    pattern: str = "pluge"

    # Render consumer
    snapshot_path: str | None = None
    framebuffer_path: str | None = None

    log_level: str = "INFO"
    debug: bool = False

    def __post_init__(self):
        if self.mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {self.mode!r}")
        if self.bit_depth not in VALID_BIT_DEPTHS:
            raise ValueError(f"bit depth must be one of {VALID_BIT_DEPTHS}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"resolution must be positive, got {self.width}x{self.height}")

    @property
    def resolution(self) -> tuple[int, int]:
        return (self.width, self.height)


def load_config(env: Mapping[str, str] | None = None) -> ServerConfig:
    if env is None:
        env = os.environ
    defaults = ServerConfig()

    mode = _env_str(env, "PGEN_MODE", defaults.mode).lower()
    if mode not in MODES:
        mode = defaults.mode
    bit_depth = _env_int(env, "PGEN_BITS", defaults.bit_depth)
    if bit_depth not in VALID_BIT_DEPTHS:
        bit_depth = defaults.bit_depth
    width, height = defaults.width, defaults.height
    resolution = _env_str(env, "PGEN_RESOLUTION")
    if resolution:
        try:
            width, height = parse_resolution(resolution)
        except ValueError:
            pass
    try:
        passive = parse_rgb(_env_str(env, "PGEN_PASSIVE_RGB"))
    except ValueError:
        passive = None

    return ServerConfig(
        mode=mode,
        device_name=_env_str(env, "PGEN_DEVICE_NAME", defaults.device_name),
        host=_env_str(env, "PGEN_HOST", defaults.host),
        width=width,
        height=height,
        bit_depth=bit_depth,
        hdr=_env_bool(env, "PGEN_HDR", defaults.hdr),
        eotf=_env_enum(env, "PGEN_EOTF", Eotf, defaults.eotf),
        color_format=_env_enum(env, "PGEN_COLOR_FORMAT", ColorFormat, defaults.color_format),
        colorimetry=_env_enum(env, "PGEN_COLORIMETRY", Colorimetry, defaults.colorimetry),
        quant_range=_env_enum(env, "PGEN_QUANT_RANGE", QuantRange, defaults.quant_range),
        passive_rgb=passive,
        enable_discovery=_env_bool(env, "PGEN_DISCOVERY", defaults.enable_discovery),
        enable_upgci=_env_bool(env, "PGEN_UPGCI", defaults.enable_upgci),
        resolve_host=_env_str(env, "PGEN_RESOLVE_HOST", defaults.resolve_host),
        resolve_port=_env_int(env, "PGEN_RESOLVE_PORT", defaults.resolve_port),
        pattern=_env_str(env, "PGEN_PATTERN", defaults.pattern),
        snapshot_path=_env_str(env, "PGEN_SNAPSHOT"),
        framebuffer_path=_env_str(env, "PGEN_FRAMEBUFFER"),
        log_level=_env_str(env, "PGEN_LOG_LEVEL", defaults.log_level).upper(),
        debug=_env_bool(env, "PGEN_DEBUG", defaults.debug),
    )
