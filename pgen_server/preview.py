"""
Software render consumer.

Rasterises the current draw-command list with Pillow and hands each frame
to an optional PNG snapshot and/or a raw RGB565 framebuffer file (e.g.
``/dev/fb0``). It is also what clears the pending flag in headless runs, so
PGenerator's request/response cycle keeps moving.
"""

import logging
import struct
import threading
from pathlib import Path

from PIL import Image, ImageDraw

from pgen_server.draw import Color, DrawCommand
from pgen_server.hdr import HdrSink
from pgen_server.signal_state import SignalState

logger = logging.getLogger(__name__)

PREVIEW_SIZE = (960, 540)
POLL_TIMEOUT = 0.5


def _to8(color: Color) -> tuple[int, int, int]:
    return tuple(int(round(min(max(c, 0.0), 1.0) * 255)) for c in color)


def _pixel_box(cmd: DrawCommand, width: int, height: int) -> tuple[int, int, int, int]:
    """NDC rectangle to an inclusive-exclusive pixel box."""
    left = (min(cmd.x1, cmd.x2) + 1.0) / 2.0 * width
    right = (max(cmd.x1, cmd.x2) + 1.0) / 2.0 * width
    top = (1.0 - max(cmd.y1, cmd.y2)) / 2.0 * height
    bottom = (1.0 - min(cmd.y1, cmd.y2)) / 2.0 * height
    return (
        max(0, int(round(left))),
        max(0, int(round(top))),
        min(width, int(round(right))),
        min(height, int(round(bottom))),
    )


def _gradient_tile(cmd: DrawCommand, size: tuple[int, int]) -> Image.Image:
    corners = Image.new("RGB", (2, 2))
    corners.putpixel((0, 0), _to8(cmd.top_left))
    corners.putpixel((1, 0), _to8(cmd.top_right))
    corners.putpixel((1, 1), _to8(cmd.bottom_right))
    corners.putpixel((0, 1), _to8(cmd.bottom_left))
    # corner pixel centres land on the tile edges
    return corners.transform(size, Image.Transform.EXTENT, (0.5, 0.5, 1.5, 1.5),
                             resample=Image.Resampling.BILINEAR)


def render_commands(commands, size: tuple[int, int] = PREVIEW_SIZE) -> Image.Image:
    """Paint *commands* in order onto a black canvas (no blending)."""
    width, height = size
    canvas = Image.new("RGB", size, (0, 0, 0))
    draw = ImageDraw.Draw(canvas)
    for cmd in commands:
        left, top, right, bottom = _pixel_box(cmd, width, height)
        if right <= left or bottom <= top:
            continue
        if cmd.is_flat:
            draw.rectangle((left, top, right - 1, bottom - 1), fill=_to8(cmd.color))
        else:
            canvas.paste(_gradient_tile(cmd, (right - left, bottom - top)), (left, top))
    return canvas


def rgb888_to_rgb565(r, g, b):
    """Convert 8-bit RGB to 16-bit RGB565."""
    return ((r >> 3) << 11) | ((g >> 2) << 5) | (b >> 3)


def to_rgb565(image: Image.Image) -> bytes:
    """Raw little-endian RGB565 framebuffer bytes for *image*."""
    image = image.convert("RGB")
    width, height = image.size
    fb_data = bytearray(width * height * 2)
    for offset, (r, g, b) in enumerate(image.getdata()):
        struct.pack_into("<H", fb_data, offset * 2, rgb888_to_rgb565(r, g, b))
    return bytes(fb_data)


class RenderConsumer:
    """Consumes pending updates from a ``SignalState``.

    For each update: apply a pending signal-mode change first (forwarded to
    *hdr_sink*), then render the frame, then clear the pending flag.
    """

    def __init__(self, state: SignalState, hdr_sink: HdrSink | None = None,
                 size: tuple[int, int] = PREVIEW_SIZE,
                 snapshot_path: str | Path | None = None,
                 framebuffer_path: str | Path | None = None):
        self.state = state
        self.hdr_sink = hdr_sink
        self.size = size
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self.framebuffer_path = Path(framebuffer_path) if framebuffer_path else None
        self.frames = 0
        self.last_frame: Image.Image | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="Render-Consumer", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def run(self) -> None:
        while not self._stop.is_set():
            commands = self.state.wait_for_update(POLL_TIMEOUT)
            if commands is None:
                continue
            try:
                self.present(commands)
            except Exception:
                logger.exception("Failed to present frame")
            finally:
                self.state.clear_pending()

    def present(self, commands) -> None:
        if self.state.consume_mode_change():
            self._apply_mode()
        frame = render_commands(commands, self.size)
        self.last_frame = frame
        self.frames += 1
        if self.snapshot_path is not None:
            frame.save(self.snapshot_path)
        if self.framebuffer_path is not None:
            with open(self.framebuffer_path, "wb") as f:
                f.write(to_rgb565(frame))

    def _apply_mode(self) -> None:
        config = self.state.configuration()
        logger.info("Output mode: %d-bit %s %s %s", config.bit_depth, config.eotf.name,
                    config.color_format.name, config.colorimetry.name)
        if self.hdr_sink is not None:
            self.hdr_sink.apply_signal_settings(config.eotf, config.color_format,
                                                config.colorimetry, config.bit_depth)
