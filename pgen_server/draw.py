"""
Draw commands: axis-aligned rectangles in normalized device coordinates.

x grows to the right and y grows upwards, both in [-1, 1]. Each command
carries four corner colors (top-left, top-right, bottom-right, bottom-left)
as float RGB triples in [0, 1]; a flat rectangle simply repeats one color.
Later commands in a list paint over earlier ones.
"""

import math
from dataclasses import dataclass

Color = tuple[float, float, float]

BLACK: Color = (0.0, 0.0, 0.0)


def ten_to_eight(value: int) -> int:
    """10-bit code value to 8-bit, truncating (``floor(v * 256 / 1024)``)."""
    return (value * 256) // 1024


def rgb8(r: int, g: int, b: int, max_value: float = 255.0) -> Color:
    return (r / max_value, g / max_value, b / max_value)


def _clamp(v: float) -> float:
    return max(-1.0, min(1.0, v))


@dataclass(frozen=True)
class DrawCommand:
    x1: float
    y1: float
    x2: float
    y2: float
    top_left: Color = BLACK
    top_right: Color = BLACK
    bottom_right: Color = BLACK
    bottom_left: Color = BLACK

    @property
    def is_flat(self) -> bool:
        return (self.top_left == self.top_right
                == self.bottom_right == self.bottom_left)

    @property
    def color(self) -> Color:
        return self.top_left

    @property
    def corners(self) -> tuple[Color, Color, Color, Color]:
        return (self.top_left, self.top_right,
                self.bottom_right, self.bottom_left)

    @property
    def is_full_field(self) -> bool:
        return (min(self.x1, self.x2) <= -1.0 and max(self.x1, self.x2) >= 1.0
                and min(self.y1, self.y2) <= -1.0 and max(self.y1, self.y2) >= 1.0)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------
    @classmethod
    def rectangle(cls, x1: float, y1: float, x2: float, y2: float,
                  color: Color) -> "DrawCommand":
        return cls(x1, y1, x2, y2, color, color, color, color)

    @classmethod
    def gradient(cls, x1: float, y1: float, x2: float, y2: float,
                 top_left: Color, top_right: Color,
                 bottom_right: Color, bottom_left: Color) -> "DrawCommand":
        return cls(x1, y1, x2, y2, top_left, top_right, bottom_right, bottom_left)

    @classmethod
    def full_field(cls, color: Color) -> "DrawCommand":
        return cls.rectangle(-1.0, 1.0, 1.0, -1.0, color)

    @classmethod
    def full_field_rgb8(cls, r: int, g: int, b: int,
                        max_value: float = 255.0) -> "DrawCommand":
        return cls.full_field(rgb8(r, g, b, max_value))

    @classmethod
    def rectangle_rgb8(cls, x1: float, y1: float, x2: float, y2: float,
                       r: int, g: int, b: int,
                       max_value: float = 255.0) -> "DrawCommand":
        return cls.rectangle(x1, y1, x2, y2, rgb8(r, g, b, max_value))

    @classmethod
    def window(cls, percent: float, color: Color) -> "DrawCommand":
        """Centered window covering *percent* of the screen area."""
        half = _clamp(math.sqrt(max(percent, 0.0) / 100.0))
        return cls.rectangle(-half, half, half, -half, color)

    @classmethod
    def window_rgb8(cls, percent: float, r: int, g: int, b: int,
                    max_value: float = 255.0) -> "DrawCommand":
        return cls.window(percent, rgb8(r, g, b, max_value))

    @classmethod
    def centered_pixels(cls, width: int, height: int,
                        screen_width: int, screen_height: int,
                        color: Color) -> "DrawCommand":
        """Centered rectangle of ``width`` x ``height`` reference pixels."""
        x = width / screen_width
        y = height / screen_height
        return cls.rectangle(-x, y, x, -y, color)

    @classmethod
    def from_fractions(cls, x: float, y: float, cx: float, cy: float,
                       color: Color) -> "DrawCommand":
        """Rectangle from top-left origin fractions of the screen (0..1)."""
        return cls.rectangle(
            _clamp(-1.0 + 2.0 * x),
            _clamp(1.0 - 2.0 * y),
            _clamp(-1.0 + 2.0 * (x + cx)),
            _clamp(1.0 - 2.0 * (y + cy)),
            color,
        )
