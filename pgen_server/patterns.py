"""
Built-in test patterns shown in manual mode.
"""

from pgen_server.draw import DrawCommand, rgb8


def pluge(is_hdr: bool = False) -> list[DrawCommand]:
    """PLUGE (BT.814 style): near-black bars on a reference background.

    Bar order across the center is +4%, -4%, reference, +4%, -4%.
    """
    bg = 26 if is_hdr else 16
    plus = bg + 10
    minus = max(bg - 10, 0)

    commands = [DrawCommand.full_field_rgb8(bg, bg, bg)]
    bar_width = 0.12
    bar_height = 0.5
    start_x = -0.3
    for i, level in enumerate((plus, minus, bg, plus, minus)):
        x1 = start_x + i * bar_width
        commands.append(DrawCommand.rectangle_rgb8(
            x1, bar_height, x1 + bar_width, -bar_height, level, level, level))
    return commands


def _vertical_bars(levels, background) -> list[DrawCommand]:
    commands = [DrawCommand.full_field_rgb8(*background)]
    bar_width = 2.0 / len(levels)
    for i, (r, g, b) in enumerate(levels):
        x1 = -1.0 + i * bar_width
        commands.append(DrawCommand.rectangle_rgb8(x1, 1.0, x1 + bar_width, -1.0, r, g, b))
    return commands


def color_bars(full_range: bool = True) -> list[DrawCommand]:
    """White, yellow, cyan, green, magenta, red, blue, black."""
    hi = 255 if full_range else 235
    lo = 0 if full_range else 16
    levels = [
        (hi, hi, hi),
        (hi, hi, lo),
        (lo, hi, hi),
        (lo, hi, lo),
        (hi, lo, hi),
        (hi, lo, lo),
        (lo, lo, hi),
        (lo, lo, lo),
    ]
    return _vertical_bars(levels, (lo, lo, lo))


def window(size_pct: float = 18.0, r: int = 255, g: int = 255, b: int = 255,
           bg_r: int = 0, bg_g: int = 0, bg_b: int = 0) -> list[DrawCommand]:
    return [
        DrawCommand.full_field_rgb8(bg_r, bg_g, bg_b),
        DrawCommand.window_rgb8(size_pct, r, g, b),
    ]


def full_field(r: int, g: int, b: int) -> list[DrawCommand]:
    return [DrawCommand.full_field_rgb8(r, g, b)]


def grayscale_ramp(full_range: bool = True, steps: int = 10) -> list[DrawCommand]:
    lo = 0 if full_range else 16
    hi = 255 if full_range else 235
    levels = []
    for i in range(steps):
        level = lo + (hi - lo) * i // (steps - 1)
        levels.append((level, level, level))
    return _vertical_bars(levels, (0, 0, 0))


def gradient_ramp(full_range: bool = True) -> list[DrawCommand]:
    """Continuous black-to-white horizontal ramp."""
    lo = rgb8(*((0, 0, 0) if full_range else (16, 16, 16)))
    hi = rgb8(*((255, 255, 255) if full_range else (235, 235, 235)))
    return [DrawCommand.gradient(-1.0, 1.0, 1.0, -1.0, lo, hi, hi, lo)]


def parse_draw_string(text: str) -> list[DrawCommand] | None:
    """Parse a short textual pattern description.

    Formats::

        window <size%> <r> <g> <b>
        draw <x1> <y1> <x2> <y2> <r> <g> <b>
        field <r> <g> <b>

    Returns None when the text is not understood.
    """
    parts = text.split()
    if not parts:
        return None
    kind = parts[0].lower()
    try:
        if kind == "window" and len(parts) >= 5:
            size = float(parts[1])
            r, g, b = (int(p) for p in parts[2:5])
            return window(size, r, g, b)
        if kind == "draw" and len(parts) >= 8:
            x1, y1, x2, y2 = (float(p) for p in parts[1:5])
            r, g, b = (int(p) for p in parts[5:8])
            return [DrawCommand.rectangle_rgb8(x1, y1, x2, y2, r, g, b)]
        if kind == "field" and len(parts) >= 4:
            r, g, b = (int(p) for p in parts[1:4])
            return full_field(r, g, b)
    except ValueError:
        return None
    return None


BUILTIN_PATTERNS = {
    "pluge": lambda hdr: pluge(hdr),
    "bars": lambda hdr: color_bars(),
    "bars_limited": lambda hdr: color_bars(full_range=False),
    "window": lambda hdr: window(),
    "ramp": lambda hdr: grayscale_ramp(),
    "gradient": lambda hdr: gradient_ramp(),
    "black": lambda hdr: full_field(0, 0, 0),
    "white": lambda hdr: full_field(255, 255, 255),
}


def builtin_pattern(name: str, is_hdr: bool = False) -> list[DrawCommand]:
    """Look up a named pattern, falling back to a draw string, then PLUGE."""
    factory = BUILTIN_PATTERNS.get(name.strip().lower())
    if factory is not None:
        return factory(is_hdr)
    parsed = parse_draw_string(name)
    if parsed is not None:
        return parsed
    return pluge(is_hdr)
