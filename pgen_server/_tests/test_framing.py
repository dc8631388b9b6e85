import socket

import pytest

from pgen_server.framing import (
    PGEN_END,
    FrameReader,
    encode_resolve_frame,
    strip_upgci_frame,
)


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


def test_terminator_split_across_writes(pair):
    a, b = pair
    reader = FrameReader(a)
    b.sendall(b"CMD:GET_RESOLUTION\x02")
    b.sendall(b"\rRGB=TEXT\x02\r")
    assert reader.read_until(PGEN_END, 1023) == b"CMD:GET_RESOLUTION"
    assert reader.read_until(PGEN_END, 1023) == b"RGB=TEXT"


def test_lone_stx_inside_payload_is_kept(pair):
    a, b = pair
    b.sendall(b"A\x02B\x02\r")
    assert FrameReader(a).read_until(PGEN_END, 1023) == b"A\x02B"


def test_overflow_returns_what_was_buffered(pair):
    a, b = pair
    b.sendall(b"x" * 20 + PGEN_END)
    reader = FrameReader(a)
    assert reader.read_until(PGEN_END, 8) == b"x" * 8


def test_eof_mid_frame_returns_none(pair):
    a, b = pair
    b.sendall(b"partial")
    b.shutdown(socket.SHUT_WR)
    assert FrameReader(a).read_until(PGEN_END, 1023) is None


def test_read_exact_spans_chunks(pair):
    a, b = pair
    frame = encode_resolve_frame("<calibration/>")
    b.sendall(frame[:3])
    b.sendall(frame[3:])
    reader = FrameReader(a, chunk_size=2)
    assert reader.read_exact(4) == b"\x00\x00\x00\x0e"
    assert reader.read_exact(14) == b"<calibration/>"


def test_read_exact_eof(pair):
    a, b = pair
    b.sendall(b"\x00\x00")
    b.shutdown(socket.SHUT_WR)
    assert FrameReader(a).read_exact(4) is None


def test_strip_upgci_frame():
    assert strip_upgci_frame(b"\x02RGB_S:0,0,0,100 ") == "RGB_S:0,0,0,100"
    assert strip_upgci_frame(b"STATUS") == "STATUS"
    assert strip_upgci_frame(b"\x02") == ""
