"""
Wire framing shared by the protocol services.

PGenerator requests end with ``\\x02\\r`` and replies end with ``\\x00``.
The UPGCI port (2100) wraps requests in ``\\x02 ... \\x03`` and answers every
one with a single ``\\x06``. Resolve frames carry a 4-byte big-endian length
prefix.
"""

import socket
import struct

# PGenerator framing constants
PGEN_END = b"\x02\r"
PGEN_REPLY_END = b"\x00"

# UPGCI framing constants
STX = b"\x02"
ETX = b"\x03"
ACK = b"\x06"

RESOLVE_HEADER = struct.Struct(">I")


class FrameReader:
    """Byte-oriented reader over a connected socket.

    Reads are buffered in chunks but frames are assembled one byte at a
    time, so a terminator split across TCP segments is still found.
    """

    def __init__(self, sock: socket.socket, chunk_size: int = 4096):
        self._sock = sock
        self._chunk_size = chunk_size
        self._buf = b""
        self._pos = 0

    def _next_byte(self) -> int | None:
        if self._pos >= len(self._buf):
            chunk = self._sock.recv(self._chunk_size)
            if not chunk:
                return None
            self._buf = chunk
            self._pos = 0
        byte = self._buf[self._pos]
        self._pos += 1
        return byte

    def read_until(self, terminator: bytes, limit: int) -> bytes | None:
        """Read one frame ending in *terminator* (which is stripped).

        Returns None on EOF. If *limit* bytes arrive without a terminator the
        bytes read so far are returned as the frame.
        """
        frame = bytearray()
        while len(frame) < limit:
            byte = self._next_byte()
            if byte is None:
                return None
            frame.append(byte)
            if frame.endswith(terminator):
                return bytes(frame[:-len(terminator)])
        return bytes(frame)

    def read_exact(self, size: int) -> bytes | None:
        """Read exactly *size* bytes, or None if the peer closed first."""
        data = bytearray()
        while len(data) < size:
            if self._pos < len(self._buf):
                take = min(size - len(data), len(self._buf) - self._pos)
                data += self._buf[self._pos:self._pos + take]
                self._pos += take
                continue
            chunk = self._sock.recv(self._chunk_size)
            if not chunk:
                return None
            self._buf = chunk
            self._pos = 0
        return bytes(data)


def decode_text(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace")


def encode_pgen_reply(text: str) -> bytes:
    return text.encode("utf-8") + PGEN_REPLY_END


def encode_pgen_request(text: str) -> bytes:
    return text.encode("utf-8") + PGEN_END


def encode_upgci_request(text: str) -> bytes:
    return STX + text.encode("utf-8") + ETX


def strip_upgci_frame(payload: bytes) -> str:
    """Drop the leading STX of a frame read up to ETX and decode it.

    Returns an empty string for an empty frame.
    """
    if payload.startswith(STX):
        payload = payload[1:]
    return decode_text(payload).strip()


def encode_resolve_frame(xml: str | bytes) -> bytes:
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    return RESOLVE_HEADER.pack(len(xml)) + xml
