import socket
import time

import pytest

from pgen_server._tests.conftest import recv_until, run_session
from pgen_server.client import PGenClient
from pgen_server.draw import DrawCommand
from pgen_server.pgen import (
    Blank,
    GetGpuMemory,
    GetResolution,
    Ignored,
    PGenServer,
    Rectangle,
    ShowPassive,
    Skip,
    build_rectangle,
    parse_message,
)
from pgen_server.signal_state import Eotf, PatternMode


def _request(text: str) -> bytes:
    return text.encode() + b"\x02\r"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "message, expected",
    [
        ("CMD:GET_RESOLUTION", GetResolution()),
        ("CMD:GET_GPU_MEMORY", GetGpuMemory()),
        ("TESTTEMPLATE:PatternDynamic:0:0", ShowPassive()),
        ("RGB=TEXT;10;10;hello", Ignored("TEXT")),
        ("RGB=IMAGE;foo.png", Ignored("IMAGE")),
        ("FOO", Blank("FOO")),
    ],
)
def test_parse_message(message, expected):
    assert parse_message(message) == expected


def test_parse_rectangle_fields():
    cmd = parse_message("RGB=RECTANGLE;100;50;0;255;128;0;16;16;16")
    assert cmd == Rectangle(100, 50, (255, 128, 0), (16, 16, 16))


def test_parse_rectangle_short_or_non_numeric_is_skipped():
    assert isinstance(parse_message("RGB=RECTANGLE;100;100;0;255;0"), Skip)
    assert isinstance(parse_message("RGB=RECTANGLE;100;x;0;255;0;0;0;0;0"), Skip)


def test_build_rectangle_background_then_centered_window():
    commands = build_rectangle(Rectangle(100, 100, (255, 0, 0), (0, 0, 0)), 3840, 2160)

    assert len(commands) == 2
    background, window = commands
    assert background == DrawCommand.full_field((0.0, 0.0, 0.0))
    assert window.color == (1.0, 0.0, 0.0)
    assert window.x1 == pytest.approx(-100 / 3840)
    assert window.x2 == pytest.approx(100 / 3840)
    assert window.y1 == pytest.approx(100 / 2160)
    assert window.y2 == pytest.approx(-100 / 2160)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------
def test_unknown_command_blanks_screen_without_reply(state):
    server = PGenServer(state)
    state.set_commands([DrawCommand.full_field_rgb8(1, 2, 3)])
    assert server.apply(parse_message("FOO")) is None
    assert state.get_commands() == ()


def test_malformed_rectangle_leaves_screen_alone(state):
    server = PGenServer(state)
    before = [DrawCommand.full_field_rgb8(1, 2, 3)]
    state.set_commands(before)
    assert server.apply(parse_message("RGB=RECTANGLE;1;2")) is None
    assert state.get_commands() == tuple(before)


def test_test_template_shows_passive_pattern(state):
    server = PGenServer(state, passive=(128, 128, 128))
    server.apply(ShowPassive())
    assert state.get_commands() == (DrawCommand.full_field_rgb8(128, 128, 128),)


def test_queries_answer_configured_values(state):
    server = PGenServer(state, resolution=(1920, 1080))
    assert server.apply(GetResolution()) == "OK:1920x1080"
    assert server.apply(GetGpuMemory()) == "OK:192"


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
def test_session_lock_step(state, consumer, sock_pair):
    server_side, client = sock_pair
    server = PGenServer(state)
    thread = run_session(server, server_side)

    client.sendall(_request("CMD:GET_RESOLUTION"))
    assert recv_until(client, b"\x00") == b"OK:3840x2160\x00"

    client.sendall(_request("RGB=RECTANGLE;100;100;0;255;0;0;0;0;0"))
    client.sendall(_request("CMD:GET_GPU_MEMORY"))
    assert recv_until(client, b"\x00") == b"OK:192\x00"
    commands = state.get_commands()
    assert len(commands) == 2
    assert commands[0].is_full_field
    assert commands[1].color == (1.0, 0.0, 0.0)

    # no reply bytes for an unknown command; the next bytes belong to the query
    client.sendall(_request("FOO"))
    client.sendall(_request("CMD:GET_GPU_MEMORY"))
    assert recv_until(client, b"\x00") == b"OK:192\x00"
    assert state.get_commands() == ()

    client.close()
    thread.join(2.0)
    assert not thread.is_alive()


def test_session_waits_for_consumer(state, sock_pair):
    server_side, client = sock_pair
    server = PGenServer(state)
    thread = run_session(server, server_side)

    client.sendall(_request("RGB=RECTANGLE;10;10;0;0;0;255;0;0;0"))
    deadline = time.monotonic() + 2.0
    while not state.is_pending() and time.monotonic() < deadline:
        time.sleep(0.01)
    assert state.is_pending()

    # blocked in wait_pending until the renderer acknowledges
    client.sendall(_request("CMD:GET_GPU_MEMORY"))
    client.settimeout(0.2)
    with pytest.raises(socket.timeout):
        client.recv(1)

    state.clear_pending()
    client.settimeout(2.0)
    assert recv_until(client, b"\x00") == b"OK:192\x00"

    server._running = False
    state.clear_pending()
    client.close()
    thread.join(2.0)


# ---------------------------------------------------------------------------
# Accept loop
# ---------------------------------------------------------------------------
def test_server_serves_client_and_stops(state, consumer):
    server = PGenServer(state, hdr=True, passive=(0, 0, 64), host="127.0.0.1", port=0,
                        accept_timeout=0.1)
    server.start()
    try:
        port = server.bound_port
        assert port
        with PGenClient("127.0.0.1", port, timeout=2.0) as client:
            assert client.get_resolution() == "3840x2160"
            client.send_rectangle(200, 200, (0, 255, 0))
            assert client.get_gpu_memory() == "192"
            assert state.get_commands()[1].color == (0.0, 1.0, 0.0)
        assert state.pattern_mode == PatternMode.PGEN
        assert state.eotf == Eotf.PQ
        assert state.bit_depth == 8
    finally:
        server.stop()
    assert not server.running
    assert state.connection_status == "PGen: Stopped"


def test_bind_error_surfaces_to_caller(state, consumer):
    first = PGenServer(state, host="127.0.0.1", port=0, accept_timeout=0.1)
    first.start()
    try:
        second = PGenServer(state, host="127.0.0.1", port=first.bound_port)
        with pytest.raises(OSError):
            second.start()
        assert not second.running
    finally:
        first.stop()


def test_stop_releases_blocked_session(state, sock_pair):
    server_side, client = sock_pair
    server = PGenServer(state)
    state.set_pending()
    thread = run_session(server, server_side)
    time.sleep(0.05)
    server.stop()
    thread.join(2.0)
    assert not thread.is_alive()
    assert not state.is_pending()


def test_zero_resolution_rejected(state):
    with pytest.raises(ValueError):
        PGenServer(state, resolution=(0, 0))
