import pytest

from pgen_server._tests.conftest import run_session
from pgen_server.client import UpgciClient
from pgen_server.draw import DrawCommand, ten_to_eight
from pgen_server.hdr import RecordingHdrSink, StaticMetadata
from pgen_server.signal_state import Colorimetry, Eotf, HdrStaticMetadata
from pgen_server.upgci import (
    ConfHdr,
    ConfLevel,
    Init,
    Query,
    RgbPattern,
    Shutdown,
    Skip,
    Specialty,
    Unknown,
    UpgciServer,
    build_rgb_pattern,
    map_hdr_type,
    parse_message,
)

HDR10 = "CONF_HDR:HDR10,0.708,0.292,0.170,0.797,0.131,0.046,0.3127,0.3290,0,1000,400,1000"


def _frame(text: str) -> bytes:
    return b"\x02" + text.encode() + b"\x03"


@pytest.fixture
def sink():
    return RecordingHdrSink()


@pytest.fixture
def calls():
    return []


@pytest.fixture
def server(state, sink, calls):
    return UpgciServer(state, hdr_sink=sink,
                       on_mode_change=lambda *args: calls.append(args))


@pytest.mark.parametrize("value, expected", [(0, 0), (1023, 255), (512, 128), (4, 1), (3, 0)])
def test_ten_to_eight(value, expected):
    assert ten_to_eight(value) == expected


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "message, expected",
    [
        ("INIT:2.0", Init("2.0")),
        ("STATUS", Query("STATUS")),
        ("IS_ALIVE", Query("IS_ALIVE")),
        ("SHUTDOWN", Shutdown("SHUTDOWN")),
        ("QUIT", Shutdown("QUIT")),
        ("CONF_LEVEL: Bits 10 ", ConfLevel("Bits 10")),
        ("SPECIALTY:brightness", Specialty("BRIGHTNESS")),
        ("WHATEVER", Unknown("WHATEVER")),
    ],
)
def test_parse_simple_messages(message, expected):
    assert parse_message(message) == expected


def test_parse_rgb_standard_window():
    cmd = parse_message("RGB_S:1023,512,0,10")
    assert cmd == RgbPattern("RGB_S", (255, 128, 0), (0, 0, 0), 10)


def test_parse_rgb_with_background():
    cmd = parse_message("RGB_A:1023,1023,1023,64,64,64,25")
    assert cmd == RgbPattern("RGB_A", (255, 255, 255), (16, 16, 16), 25)


def test_parse_rgb_without_window_is_full_field():
    assert parse_message("RGB_S:4,4,4").window_pct == 100


@pytest.mark.parametrize(
    "message, expected",
    [
        ("RGB_S:1023,0,0,50,", RgbPattern("RGB_S", (255, 0, 0), (0, 0, 0), 50)),
        ("RGB_S:1023,0,0,50,extra", RgbPattern("RGB_S", (255, 0, 0), (0, 0, 0), 50)),
        ("RGB_B:0,1023,0,25,7,8", RgbPattern("RGB_B", (0, 255, 0), (0, 0, 0), 25)),
        ("RGB_A:0,0,1023,64,64,64,10,", RgbPattern("RGB_A", (0, 0, 255), (16, 16, 16), 10)),
    ],
)
def test_parse_rgb_ignores_unused_trailing_fields(message, expected):
    assert parse_message(message) == expected


def test_parse_rgb_malformed_is_skipped():
    assert isinstance(parse_message("RGB_S:1,2"), Skip)
    assert isinstance(parse_message("RGB_S:a,b,c,d"), Skip)


def test_parse_conf_hdr_metadata_needs_all_fields():
    full = parse_message(HDR10)
    assert full == ConfHdr("HDR10", Eotf.PQ, 1000, 400, 1000)
    assert full.has_metadata

    short = parse_message("CONF_HDR:HDR10,0.708,0.292")
    assert short == ConfHdr("HDR10", Eotf.PQ)
    assert not short.has_metadata


@pytest.mark.parametrize(
    "hdr_type, eotf",
    [
        ("OFF", Eotf.SDR),
        ("sdr", Eotf.SDR),
        ("NONE", Eotf.SDR),
        ("HLG", Eotf.HLG),
        ("DOLBY_VISION", Eotf.DOLBY_VISION_PQ_TRANSPORT),
        ("DOVI", Eotf.DOLBY_VISION_PQ_TRANSPORT),
        ("HDR10", Eotf.PQ),
        ("ST2084", Eotf.PQ),
    ],
)
def test_map_hdr_type(hdr_type, eotf):
    assert map_hdr_type(hdr_type) == eotf


def test_build_rgb_pattern():
    full = build_rgb_pattern(RgbPattern("RGB_S", (10, 20, 30), (0, 0, 0), 100))
    assert full == [DrawCommand.full_field_rgb8(10, 20, 30)]

    windowed = build_rgb_pattern(RgbPattern("RGB_A", (255, 255, 255), (16, 16, 16), 25))
    assert windowed == [
        DrawCommand.full_field_rgb8(16, 16, 16),
        DrawCommand.window_rgb8(25, 255, 255, 255),
    ]

    default = build_rgb_pattern(RgbPattern("RGB_S", (255, 255, 255), (0, 0, 0), 0))
    assert default[1] == DrawCommand.window_rgb8(18.0, 255, 255, 255)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------
def test_conf_hdr_hdr10_switches_signal(server, state, sink, calls):
    server.process(HDR10)

    assert state.eotf == Eotf.PQ
    assert state.colorimetry == Colorimetry.BT2020
    assert state.bit_depth == 10
    assert state.is_hdr
    assert state.configuration().hdr_static_metadata == HdrStaticMetadata(1000, 400, 1000)
    assert sink.static_metadata == StaticMetadata(1000, 400, 1000)
    assert calls == [(True, 10, Eotf.PQ)]


def test_conf_hdr_keeps_higher_bit_depth(server, state, calls):
    state.set_mode(12, False)
    server.process("CONF_HDR:HLG")
    assert state.eotf == Eotf.HLG
    assert state.bit_depth == 12
    assert calls == [(True, 12, Eotf.HLG)]


def test_conf_hdr_dolby_vision(server, state):
    server.process("CONF_HDR:DOLBY_VISION")
    assert state.dolby_vision
    assert state.is_hdr


def test_conf_hdr_off_returns_to_sdr(server, state, calls):
    server.process(HDR10)
    server.process("CONF_HDR:OFF")
    assert state.eotf == Eotf.SDR
    assert not state.is_hdr
    assert state.bit_depth == 10
    assert calls[-1] == (False, 10, Eotf.SDR)


def test_metadata_fallbacks_to_max_cll(server, sink):
    server.process("CONF_HDR:HDR10,0,0,0,0,0,0,0,0,0,800,0,0")
    assert sink.static_metadata == StaticMetadata(800, 800, 800)


def test_zero_max_cll_not_forwarded(server, sink):
    server.process("CONF_HDR:HDR10,0,0,0,0,0,0,0,0,0,0,400,1000")
    assert sink.static_metadata is None


def test_conf_level_bits(server, state, calls):
    server.process("CONF_LEVEL:Bits 10")
    assert state.bit_depth == 10
    assert calls == [(False, 10, Eotf.SDR)]

    server.process("CONF_LEVEL:Bits 9")
    assert state.bit_depth == 10
    assert len(calls) == 1


def test_conf_level_gamma_toggles(server, state, calls):
    server.process("CONF_LEVEL:Gamma-HDR")
    assert state.is_hdr
    assert state.eotf == Eotf.PQ
    assert state.bit_depth == 10

    server.process("CONF_LEVEL:Gamma-HDR")
    assert len(calls) == 1

    server.process("CONF_LEVEL:Gamma-SDR")
    assert not state.is_hdr
    assert calls[-1] == (False, 10, Eotf.SDR)


def test_conf_level_informational_params_change_nothing(server, state):
    before = state.configuration()
    server.process("CONF_LEVEL:Range Full")
    server.process("CONF_LEVEL:Format YCbCr444")
    assert state.configuration() == before


@pytest.mark.parametrize("name, level", [("BRIGHTNESS", 20), ("CONTRAST", 235)])
def test_specialty_patterns(server, state, name, level):
    server.process(f"SPECIALTY:{name}")
    assert state.get_commands() == (DrawCommand.full_field_rgb8(level, level, level),)


def test_failing_callback_does_not_break_processing(state):
    def boom(*args):
        raise RuntimeError("display went away")

    server = UpgciServer(state, on_mode_change=boom)
    assert server.process("CONF_HDR:HDR10") is False
    assert state.is_hdr


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
def test_every_message_gets_exactly_one_ack(server, state, sock_pair):
    server_side, client = sock_pair
    thread = run_session(server, server_side)
    messages = ["INIT:2.0", "STATUS", "RGB_S:1023,0,0,10", "RGB_S:bad",
                "CONF_LEVEL:Bits 10", "NOPE"]
    for message in messages:
        client.sendall(_frame(message))
        assert client.recv(1) == b"\x06"

    # ACKs are sent without waiting for the renderer
    assert state.is_pending()

    client.sendall(_frame("SHUTDOWN"))
    assert client.recv(1) == b"\x06"
    thread.join(2.0)
    assert not thread.is_alive()
    server_side.close()
    assert client.recv(1) == b""


def test_pipelined_messages_are_acked_in_order(server, state, sock_pair):
    server_side, client = sock_pair
    thread = run_session(server, server_side)
    client.sendall(_frame("RGB_S:1023,1023,1023,100") + _frame("SPECIALTY:CONTRAST")
                   + _frame("QUIT"))
    acks = b""
    while len(acks) < 3:
        chunk = client.recv(3)
        assert chunk
        acks += chunk
    assert acks == b"\x06\x06\x06"
    thread.join(2.0)
    assert state.get_commands() == (DrawCommand.full_field_rgb8(235, 235, 235),)


def test_client_over_tcp(state, sink):
    server = UpgciServer(state, hdr_sink=sink, host="127.0.0.1", port=0, accept_timeout=0.1)
    server.start()
    try:
        with UpgciClient("127.0.0.1", server.bound_port, timeout=2.0) as client:
            assert client.init()
            assert client.conf_hdr("HDR10", 1000, 400, 1000)
            assert client.rgb(1023, 1023, 1023, 10)
            assert client.shutdown()
        assert state.is_hdr
        assert sink.static_metadata == StaticMetadata(1000, 400, 1000)
        assert state.get_commands()[1] == DrawCommand.window_rgb8(10, 255, 255, 255)
    finally:
        server.stop()
