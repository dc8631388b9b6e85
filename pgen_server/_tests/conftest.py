import socket
import threading

import pytest

from pgen_server.signal_state import SignalState


class FakeConsumer:
    """Stands in for the renderer: acknowledges every pending update."""

    def __init__(self, state: SignalState) -> None:
        self.state = state
        self.frames: list = []
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def _run(self) -> None:
        while not self._stop.is_set():
            commands = self.state.wait_for_update(0.05)
            if commands is None:
                continue
            self.frames.append(commands)
            self.state.clear_pending()

    def start(self) -> "FakeConsumer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(2.0)


@pytest.fixture
def state() -> SignalState:
    return SignalState()


@pytest.fixture
def consumer(state):
    fake = FakeConsumer(state).start()
    yield fake
    fake.stop()


@pytest.fixture
def sock_pair():
    server_side, client_side = socket.socketpair()
    client_side.settimeout(2.0)
    yield server_side, client_side
    for s in (server_side, client_side):
        try:
            s.close()
        except OSError:
            pass


def recv_until(sock: socket.socket, terminator: bytes) -> bytes:
    buf = b""
    while not buf.endswith(terminator):
        chunk = sock.recv(1)
        if not chunk:
            break
        buf += chunk
    return buf


def run_session(server, conn) -> threading.Thread:
    """Run ``server.handle_client(conn)`` on a thread, as the accept loop would."""
    server._running = True
    thread = threading.Thread(target=server.handle_client, args=(conn,), daemon=True)
    thread.start()
    return thread
