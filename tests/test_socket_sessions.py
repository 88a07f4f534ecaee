import socket
import threading

import pytest

from boundprobe import AllowedResult, Verdict
from imap_limits_prober import IMAPLimitsProber


@pytest.fixture
def silent_server():
    """Listener on 127.0.0.1 that greets every client and then says nothing."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(8)
    listener.settimeout(0.2)
    stop = threading.Event()
    clients = []

    def serve():
        while not stop.is_set():
            try:
                client, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            client.sendall(b"* OK hi\r\n")
            clients.append(client)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield listener.getsockname()[1]

    stop.set()
    thread.join(5)
    listener.close()
    for client in clients:
        client.close()


@pytest.fixture
def closed_port():
    """A localhost port nothing listens on."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def make_prober(port, timeout=0.5):
    prober = IMAPLimitsProber()
    prober.host = "127.0.0.1"
    prober.port = port
    prober.timeout = timeout
    return prober


def test_timeout_after_greeting_rejects_literal(silent_server):
    assert make_prober(silent_server).test_literal(5) is Verdict.REJECT


def test_timeout_after_greeting_rejects_tag(silent_server):
    assert make_prober(silent_server).test_tag(5) is Verdict.REJECT


def test_timeout_after_greeting_is_tag_byte_error(silent_server):
    assert make_prober(silent_server).test_tag_byte(0x41) == AllowedResult.ERROR


def test_connect_applies_timeout(silent_server):
    sock = make_prober(silent_server, timeout=1.5).connect()
    try:
        assert sock.gettimeout() == 1.5
    finally:
        sock.close()


def test_refused_port_folds_into_verdicts(closed_port):
    prober = make_prober(closed_port)
    assert prober.test_literal(5) is Verdict.REJECT
    assert prober.test_tag_byte(0x41) == AllowedResult.ERROR


def test_refused_port_can_abort_run(closed_port):
    prober = make_prober(closed_port)
    prober.abort_on_connect_error = True
    with pytest.raises(ConnectionRefusedError):
        prober.test_literal(5)
