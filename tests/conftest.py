import re

import pytest

from imap_limits_prober import IMAPLimitsProber


GREETING = b"* OK [CAPABILITY IMAP4rev1 ID] Fake IMAP ready\r\n"


class FakeSocket:
    """Socket stand-in: whatever respond(data) returns becomes readable."""

    def __init__(self, respond, greeting=GREETING):
        self.inbox = bytearray(greeting)
        self.respond = respond
        self.sent = []
        self.closed = False

    def recv(self, size):
        data = bytes(self.inbox[:size])
        del self.inbox[:size]
        return data

    def sendall(self, data):
        self.sent.append(data)
        self.inbox += self.respond(data)

    def close(self):
        self.closed = True


class ScriptedProber(IMAPLimitsProber):
    """IMAPLimitsProber talking to FakeSockets instead of the network."""

    def __init__(self, respond, greeting=GREETING, refuse=False):
        super().__init__()
        self.host = "fake.example"
        self.respond = respond
        self.greeting = greeting
        self.refuse = refuse
        self.sockets = []
        self.messages = []

    def connect(self):
        if self.refuse:
            raise ConnectionRefusedError(111, "Connection refused")
        sock = FakeSocket(self.respond, self.greeting)
        self.sockets.append(sock)
        return sock

    def log(self, message, level="INFO"):
        self.messages.append(message)


def _literal_server(limit):
    """Continuation for literals up to `limit`, tagged NO above."""
    def respond(data):
        size = int(re.search(rb"\{(\d+)\}", data).group(1))
        if size <= limit:
            return b"+ Ready for literal data\r\n"
        return b"A NO [TOOBIG] Literal too big\r\n"
    return respond


def _tag_server(limit):
    """Echo tags up to `limit` bytes, untagged BAD above."""
    def respond(data):
        tag = data.split(b" ", 1)[0]
        if len(tag) <= limit:
            return tag + b" OK NOOP completed\r\n"
        return b"* BAD Line too long\r\n"
    return respond


@pytest.fixture
def make_prober():
    return ScriptedProber


@pytest.fixture
def literal_server():
    return _literal_server


@pytest.fixture
def tag_server():
    return _tag_server
