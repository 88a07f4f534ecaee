#!/usr/bin/env python3
"""
IMAP Limits Prober
==================

Measures parser limits of an IMAP server using the BoundProbe framework.

Every test value gets its own TCP connection. The prober waits for the
greeting, sends exactly one request and reduces the server's answer to a
verdict.

Probes:
    max_literal   Largest literal length declared in LOGIN that still gets
                  a continuation request ("+ ...") back
    max_tag       Longest tag (A, AA, AAA, ...) echoed back intact by NOOP
    allowed_tag   For every byte 0-255, how the server treats "A<byte> NOOP"
    info          Greeting, CAPABILITY (before and after LOGIN) and ID

Protocol Flow (one probe session):
    Client                          Server
      |                               |
      |<-- * OK greeting -------------|
      |                               |
      |--- stimulus ----------------->|
      |                               |
      |<-- +, tagged status or BYE ---|
      |                               |
    (connection closed)

Usage:
    # Largest literal length, searching the full 64-bit range
    python3 imap_limits_prober.py -s 192.168.1.100 --max-literal 0 18446744073709551615

    # Longest tag between 1 and 1 MiB, giving up on silent servers after 10s
    python3 imap_limits_prober.py -s 192.168.1.100 --max-tag 1 1048576 --timeout 10

    # Byte sweep over the second tag character
    python3 imap_limits_prober.py -s 192.168.1.100 -p 1143 --allowed-tag

    # Capabilities and ID, logging in first
    python3 imap_limits_prober.py -s 192.168.1.100 --info --username alice --password secret
"""

import argparse
import json
import re
import socket
import sys

from boundprobe import (
    ProtocolProber,
    ProtocolViolation,
    Verdict,
    AllowedResult,
    escape_byte_string,
    print_banner,
    U64_MAX,
)


IMAP_PORT = 143

# Tags are built in memory, keep them addressable
MAX_TAG_LENGTH = 0xFFFFFFFF

# Largest literal accepted inside a server response
MAX_RESPONSE_LITERAL = 16 * 1024 * 1024

LITERAL_RE = re.compile(rb"\{(\d+)\}$")

STATUS_KINDS = (b"OK", b"NO", b"BAD")
GREETING_KINDS = (b"OK", b"PREAUTH", b"BYE")


# =============================================================================
# EVENTS
# =============================================================================

class Event:
    """One thing the server (or the client flow) did."""
    GREETING = 'greeting'
    COMMAND_SENT = 'command_sent'
    TAGGED_STATUS = 'tagged_status'
    UNTAGGED_STATUS = 'untagged_status'
    BYE = 'bye'
    CONTINUATION = 'continuation'
    DATA = 'data'

    def __init__(self, kind, tag=None, status=None, code=None, text=b""):
        self.kind = kind
        self.tag = tag
        self.status = status
        self.code = code
        self.text = text

    def __repr__(self):
        fields = [f"kind={self.kind}"]
        for name in ('tag', 'status', 'code'):
            value = getattr(self, name)
            if value is not None:
                fields.append(f"{name}={value!r}")
        if self.text:
            fields.append(f"text={self.text[:60]!r}")
        return f"Event({', '.join(fields)})"


def _split_code(tail):
    """Split b'[CODE args] text' into (b'CODE args', b'text')."""
    if tail.startswith(b"["):
        end = tail.find(b"]")
        if end < 0:
            raise ProtocolViolation(f"unterminated response code: {tail[:60]!r}")
        return tail[1:end], tail[end + 1:].lstrip(b" ")
    return None, tail


def _carries_literals(line):
    """Only untagged data (FETCH, ID, LIST, ...) may embed literals."""
    if not line.startswith(b"* "):
        return False
    word = line[2:].split(b" ", 1)[0].upper()
    return word not in STATUS_KINDS and word not in GREETING_KINDS


def parse_response(line):
    """
    Parse one complete server response (literals already inlined).

    Args:
        line: response bytes without the trailing CRLF

    Returns:
        Event

    Raises:
        ProtocolViolation: if the line is neither continuation, untagged
                           nor a tagged status
    """
    if line.startswith(b"+"):
        return Event(Event.CONTINUATION, text=line[1:].lstrip(b" "))

    if line.startswith(b"*"):
        if not line.startswith(b"* "):
            raise ProtocolViolation(f"malformed untagged response: {line[:60]!r}")
        word, _, tail = line[2:].partition(b" ")
        status = word.upper()
        if status == b"BYE":
            code, text = _split_code(tail)
            return Event(Event.BYE, status=status, code=code, text=text)
        if status in STATUS_KINDS or status == b"PREAUTH":
            code, text = _split_code(tail)
            return Event(Event.UNTAGGED_STATUS, status=status, code=code, text=text)
        return Event(Event.DATA, text=line[2:])

    tag, sep, rest = line.partition(b" ")
    if not sep or not tag:
        raise ProtocolViolation(f"missing tag: {line[:60]!r}")
    word, _, tail = rest.partition(b" ")
    status = word.upper()
    if status not in STATUS_KINDS:
        raise ProtocolViolation(f"tagged response without status: {line[:60]!r}")
    code, text = _split_code(tail)
    return Event(Event.TAGGED_STATUS, tag=tag, status=status, code=code, text=text)


# =============================================================================
# CONNECTION - Line/literal framing over a socket
# =============================================================================

class IMAPConnection:
    """
    Minimal IMAP client flow over an already connected socket.

    Usage:
        conn = IMAPConnection(sock)
        greeting = conn.progress()
        conn.enqueue_command(b"A1", "NOOP")
        event = conn.progress()
    """

    def __init__(self, sock, read_size=4096):
        self.sock = sock
        self.read_size = read_size
        self.buffer = b""
        self.pending = []
        self.greeting = None

    # ----- Sending

    def send_raw(self, data):
        """Send bytes exactly as given, no framing added."""
        self.sock.sendall(data)

    def enqueue_command(self, tag, body):
        """
        Send a well-formed command line.

        Args:
            tag: bytes or str
            body: bytes or str, e.g. "NOOP"
        """
        if isinstance(tag, str):
            tag = tag.encode("ascii")
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.sock.sendall(tag + b" " + body + b"\r\n")
        self.pending.append(Event(Event.COMMAND_SENT, tag=tag, text=body))

    # ----- Receiving

    def _fill(self):
        chunk = self.sock.recv(self.read_size)
        if not chunk:
            raise ConnectionError("connection closed by server")
        self.buffer += chunk

    def _read_line(self):
        while b"\n" not in self.buffer:
            self._fill()
        line, _, self.buffer = self.buffer.partition(b"\n")
        if line.endswith(b"\r"):
            line = line[:-1]
        return line

    def _read_exact(self, size):
        while len(self.buffer) < size:
            self._fill()
        data, self.buffer = self.buffer[:size], self.buffer[size:]
        return data

    def read_response(self):
        """Read one response, pulling in literals announced by untagged data."""
        response = segment = self._read_line()
        if not _carries_literals(response):
            return response
        while True:
            match = LITERAL_RE.search(segment)
            if not match:
                return response
            size = int(match.group(1))
            if size > MAX_RESPONSE_LITERAL:
                raise ProtocolViolation(f"server literal too large: {size}")
            literal = self._read_exact(size)
            segment = self._read_line()
            response += b"\r\n" + literal + segment

    def progress(self):
        """
        Get the next event.

        Raises:
            ConnectionError: server closed the connection
            OSError: socket error or timeout
            ProtocolViolation: unparseable response
        """
        if self.pending:
            return self.pending.pop(0)

        event = parse_response(self.read_response())
        if self.greeting is None and (
            (event.kind == Event.UNTAGGED_STATUS and event.status in GREETING_KINDS)
            or event.kind == Event.BYE
        ):
            event.kind = Event.GREETING
            self.greeting = event
        return event


# =============================================================================
# ID / CAPABILITY PARSING
# =============================================================================

def parse_capabilities(data):
    """b'CAPABILITY IMAP4rev1 ID' -> ['IMAP4rev1', 'ID']"""
    words = data.split()
    if not words or words[0].upper() != b"CAPABILITY":
        return []
    return [word.decode("ascii", "replace") for word in words[1:]]


def _id_tokens(data):
    tokens = []
    i = 0
    while i < len(data):
        c = data[i:i + 1]
        if c == b" ":
            i += 1
        elif c == b'"':
            i += 1
            buf = bytearray()
            while i < len(data) and data[i:i + 1] != b'"':
                if data[i:i + 1] == b"\\":
                    i += 1
                buf += data[i:i + 1]
                i += 1
            if i >= len(data):
                raise ProtocolViolation("unterminated quoted string in ID response")
            tokens.append(bytes(buf))
            i += 1
        elif c == b"{":
            end = data.find(b"}", i)
            if end < 0 or not data[i + 1:end].isdigit() or data[end + 1:end + 3] != b"\r\n":
                raise ProtocolViolation("malformed literal in ID response")
            size = int(data[i + 1:end])
            start = end + 3
            tokens.append(data[start:start + size])
            i = start + size
        else:
            end = data.find(b" ", i)
            if end < 0:
                end = len(data)
            atom = data[i:end]
            tokens.append(None if atom.upper() == b"NIL" else atom)
            i = end
    return tokens


def parse_id(data):
    """
    Parse the parameter list of an untagged ID response.

    Args:
        data: bytes after '* ', e.g. b'ID ("name" "Dovecot" "version" NIL)'

    Returns:
        dict of str -> str or None, or None for 'ID NIL'
    """
    params = data[2:].strip() if data[:2].upper() == b"ID" else data.strip()
    if params.upper() == b"NIL":
        return None
    if not (params.startswith(b"(") and params.endswith(b")")):
        raise ProtocolViolation(f"malformed ID response: {data[:60]!r}")

    tokens = _id_tokens(params[1:-1])
    if len(tokens) % 2:
        raise ProtocolViolation("odd number of ID fields")

    fields = {}
    for key, value in zip(tokens[::2], tokens[1::2]):
        if key is None:
            raise ProtocolViolation("NIL field name in ID response")
        fields[key.decode("utf-8", "replace")] = (
            None if value is None else value.decode("utf-8", "replace")
        )
    return fields


def quote(value):
    """Render a str as an IMAP quoted string."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


# =============================================================================
# PROBER
# =============================================================================

def u64(value):
    """argparse type for unsigned 64-bit integers (decimal, 0x, 0o or 0b)."""
    try:
        number = int(value, 0)
    except ValueError:
        # int(x, 0) refuses leading zeros such as "010"
        try:
            number = int(value, 10)
        except ValueError:
            raise argparse.ArgumentTypeError(f"not an integer: {value}")
    if not 0 <= number <= U64_MAX:
        raise argparse.ArgumentTypeError(f"{value} is outside 0..{U64_MAX}")
    return number


class IMAPLimitsProber(ProtocolProber):
    """
    IMAP limits prober.

    Each probe method is an end-to-end blocking call: it runs every
    session it needs and returns the final result.
    """

    # Fixed tag of the literal probe (the tag is not under test there)
    LITERAL_TAG = b"A"

    def __init__(self):
        super().__init__()
        self.port = IMAP_PORT
        self.username = None
        self.password = None

    def get_protocol_name(self):
        return "IMAP"

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    def connect(self):
        """Establish TCP connection to the IMAP server."""
        self.log(f"[*] Connecting to {self.host}:{self.port}...", "VERBOSE")

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect((self.host, self.port))
        except OSError:
            sock.close()
            raise

        self.log(f"[✓] Connected to {self.host}:{self.port}", "VERBOSE")
        return sock

    def open_session(self, sock):
        """Wrap the socket and skip everything up to the greeting."""
        conn = IMAPConnection(sock)
        while True:
            event = conn.progress()
            if event.kind == Event.GREETING:
                self.log(f"[*] Greeting: {event.status.decode('ascii')} {event.text[:60]!r}", "VERBOSE")
                return conn
            self.log(f"[?] Ignoring event before greeting: {event!r}", "VERBOSE")

    # =========================================================================
    # MAX LITERAL
    # =========================================================================

    def _classify_literal(self, event):
        if event.kind == Event.CONTINUATION:
            return Verdict.ACCEPT
        if event.kind == Event.TAGGED_STATUS and event.tag == self.LITERAL_TAG:
            return Verdict.REJECT
        if event.kind == Event.BYE:
            return Verdict.REJECT
        return None

    def test_literal(self, length):
        """Does the server send a continuation for a literal of this length?"""
        stimulus = self.LITERAL_TAG + b" LOGIN {%d}\r\n" % length

        def send(conn):
            self.log(f"[>] {stimulus!r}", "VERBOSE")
            conn.send_raw(stimulus)

        return self.run_session(send, self._classify_literal, Verdict.REJECT)

    def max_literal(self, min_value, max_value):
        """
        Find the largest literal length the server is willing to receive.

        Args:
            min_value: Lower bound (inclusive)
            max_value: Upper bound (inclusive)

        Returns:
            Largest literal length that got a continuation request
        """
        return self.bisect(self.test_literal, min_value, max_value, label="literal length")

    # =========================================================================
    # MAX TAG
    # =========================================================================

    def test_tag(self, length):
        """Is a NOOP tagged with `length` A's answered with the same tag?"""
        tag = b"A" * length

        def classify(event):
            if event.kind == Event.TAGGED_STATUS and event.tag == tag:
                return Verdict.ACCEPT
            if event.kind == Event.BYE:
                return Verdict.REJECT
            if event.kind == Event.UNTAGGED_STATUS and event.status == b"BAD":
                return Verdict.REJECT
            return None

        return self.run_session(
            lambda conn: conn.enqueue_command(tag, "NOOP"), classify, Verdict.REJECT
        )

    def max_tag(self, min_value, max_value):
        """
        Find the longest tag the server echoes back intact.

        Raises:
            ValueError: if max_value does not fit a buildable tag
        """
        if max_value > MAX_TAG_LENGTH:
            raise ValueError(f"max tag length is limited to {MAX_TAG_LENGTH}")
        return self.bisect(self.test_tag, min_value, max_value, label="tag length")

    # =========================================================================
    # ALLOWED TAG CHARACTERS
    # =========================================================================

    def test_tag_byte(self, byte):
        """Classify how the server treats the tag b'A' + byte."""
        tag = b"A" + bytes([byte])

        def classify(event):
            if event.kind == Event.TAGGED_STATUS:
                if event.tag == tag:
                    return AllowedResult.REFLECTED
                return AllowedResult.REFLECTED_BROKEN
            if event.kind == Event.UNTAGGED_STATUS and event.status == b"BAD":
                return AllowedResult.BAD
            if event.kind == Event.BYE:
                return AllowedResult.BYE
            return None

        return self.run_session(
            lambda conn: conn.send_raw(tag + b" NOOP\r\n"), classify, AllowedResult.ERROR
        )

    def allowed_tag(self):
        """
        Sweep all 256 byte values as second tag character.

        Returns:
            List of (byte, char, AllowedResult) tuples, one per byte value
        """
        return self.sweep_bytes(self.test_tag_byte)

    # =========================================================================
    # INFO
    # =========================================================================

    def run_command(self, conn, tag, body):
        """
        Send a command and collect untagged data until its tagged status.

        Returns:
            (tagged status Event, list of untagged data bytes)
        """
        conn.enqueue_command(tag, body)
        data = []
        while True:
            event = conn.progress()
            if event.kind == Event.TAGGED_STATUS and event.tag == tag:
                return event, data
            if event.kind == Event.BYE:
                raise ConnectionError(f"server said BYE: {event.text.decode('utf-8', 'replace')}")
            if event.kind == Event.DATA:
                data.append(event.text)
            else:
                self.log(f"[?] {event!r}", "VERBOSE")

    def _capabilities(self, conn, tag, status_event=None):
        if status_event is not None and status_event.code:
            caps = parse_capabilities(status_event.code)
            if caps:
                return caps
        status, data = self.run_command(conn, tag, "CAPABILITY")
        for line in data:
            caps = parse_capabilities(line)
            if caps:
                return caps
        return []

    def info(self, username=None, password=None):
        """
        Collect greeting, capabilities and ID of the server.

        Args:
            username: LOGIN user, or None to stay unauthenticated
            password: LOGIN password

        Returns:
            dict ready for JSON output
        """
        result = {
            'greeting': None,
            'greeting_capabilities': [],
            'capabilities': [],
            'login': None,
            'capabilities_after_login': None,
            'id': None,
        }

        with self.session() as conn:
            greeting = conn.greeting
            result['greeting'] = {
                'status': greeting.status.decode('ascii'),
                'text': greeting.text.decode('utf-8', 'replace'),
            }
            if greeting.code:
                result['greeting_capabilities'] = parse_capabilities(greeting.code)

            result['capabilities'] = self._capabilities(conn, b"C1")
            capabilities = result['capabilities']

            if username is not None and password is not None:
                status, _ = self.run_command(conn, b"C2", f"LOGIN {quote(username)} {quote(password)}")
                result['login'] = status.status.decode('ascii')
                if status.status == b"OK":
                    result['capabilities_after_login'] = self._capabilities(conn, b"C3", status)
                    capabilities = result['capabilities_after_login']

            if "ID" in (cap.upper() for cap in capabilities):
                status, data = self.run_command(conn, b"C4", "ID NIL")
                for line in data:
                    if line[:2].upper() == b"ID":
                        result['id'] = parse_id(line)

        return result

    # =========================================================================
    # CLI
    # =========================================================================

    def add_protocol_arguments(self, parser):
        parser.add_argument("-p", "--port", type=int, default=IMAP_PORT,
                            help=f"IMAP server port (default: {IMAP_PORT})")
        parser.add_argument("--username", default=None, help="LOGIN user (--info only)")
        parser.add_argument("--password", default=None, help="LOGIN password (--info only)")

    def add_probe_arguments(self, parser):
        modes = parser.add_mutually_exclusive_group(required=True)
        modes.add_argument("--max-literal", nargs=2, type=u64, metavar=("MIN", "MAX"),
                           dest="max_literal", help="Learn max literal length (LOGIN user astring)")
        modes.add_argument("--max-tag", nargs=2, type=u64, metavar=("MIN", "MAX"),
                           dest="max_tag", help="Learn max tag length (NOOP)")
        modes.add_argument("--allowed-tag", action="store_true", dest="allowed_tag",
                           help="Learn allowed tag characters (NOOP)")
        modes.add_argument("--info", action="store_true",
                           help="Learn greeting, capabilities and ID")

    def parse_arguments(self, args=None):
        parsed = super().parse_arguments(args)

        self.port = parsed.port
        self.username = parsed.username
        self.password = parsed.password

        for option in ('max_literal', 'max_tag'):
            bounds = getattr(parsed, option)
            if bounds and bounds[0] > bounds[1]:
                print(f"Error: --{option.replace('_', '-')} MIN must not exceed MAX")
                sys.exit(1)
        if parsed.max_tag and parsed.max_tag[1] > MAX_TAG_LENGTH:
            print(f"Error: --max-tag MAX must not exceed {MAX_TAG_LENGTH}")
            sys.exit(1)

        return parsed

    def run_probe(self, parsed):
        if parsed.max_literal:
            value = self.max_literal(*parsed.max_literal)
            self.log(f"Maximum literal length: {value} (0x{value:x})", "ALWAYS")
        elif parsed.max_tag:
            value = self.max_tag(*parsed.max_tag)
            self.log(f"Maximum tag length: {value}", "ALWAYS")
        elif parsed.allowed_tag:
            self.log("Allowed tag characters:", "ALWAYS")
            for dec, _, result in self.allowed_tag():
                self.log(f'{dec}: "A{escape_byte_string(bytes([dec]))}" => {result}', "ALWAYS")
        elif parsed.info:
            info = self.info(self.username, self.password)
            self.log(json.dumps(info), "ALWAYS")


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main():
    """Main entry point."""
    print_banner()

    prober = IMAPLimitsProber()
    sys.exit(prober.run())


if __name__ == "__main__":
    main()
