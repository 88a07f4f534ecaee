#!/usr/bin/env python3
"""
BoundProbe Framework
====================

A black-box framework for measuring protocol limits on live servers.

Core Philosophy:
- One fresh connection per test value, nothing carried across tests
- Bisection over the full unsigned 64-bit range for monotonic limits
- Exhaustive sweeps where the server behaviour is not monotonic
- A failed test is taken at face value, never retried

Features:
- BoundarySearch: bisection bracket driven by an external accept/reject test
- ProtocolProber: base class wiring sessions, verdicts and drivers together
- Byte sweep: one classified session per byte value 0-255
- Clear output: bracket state after every round, verdict per candidate
"""

import argparse
from contextlib import contextmanager


# =============================================================================
# FRAMEWORK VERSION
# =============================================================================

__version__ = "1.0.0"
__framework__ = "BoundProbe"

# Public API exports
__all__ = [
    # Core classes
    'BoundarySearch',
    'ProtocolProber',
    # Verdicts
    'Verdict',
    'AllowedResult',
    # Errors
    'ConvergenceError',
    'ProtocolViolation',
    # Helpers
    'escape_byte_string',
    'print_banner',
    'U64_MAX',
    'DEFAULT_TIMEOUT',
]


U64_MAX = 0xFFFFFFFFFFFFFFFF

# Socket timeout in seconds. None blocks forever on a silent server.
DEFAULT_TIMEOUT = None


# =============================================================================
# ERRORS
# =============================================================================

class ConvergenceError(RuntimeError):
    """BoundarySearch was used out of order (programming error)."""


class ProtocolViolation(Exception):
    """The server sent something the protocol engine cannot frame or parse."""


# =============================================================================
# VERDICTS
# =============================================================================

class Verdict:
    """Outcome of one bisection probe session."""
    ACCEPT = True
    REJECT = False


class AllowedResult:
    """Classification of one byte-sweep probe session."""
    REFLECTED = 'Reflected'              # Tag echoed back byte for byte
    REFLECTED_BROKEN = 'ReflectedBroken' # Tagged reply, but the tag was altered
    BAD = 'Bad'                          # Untagged BAD (server gave up parsing)
    BYE = 'Bye'                          # Server closed the session
    ERROR = 'Error'                      # Transport or framing error

    ALL = [REFLECTED, REFLECTED_BROKEN, BAD, BYE, ERROR]


# =============================================================================
# BOUNDARY SEARCH - Bisection over [min, max]
# =============================================================================

class BoundarySearch:
    """
    Find the largest value in [min, max] accepted by a monotonic test.

    The test itself lives outside this class: the caller asks for a
    candidate, runs whatever it likes against it and reports back.

    Usage:
        search = BoundarySearch(0, 100)
        while True:
            candidate = search.next()
            if candidate is None:
                break
            if candidate <= 42:
                search.accept()
            else:
                search.reject()
        search.finish()  # -> 42

    With a 1-wide bracket the candidate is the upper edge, not a midpoint.
    A test that fails everywhere converges to min without min being tested.
    """

    def __init__(self, min_value, max_value):
        """
        Initialize the bracket.

        Args:
            min_value: Lowest possible boundary (inclusive)
            max_value: Highest possible boundary (inclusive)
        """
        for value in (min_value, max_value):
            if not 0 <= value <= U64_MAX:
                raise ValueError(f"{value} is outside 0..{U64_MAX}")
        if min_value > max_value:
            raise ValueError(f"min ({min_value}) is greater than max ({max_value})")

        self.low = min_value
        self.high = max_value
        self.candidate = None

    def __repr__(self):
        return f"BoundarySearch(low={self.low}, high={self.high})"

    def next(self):
        """
        Propose the next value to test.

        Returns:
            Candidate value, or None once the search has converged
        """
        if self.low == self.high:
            self.candidate = None
            return None
        self.candidate = self._midpoint()
        return self.candidate

    def accept(self):
        """The last candidate passed the test."""
        self.low = self._pending()
        self.candidate = None

    def reject(self):
        """The last candidate failed the test."""
        self.high = max(self._pending() - 1, self.low)
        self.candidate = None

    def finish(self):
        """
        Get the discovered boundary.

        Raises:
            ConvergenceError: if next() has not been driven to None yet
        """
        if self.low != self.high:
            raise ConvergenceError(
                f"search has not converged (low={self.low}, high={self.high})"
            )
        return self.low

    def _midpoint(self):
        if self.high - self.low > 1:
            return (self.low + self.high) // 2
        return self.high

    def _pending(self):
        if self.candidate is None:
            raise ConvergenceError("accept()/reject() called without a pending candidate")
        return self.candidate

    # ----- Getters

    def min(self):
        return self.low

    def max(self):
        return self.high

    def converged(self):
        return self.low == self.high


# =============================================================================
# HELPERS
# =============================================================================

def escape_byte_string(data):
    """
    Render bytes for a terminal: printable ASCII as is, everything else escaped.

    Args:
        data: bytes to render

    Returns:
        str with \\", \\\\, \\r, \\n, \\t and \\xNN escapes
    """
    special = {0x22: '\\"', 0x5C: '\\\\', 0x0D: '\\r', 0x0A: '\\n', 0x09: '\\t'}
    out = []
    for byte in data:
        if byte in special:
            out.append(special[byte])
        elif 0x20 <= byte <= 0x7E:
            out.append(chr(byte))
        else:
            out.append(f"\\x{byte:02x}")
    return "".join(out)


# =============================================================================
# PROTOCOL PROBER - Base class for protocol limit probers
# =============================================================================

class ProtocolProber:
    """
    Base class for protocol limit probers.

    Subclasses provide the connection, the per-probe stimulus and the
    classification of server events. This class provides the session
    scope, the verdict loop and the drivers that turn single verdicts
    into a boundary or a byte table.
    """

    def __init__(self):
        self.host = None
        self.port = None
        self.timeout = DEFAULT_TIMEOUT
        self.verbose = False
        self.abort_on_connect_error = False
        self.session_count = 0

    # ========================================================================
    # ABSTRACT METHODS
    # ========================================================================

    def get_protocol_name(self):
        raise NotImplementedError()

    def connect(self):
        """Open a transport connection and return a socket-like object."""
        raise NotImplementedError()

    def open_session(self, sock):
        """Wrap a fresh socket and wait for the server greeting."""
        raise NotImplementedError()

    def run_probe(self, parsed):
        raise NotImplementedError()

    # ========================================================================
    # SESSIONS
    # ========================================================================

    @contextmanager
    def session(self, sock=None):
        """
        One probe session: connect, greet, hand the connection out, close.

        Args:
            sock: Already connected socket, or None to call connect()

        The socket is closed on every exit path. A session is never reused.
        """
        self.session_count += 1
        if sock is None:
            sock = self.connect()
        try:
            yield self.open_session(sock)
        finally:
            try:
                sock.close()
            except OSError as e:
                self.log(f"[!] Close error: {e}", "VERBOSE")

    def await_verdict(self, conn, classify, error_verdict):
        """
        Read events until classify() returns a verdict.

        Args:
            conn: Connection with a progress() method returning events
            classify: Callable(event) -> verdict, or None to keep reading
            error_verdict: Verdict used on transport or framing errors

        Returns:
            The verdict
        """
        while True:
            try:
                event = conn.progress()
            except (OSError, ProtocolViolation) as e:
                self.log(f"[!] {type(e).__name__}: {e}", "INFO")
                return error_verdict

            verdict = classify(event)
            if verdict is not None:
                return verdict
            self.log(f"[?] Unexpected event: {event!r}", "VERBOSE")

    def run_session(self, stimulus, classify, error_verdict):
        """
        Run one complete probe session and reduce it to a verdict.

        Args:
            stimulus: Callable(conn) sending exactly one request
            classify: Callable(event) -> verdict or None
            error_verdict: Verdict for any error, including a failed connect

        Returns:
            The verdict for this session
        """
        try:
            sock = self.connect()
        except OSError as e:
            if self.abort_on_connect_error:
                raise
            self.log(f"[!] Connect failed: {e}", "INFO")
            return error_verdict

        try:
            with self.session(sock) as conn:
                stimulus(conn)
                return self.await_verdict(conn, classify, error_verdict)
        except (OSError, ProtocolViolation) as e:
            self.log(f"[!] Session error: {e}", "INFO")
            return error_verdict

    # ========================================================================
    # DRIVERS
    # ========================================================================

    def bisect(self, test, min_value, max_value, label="value"):
        """
        Drive a BoundarySearch with a live test until it converges.

        Args:
            test: Callable(candidate) -> bool (True = accepted)
            min_value: Lower bound (inclusive)
            max_value: Upper bound (inclusive)
            label: Name used in log lines

        Returns:
            Largest accepted value
        """
        search = BoundarySearch(min_value, max_value)
        self.log(f"[*] {label}: min={search.min()} max={search.max()}", "INFO")

        while not search.converged():
            candidate = search.next()
            if test(candidate):
                self.log(f"  [+] {label} {candidate} accepted", "INFO")
                search.accept()
            else:
                self.log(f"  [-] {label} {candidate} rejected", "INFO")
                search.reject()
            self.log(f"[*] {label}: min={search.min()} max={search.max()}", "INFO")

        return search.finish()

    def sweep_bytes(self, classify_byte):
        """
        Classify every byte value 0-255 with one session each.

        Args:
            classify_byte: Callable(byte) -> classification

        Returns:
            List of 256 (byte, char, classification) tuples in byte order
        """
        results = []
        for byte in range(256):
            result = classify_byte(byte)
            self.log(f"  [{byte:3d}] {escape_byte_string(bytes([byte]))} -> {result}", "VERBOSE")
            results.append((byte, chr(byte), result))
        return results

    # ========================================================================
    # CLI
    # ========================================================================

    def add_protocol_arguments(self, parser):
        pass

    def add_probe_arguments(self, parser):
        pass

    def setup_argument_parser(self):
        parser = argparse.ArgumentParser(
            description=f'BoundProbe Framework - {self.get_protocol_name()}',
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )

        protocol_group = parser.add_argument_group('Protocol Options')
        protocol_group.add_argument('-s', '--server', required=True, help='Target hostname or IP')
        protocol_group.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
                                    help='Socket timeout in seconds (default: none, block forever)')
        self.add_protocol_arguments(protocol_group)

        probe_group = parser.add_argument_group('Probe Options')
        self.add_probe_arguments(probe_group)
        probe_group.add_argument('--abort-on-connect-error', action='store_true',
                                 dest='abort_on_connect_error',
                                 help='Stop the whole run when a connection cannot be opened')
        parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')

        return parser

    def parse_arguments(self, args=None):
        parser = self.setup_argument_parser()
        parsed = parser.parse_args(args)

        self.host = parsed.server
        self.timeout = parsed.timeout
        self.verbose = parsed.verbose
        self.abort_on_connect_error = parsed.abort_on_connect_error

        return parsed

    def log(self, message, level="INFO"):
        if level == "ALWAYS":
            print(message, flush=True)
        elif level == "VERBOSE" and self.verbose:
            print(message, flush=True)
        elif level == "INFO":
            print(message, flush=True)

    def run(self, args=None):
        parsed_args = self.parse_arguments(args)

        try:
            self.run_probe(parsed_args)
        except KeyboardInterrupt:
            print(f"\n[BoundProbe] Interrupted after {self.session_count} sessions")
            return 1
        except OSError as e:
            print(f"[BoundProbe] Connection error: {e}")
            return 1
        except ProtocolViolation as e:
            print(f"[BoundProbe] Protocol error: {e}")
            return 1

        self.log(f"\n[BoundProbe] Complete. Opened {self.session_count} sessions.", "VERBOSE")
        return 0


def print_banner():
    print(f"""
+---------------------------------------------------------------------------+
|                                                                           |
|   BoundProbe {__version__:<61}|
|   Measuring protocol limits one fresh connection at a time                |
|                                                                           |
+---------------------------------------------------------------------------+
""")


if __name__ == "__main__":
    print_banner()
    print("This is the base framework - import and subclass ProtocolProber.")
    print("\nSee imap_limits_prober.py for an example implementation.")
