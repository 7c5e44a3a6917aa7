"""Wire protocol primitives: framing, buffering and socket helpers.

Messages on the wire are ASCII text terminated by a network newline (CRLF).
A client sends ``<code><text>\\r\\n`` where the code is a single digit;
the server relays ``<code><username> <text>\\r\\n`` to the other clients.
"""

from __future__ import annotations

import enum
import socket
from collections.abc import Iterator

SERVER_PORT = 30000
MAX_CONNECTIONS = 12
MAX_BACKLOG = 5
MAX_NAME = 10
MAX_USER_MSG = 128
MAX_IMG_LEN = 65535
# CODE + MAX(username) + SPACE + MAX(user message or image) + CRLF
MAX_PROTO_MSG = 1 + MAX_NAME + 1 + MAX_IMG_LEN + 2
BUF_SIZE = MAX_PROTO_MSG + 1

NETWORK_NEWLINE = b"\r\n"


class ProtocolError(Exception):
    """Raised when received data breaks the protocol's limits or format."""


class ConnectionClosed(Exception):
    """Raised when the peer has gone away while we were writing to it."""


class ReadStatus(enum.Enum):
    """Outcome of reading a chunk of data into a message buffer."""

    COMPLETE = 0
    CLOSED = 1
    PARTIAL = 2


def find_network_newline(buf: bytes | bytearray) -> int | None:
    """Return one past the index of the first CRLF's ``\\n``, or None."""
    index = bytes(buf).find(NETWORK_NEWLINE)
    if index == -1:
        return None
    return index + len(NETWORK_NEWLINE)


class MessageBuffer:
    """Bounded accumulator that splits incoming bytes into CRLF messages."""

    def __init__(self, capacity: int = BUF_SIZE) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._data = bytearray()

    def __len__(self) -> int:
        return len(self._data)

    def __bytes__(self) -> bytes:
        return bytes(self._data)

    @property
    def data(self) -> bytes:
        """The bytes currently held, unconsumed."""
        return bytes(self._data)

    @property
    def free(self) -> int:
        """How many more bytes the buffer can accept."""
        return self.capacity - len(self._data)

    def feed(self, data: bytes) -> ReadStatus:
        """Append freshly received bytes.

        Returns COMPLETE if the new bytes contain a network newline,
        PARTIAL otherwise. Raises ProtocolError if the buffer would overflow.
        """
        if len(self._data) + len(data) > self.capacity:
            raise ProtocolError("maximum message size exceeded")
        self._data.extend(data)
        if find_network_newline(data) is None:
            return ReadStatus.PARTIAL
        return ReadStatus.COMPLETE

    def get_message(self) -> bytes | None:
        """Remove and return the first complete message without its CRLF."""
        end = find_network_newline(self._data)
        if end is None:
            return None
        message = bytes(self._data[: end - len(NETWORK_NEWLINE)])
        del self._data[:end]
        return message

    def messages(self) -> Iterator[bytes]:
        """Yield every complete message currently buffered."""
        while (message := self.get_message()) is not None:
            yield message


def read_from_socket(sock: socket.socket, buffer: MessageBuffer) -> ReadStatus:
    """Read once from ``sock`` into ``buffer``.

    The socket is closed when the peer has closed it (CLOSED is returned),
    on a read error (the OSError propagates) and when the buffer would
    overflow (ProtocolError is raised).
    """
    try:
        data = sock.recv(buffer.free)
    except OSError:
        sock.close()
        raise
    if not data:
        sock.close()
        return ReadStatus.CLOSED
    try:
        return buffer.feed(data)
    except ProtocolError:
        sock.close()
        raise


def write_to_socket(sock: socket.socket, data: bytes) -> None:
    """Write all of ``data`` to ``sock``.

    Raises ConnectionClosed if the peer has disconnected; other socket
    errors propagate as OSError.
    """
    try:
        sock.sendall(data)
    except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError) as exc:
        raise ConnectionClosed(str(exc)) from exc


def setup_server_socket(host: str = "", port: int = SERVER_PORT) -> socket.socket:
    """Create a TCP socket bound to ``host``:``port`` and listening."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(MAX_BACKLOG)
    except OSError:
        sock.close()
        raise
    return sock