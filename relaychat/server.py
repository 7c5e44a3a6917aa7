"""Chat relay server: registers usernames and relays messages between clients."""

from __future__ import annotations

import argparse
import select
import socket
import string
import sys
from dataclasses import dataclass, field
from typing import TextIO

from relaychat.protocol import (
    MAX_CONNECTIONS,
    MAX_IMG_LEN,
    MAX_NAME,
    MAX_USER_MSG,
    NETWORK_NEWLINE,
    SERVER_PORT,
    ConnectionClosed,
    MessageBuffer,
    ProtocolError,
    ReadStatus,
    find_network_newline,
    read_from_socket,
    setup_server_socket,
    write_to_socket,
)

RESERVED_NAME = "SERVER"
USERNAME_ERROR = b"1SERVER Username invalid or already taken.\r\n"
ENCODING = "latin-1"

_TEXT_LIMITS = {b"0": MAX_USER_MSG, b"1": MAX_USER_MSG, b"2": MAX_IMG_LEN}


def validate_username(name: str) -> bool:
    """Return True if ``name`` is non-empty, short enough, has no whitespace
    and is not the reserved server name."""
    if not name or len(name) > MAX_NAME:
        return False
    if any(ch in string.whitespace for ch in name):
        return False
    return name != RESERVED_NAME


def parse_username(message: bytes) -> str:
    """Extract the username from a client's first message (``1<name>``).

    Raises ProtocolError if the message is not a text message or the name
    is not acceptable.
    """
    if not message.startswith(b"1"):
        raise ProtocolError("username must be sent as a text message")
    name = message[1:].decode(ENCODING)
    if not validate_username(name):
        raise ProtocolError(f"invalid username {name!r}")
    return name


def validate_protocol(data: bytes) -> bool:
    """Check that the first framed message in ``data`` has a known code,
    is CRLF-terminated and its text is within the code's length limit."""
    code = data[:1]
    limit = _TEXT_LIMITS.get(code)
    if limit is None:
        return False
    end = find_network_newline(data)
    if end is None:
        return False
    text = data[1 : end - len(NETWORK_NEWLINE)]
    return len(text) <= limit


@dataclass(eq=False)
class Client:
    """A connected client: its socket, pending input and chosen name."""

    sock: socket.socket
    username: str | None = None
    buffer: MessageBuffer = field(default_factory=MessageBuffer)
    fd: int = field(init=False)

    def __post_init__(self) -> None:
        self.fd = self.sock.fileno()

    @property
    def label(self) -> str:
        return self.username if self.username is not None else "(unnamed)"


class ChatServer:
    """Accepts clients on a listening socket and relays their messages.

    The first connected client acts as the administrator and may kick others.
    """

    def __init__(self, listen_sock: socket.socket, out: TextIO | None = None) -> None:
        self.listen_sock = listen_sock
        self.out = out if out is not None else sys.stdout
        self.clients: list[Client] = []

    def _log(self, text: str) -> None:
        print(text, file=self.out, flush=True)

    def accept_connection(self) -> Client | None:
        """Accept a pending connection; return the new client, or None if full."""
        sock, _ = self.listen_sock.accept()
        if len(self.clients) >= MAX_CONNECTIONS:
            sock.close()
            self._log("Failed to accept incoming connection.")
            return None
        client = Client(sock)
        self.clients.append(client)
        self._log("Accepted connection")
        return client

    def remove_client(self, client: Client) -> None:
        """Drop ``client`` from the client list and close its socket."""
        try:
            self.clients.remove(client)
        except ValueError:
            raise ValueError(f"client {client.fd} is not connected") from None
        client.sock.close()

    def _disconnect(self, client: Client) -> None:
        client.sock.close()
        self._log(f"Client {client.fd} disconnected")
        self.remove_client(client)

    def _register(self, client: Client) -> bool:
        message = client.buffer.get_message()
        try:
            if message is None:
                raise ProtocolError("no username received")
            name = parse_username(message)
            if any(other.username == name for other in self.clients if other is not client):
                raise ProtocolError(f"username {name!r} already taken")
        except ProtocolError:
            self._log(f"Error processing user name from client {client.fd}.")
            try:
                write_to_socket(client.sock, USERNAME_ERROR)
            except (ConnectionClosed, OSError):
                pass
            return False
        client.username = name
        self._log(f"Client {client.fd} user name is {name}.")
        return True

    def handle_readable(self, client: Client) -> bool:
        """Process data waiting on ``client``'s socket.

        Returns True while the client stays connected, False once it is gone.
        """
        try:
            status = read_from_socket(client.sock, client.buffer)
        except (OSError, ProtocolError) as exc:
            print(f"read: {exc}", file=sys.stderr)
            status = ReadStatus.CLOSED
        if status is ReadStatus.CLOSED:
            self._disconnect(client)
            return False
        if status is ReadStatus.PARTIAL:
            return True

        if client.username is None and not self._register(client):
            self._disconnect(client)
            return False

        pending = client.buffer.data
        if pending and not validate_protocol(pending):
            self._disconnect(client)
            return False

        for message in client.buffer.messages():
            code, text = message[:1], message[1:]
            if code in (b"1", b"2"):
                if len(text) > _TEXT_LIMITS[code]:
                    self._disconnect(client)
                    return False
                self._log(f"Echoing message from {client.username}.")
                self.broadcast(client, code.decode("ascii"), text)
            elif code == b"0":
                kicked = self.kick(client, text.decode(ENCODING))
                if kicked is client:
                    return False
        return True

    def broadcast(self, sender: Client, code: str, payload: bytes) -> None:
        """Send ``<code><sender> <payload>`` to every client but the sender."""
        frame = (
            code.encode("ascii")
            + (sender.username or "").encode(ENCODING)
            + b" "
            + payload
            + NETWORK_NEWLINE
        )
        for dest in list(self.clients):
            if dest is sender:
                continue
            try:
                write_to_socket(dest.sock, frame)
            except ConnectionClosed:
                self._log(f"Failed to send message to user {dest.label} ({dest.fd}).")
                self._log(f"User {dest.label} ({dest.fd}) disconnected.")
                self.remove_client(dest)
            except OSError:
                self._log(f"Failed to send message to user {dest.label} ({dest.fd}).")
            else:
                self._log(
                    f"Sent message from {sender.label} ({sender.fd}) "
                    f"to {dest.label} ({dest.fd})."
                )

    def kick(self, sender: Client, username: str) -> Client | None:
        """Disconnect the client named ``username`` if ``sender`` is the admin.

        Returns the kicked client, or None if nothing was done.
        """
        if not self.clients or self.clients[0] is not sender:
            return None
        for target in self.clients:
            if target.username is not None and target.username == username:
                self._disconnect(target)
                return target
        return None

    def serve_forever(self) -> None:
        """Multiplex the listening socket and all clients until interrupted."""
        while True:
            watched = [self.listen_sock, *(c.sock for c in self.clients)]
            readable, _, _ = select.select(watched, [], [])
            if self.listen_sock in readable:
                self.accept_connection()
            for client in list(self.clients):
                if client in self.clients and client.sock in readable:
                    self.handle_readable(client)

    def close(self) -> None:
        """Close every client socket and the listening socket."""
        for client in self.clients:
            client.sock.close()
        self.clients.clear()
        self.listen_sock.close()


def main(argv: list[str] | None = None) -> int:
    """Run the chat server until interrupted."""
    parser = argparse.ArgumentParser(description="Chat relay server.")
    parser.add_argument("--host", default="", help="address to listen on")
    parser.add_argument("--port", type=int, default=SERVER_PORT, help="port to listen on")
    args = parser.parse_args(argv)

    try:
        listen_sock = setup_server_socket(args.host, args.port)
    except OSError as exc:
        print(f"server: {exc}", file=sys.stderr)
        return 1

    server = ChatServer(listen_sock)
    status = 0
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        print(f"server: select: {exc}", file=sys.stderr)
        status = 1
    finally:
        server.close()
    return status


if __name__ == "__main__":
    sys.exit(main())