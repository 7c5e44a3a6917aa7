"""Interactive chat client: sends typed lines and emotes, shows relayed messages."""

from __future__ import annotations

import argparse
import queue
import select
import socket
import sys
import threading
from typing import TextIO

from relaychat.messages import (
    DEFAULT_EMOTE_DIR,
    ENCODING,
    MessageCode,
    encode_message,
    format_chat_line,
    load_emote,
    parse_server_message,
    render_emote,
    validate_username,
)
from relaychat.protocol import (
    MAX_NAME,
    MAX_USER_MSG,
    SERVER_PORT,
    ConnectionClosed,
    MessageBuffer,
    ProtocolError,
    ReadStatus,
    read_from_socket,
    write_to_socket,
)

KICK_PREFIX = ".k "
EMOTE_PREFIX = ".e "
PROMPT = "Please enter a username: "
SERVER_HOST = "127.0.0.1"


def _strip_newline(text: str) -> str:
    return text[:-1] if text.endswith("\n") else text


def prompt_username(stdin: TextIO, stdout: TextIO, stderr: TextIO) -> str:
    """Ask for a username until an acceptable one is typed and return it.

    Raises EOFError if input ends before a valid name is given.
    """
    while True:
        stdout.write(PROMPT)
        stdout.flush()
        line = stdin.readline()
        if not line:
            raise EOFError("Error reading username.")
        name = _strip_newline(line)
        if len(name) > MAX_NAME:
            print(f"Username can be at most {MAX_NAME} characters.", file=stderr)
            continue
        if validate_username(name):
            return name


class ChatClient:
    """A connected chat session bound to a server socket and text streams."""

    def __init__(
        self,
        sock: socket.socket,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        emote_dir: str = DEFAULT_EMOTE_DIR,
    ) -> None:
        self.sock = sock
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.stderr = stderr if stderr is not None else sys.stderr
        self.emote_dir = emote_dir
        self.buffer = MessageBuffer()

    def _send(self, code: MessageCode, text: str | bytes) -> None:
        write_to_socket(self.sock, encode_message(code, text))

    def _write_bytes(self, data: bytes) -> None:
        raw = getattr(self.stdout, "buffer", None)
        self.stdout.flush()
        if raw is not None:
            raw.write(data)
            raw.flush()
        else:
            self.stdout.write(data.decode("utf-8", errors="replace"))
            self.stdout.flush()

    def send_username(self, name: str) -> None:
        """Register ``name`` with the server.

        Raises ValueError if the name is not acceptable.
        """
        name = _strip_newline(name)
        if len(name) > MAX_NAME or not validate_username(name):
            raise ValueError(f"invalid username {name!r}")
        self._send(MessageCode.TEXT, name)

    def handle_input(self, line: str) -> None:
        """Act on one line typed by the user: a kick, an emote or chat text."""
        if line.startswith(KICK_PREFIX):
            rest = line[len(KICK_PREFIX):]
            target, remainder = rest[: MAX_NAME + 1], rest[MAX_NAME + 1:]
            self._send(MessageCode.KICK, target)
            if remainder:
                self._send_text(remainder)
        elif line.startswith(EMOTE_PREFIX):
            self._send_emote(_strip_newline(line[len(EMOTE_PREFIX):]))
        else:
            self._send_text(line)

    def _send_text(self, line: str) -> None:
        text = _strip_newline(line)
        if not text:
            self._send(MessageCode.TEXT, "")
            return
        for start in range(0, len(text), MAX_USER_MSG):
            self._send(MessageCode.TEXT, text[start : start + MAX_USER_MSG])

    def _send_emote(self, name: str) -> None:
        try:
            encoded = load_emote(name, self.emote_dir)
        except FileNotFoundError:
            print("Error: Emote image not found", file=self.stderr)
            return
        except ValueError as exc:
            print(exc, file=self.stderr)
            return
        self._send(MessageCode.EMOTE, encoded)

    def handle_server_data(self) -> bool:
        """Read from the server and display every complete message.

        Returns False once the server has closed the connection. Raises
        ProtocolError for a malformed message and OSError on read errors.
        """
        status = read_from_socket(self.sock, self.buffer)
        if status is ReadStatus.CLOSED:
            return False
        for raw in self.buffer.messages():
            if raw[:1] not in (b"1", b"2"):
                continue
            message = parse_server_message(raw)
            if message.code is MessageCode.TEXT:
                print(format_chat_line(message), file=self.stdout, flush=True)
            else:
                self._show_emote(message.username, message.text)
        return True

    def _show_emote(self, username: str, encoded: str) -> None:
        try:
            rendered = render_emote(encoded)
        except (OSError, ValueError) as exc:
            print(f"Error displaying emote: {exc}", file=self.stderr)
            return
        print(f"{username} sent an emote:", file=self.stdout, flush=True)
        self._write_bytes(rendered)

    def _pump_stdin(self, lines: queue.Queue[str | None], wake: socket.socket) -> None:
        try:
            for line in iter(self.stdin.readline, ""):
                lines.put(line)
                wake.send(b"\0")
        except (OSError, ValueError):
            pass
        lines.put(None)
        try:
            wake.send(b"\0")
        except OSError:
            pass

    def run(self) -> int:
        """Relay between the user and the server until one side stops.

        Returns the process exit status: 0 when interrupted, 1 on failure
        or when the server goes away.
        """
        wake_reader, wake_writer = socket.socketpair()
        lines: queue.Queue[str | None] = queue.Queue()
        reader = threading.Thread(
            target=self._pump_stdin, args=(lines, wake_writer), daemon=True
        )
        reader.start()
        try:
            while True:
                readable, _, _ = select.select([self.sock, wake_reader], [], [])
                if wake_reader in readable:
                    wake_reader.recv(4096)
                    while not lines.empty():
                        line = lines.get_nowait()
                        if line is not None:
                            self.handle_input(line)
                if self.sock in readable and not self.handle_server_data():
                    return 1
        except KeyboardInterrupt:
            return 0
        except ConnectionClosed:
            print("Server Disconnected.", file=self.stderr)
            return 1
        except ProtocolError as exc:
            print(f"Invalid msg from Server: {exc}", file=self.stderr)
            return 1
        except OSError as exc:
            print(f"client: {exc}", file=self.stderr)
            return 1
        finally:
            wake_reader.close()
            wake_writer.close()


def main(argv: list[str] | None = None) -> int:
    """Connect to the chat server, register a username and start chatting."""
    parser = argparse.ArgumentParser(description="Chat client.")
    parser.add_argument("--host", default=SERVER_HOST, help="server address")
    parser.add_argument("--port", type=int, default=SERVER_PORT, help="server port")
    parser.add_argument("--emote-dir", default=DEFAULT_EMOTE_DIR, help="emote images")
    args = parser.parse_args(argv)

    try:
        sock = socket.create_connection((args.host, args.port))
    except OSError as exc:
        print(f"client: connect: {exc}", file=sys.stderr)
        return 1

    with sock:
        try:
            name = prompt_username(sys.stdin, sys.stdout, sys.stderr)
        except EOFError as exc:
            print(exc, file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            return 0
        client = ChatClient(sock, sys.stdin, sys.stdout, sys.stderr, args.emote_dir)
        try:
            client.send_username(name)
        except (ConnectionClosed, OSError):
            print("Error sending username.", file=sys.stderr)
            return 1
        return client.run()


if __name__ == "__main__":
    sys.exit(main())