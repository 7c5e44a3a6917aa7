"""Client-side message handling: encoding user input and decoding relays."""

from __future__ import annotations

import base64
import enum
import os
import string
import subprocess
from dataclasses import dataclass
from pathlib import Path

from relaychat.protocol import MAX_IMG_LEN, MAX_USER_MSG, NETWORK_NEWLINE, ProtocolError

ENCODING = "latin-1"
RESERVED_NAME = "SERVER"
DEFAULT_EMOTE_DIR = "./emotes"
EMOTE_SUFFIX = ".jpg"
RENDER_WIDTH = "-w80"


class MessageCode(enum.IntEnum):
    """The single-digit code that starts every protocol message."""

    KICK = 0
    TEXT = 1
    EMOTE = 2

    @property
    def prefix(self) -> bytes:
        return str(int(self)).encode("ascii")


@dataclass(frozen=True)
class ServerMessage:
    """A message relayed by the server on behalf of another user."""

    code: MessageCode
    username: str
    text: str


def _strip_newline(text: str) -> str:
    return text[:-1] if text.endswith("\n") else text


def validate_username(name: str) -> bool:
    """Return True if ``name`` (optionally newline-terminated) is non-empty,
    has no whitespace and is not the reserved server name."""
    name = _strip_newline(name)
    if not name:
        return False
    if any(ch in string.whitespace for ch in name):
        return False
    return name != RESERVED_NAME


def encode_message(code: MessageCode | int, text: str | bytes) -> bytes:
    """Frame ``text`` as ``<code><text>\\r\\n``.

    A single trailing newline in ``text`` is replaced by the network newline.
    Raises ValueError for an unknown code.
    """
    code = MessageCode(code)
    if isinstance(text, str):
        text = text.encode(ENCODING)
    if text.endswith(b"\n"):
        text = text[:-1]
    return code.prefix + text + NETWORK_NEWLINE


def parse_server_message(message: bytes) -> ServerMessage:
    """Decode a relayed message (without its CRLF) into its parts.

    Raises ProtocolError for an unknown code or an over-long text message.
    """
    try:
        code = MessageCode(int(message[:1].decode("ascii")))
    except (ValueError, UnicodeDecodeError):
        raise ProtocolError(f"unknown message code in {message[:1]!r}") from None
    if code is MessageCode.KICK:
        raise ProtocolError("server does not relay kick messages")
    body = message[1:]
    username, _, text = body.partition(b" ")
    if code is MessageCode.TEXT and len(text) > MAX_USER_MSG:
        raise ProtocolError("invalid message from server")
    return ServerMessage(code, username.decode(ENCODING), text.decode(ENCODING))


def format_chat_line(message: ServerMessage) -> str:
    """Render a text message the way it is shown to the user."""
    return f"{message.username}: {message.text}"


def emote_path(name: str, directory: str | os.PathLike[str] = DEFAULT_EMOTE_DIR) -> Path:
    """Return the image file that holds the emote called ``name``."""
    return Path(directory) / f"{_strip_newline(name)}{EMOTE_SUFFIX}"


def load_emote(name: str, directory: str | os.PathLike[str] = DEFAULT_EMOTE_DIR) -> bytes:
    """Read the emote image ``name`` and return it base64-encoded.

    Raises ValueError if the name or the image is too long and
    FileNotFoundError if there is no such emote.
    """
    if len(_strip_newline(name)) > MAX_USER_MSG:
        raise ValueError(f"Emote name can be at most {MAX_USER_MSG} characters.")
    path = emote_path(name, directory)
    if not path.is_file():
        raise FileNotFoundError(f"Emote image not found: {path}")
    with path.open("rb") as image:
        raw = image.read(MAX_IMG_LEN + 2)
    if len(raw) > MAX_IMG_LEN:
        raise ValueError("Image size is too large.")
    encoded = base64.b64encode(raw)
    if len(encoded) > MAX_IMG_LEN:
        raise ValueError("Image size is too large.")
    return encoded


def render_emote(encoded: str | bytes, fifo_dir: str | os.PathLike[str] = ".") -> bytes:
    """Decode a base64 emote and return its terminal rendering by ``catimg``.

    The decoded image is staged in ``fifo_dir`` and removed afterwards.
    Raises ValueError (binascii.Error) for malformed base64.
    """
    if isinstance(encoded, str):
        encoded = encoded.encode("ascii")
    image = base64.b64decode(encoded, validate=True)
    path = Path(fifo_dir) / f"emotepipe{os.getpid()}{EMOTE_SUFFIX}"
    path.write_bytes(image)
    try:
        result = subprocess.run(
            ["catimg", RENDER_WIDTH, str(path)],
            stdout=subprocess.PIPE,
            check=False,
        )
    finally:
        path.unlink(missing_ok=True)
    return result.stdout