import base64
import binascii
import subprocess
from pathlib import Path
from unittest import mock

import pytest

from relaychat.messages import (
    MessageCode,
    ServerMessage,
    emote_path,
    encode_message,
    format_chat_line,
    load_emote,
    parse_server_message,
    render_emote,
    validate_username,
)
from relaychat.protocol import MAX_IMG_LEN, MAX_USER_MSG, ProtocolError


@pytest.mark.parametrize(
    "name, expected",
    [
        ("alice\n", True),
        ("alice", True),
        ("\n", False),
        ("", False),
        ("al ice\n", False),
        ("al\tice", False),
        ("SERVER\n", False),
        ("SERVER", False),
        ("SERVERX", True),
    ],
)
def test_validate_username(name, expected):
    assert validate_username(name) is expected


def test_encode_text_replaces_newline():
    assert encode_message(MessageCode.TEXT, "hello\n") == b"1hello\r\n"


def test_encode_text_without_newline():
    assert encode_message(MessageCode.TEXT, "hello") == b"1hello\r\n"


def test_encode_kick():
    assert encode_message(MessageCode.KICK, "bob\n") == b"0bob\r\n"


def test_encode_emote_bytes():
    assert encode_message(2, b"QUJD") == b"2QUJD\r\n"


def test_encode_invalid_code():
    with pytest.raises(ValueError):
        encode_message(7, "x")


def test_parse_text_message():
    msg = parse_server_message(b"1alice hi there")
    assert msg == ServerMessage(MessageCode.TEXT, "alice", "hi there")


def test_parse_emote_message():
    msg = parse_server_message(b"2bob QUJD")
    assert msg.code is MessageCode.EMOTE
    assert msg.username == "bob"
    assert msg.text == "QUJD"


def test_parse_server_error_message():
    msg = parse_server_message(b"1SERVER Username invalid or already taken.")
    assert format_chat_line(msg) == "SERVER: Username invalid or already taken."


def test_parse_rejects_long_text():
    with pytest.raises(ProtocolError):
        parse_server_message(b"1alice " + b"x" * (MAX_USER_MSG + 1))


def test_parse_accepts_text_at_limit():
    msg = parse_server_message(b"1alice " + b"x" * MAX_USER_MSG)
    assert len(msg.text) == MAX_USER_MSG


@pytest.mark.parametrize("raw", [b"9alice hi", b"0alice", b"", b"xalice hi"])
def test_parse_rejects_unknown_codes(raw):
    with pytest.raises(ProtocolError):
        parse_server_message(raw)


def test_encode_then_relay_round_trip():
    framed = encode_message(MessageCode.TEXT, "good day\n")
    relayed = framed[:1] + b"carol " + framed[1:-2]
    msg = parse_server_message(relayed)
    assert format_chat_line(msg) == "carol: good day"


def test_emote_path(tmp_path):
    assert emote_path("smile\n", tmp_path) == tmp_path / "smile.jpg"
    assert emote_path("smile") == Path("./emotes") / "smile.jpg"


def test_load_emote_round_trip(tmp_path):
    payload = bytes(range(256)) * 4
    (tmp_path / "wave.jpg").write_bytes(payload)
    encoded = load_emote("wave\n", tmp_path)
    assert base64.b64decode(encoded) == payload


def test_load_emote_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_emote("nothing", tmp_path)


def test_load_emote_too_large(tmp_path):
    (tmp_path / "big.jpg").write_bytes(b"\0" * (MAX_IMG_LEN + 1))
    with pytest.raises(ValueError):
        load_emote("big", tmp_path)


def test_load_emote_encoded_too_large(tmp_path):
    # Fits raw, but base64 expands it beyond the limit.
    (tmp_path / "mid.jpg").write_bytes(b"\0" * (MAX_IMG_LEN - 10))
    with pytest.raises(ValueError):
        load_emote("mid", tmp_path)


def test_load_emote_name_too_long(tmp_path):
    with pytest.raises(ValueError):
        load_emote("n" * (MAX_USER_MSG + 1), tmp_path)


def test_render_emote_runs_catimg(tmp_path):
    image = b"\xff\xd8fake-jpeg"
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        seen["data"] = Path(cmd[-1]).read_bytes()
        return subprocess.CompletedProcess(cmd, 0, stdout=b"rendered")

    with mock.patch("subprocess.run", side_effect=fake_run):
        output = render_emote(base64.b64encode(image).decode("ascii"), tmp_path)

    assert output == b"rendered"
    assert seen["cmd"][:2] == ["catimg", "-w80"]
    assert seen["data"] == image
    assert list(tmp_path.iterdir()) == []


def test_render_emote_rejects_bad_base64(tmp_path):
    with pytest.raises(binascii.Error):
        render_emote("not base64!!", tmp_path)
    assert list(tmp_path.iterdir()) == []