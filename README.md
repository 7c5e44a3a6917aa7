# relaychat

A small chat system made of a TCP server that relays messages between
connected users and a terminal client that sends text, kicks users and
shares JPEG emotes. It has no dependencies outside the standard library.

## Installing

```
pip install .
```

## Running

Start the server. By default it listens on port 30000 on every interface
and accepts up to 12 clients at a time:

```
relaychat-server
relaychat-server --host 127.0.0.1 --port 30000
```

In another terminal, start a client. By default it connects to
127.0.0.1 on port 30000 and asks for a username:

```
relaychat-client
relaychat-client --host 127.0.0.1 --port 30000 --emote-dir ./emotes
```

Usernames are at most 10 characters, may not contain whitespace and may
not be `SERVER`. The client asks again until such a name is typed. If the
server finds the name already in use, it replies
`SERVER: Username invalid or already taken.` and closes the connection.

## Using the client

- Type a line and press Enter to send it to everyone else. Messages are
  limited to 128 characters; longer lines are sent in several pieces.
  Received messages are shown as `NAME: text`.
- `.k NAME` asks the server to disconnect the user `NAME`. Only the
  client that is first in the server's list (the earliest still
  connected) may kick others; requests from anyone else are ignored.
- `.e NAME` sends the image `NAME.jpg` from the emote directory
  (`./emotes` unless `--emote-dir` is given) as a base64-encoded emote.
  Both the image and its base64 form must fit in 65535 bytes.
- A received emote is written briefly to `emotepipe<pid>.jpg` in the
  current directory and shown with the `catimg` program (80 columns
  wide), so `catimg` must be installed for emotes to display.

Press Ctrl-C to leave. The client also stops when the server closes the
connection.

## Wire protocol

Every message ends with CRLF and starts with a one-character code:

| Code | From client            | From server                  |
|------|------------------------|------------------------------|
| `0`  | kick a username        | —                            |
| `1`  | text (or the username) | `1NAME text`                 |
| `2`  | base64 emote image     | `2NAME base64data`           |

The first message a client sends must be `1NAME`. The server disconnects
a client whose message has an unknown code, lacks its CRLF, or carries
more than 128 characters of text (65535 for an emote).

The building blocks can be used to write other clients for the same
server:

- `relaychat.protocol`: `MessageBuffer` (with `feed`, `get_message` and
  `messages`), `ReadStatus`, `ProtocolError`, `ConnectionClosed`,
  `find_network_newline`, `read_from_socket`, `write_to_socket` and
  `setup_server_socket`.
- `relaychat.messages`: `MessageCode`, `ServerMessage`, `encode_message`,
  `parse_server_message`, `format_chat_line`, `validate_username`,
  `emote_path`, `load_emote` and `render_emote`.
- `relaychat.server`: `ChatServer`, `Client`, `validate_username`,
  `parse_username` and `validate_protocol`.
- `relaychat.client`: `ChatClient` and `prompt_username`.

## Tests

```
pip install ".[test]"
pytest
```