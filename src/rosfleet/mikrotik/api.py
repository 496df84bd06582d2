"""RouterOS API wire protocol (TCP 8728).

A sentence is a sequence of length-prefixed words terminated by a zero-length
word. The first word of a reply names its type (``!re``, ``!done``, ``!trap``,
``!fatal`` or ``!empty``); ``=key=value`` words carry attributes.
"""

from __future__ import annotations

import hashlib
import logging
import socket
from dataclasses import dataclass, field
from typing import Callable, Iterable

from rosfleet.core.errors import RouterOSAuthenticationError, RouterOSConnectionError

logger = logging.getLogger(__name__)

REPLY_RECORD = "!re"
REPLY_DONE = "!done"
REPLY_TRAP = "!trap"
REPLY_FATAL = "!fatal"
REPLY_EMPTY = "!empty"

ENCODING = "utf-8"


def encode_length(length: int) -> bytes:
    """Encode a word length with the RouterOS variable-length scheme."""

    if length < 0:
        raise ValueError("Word length must not be negative.")
    if length < 0x80:
        return length.to_bytes(1, "big")
    if length < 0x4000:
        return (length | 0x8000).to_bytes(2, "big")
    if length < 0x200000:
        return (length | 0xC00000).to_bytes(3, "big")
    if length < 0x10000000:
        return (length | 0xE0000000).to_bytes(4, "big")
    return b"\xf0" + length.to_bytes(4, "big")


def decode_length(read: Callable[[int], bytes]) -> int:
    """Read a word length using ``read(n)`` which must return exactly n bytes."""

    first = read(1)[0]
    if first & 0x80 == 0x00:
        return first
    if first & 0xC0 == 0x80:
        return ((first & 0x3F) << 8) + read(1)[0]
    if first & 0xE0 == 0xC0:
        return ((first & 0x1F) << 16) + int.from_bytes(read(2), "big")
    if first & 0xF0 == 0xE0:
        return ((first & 0x0F) << 24) + int.from_bytes(read(3), "big")
    if first == 0xF0:
        return int.from_bytes(read(4), "big")
    raise RouterOSConnectionError(f"Unsupported control byte in length prefix: 0x{first:02x}")


def encode_word(word: str) -> bytes:
    data = word.encode(ENCODING)
    return encode_length(len(data)) + data


def encode_sentence(words: Iterable[str]) -> bytes:
    return b"".join(encode_word(word) for word in words) + b"\x00"


@dataclass(slots=True)
class Reply:
    """One reply sentence from the device."""

    type: str
    attributes: dict[str, str] = field(default_factory=dict)
    tag: str | None = None
    message: str | None = None


def parse_sentence(words: list[str]) -> Reply:
    """Turn raw reply words into a :class:`Reply`."""

    if not words:
        raise RouterOSConnectionError("Received an empty sentence")

    reply = Reply(type=words[0])
    for word in words[1:]:
        if word.startswith("="):
            key, _, value = word[1:].partition("=")
            reply.attributes[key] = value
        elif word.startswith(".tag="):
            reply.tag = word[len(".tag="):]
        elif reply.type == REPLY_FATAL:
            # !fatal carries a bare reason word instead of =message=
            reply.message = word

    if reply.message is None:
        reply.message = reply.attributes.get("message")
    return reply


class ApiConnection:
    """Reads and writes sentences over a connected socket."""

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock

    def _recv_exact(self, size: int) -> bytes:
        chunks: list[bytes] = []
        remaining = size
        while remaining > 0:
            chunk = self.sock.recv(remaining)
            if not chunk:
                raise RouterOSConnectionError("Connection closed by device")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def write_sentence(self, words: Iterable[str]) -> None:
        words = list(words)
        logger.debug("api >>> %s", " ".join(words))
        self.sock.sendall(encode_sentence(words))

    def read_sentence(self) -> list[str]:
        words: list[str] = []
        while True:
            length = decode_length(self._recv_exact)
            if length == 0:
                break
            words.append(self._recv_exact(length).decode(ENCODING, errors="replace"))
        logger.debug("api <<< %s", " ".join(words))
        return words

    def talk(self, words: Iterable[str]) -> list[Reply]:
        """Send one command and collect replies up to ``!done`` or ``!fatal``."""

        self.write_sentence(words)
        replies: list[Reply] = []
        while True:
            reply = parse_sentence(self.read_sentence())
            replies.append(reply)
            if reply.type in (REPLY_DONE, REPLY_FATAL):
                return replies

    def close(self) -> None:
        self.sock.close()


def _challenge_response(password: str, challenge_hex: str) -> str:
    digest = hashlib.md5()
    digest.update(b"\x00")
    digest.update(password.encode(ENCODING))
    digest.update(bytes.fromhex(challenge_hex))
    return "00" + digest.hexdigest()


def _login_error(replies: list[Reply]) -> str | None:
    for reply in replies:
        if reply.type in (REPLY_TRAP, REPLY_FATAL):
            return reply.message or "login rejected"
    return None


def login(connection: ApiConnection, username: str, password: str) -> None:
    """Authenticate, answering the pre-6.43 MD5 challenge when the device asks for it."""

    replies = connection.talk(["/login", f"=name={username}", f"=password={password}"])
    error = _login_error(replies)
    if error:
        raise RouterOSAuthenticationError(f"Authentication failed: {error}")

    challenge = replies[-1].attributes.get("ret")
    if not challenge:
        return

    logger.debug("api login uses legacy challenge")
    replies = connection.talk(
        ["/login", f"=name={username}", f"=response={_challenge_response(password, challenge)}"]
    )
    error = _login_error(replies)
    if error:
        raise RouterOSAuthenticationError(f"Authentication failed: {error}")
