# protocol/pdu.py
#
# Wire records exchanged between peers and the index server.
#
# Three shapes, all fixed layout:
# - ControlRecord (56 bytes): requests to the index server, Search replies and
#   the Download request that opens a content transfer.
# - SimpleRecord (101 bytes): Acknowledge / Error / Online replies.
# - Content frame: 5-byte header (type 'C', big-endian length) + payload.
#   A zero-length frame ends the stream.
#
# The layout matches the original C peers and index server on a little-endian
# host, so unmodified peers can talk to this implementation.

import socket
import struct

from config import NAME_LEN, TEXT_LEN
from protocol.errors import DecodeError


class PduType:
    """Kind tags, one ASCII byte each."""

    REGISTER = "R"
    DOWNLOAD = "D"
    SEARCH = "S"
    DEREGISTER = "T"
    ONLINE = "O"
    ACKNOWLEDGEMENT = "A"
    ERROR = "E"
    CONTENT = "C"
    QUIT = "Q"


# kind + peer name + content name, then padding up to the 4-byte aligned
# sockaddr_in; the family is stored in host (little-endian) order.
_NAMES_END = 1 + 2 * NAME_LEN
_ALIGN_PAD = -_NAMES_END % 4
_HEAD = struct.Struct(f"<c{NAME_LEN}s{NAME_LEN}s{_ALIGN_PAD}xH")
# port + IPv4 address in network order, sin_zero, reserved padding
_ADDR = struct.Struct(">H4s8x16x")
_SIMPLE = struct.Struct(f"c{TEXT_LEN}s")
_FRAME_HEADER = struct.Struct(">cI")

CONTROL_RECORD_SIZE = _HEAD.size + _ADDR.size
SIMPLE_RECORD_SIZE = _SIMPLE.size
FRAME_HEADER_SIZE = _FRAME_HEADER.size

_AF_INET = 2


def _pack_kind(kind: str) -> bytes:
    raw = kind.encode("latin-1")
    if len(raw) != 1:
        raise ValueError(f"Kind must be a single byte: {kind!r}")
    return raw


def _pack_text(text: str, capacity: int) -> bytes:
    # Room is kept for the terminator; struct pads the rest with NULs.
    return (text or "").encode("utf-8")[:capacity - 1]


def _unpack_text(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def peek_kind(data: bytes) -> str:
    """Return the kind tag of any record without decoding the rest."""
    if not data:
        raise DecodeError("Empty record")
    return chr(data[0])


class ControlRecord:
    """
    Fixed-size request/response record.

    `address` is an (ip, port) tuple and is only meaningful for Register
    requests and Search replies; it is None everywhere else.
    """

    def __init__(self, kind, peer_name="", content_name="", address=None):
        self.kind = kind
        self.peer_name = peer_name
        self.content_name = content_name
        self.address = address

    def to_bytes(self) -> bytes:
        if self.address is None:
            family, port, ip = 0, 0, b"\x00" * 4
        else:
            host, port = self.address
            family, ip = _AF_INET, socket.inet_aton(host)
        head = _HEAD.pack(
            _pack_kind(self.kind),
            _pack_text(self.peer_name, NAME_LEN),
            _pack_text(self.content_name, NAME_LEN),
            family,
        )
        return head + _ADDR.pack(port, ip)

    @classmethod
    def from_bytes(cls, data: bytes):
        """Decode exactly CONTROL_RECORD_SIZE bytes; the kind is not validated."""
        if len(data) != CONTROL_RECORD_SIZE:
            raise DecodeError(
                f"Control record must be {CONTROL_RECORD_SIZE} bytes, got {len(data)}"
            )
        kind, peer, content, family = _HEAD.unpack(data[:_HEAD.size])
        port, ip = _ADDR.unpack(data[_HEAD.size:])
        address = None
        if family == _AF_INET:
            address = (socket.inet_ntoa(ip), port)
        return cls(kind.decode("latin-1"), _unpack_text(peer), _unpack_text(content), address)

    def __eq__(self, other):
        if not isinstance(other, ControlRecord):
            return NotImplemented
        return (self.kind, self.peer_name, self.content_name, self.address) == \
            (other.kind, other.peer_name, other.content_name, other.address)

    def __repr__(self):
        return (f"ControlRecord({self.kind!r}, peer={self.peer_name!r}, "
                f"content={self.content_name!r}, address={self.address})")


class SimpleRecord:
    """Kind tag plus a bounded text payload (truncated, never overflowed)."""

    def __init__(self, kind, text=""):
        self.kind = kind
        self.text = text

    def to_bytes(self) -> bytes:
        return _SIMPLE.pack(_pack_kind(self.kind), _pack_text(self.text, TEXT_LEN))

    @classmethod
    def from_bytes(cls, data: bytes):
        if len(data) != SIMPLE_RECORD_SIZE:
            raise DecodeError(
                f"Simple record must be {SIMPLE_RECORD_SIZE} bytes, got {len(data)}"
            )
        kind, text = _SIMPLE.unpack(data)
        return cls(kind.decode("latin-1"), _unpack_text(text))

    def __eq__(self, other):
        if not isinstance(other, SimpleRecord):
            return NotImplemented
        return (self.kind, self.text) == (other.kind, other.text)

    def __repr__(self):
        return f"SimpleRecord({self.kind!r}, {self.text!r})"


def encode_frame(payload: bytes = b"") -> bytes:
    """
    Create a content frame.

    Format:
    - 1 byte: type ('C')
    - 4 bytes: payload length (big-endian unsigned)
    - N bytes: payload
    """
    return _FRAME_HEADER.pack(PduType.CONTENT.encode(), len(payload)) + payload


def end_frame() -> bytes:
    """The zero-length frame that terminates a content stream."""
    return encode_frame(b"")


def decode_frame_header(header: bytes) -> int:
    """Return the payload length announced by a 5-byte frame header."""
    if len(header) != FRAME_HEADER_SIZE:
        raise DecodeError(f"Frame header must be {FRAME_HEADER_SIZE} bytes, got {len(header)}")
    kind, length = _FRAME_HEADER.unpack(header)
    if kind != PduType.CONTENT.encode():
        raise DecodeError(f"Unexpected frame type: {kind!r}")
    return length
