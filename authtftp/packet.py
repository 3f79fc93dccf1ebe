"""
Packet framing for the authenticated TFTP variant.

Every packet except the authentication reply starts with a two byte
big-endian opcode. The authentication reply is bare ASCII text.
"""

import enum
import struct
from dataclasses import dataclass
from typing import Union

from .constants import (
    AUTH_FAILED,
    AUTH_SUCCESS,
    AUTH_TAG,
    DEFAULT_BLOCK_SIZE,
    DEFAULT_MODE,
    MAX_BLOCK_NUMBER,
    OPCODE_ACK,
    OPCODE_AUTH,
    OPCODE_DATA,
    OPCODE_RRQ,
    OPCODE_WRQ,
)


class Opcode(enum.IntEnum):
    RRQ = OPCODE_RRQ
    WRQ = OPCODE_WRQ
    DATA = OPCODE_DATA
    ACK = OPCODE_ACK
    AUTH = OPCODE_AUTH


class DecodeError(ValueError):
    """Raised for datagrams that cannot be read as a packet"""


@dataclass(frozen=True)
class ReadRequest:
    filename: str
    mode: str = DEFAULT_MODE


@dataclass(frozen=True)
class WriteRequest:
    filename: str
    mode: str = DEFAULT_MODE


@dataclass(frozen=True)
class Data:
    block: int
    payload: bytes = b''

    @property
    def is_last(self) -> bool:
        """A block shorter than the maximum payload ends the transfer"""
        return len(self.payload) < DEFAULT_BLOCK_SIZE


@dataclass(frozen=True)
class Ack:
    block: int


@dataclass(frozen=True)
class AuthRequest:
    username: str
    password: str


@dataclass(frozen=True)
class AuthResponse:
    status: str

    @property
    def success(self) -> bool:
        return self.status == AUTH_SUCCESS


Packet = Union[ReadRequest, WriteRequest, Data, Ack, AuthRequest, AuthResponse]

_HEADER = struct.Struct('>HH')
_OPCODE = struct.Struct('>H')
# Whitespace and NUL padding trimmed from text payloads
_PADDING = ' \t\r\n\x00'


def _check_block(block: int) -> None:
    if not 0 <= block <= MAX_BLOCK_NUMBER:
        raise ValueError(f"Block number out of range: {block}")


def encode(packet: Packet) -> bytes:
    """Serialize a packet to its wire form"""
    if isinstance(packet, (ReadRequest, WriteRequest)):
        opcode = OPCODE_RRQ if isinstance(packet, ReadRequest) else OPCODE_WRQ
        return (_OPCODE.pack(opcode)
                + packet.filename.encode('utf-8') + b'\x00'
                + packet.mode.encode('utf-8') + b'\x00')

    if isinstance(packet, Data):
        _check_block(packet.block)
        if len(packet.payload) > DEFAULT_BLOCK_SIZE:
            raise ValueError(f"Payload too large: {len(packet.payload)} bytes")
        return _HEADER.pack(OPCODE_DATA, packet.block) + packet.payload

    if isinstance(packet, Ack):
        _check_block(packet.block)
        return _HEADER.pack(OPCODE_ACK, packet.block)

    if isinstance(packet, AuthRequest):
        if ':' in packet.username:
            raise ValueError("Username may not contain ':'")
        message = f"{AUTH_TAG}:{packet.username}:{packet.password}"
        return _OPCODE.pack(OPCODE_AUTH) + message.encode('utf-8')

    if isinstance(packet, AuthResponse):
        return packet.status.encode('ascii')

    raise TypeError(f"Not a packet: {packet!r}")


def decode(data: bytes) -> Packet:
    """Parse a datagram, raising DecodeError if it is malformed"""
    if len(data) < 2:
        raise DecodeError("Packet too short")

    # Authentication replies carry no opcode framing
    if data[0] != 0:
        return _decode_auth_response(data)

    try:
        opcode = Opcode(data[1])
    except ValueError:
        raise DecodeError(f"Unknown opcode: {data[1]}") from None

    if opcode in (Opcode.RRQ, Opcode.WRQ):
        filename, mode = _parse_request(data)
        if opcode is Opcode.RRQ:
            return ReadRequest(filename, mode)
        return WriteRequest(filename, mode)

    if opcode is Opcode.AUTH:
        return _parse_auth_request(data)

    if len(data) < _HEADER.size:
        raise DecodeError(f"Packet too short for {opcode.name}")
    _, block = _HEADER.unpack_from(data)
    if opcode is Opcode.ACK:
        return Ack(block)
    return Data(block, bytes(data[4:]))


def _parse_request(data: bytes):
    """Extract filename and mode from an RRQ/WRQ packet"""
    if len(data) < 4:
        raise DecodeError("Request packet too short")
    fields = data[2:].split(b'\x00')
    # A well formed request has two NUL terminated fields
    if len(fields) < 3:
        raise DecodeError("Invalid request format (missing terminator)")
    try:
        return fields[0].decode('utf-8'), fields[1].decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecodeError(f"Invalid request encoding: {e}") from e


def _parse_auth_request(data: bytes) -> AuthRequest:
    try:
        message = data[2:].decode('utf-8').strip(_PADDING)
    except UnicodeDecodeError as e:
        raise DecodeError(f"Invalid auth encoding: {e}") from e
    tag, sep, credentials = message.partition(':')
    if tag != AUTH_TAG or not sep:
        raise DecodeError("Auth request missing AUTH tag")
    username, sep, password = credentials.partition(':')
    if not sep:
        raise DecodeError("Auth request missing password field")
    return AuthRequest(username, password)


def _decode_auth_response(data: bytes) -> AuthResponse:
    text = data.decode('ascii', errors='replace').strip(_PADDING)
    if text not in (AUTH_SUCCESS, AUTH_FAILED):
        raise DecodeError("Unrecognized packet")
    return AuthResponse(text)
