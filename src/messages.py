"""
Peer wire codec.

Two layouts go over the wire: the fixed 68 byte handshake, and
length-prefixed messages of the form <length:4><id:1><payload>. A
length of zero (no id byte) is a keep-alive.
"""
import struct
from collections import namedtuple

import bitstring

from errors import MalformedHandshake, MalformedMessage

PROTOCOL = b'BitTorrent protocol'
HANDSHAKE_FORMAT = '>B19s8s20s20s'
HANDSHAKE_LENGTH = struct.calcsize(HANDSHAKE_FORMAT)
RESERVED = bytes(8)

CHOKE = 0
UNCHOKE = 1
INTERESTED = 2
NOT_INTERESTED = 3
HAVE = 4
BITFIELD = 5
REQUEST = 6
PIECE = 7
CANCEL = 8


class HandshakeResult(namedtuple('HandshakeResult', 'info_hash peer_id reserved')):
    __slots__ = ()

    def encode(self) -> bytes:
        return encode_handshake(self.info_hash, self.peer_id, self.reserved)


def encode_handshake(info_hash : bytes, peer_id : bytes, reserved : bytes = RESERVED) -> bytes:
    # struct silently pads or truncates 's' fields
    if len(info_hash) != 20 or len(peer_id) != 20 or len(reserved) != 8:
        raise ValueError('info hash and peer id must be 20 bytes, reserved 8')
    return struct.pack(
        HANDSHAKE_FORMAT,
        len(PROTOCOL),
        PROTOCOL,
        reserved,
        info_hash,
        peer_id
    )


def decode_handshake(data : bytes) -> HandshakeResult:
    if len(data) < HANDSHAKE_LENGTH:
        raise MalformedHandshake(
            'Handshake too short: {} bytes'.format(len(data)))

    pstrlen, pstr, reserved, info_hash, peer_id = struct.unpack(
        HANDSHAKE_FORMAT, data[:HANDSHAKE_LENGTH])

    if pstrlen != len(PROTOCOL) or pstr != PROTOCOL:
        raise MalformedHandshake(
            'Unknown protocol: {!r}'.format(data[:20]))
    return HandshakeResult(info_hash, peer_id, reserved)


class Message(object):
    id = None

    def payload(self) -> bytes:
        return b''

    def encode(self) -> bytes:
        payload = self.payload()
        return struct.pack('>IB', len(payload) + 1, self.id) + payload

    @classmethod
    def from_payload(cls, payload : bytes):
        if payload:
            raise MalformedMessage(
                '{} carries no payload, got {} bytes'.format(cls.__name__, len(payload)))
        return cls()

    def __eq__(self, other):
        return type(self) is type(other) and vars(self) == vars(other)

    def __repr__(self):
        return '<{}>'.format(type(self).__name__)


class KeepAlive(Message):
    def encode(self) -> bytes:
        return struct.pack('>I', 0)


class Choke(Message):
    id = CHOKE


class Unchoke(Message):
    id = UNCHOKE


class Interested(Message):
    id = INTERESTED


class NotInterested(Message):
    id = NOT_INTERESTED


class Have(Message):
    id = HAVE

    def __init__(self, index : int):
        self.index = index

    def payload(self):
        return struct.pack('>I', self.index)

    @classmethod
    def from_payload(cls, payload):
        _check_size(cls, payload, 4)
        return cls(*struct.unpack('>I', payload))

    def __repr__(self):
        return '<Have {}>'.format(self.index)


class Bitfield(Message):
    id = BITFIELD

    def __init__(self, bitfield : bytes):
        self.bitfield = bytes(bitfield)

    def payload(self):
        return self.bitfield

    @classmethod
    def from_payload(cls, payload):
        return cls(payload)

    @property
    def have_pieces(self) -> bitstring.BitArray:
        """Bit i is set when the peer has piece i (MSB first)."""
        return bitstring.BitArray(self.bitfield)

    def __repr__(self):
        return '<Bitfield {}>'.format(self.bitfield.hex())


class Request(Message):
    id = REQUEST

    def __init__(self, index : int, begin : int, length : int):
        self.index = index
        self.begin = begin
        self.length = length

    def payload(self):
        return struct.pack('>III', self.index, self.begin, self.length)

    @classmethod
    def from_payload(cls, payload):
        _check_size(cls, payload, 12)
        return cls(*struct.unpack('>III', payload))

    def __repr__(self):
        return '<{} ({}, {}, {})>'.format(
            type(self).__name__,
            self.index,
            self.begin,
            self.length
        )


class Cancel(Request):
    id = CANCEL


class Piece(Message):
    id = PIECE

    def __init__(self, index : int, begin : int, block : bytes):
        self.index = index
        self.begin = begin
        self.block = bytes(block)

    def payload(self):
        return struct.pack('>II', self.index, self.begin) + self.block

    @classmethod
    def from_payload(cls, payload):
        if len(payload) < 8:
            raise MalformedMessage(
                'Piece payload too short: {} bytes'.format(len(payload)))
        index, begin = struct.unpack('>II', payload[:8])
        return cls(index, begin, payload[8:])

    def __repr__(self):
        return '<Piece ({}, {}) {} bytes>'.format(
            self.index,
            self.begin,
            len(self.block)
        )


MESSAGE_TYPES = {
    cls.id: cls
    for cls in (Choke, Unchoke, Interested, NotInterested, Have,
                Bitfield, Request, Piece, Cancel)
}


def _check_size(cls, payload, size):
    if len(payload) != size:
        raise MalformedMessage('{} payload must be {} bytes, got {}'.format(
            cls.__name__, size, len(payload)))


def decode_frame(msg_id : int, payload : bytes) -> Message:
    """
    Builds a message from an already split id and payload
    """
    try:
        cls = MESSAGE_TYPES[msg_id]
    except KeyError:
        raise MalformedMessage('Unknown message id {}'.format(msg_id))
    return cls.from_payload(payload)


def decode_message(buf : bytes):
    """
    Decodes the first message in 'buf'.

    Returns (message, bytes consumed), or (None, 0) if 'buf' does not
    hold a full message yet. Never consumes more than one frame.
    """
    if len(buf) < 4:
        return None, 0

    length = struct.unpack('>I', buf[0:4])[0]
    if length == 0:
        return KeepAlive(), 4

    if len(buf) < 4 + length:
        return None, 0

    msg_id = buf[4]  # 5th byte is the ID
    payload = bytes(buf[5:4 + length])
    return decode_frame(msg_id, payload), 4 + length
