import asyncio
import hashlib
import struct

import bitstring

from messages import (
    Bitfield,
    Interested,
    Piece,
    Request,
    Unchoke,
    decode_frame,
    decode_message,
    encode_handshake,
)
from peer import PeerSession
from torrent import TorrentInfo
from tracker import PeerAddress

INFO_HASH = hashlib.sha1(b'test torrent').digest()
LOCAL_PEER_ID = b'-PW0001-000000000000'
REMOTE_PEER_ID = b'-SD0001-111111111111'


def make_data(length : int) -> bytes:
    return bytes(i * 7 % 251 for i in range(length))


def make_info(data : bytes, piece_length : int, info_hash=INFO_HASH) -> TorrentInfo:
    hashes = [
        hashlib.sha1(data[i:i + piece_length]).digest()
        for i in range(0, len(data), piece_length)
    ]
    return TorrentInfo(piece_length, len(data), hashes, info_hash=info_hash, name='test.bin')


class RecordingWriter(object):
    """Stands in for an asyncio.StreamWriter and keeps what was written."""

    def __init__(self, fail=False):
        self.data = bytearray()
        self.closed = False
        self.fail = fail

    def write(self, data):
        if self.fail:
            raise ConnectionResetError('peer went away')
        self.data += data

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def sent_messages(self, skip=0) -> list:
        buf = bytes(self.data[skip:])
        messages = []
        while buf:
            message, consumed = decode_message(buf)
            messages.append(message)
            buf = buf[consumed:]
        return messages


def make_session(incoming=b'', eof=True, writer=None, read_timeout=None) -> PeerSession:
    """Must be called from a running event loop."""
    reader = asyncio.StreamReader()
    if incoming:
        reader.feed_data(incoming)
    if eof:
        reader.feed_eof()
    return PeerSession(
        ('127.0.0.1', 6881),
        reader,
        writer or RecordingWriter(),
        read_timeout=read_timeout
    )


def piece_responses(info : TorrentInfo, data : bytes, index : int, block_size : int) -> bytes:
    offset = info.piece_offset(index)
    size = info.piece_size(index)
    return b''.join(
        Piece(index, begin, data[offset + begin:offset + min(begin + block_size, size)]).encode()
        for begin in range(0, size, block_size)
    )


class Seeder(object):
    """
    A local peer serving 'data' for one torrent. Answers Interested with
    Unchoke and every Request with the matching Piece.
    """

    def __init__(self, info : TorrentInfo, data : bytes, have=None,
                 corrupt=False, send_bitfield=True, info_hash=None):
        self.info = info
        self.data = data
        self.have = range(info.number_of_pieces) if have is None else have
        self.corrupt = corrupt
        self.send_bitfield = send_bitfield
        self.info_hash = info_hash or info.info_hash
        self.connections = 0
        self.requests = []
        self.server = None

    @property
    def address(self) -> PeerAddress:
        return PeerAddress('127.0.0.1', self.server.sockets[0].getsockname()[1])

    def bitfield(self) -> bytes:
        have_pieces = bitstring.BitArray(self.info.number_of_pieces)
        for index in self.have:
            have_pieces[index] = True
        return have_pieces.tobytes()

    async def __aenter__(self):
        self.server = await asyncio.start_server(self.handle, '127.0.0.1', 0)
        return self

    async def __aexit__(self, *exc_info):
        self.server.close()
        await self.server.wait_closed()

    async def handle(self, reader, writer):
        self.connections += 1
        try:
            await reader.readexactly(68)
            writer.write(encode_handshake(self.info_hash, REMOTE_PEER_ID))
            if self.send_bitfield:
                writer.write(Bitfield(self.bitfield()).encode())
            await writer.drain()

            while True:
                length = struct.unpack('>I', await reader.readexactly(4))[0]
                if not length:
                    continue
                body = await reader.readexactly(length)
                message = decode_frame(body[0], body[1:])
                if isinstance(message, Interested):
                    writer.write(Unchoke().encode())
                elif isinstance(message, Request):
                    writer.write(self.answer(message).encode())
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    def answer(self, request : Request) -> Piece:
        self.requests.append((request.index, request.begin, request.length))
        start = self.info.piece_offset(request.index) + request.begin
        block = self.data[start:start + request.length]
        if self.corrupt:
            block = bytes([block[0] ^ 1]) + block[1:]
        return Piece(request.index, request.begin, block)
