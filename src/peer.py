import asyncio
import enum
import struct

from errors import (
    ConnectionClosed,
    HandshakeFailed,
    PeerConnectionError,
    PeerTimeout,
    UnexpectedMessage,
)
from messages import (
    HANDSHAKE_LENGTH,
    PIECE,
    REQUEST,
    decode_handshake,
    encode_handshake,
)
from util import LOG


class SessionState(enum.Enum):
    CONNECTED = 'connected'
    HANDSHAKING = 'handshaking'
    READY = 'ready'
    REQUESTING = 'requesting'
    CLOSED = 'closed'


class PeerSession(object):
    """
    One stream connection to one peer.

    Every operation is awaited in order by a single caller; the session
    never reads ahead or buffers messages for later.
    """

    def __init__(self, address, reader, writer, read_timeout=None):
        self.host, self.port = address
        self.reader : asyncio.StreamReader = reader
        self.writer = writer
        self.read_timeout = read_timeout
        self.state = SessionState.CONNECTED
        self.handshake_result = None
        self.inflight_requests = 0

    @classmethod
    async def open(cls, address, timeout=None, read_timeout=None):
        host, port = address
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            raise PeerTimeout('Timed out connecting to {}:{}'.format(host, port))
        except OSError as e:
            raise PeerConnectionError(
                'Failed to connect to {}:{}'.format(host, port),
                {'reason': str(e)}
            )
        session = cls(address, reader, writer, read_timeout=read_timeout)
        LOG.info('{} Connected'.format(session))
        return session

    @property
    def address(self):
        return self.host, self.port

    async def handshake(self, info_hash : bytes, peer_id : bytes):
        self.state = SessionState.HANDSHAKING
        LOG.info('{} Sending handshake'.format(self))
        await self._write(encode_handshake(info_hash, peer_id))

        try:
            data = await self._read_exactly(HANDSHAKE_LENGTH)
        except ConnectionClosed as e:
            raise HandshakeFailed('Connection closed during handshake', e.details)

        result = decode_handshake(data)
        if result.info_hash != info_hash:
            raise HandshakeFailed(
                '{} serves a different torrent'.format(self),
                {'expected': info_hash.hex(), 'actual': result.info_hash.hex()}
            )

        LOG.info('{} Handshake OK, peer id {}'.format(self, result.peer_id.hex()))
        self.handshake_result = result
        self.state = SessionState.READY
        return result

    async def send(self, message):
        await self._write(message.encode())
        if message.id == REQUEST:
            self.inflight_requests += 1
            self.state = SessionState.REQUESTING
        LOG.debug('{} Sent {}'.format(self, message))

    async def receive_expecting(self, expected_id : int) -> bytes:
        """
        Reads the next message and returns its payload.

        Keep-alives are skipped. Any other message than 'expected_id'
        raises UnexpectedMessage.
        """
        while True:
            msg_id, payload = await self._read_frame()
            if msg_id is not None:
                break
            LOG.info('{} [Message] Keep Alive'.format(self))

        if msg_id != expected_id:
            raise UnexpectedMessage(expected_id, msg_id)

        if msg_id == PIECE and self.inflight_requests:
            self.inflight_requests -= 1
            if not self.inflight_requests:
                self.state = SessionState.READY
        return payload

    async def close(self):
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            LOG.debug('{} Error while closing: {}'.format(self, e))
        LOG.info('{} Closed'.format(self))

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def _read_frame(self):
        header = await self._read_exactly(4)
        length = struct.unpack('>I', header)[0]
        if length == 0:
            return None, b''
        body = await self._read_exactly(length)
        return body[0], body[1:]

    async def _read_exactly(self, n : int) -> bytes:
        if self.state is SessionState.CLOSED:
            raise ConnectionClosed('{} is closed'.format(self))
        try:
            return await asyncio.wait_for(
                self.reader.readexactly(n),
                timeout=self.read_timeout
            )
        except asyncio.IncompleteReadError as e:
            raise ConnectionClosed(
                '{} closed the connection'.format(self),
                {'received': len(e.partial), 'expected': n}
            )
        except asyncio.TimeoutError:
            raise PeerTimeout('{} Timed out waiting for {} bytes'.format(self, n))
        except OSError as e:
            raise PeerConnectionError('{} Read failed'.format(self), {'reason': str(e)})

    async def _write(self, data : bytes):
        if self.state is SessionState.CLOSED:
            raise PeerConnectionError('{} is closed'.format(self))
        try:
            self.writer.write(data)
            await self.writer.drain()
        except OSError as e:
            raise PeerConnectionError('{} Write failed'.format(self), {'reason': str(e)})

    def __repr__(self):
        return '[Peer {}:{}]'.format(self.host, self.port)
