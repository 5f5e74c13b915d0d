import argparse
import asyncio
import hashlib
import json
import logging
import os
import sys

import bitstring

from errors import (
    MalformedMessage,
    NoPeersAvailable,
    PieceHashMismatch,
    PieceIndexMismatch,
    PieceUnavailable,
    TorrentError,
)
from file_saver import FileSaver
from messages import BITFIELD, PIECE, UNCHOKE, Bitfield, Interested, Piece, Request
from peer import PeerSession, SessionState
from torrent import Torrent, TorrentInfo, bdecode
from tracker import PeerAddress, discover_peers
from util import LOG, REQUEST_SIZE, DownloadConfig


class Block(object):
    def __init__(self, piece : int, begin : int, length : int):
        self.piece = piece
        self.begin = begin
        self.length = length

    def __repr__(self):
        return '[Block ({}, {}, {})]'.format(
            self.piece,
            self.begin,
            self.length
        )


def get_blocks(piece_index : int, piece_size : int, block_size : int = REQUEST_SIZE) -> list:
    """
    Splits a piece into blocks of 'block_size'; the last block holds
    the remainder.
    """
    return [
        Block(piece_index, begin, min(block_size, piece_size - begin))
        for begin in range(0, piece_size, block_size)
    ]


class PieceBuffer(object):
    def __init__(self, index : int, size : int, blocks : list):
        self.index = index
        self.blocks = blocks
        self.buffer = bytearray(size)
        self.downloaded_blocks : bitstring.BitArray = \
            bitstring.BitArray(len(blocks))
        self._block_idx = {block.begin: idx for idx, block in enumerate(blocks)}

    def is_complete(self) -> bool:
        """
        Return True if all the Blocks in this piece exist
        """
        return all(self.downloaded_blocks)

    def save_block(self, begin : int, data : bytes):
        """
        Writes block 'data' at offset 'begin'
        """
        try:
            block_idx = self._block_idx[begin]
        except KeyError:
            raise MalformedMessage(
                'No block of Piece {} starts at {}'.format(self.index, begin))

        block = self.blocks[block_idx]
        if len(data) != block.length:
            raise MalformedMessage('{} got {} bytes'.format(block, len(data)), {
                'expected': block.length, 'actual': len(data)})

        self.buffer[begin:begin + block.length] = data
        self.downloaded_blocks[block_idx] = True

    def missing_blocks(self) -> list:
        return [
            block
            for block_idx, block in enumerate(self.blocks)
            if not self.downloaded_blocks[block_idx]
        ]

    @property
    def data(self) -> bytes:
        return bytes(self.buffer)

    def digest(self) -> bytes:
        return hashlib.sha1(self.buffer).digest()

    def __repr__(self):
        return '<Piece: {} Blocks: {}>'.format(
            self.index,
            len(self.blocks)
        )


class PieceFetcher(object):
    """
    Fetches and verifies one piece over a session that is already
    handshaken and unchoked.

    Blocks are requested in ascending offset order, either one at a time
    or as a single batch that is drained before anything else is sent.
    Responses carrying another piece index are skipped and their blocks
    requested again; after 'max_block_retries' rounds without progress
    the fetch gives up.
    """

    def __init__(self, session : PeerSession, info : TorrentInfo, config : DownloadConfig = None):
        self.session = session
        self.info = info
        self.config = config or DownloadConfig()

    async def fetch(self, index : int) -> bytes:
        size = self.info.piece_size(index)
        piece = PieceBuffer(index, size, get_blocks(index, size, self.config.block_size))
        LOG.info('{} Fetching {}'.format(self.session, piece))

        pending = piece.missing_blocks()
        stalled_rounds = 0
        while pending:
            await self._request_round(piece, pending)

            missing = piece.missing_blocks()
            if len(missing) < len(pending):
                stalled_rounds = 0
            else:
                stalled_rounds += 1
                if stalled_rounds > self.config.max_block_retries:
                    raise PieceIndexMismatch(
                        'Gave up on Piece {} after {} rounds without progress'.format(
                            index, stalled_rounds),
                        {'missing': len(missing)}
                    )
                LOG.warning('{} Re-requesting {} blocks of Piece {}'.format(
                    self.session, len(missing), index))
            pending = missing

        actual = piece.digest()
        expected = self.info.piece_hashes[index]
        if actual != expected:
            LOG.info('Hash check failed for Piece {}'.format(index))
            raise PieceHashMismatch(index, expected, actual)

        LOG.info('Piece {} hash is valid'.format(index))
        return piece.data

    async def _request_round(self, piece : PieceBuffer, pending : list):
        batch = pending if self.config.batch_requests else pending[:1]

        for block in batch:
            LOG.debug('{} Request Block: {}'.format(self.session, block))
            await self.session.send(Request(block.piece, block.begin, block.length))

        for block in batch:
            response = Piece.from_payload(await self.session.receive_expecting(PIECE))
            if response.index != piece.index:
                LOG.warning('{} Got block of Piece {} while fetching Piece {}, skipping'.format(
                    self.session, response.index, piece.index))
                continue
            piece.save_block(response.begin, response.block)


class DownloadSession(object):
    """
    Downloads every piece of a torrent, one peer and one piece at a time.

    Pieces are assigned to peers round-robin. A session to a peer is kept
    open while consecutive pieces go to that same peer.
    """

    def __init__(self, info : TorrentInfo, peers : list, config : DownloadConfig = None):
        self.info : TorrentInfo = info
        self.peers : list = list(peers)
        self.config : DownloadConfig = config or DownloadConfig()
        self.session : PeerSession = None
        self.have_pieces : bitstring.BitArray = None

    def peer_for(self, index : int, attempt : int = 0) -> PeerAddress:
        if not self.peers:
            raise NoPeersAvailable('No peers to download from')
        return self.peers[(index + attempt) % len(self.peers)]

    async def connect(self, address) -> PeerSession:
        session = self.session
        if (session is not None and session.state is not SessionState.CLOSED
                and session.address == tuple(address)):
            return session

        await self.close()
        session = await PeerSession.open(
            address,
            timeout=self.config.connect_timeout,
            read_timeout=self.config.read_timeout
        )
        try:
            await self.prepare(session)
        except Exception:
            await session.close()
            raise
        self.session = session
        return session

    async def prepare(self, session : PeerSession):
        """
        Handshake, then Bitfield (if expected), Interested and Unchoke
        """
        await session.handshake(self.info.info_hash, self.config.peer_id)

        self.have_pieces = None
        if self.config.expect_bitfield:
            payload = await session.receive_expecting(BITFIELD)
            self.have_pieces = Bitfield(payload).have_pieces
            LOG.info('{} [Message] Bitfield: {} pieces'.format(
                session, sum(1 for bit in self.have_pieces if bit)))

        await session.send(Interested())
        await session.receive_expecting(UNCHOKE)
        LOG.info('{} [Message] UNCHOKE'.format(session))

    def check_has_piece(self, index : int):
        if self.have_pieces is None:
            return
        if index >= len(self.have_pieces) or not self.have_pieces[index]:
            raise PieceUnavailable(
                '{} does not have Piece {}'.format(self.session, index))

    async def download_piece(self, index : int) -> bytes:
        self.info.piece_size(index)

        attempt = 0
        while True:
            address = self.peer_for(index, attempt)
            try:
                session = await self.connect(address)
                self.check_has_piece(index)
                return await PieceFetcher(session, self.info, self.config).fetch(index)
            except TorrentError as e:
                attempt += 1
                await self.close()
                if attempt >= self.config.max_piece_attempts:
                    raise
                LOG.warning('Piece {} failed with {}: {}. Retrying with next peer'.format(
                    index, address, e))

    async def download(self, sink=None):
        """
        Downloads all pieces in order, handing each verified piece to
        sink(offset, data). Stops at the first piece that fails.
        """
        if not self.peers:
            raise NoPeersAvailable('No peers to download from')

        LOG.info('Downloading {} pieces from {} peers'.format(
            self.info.number_of_pieces, len(self.peers)))
        try:
            for index in range(self.info.number_of_pieces):
                data = await self.download_piece(index)
                if sink is not None:
                    sink(self.info.piece_offset(index), data)
        finally:
            await self.close()

    async def close(self):
        if self.session is not None:
            await self.session.close()
            self.session = None

    def __repr__(self):
        return '<DownloadSession pieces={} peers={}>'.format(
            self.info.number_of_pieces,
            len(self.peers)
        )


async def get_peers(torrent : Torrent, config : DownloadConfig, peer : PeerAddress = None) -> list:
    if peer is not None:
        return [peer]
    return await discover_peers(torrent, config)


def open_output(output : str, torrent : Torrent) -> FileSaver:
    if os.path.isdir(output):
        return FileSaver.for_torrent(output, torrent)
    return FileSaver(output)


async def download_piece(torrent_file : str, index : int, output : str,
                         config : DownloadConfig = None, peer : PeerAddress = None):
    config = config or DownloadConfig()
    torrent = Torrent(torrent_file)
    peers = await get_peers(torrent, config, peer)
    if not peers:
        raise NoPeersAvailable('Tracker returned no peers')

    session = DownloadSession(torrent.info, peers, config)
    try:
        data = await session.download_piece(index)
    finally:
        await session.close()

    with FileSaver(output) as saver:
        saver.write(0, data)
    return data


async def download(torrent_file : str, output : str,
                   config : DownloadConfig = None, peer : PeerAddress = None):
    config = config or DownloadConfig()
    torrent = Torrent(torrent_file)
    LOG.info('Torrent: {}'.format(torrent))

    peers = await get_peers(torrent, config, peer)
    if not peers:
        raise NoPeersAvailable('Tracker returned no peers')

    session = DownloadSession(torrent.info, peers, config)
    with open_output(output, torrent) as saver:
        await session.download(saver.write)
    return saver.file_name


async def handshake(torrent_file : str, config : DownloadConfig = None,
                    peer : PeerAddress = None) -> bytes:
    config = config or DownloadConfig()
    torrent = Torrent(torrent_file)
    peers = await get_peers(torrent, config, peer)
    if not peers:
        raise NoPeersAvailable('Tracker returned no peers')

    session = await PeerSession.open(peers[0], timeout=config.connect_timeout,
                                     read_timeout=config.read_timeout)
    async with session:
        result = await session.handshake(torrent.info_hash, config.peer_id)
    return result.peer_id


def to_jsonable(value):
    if isinstance(value, bytes):
        return value.decode('utf-8', 'replace')
    if isinstance(value, list):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {to_jsonable(k): to_jsonable(v) for k, v in value.items()}
    return value


def positive_int(value : str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError('{} is not a positive integer'.format(value))
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='piecewise',
        description='Download torrent pieces from a single peer at a time.'
    )
    parser.add_argument('-v', '--verbose', action='store_true')
    commands = parser.add_subparsers(dest='command', required=True)

    decode_cmd = commands.add_parser('decode', help='decode a bencoded value')
    decode_cmd.add_argument('value')

    for name in ('info', 'peers'):
        cmd = commands.add_parser(name)
        cmd.add_argument('torrent')

    handshake_cmd = commands.add_parser('handshake')
    handshake_cmd.add_argument('torrent')
    handshake_cmd.add_argument('peer', nargs='?', type=PeerAddress.parse)

    piece_cmd = commands.add_parser('download_piece')
    piece_cmd.add_argument('torrent')
    piece_cmd.add_argument('index', type=int)

    download_cmd = commands.add_parser('download')
    download_cmd.add_argument('torrent')

    for cmd in (piece_cmd, download_cmd):
        cmd.add_argument('-o', '--output', required=True)
        cmd.add_argument('--peer', type=PeerAddress.parse)
        cmd.add_argument('--batch', action='store_true',
                         help='send all block requests of a piece before reading')
        cmd.add_argument('--read-timeout', type=float)
        cmd.add_argument('--retries', type=positive_int, default=1,
                         help='attempts per piece, each on the next peer')
        cmd.add_argument('--block-size', type=positive_int, default=REQUEST_SIZE)
    return parser


def config_from_args(args) -> DownloadConfig:
    return DownloadConfig(
        block_size=getattr(args, 'block_size', REQUEST_SIZE),
        batch_requests=getattr(args, 'batch', False),
        read_timeout=getattr(args, 'read_timeout', None),
        max_piece_attempts=getattr(args, 'retries', 1),
    )


def show_info(torrent : Torrent):
    print('Tracker URL: {}'.format(torrent.announce_url))
    print('Length: {}'.format(torrent.size))
    print('Info Hash: {}'.format(torrent.info_hash.hex()))
    print('Piece Length: {}'.format(torrent.piece_length))
    print('Piece Hashes:')
    for piece_hash in torrent.piece_hashes:
        print(piece_hash.hex())


async def run_command(args):
    config = config_from_args(args)

    if args.command == 'decode':
        print(json.dumps(to_jsonable(bdecode(args.value.encode()))))
    elif args.command == 'info':
        show_info(Torrent(args.torrent))
    elif args.command == 'peers':
        torrent = Torrent(args.torrent)
        for peer in await discover_peers(torrent, config):
            print(peer)
    elif args.command == 'handshake':
        peer_id = await handshake(args.torrent, config, args.peer)
        print('Peer ID: {}'.format(peer_id.hex()))
    elif args.command == 'download_piece':
        await download_piece(args.torrent, args.index, args.output, config, args.peer)
        print('Piece {} downloaded to {}.'.format(args.index, args.output))
    elif args.command == 'download':
        path = await download(args.torrent, args.output, config, args.peer)
        print('Downloaded {} to {}.'.format(args.torrent, path))


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(levelname)7s: %(message)s',
        stream=sys.stderr,
    )
    try:
        asyncio.run(run_command(args))
    except TorrentError as e:
        LOG.error('{}: {}'.format(type(e).__name__, e))
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
