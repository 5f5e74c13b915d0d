import copy
import hashlib
from collections import namedtuple
from pprint import pformat

import bencoder

from errors import InvalidPieceIndex, MetainfoError


def bdecode(data : bytes):
    try:
        return bencoder.decode(data)
    except (AssertionError, AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
        raise MetainfoError('Failed to decode bencoded data', {'reason': repr(e)})


class TorrentInfo(namedtuple(
        'TorrentInfo', 'piece_length total_length piece_hashes info_hash name')):
    """
    What the peer-wire engine needs to know about a torrent. Immutable.
    """
    __slots__ = ()

    def __new__(cls, piece_length : int, total_length : int, piece_hashes,
                info_hash : bytes = bytes(20), name : str = ''):
        if piece_length <= 0 or total_length < 0:
            raise MetainfoError('Invalid lengths', {
                'piece length': piece_length, 'length': total_length})

        piece_hashes = tuple(bytes(h) for h in piece_hashes)
        if any(len(h) != 20 for h in piece_hashes):
            raise MetainfoError('Piece hashes must be 20 bytes')

        expected = -(-total_length // piece_length)
        if len(piece_hashes) != expected:
            raise MetainfoError('Piece count does not match length', {
                'hashes': len(piece_hashes), 'expected': expected})

        return super().__new__(
            cls, piece_length, total_length, piece_hashes, bytes(info_hash), name)

    @property
    def number_of_pieces(self) -> int:
        return len(self.piece_hashes)

    def piece_size(self, index : int) -> int:
        """
        Effective length of a piece; only the last one may be shorter
        """
        if not 0 <= index < self.number_of_pieces:
            raise InvalidPieceIndex('No Piece {} in a torrent of {} pieces'.format(
                index, self.number_of_pieces))
        if index == self.number_of_pieces - 1:
            return self.total_length - index * self.piece_length
        return self.piece_length

    def piece_offset(self, index : int) -> int:
        return index * self.piece_length


class Torrent(object):
    def __init__(self, path : str):
        self.path = path
        self.metainfo = self.read_torrent_file(path)
        self.info = TorrentInfo(
            self.piece_length,
            self.size,
            self.piece_hashes,
            info_hash=self.info_hash,
            name=self.name
        )

    @property
    def announce_url(self) -> str:
        try:
            return self.metainfo[b'announce'].decode('utf-8')
        except KeyError:
            raise MetainfoError('Torrent has no announce URL')

    @property
    def info_hash(self) -> bytes:
        return hashlib.sha1(
            bencoder.encode(self.metainfo[b'info'])
        ).digest()

    @property
    def name(self) -> str:
        return self.metainfo[b'info'].get(b'name', b'').decode('utf-8', 'replace')

    @property
    def piece_length(self) -> int:
        return self._required(b'piece length')

    @property
    def piece_hashes(self) -> list:
        pieces = self._required(b'pieces')
        if len(pieces) % 20:
            raise MetainfoError('pieces field is not a multiple of 20 bytes')
        return [pieces[i:i + 20] for i in range(0, len(pieces), 20)]

    @property
    def size(self) -> int:
        info = self.metainfo[b'info']
        if b'length' in info:
            return int(info[b'length'])
        if b'files' in info:
            return sum([int(f[b'length']) for f in info[b'files']])
        raise MetainfoError('Torrent has neither length nor files')

    def _required(self, key):
        try:
            return self.metainfo[b'info'][key]
        except KeyError:
            raise MetainfoError('Missing info field {!r}'.format(key.decode()))

    def read_torrent_file(self, path : str) -> dict:
        try:
            with open(path, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise MetainfoError('Cannot read torrent file {}'.format(path), {'reason': str(e)})

        metainfo = bdecode(data)
        if not isinstance(metainfo, dict) or not isinstance(metainfo.get(b'info'), dict):
            raise MetainfoError('{} has no info dictionary'.format(path))
        return metainfo

    def __str__(self):
        metainfo = copy.deepcopy(self.metainfo)
        del metainfo[b'info'][b'pieces']
        return pformat(metainfo)
