import asyncio
import ipaddress
import struct
from collections import namedtuple
from urllib import parse as urlparse

import aiohttp
import bencoder
import yarl

from errors import TrackerError
from util import LOG, PEER_ID


class PeerAddress(namedtuple('PeerAddress', 'host port')):
    __slots__ = ()

    @classmethod
    def parse(cls, value : str):
        host, sep, port = value.rpartition(':')
        if not sep or not host or not port.isdigit():
            raise ValueError('Expected host:port, got {!r}'.format(value))
        return cls(host, int(port))

    def __str__(self):
        return '{}:{}'.format(self.host, self.port)


class Tracker(object):
    def __init__(self, torrent, peer_id=PEER_ID, port : int = 6881, timeout=30):
        self.torrent = torrent
        self.tracker_url = torrent.announce_url
        self.peer_id = peer_id.encode() if isinstance(peer_id, str) else peer_id
        self.port = port
        self.timeout = timeout

    async def get_peers(self) -> list:
        peers_resp = await self.request_peers()
        if b'failure reason' in peers_resp:
            raise TrackerError('Tracker refused announce', {
                'reason': peers_resp[b'failure reason'].decode('utf-8', 'replace')})
        if b'peers' not in peers_resp:
            raise TrackerError('Tracker response has no peers')

        peers = self.parse_peers(peers_resp[b'peers'])
        LOG.info('[Peers] {}'.format(', '.join(str(p) for p in peers)))
        return peers

    async def request_peers(self) -> dict:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            try:
                async with session.get(self.announce_url()) as resp:
                    resp.raise_for_status()
                    resp_data = await resp.read()
            except asyncio.TimeoutError:
                raise TrackerError('Tracker did not answer within {}s'.format(self.timeout))
            except aiohttp.ClientError as e:
                raise TrackerError('Tracker request failed', {'reason': str(e)})

        LOG.info('Tracker response: {} bytes'.format(len(resp_data)))
        try:
            peers = bencoder.decode(resp_data)
        except (AssertionError, AttributeError, IndexError, KeyError, TypeError, ValueError):
            LOG.error('Failed to decode Tracker response: {!r}'.format(resp_data[:200]))
            raise TrackerError('Failed to get Peers from Tracker')
        if not isinstance(peers, dict):
            raise TrackerError('Tracker response is not a dictionary')
        return peers

    def announce_url(self) -> yarl.URL:
        # info_hash is raw bytes; encode it once and keep yarl from
        # quoting it again
        query = urlparse.urlencode(self._get_request_params())
        separator = '&' if '?' in self.tracker_url else '?'
        return yarl.URL(self.tracker_url + separator + query, encoded=True)

    def _get_request_params(self):
        return {
            'info_hash': self.torrent.info_hash,
            'peer_id': self.peer_id,
            'port': self.port,
            'uploaded': 0,
            'downloaded': 0,
            'left': self.torrent.size,
            'compact': 1,
        }

    @staticmethod
    def parse_peers(peers) -> list:
        def handle_bytes(peers_data):
            if len(peers_data) % 6:
                raise TrackerError('Compact peer list is not a multiple of 6 bytes')
            peers = []
            for i in range(0, len(peers_data), 6):
                addr_bytes, port_bytes = (
                    peers_data[i:i + 4], peers_data[i + 4:i + 6]
                )
                ip_addr = str(ipaddress.IPv4Address(addr_bytes))
                port = struct.unpack('>H', port_bytes)[0]
                peers.append(PeerAddress(ip_addr, port))
            return peers

        def handle_list(peers):
            try:
                return [
                    PeerAddress(peer[b'ip'].decode(), int(peer[b'port']))
                    for peer in peers
                ]
            except (KeyError, TypeError, ValueError):
                raise TrackerError('Malformed peer dictionary in tracker response')

        handlers = {
            bytes: handle_bytes,
            list: handle_list
        }
        try:
            handler = handlers[type(peers)]
        except KeyError:
            raise TrackerError('Unsupported peers field: {}'.format(type(peers).__name__))
        return handler(peers)


async def discover_peers(torrent, config=None) -> list:
    if config is None:
        tracker = Tracker(torrent)
    else:
        tracker = Tracker(torrent, peer_id=config.peer_id, port=config.port,
                          timeout=config.tracker_timeout)
    return await tracker.get_peers()
