import logging
import random
import string

LOG = logging.getLogger('')
PEER_ID = 'PW' + ''.join(
    random.choice(string.ascii_lowercase + string.digits)
    for i in range(18)
)
REQUEST_SIZE = 2**14  # 16 * 1024


class DownloadConfig(object):
    """
    Knobs for a download run. Passed explicitly to the session and
    fetcher so tests can vary peer id and block size.
    """

    def __init__(
            self,
            peer_id=PEER_ID,
            block_size : int = REQUEST_SIZE,
            batch_requests : bool = False,
            expect_bitfield : bool = True,
            connect_timeout=10,
            tracker_timeout=30,
            read_timeout=None,
            max_piece_attempts : int = 1,
            max_block_retries : int = 5,
            port : int = 6881):
        if isinstance(peer_id, str):
            peer_id = peer_id.encode()
        if len(peer_id) != 20:
            raise ValueError('peer id must be 20 bytes, got {}'.format(len(peer_id)))
        if block_size <= 0:
            raise ValueError('block size must be positive')
        if max_piece_attempts < 1:
            raise ValueError('max_piece_attempts must be at least 1')

        self.peer_id : bytes = peer_id
        self.block_size = block_size
        self.batch_requests = batch_requests
        self.expect_bitfield = expect_bitfield
        self.connect_timeout = connect_timeout
        self.tracker_timeout = tracker_timeout
        self.read_timeout = read_timeout
        self.max_piece_attempts = max_piece_attempts
        self.max_block_retries = max_block_retries
        self.port = port

    def __repr__(self):
        return '<DownloadConfig block_size={} batch={} attempts={}>'.format(
            self.block_size,
            self.batch_requests,
            self.max_piece_attempts
        )
