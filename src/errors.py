"""Exceptions raised by the peer-wire engine and its collaborators."""


class TorrentError(Exception):
    """Base class for every error this client raises."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return '{} ({})'.format(self.message, self.details)
        return self.message


class PeerConnectionError(TorrentError):
    """Transport-level failure to connect, read or write."""


class ConnectionClosed(PeerConnectionError):
    """The peer closed the stream before a full message arrived."""


class PeerTimeout(PeerConnectionError):
    pass


class ProtocolError(TorrentError):
    """The peer violated the peer-wire protocol."""


class HandshakeFailed(ProtocolError):
    pass


class MalformedHandshake(HandshakeFailed):
    pass


class MalformedMessage(ProtocolError):
    pass


class UnexpectedMessage(ProtocolError):
    def __init__(self, expected, actual):
        super().__init__(
            'Expected message id {}, got {}'.format(expected, actual),
            {'expected': expected, 'actual': actual}
        )
        self.expected = expected
        self.actual = actual


class PieceIndexMismatch(ProtocolError):
    """Peer kept answering block requests with blocks of another piece."""


class PieceUnavailable(ProtocolError):
    """Peer's bitfield says it does not have the requested piece."""


class InvalidPieceIndex(TorrentError):
    pass


class PieceHashMismatch(TorrentError):
    def __init__(self, index, expected, actual):
        super().__init__(
            'Hash check failed for Piece {}'.format(index),
            {'expected': expected.hex(), 'actual': actual.hex()}
        )
        self.index = index
        self.expected = expected
        self.actual = actual


class NoPeersAvailable(TorrentError):
    pass


class TrackerError(TorrentError):
    pass


class MetainfoError(TorrentError):
    pass
