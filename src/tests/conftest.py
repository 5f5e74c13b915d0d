import hashlib

import bencoder
import pytest


@pytest.fixture
def torrent_file(tmp_path):
    """
    Returns a function writing a single-file .torrent for 'data'
    """
    def write(data, piece_length=32768, announce=b'http://tracker.test/announce',
              name=b'sample.bin', files=None):
        info = {
            b'name': name,
            b'piece length': piece_length,
            b'pieces': b''.join(
                hashlib.sha1(data[i:i + piece_length]).digest()
                for i in range(0, len(data), piece_length)
            ),
        }
        if files:
            info[b'files'] = [
                {b'length': length, b'path': [b'part%d' % i]}
                for i, length in enumerate(files)
            ]
        else:
            info[b'length'] = len(data)
        metainfo = {b'info': info}
        if announce is not None:
            metainfo[b'announce'] = announce

        path = tmp_path / (name.decode() + '.torrent')
        path.write_bytes(bencoder.encode(metainfo))
        return str(path)
    return write
