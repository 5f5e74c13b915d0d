import os

from util import LOG


class FileSaver(object):
    """
    Writes verified pieces at their absolute offset in the output file.

    The file is opened, and any previous content truncated, only when the
    first piece is written.
    """

    def __init__(self, file_name : str):
        self.file_name = file_name
        self.fd = None
        self.bytes_written = 0

    @classmethod
    def for_torrent(cls, outdir : str, torrent):
        return cls(os.path.join(outdir, torrent.name))

    def open(self):
        if os.path.exists(self.file_name):
            LOG.info('Previous download exists, overwriting {}'.format(self.file_name))
        self.fd = os.open(self.file_name, os.O_RDWR | os.O_CREAT | os.O_TRUNC, 0o644)

    def write(self, offset : int, data : bytes):
        if self.fd is None:
            self.open()
        os.lseek(self.fd, offset, os.SEEK_SET)
        view = memoryview(data)
        while view:
            written = os.write(self.fd, view)
            view = view[written:]
        self.bytes_written += len(data)
        LOG.debug('Wrote {} bytes at {} to {}'.format(len(data), offset, self.file_name))

    def close(self):
        if self.fd is not None:
            os.close(self.fd)
            self.fd = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
