import json

import pytest

import piecewise
from errors import HandshakeFailed, NoPeersAvailable, PieceHashMismatch
from helpers import LOCAL_PEER_ID, REMOTE_PEER_ID, Seeder, make_data
from torrent import Torrent
from util import DownloadConfig


@pytest.fixture
def config():
    return DownloadConfig(peer_id=LOCAL_PEER_ID, read_timeout=5)


@pytest.mark.asyncio
async def test_download_to_file(torrent_file, tmp_path, config):
    data = make_data(70000)
    path = torrent_file(data)
    info = Torrent(path).info
    output = tmp_path / 'out.bin'

    async with Seeder(info, data) as seeder:
        result = await piecewise.download(path, str(output), config, peer=seeder.address)

    assert result == str(output)
    assert output.read_bytes() == data


@pytest.mark.asyncio
async def test_download_into_directory(torrent_file, tmp_path, config):
    data = make_data(1000)
    path = torrent_file(data)
    info = Torrent(path).info
    outdir = tmp_path / 'downloads'
    outdir.mkdir()

    async with Seeder(info, data) as seeder:
        await piecewise.download(path, str(outdir), config, peer=seeder.address)

    assert (outdir / 'sample.bin').read_bytes() == data


@pytest.mark.asyncio
async def test_failed_download_keeps_only_verified_pieces(torrent_file, tmp_path, config):
    data = make_data(40000)
    path = torrent_file(data)
    info = Torrent(path).info
    output = tmp_path / 'out.bin'

    class SecondPieceCorrupt(Seeder):
        def answer(self, request):
            piece = super().answer(request)
            if request.index == 1:
                piece.block = bytes(len(piece.block))
            return piece

    async with SecondPieceCorrupt(info, data) as seeder:
        with pytest.raises(PieceHashMismatch):
            await piecewise.download(path, str(output), config, peer=seeder.address)

    assert output.read_bytes() == data[:32768]


@pytest.mark.asyncio
async def test_failed_handshake_keeps_previous_download(torrent_file, tmp_path, config):
    data = make_data(40000)
    path = torrent_file(data)
    info = Torrent(path).info
    output = tmp_path / 'out.bin'
    output.write_bytes(b'previous complete download')

    async with Seeder(info, data, info_hash=bytes(20)) as seeder:
        with pytest.raises(HandshakeFailed):
            await piecewise.download(path, str(output), config, peer=seeder.address)

    assert output.read_bytes() == b'previous complete download'


@pytest.mark.asyncio
async def test_download_piece(torrent_file, tmp_path, config):
    data = make_data(40000)
    path = torrent_file(data)
    info = Torrent(path).info
    output = tmp_path / 'piece.bin'

    async with Seeder(info, data) as seeder:
        await piecewise.download_piece(path, 1, str(output), config, peer=seeder.address)

    assert output.read_bytes() == data[32768:]


@pytest.mark.asyncio
async def test_download_without_peers(torrent_file, tmp_path, monkeypatch):
    async def no_peers(torrent, config):
        return []
    monkeypatch.setattr(piecewise, 'discover_peers', no_peers)
    output = tmp_path / 'out.bin'

    with pytest.raises(NoPeersAvailable):
        await piecewise.download(torrent_file(make_data(100)), str(output))
    assert not output.exists()


@pytest.mark.asyncio
async def test_handshake_command(torrent_file, config):
    data = make_data(100)
    path = torrent_file(data)

    async with Seeder(Torrent(path).info, data) as seeder:
        peer_id = await piecewise.handshake(path, config, peer=seeder.address)

    assert peer_id == REMOTE_PEER_ID


def test_main_decode(capsys):
    assert piecewise.main(['decode', 'd3:foold1:ai52eeee']) == 0

    assert json.loads(capsys.readouterr().out) == {'foo': [{'a': 52}]}


def test_main_decode_malformed():
    assert piecewise.main(['decode', 'd3:foold1:ai52eee']) == 1


def test_main_info(torrent_file, capsys):
    data = make_data(40000)
    torrent = Torrent(torrent_file(data))

    assert piecewise.main(['info', torrent.path]) == 0

    out = capsys.readouterr().out.splitlines()
    assert out[0] == 'Tracker URL: http://tracker.test/announce'
    assert out[1] == 'Length: 40000'
    assert out[2] == 'Info Hash: {}'.format(torrent.info_hash.hex())
    assert out[3] == 'Piece Length: 32768'
    assert out[5:] == [h.hex() for h in torrent.piece_hashes]


def test_main_reports_errors(tmp_path):
    assert piecewise.main(['info', str(tmp_path / 'missing.torrent')]) == 1


def test_config_from_args():
    args = piecewise.build_parser().parse_args([
        'download', '-o', 'out', 'file.torrent', '--peer', '10.0.0.1:6881',
        '--batch', '--retries', '3', '--block-size', '8192'])

    config = piecewise.config_from_args(args)

    assert args.peer == ('10.0.0.1', 6881)
    assert config.batch_requests
    assert config.max_piece_attempts == 3
    assert config.block_size == 8192


def test_main_rejects_unknown_piece_index(torrent_file, tmp_path):
    path = torrent_file(make_data(40000))
    output = tmp_path / 'piece.bin'

    assert piecewise.main([
        'download_piece', '-o', str(output), path, '5', '--peer', '127.0.0.1:1']) == 1
    assert not output.exists()


@pytest.mark.parametrize('option', ['--block-size', '--retries'])
@pytest.mark.parametrize('value', ['0', '-1', 'abc'])
def test_parser_rejects_non_positive_numbers(option, value, capsys):
    with pytest.raises(SystemExit):
        piecewise.build_parser().parse_args(['download', '-o', 'out', 'file.torrent', option, value])

    assert option in capsys.readouterr().err
