import os
import time

import pytest

from fezlacrypt import pipeline as pipeline_mod
from fezlacrypt.envelope import MAGIC
from fezlacrypt.errors import DecryptionFailed, PipelineTimeout, SourceTooLarge
from fezlacrypt.files import (collect_input_files, decrypt_file, decrypted_name, encrypt_file, encrypted_name,
                              run_files)


@pytest.fixture
def plain_file(tmp_path):
    path = tmp_path / 'report.bin'
    path.write_bytes(os.urandom(10_000))
    return path


@pytest.mark.parametrize('workers', [1, 3])
def test_file_roundtrip(plain_file, tmp_path, workers):
    enc = tmp_path / 'report.bin.fzc'
    dec = tmp_path / 'report.out'
    encrypt_file(str(plain_file), str(enc), 'pw', chunk_size=1000, workers=workers)
    with open(enc, 'rb') as f:
        assert f.read(4) == MAGIC
    decrypt_file(str(enc), str(dec), 'pw', workers=workers)
    assert dec.read_bytes() == plain_file.read_bytes()


def test_file_roundtrip_with_process_workers(plain_file, tmp_path):
    enc = tmp_path / 'report.bin.fzc'
    dec = tmp_path / 'report.out'
    encrypt_file(str(plain_file), str(enc), 'pw', chunk_size=4096, workers=2, use_processes=True,
                 scheme='direct')
    decrypt_file(str(enc), str(dec), 'pw', workers=2, use_processes=True)
    assert dec.read_bytes() == plain_file.read_bytes()


def test_failed_decrypt_leaves_nothing_behind(plain_file, tmp_path):
    enc = tmp_path / 'report.bin.fzc'
    encrypt_file(str(plain_file), str(enc), 'pw', chunk_size=1000, workers=2)
    before = sorted(os.listdir(tmp_path))

    with pytest.raises(DecryptionFailed):
        decrypt_file(str(enc), str(tmp_path / 'report.out'), 'wrong', workers=2)
    assert sorted(os.listdir(tmp_path)) == before


def test_stream_size_limit(plain_file, tmp_path):
    out = tmp_path / 'report.bin.fzc'
    with pytest.raises(SourceTooLarge):
        encrypt_file(str(plain_file), str(out), 'pw', max_bytes=9_999, workers=1)
    assert not out.exists()
    assert os.listdir(tmp_path) == ['report.bin']


def test_decrypt_rejects_plain_file(plain_file, tmp_path):
    with pytest.raises(DecryptionFailed):
        decrypt_file(str(plain_file), str(tmp_path / 'x'), 'pw', workers=1)


def test_names():
    assert encrypted_name('/a/b/photo.jpg') == 'photo.jpg.fzc'
    assert decrypted_name('/a/b/photo.jpg.fzc') == 'photo.jpg'
    assert decrypted_name('photo.bin') == 'photo.bin.dec'


def test_collect_input_files(tmp_path):
    (tmp_path / 'sub').mkdir()
    top = tmp_path / 'a.txt'
    nested = tmp_path / 'sub' / 'b.txt'
    top.write_text('a')
    nested.write_text('b')

    assert collect_input_files([], str(tmp_path)) == [str(top)]
    assert sorted(collect_input_files([], str(tmp_path), recursive=True)) == sorted([str(top), str(nested)])
    assert collect_input_files([str(top), str(top), str(tmp_path / 'missing')]) == [str(top)]


def test_run_files_in_processes(tmp_path):
    src = tmp_path / 'in'
    out = tmp_path / 'out'
    back = tmp_path / 'back'
    for d in (src, out, back):
        d.mkdir()
    payloads = {}
    for name in ('one.png', 'two.jpg'):
        payloads[name] = os.urandom(3000)
        (src / name).write_bytes(payloads[name])

    files = sorted(str(p) for p in src.iterdir())
    succeeded, failed = run_files('encrypt', files, 'pw', str(out), chunk_size=1024, file_workers=2)
    assert failed == []
    assert sorted(os.listdir(out)) == ['one.png.fzc', 'two.jpg.fzc']

    encrypted = sorted(str(p) for p in out.iterdir())
    succeeded, failed = run_files('decrypt', encrypted, 'pw', str(back), file_workers=2)
    assert failed == []
    for name, data in payloads.items():
        assert (back / name).read_bytes() == data

    succeeded, failed = run_files('decrypt', encrypted, 'wrong', str(back), file_workers=2)
    assert succeeded == []
    assert len(failed) == 2
    assert all(isinstance(e, DecryptionFailed) for _, e in failed)

    succeeded, failed = run_files('decrypt', encrypted, 'pw', str(back), file_workers=2, scheme='direct')
    assert succeeded == []
    assert len(failed) == 2
    assert all(isinstance(e, DecryptionFailed) for _, e in failed)


def test_timeout_does_not_wait_for_running_chunks(plain_file, tmp_path, monkeypatch):
    real = pipeline_mod.encrypt_chunk

    def slow(*args, **kwargs):
        time.sleep(0.5)
        return real(*args, **kwargs)

    monkeypatch.setattr(pipeline_mod, 'encrypt_chunk', slow)
    out = tmp_path / 'report.bin.fzc'
    started = time.monotonic()
    with pytest.raises(PipelineTimeout):
        encrypt_file(str(plain_file), str(out), 'pw', chunk_size=1000, workers=2, scheme='direct', timeout=0.1)
    assert time.monotonic() - started < 0.45
    assert not out.exists()
