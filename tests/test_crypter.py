import base64
import os

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from conftest import make_jpeg, make_png
from fezlacrypt import pipeline as pipeline_mod
from fezlacrypt.cache import ResultCache
from fezlacrypt.codec import encrypt_chunk
from fezlacrypt.config import PBKDF2_ITERATIONS, CrypterConfig
from fezlacrypt.crypter import CrypterSession, save_image
from fezlacrypt.envelope import CHUNK_SEP, Envelope
from fezlacrypt.errors import (DecryptionFailed, InvalidInput, NotAnImage, OperationInProgress,
                               SourceTooLarge, CrypterIOError)
from fezlacrypt.formats import ImageKind
from fezlacrypt.kdf import derive_key
from fezlacrypt.sources import MediaItem, export_envelope, import_envelope


@pytest.fixture
def session():
    with CrypterSession(CrypterConfig(chunk_size=1024, concurrency=3)) as s:
        yield s


@pytest.fixture
def cipher_calls(monkeypatch):
    calls = []
    real = pipeline_mod.encrypt_chunk

    def counting(data, key, *args, **kwargs):
        calls.append(kwargs.get('index'))
        return real(data, key, *args, **kwargs)

    monkeypatch.setattr(pipeline_mod, 'encrypt_chunk', counting)
    return calls


@pytest.mark.parametrize('scheme', ['direct', 'pbkdf2'])
def test_image_roundtrip(session, png_bytes, scheme):
    text = session.encrypt_image(png_bytes, 'pw', scheme=scheme)
    assert text.startswith(f'FZC1${scheme}$')
    image = session.decrypt_image(text, 'pw')
    assert image.data == png_bytes
    assert image.kind is ImageKind.PNG
    assert image.mime == 'image/png'


def test_repeat_encrypt_is_served_from_cache(session, png_bytes, cipher_calls):
    first = session.encrypt_image(png_bytes, 'pw', source_id='gallery/1')
    n = len(cipher_calls)
    assert n == 4
    second = session.encrypt_image(png_bytes, 'pw', source_id='gallery/1')
    assert second == first
    assert len(cipher_calls) == n

    third = session.encrypt_image(png_bytes, 'other-pw', source_id='gallery/1')
    assert third != first
    assert len(cipher_calls) == 2 * n


def test_anonymous_bytes_are_not_cached(session, png_bytes, cipher_calls):
    a = session.encrypt_image(png_bytes, 'pw')
    b = session.encrypt_image(png_bytes, 'pw')
    assert a != b
    assert len(cipher_calls) == 8


def test_raw_bytes_are_read_once(session, tmp_path):
    path = tmp_path / 'photo.jpg'
    jpeg = make_jpeg(3000)
    path.write_bytes(jpeg)
    item = MediaItem('file://' + str(path), byte_length=3000, mime_hint='image/jpeg')

    session.encrypt_image(item, 'pw')
    path.unlink()
    # the file is gone, a new password still works from the raw cache
    text = session.encrypt_image(item, 'another-pw')
    assert session.decrypt_image(text, 'another-pw').data == jpeg


def test_missing_file_is_io_error(session, tmp_path):
    with pytest.raises(CrypterIOError):
        session.encrypt_image(MediaItem(str(tmp_path / 'nope.png')), 'pw')


def test_source_too_large():
    config = CrypterConfig(chunk_size=512, max_text_source_bytes=1000)
    with CrypterSession(config) as session:
        assert session.encrypt_image(make_png(1000), 'pw')
        with pytest.raises(SourceTooLarge):
            session.encrypt_image(make_png(1001), 'pw', source_id='big')


@pytest.mark.parametrize('item,password', [
    (None, 'pw'),
    (b'\x89PNG' * 40, ''),
    (b'\x89PNG' * 40, '   '),
    (b'\x89PNG' * 40, None),
])
def test_missing_inputs(session, item, password):
    with pytest.raises(InvalidInput):
        session.encrypt_image(item, password)


def test_unknown_scheme(session, png_bytes):
    with pytest.raises(InvalidInput):
        session.encrypt_image(png_bytes, 'pw', scheme='rot13')


def test_pbkdf2_wrong_key(session, png_bytes):
    text = session.encrypt_image(png_bytes, 'pw')
    with pytest.raises(DecryptionFailed):
        session.decrypt_image(text, 'wrong')


def test_direct_wrong_key(session, png_bytes):
    text = session.encrypt_image(png_bytes, 'pw', scheme='direct')
    with pytest.raises((DecryptionFailed, NotAnImage)):
        session.decrypt_image(text, 'wrong')


def test_scheme_pin(session, png_bytes):
    text = session.encrypt_image(png_bytes, 'pw', scheme='direct')
    with pytest.raises(DecryptionFailed):
        session.decrypt_image(text, 'pw', scheme='pbkdf2')


def test_non_image_plaintext(session):
    text = session.encrypt_text('just a note', 'pw')
    with pytest.raises(NotAnImage):
        session.decrypt_image(text, 'pw')


def test_legacy_base64_payload(session):
    jpeg = make_jpeg(2500)
    b64 = base64.b64encode(jpeg)
    key = derive_key('pw', scheme='direct')
    half = len(b64) // 2
    parts = [encrypt_chunk(b64[:half], key), encrypt_chunk(b64[half:], key)]
    text = CHUNK_SEP.join(base64.b64encode(p).decode() for p in parts)

    image = session.decrypt_image(text, 'pw')
    assert image.data == jpeg
    assert image.kind is ImageKind.JPEG


def test_busy_guard(session, png_bytes):
    seen = []

    def progress(done, total):
        try:
            session.encrypt_text('hi', 'pw')
        except OperationInProgress as e:
            seen.append(e)

    session.encrypt_image(png_bytes, 'pw', progress=progress)
    assert len(seen) == 4
    assert not session.busy
    # the lock is released again afterwards
    assert session.encrypt_text('hi', 'pw')


def test_busy_released_after_failure(session):
    with pytest.raises(DecryptionFailed):
        session.decrypt_text('FZC1$rot13$-$AAAA', 'pw')
    assert not session.busy


@pytest.mark.parametrize('scheme', ['direct', 'pbkdf2'])
def test_text_roundtrip(session, scheme):
    message = 'meet at noon ☀'
    text = session.encrypt_text(message, 'pw', scheme=scheme)
    assert session.decrypt_text(text, 'pw') == message


def test_long_text_spans_chunks(session):
    message = 'x' * 5000
    text = session.encrypt_text(message, 'pw')
    assert Envelope.from_text(text).num_chunks == 5
    assert session.decrypt_text(text, 'pw') == message


def test_compact_text(session):
    text = session.encrypt_text('short', 'pw', compact=True)
    assert '$' not in text
    assert session.decrypt_text(text, 'pw') == 'short'


def _pbkdf2(password, salt):
    return PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt,
                      iterations=PBKDF2_ITERATIONS).derive(password.encode())


def test_compact_blob_from_the_mobile_app(session):
    salt, iv = os.urandom(16), os.urandom(16)
    ct = AESGCM(_pbkdf2('pw', salt)).encrypt(iv, b'meet at noon', None)
    blob = base64.b64encode(salt + iv + ct).decode()
    assert session.decrypt_text(blob, 'pw') == 'meet at noon'


def test_compact_blob_opens_without_associated_data(session):
    raw = base64.b64decode(session.encrypt_text('meet at noon', 'pw', compact=True))
    salt, iv, ct = raw[:16], raw[16:32], raw[32:]
    assert AESGCM(_pbkdf2('pw', salt)).decrypt(iv, ct, None) == b'meet at noon'


def test_compact_falls_back_for_long_messages(session):
    text = session.encrypt_text('y' * 3000, 'pw', compact=True)
    assert text.startswith('FZC1$pbkdf2$')
    assert session.decrypt_text(text, 'pw') == 'y' * 3000


def test_text_wrong_key(session):
    text = session.encrypt_text('secret', 'pw')
    with pytest.raises(DecryptionFailed):
        session.decrypt_text(text, 'nope')


def test_text_missing_inputs(session):
    with pytest.raises(InvalidInput):
        session.encrypt_text('', 'pw')
    with pytest.raises(InvalidInput):
        session.decrypt_text('FZC1$direct$-$AAAA', '')


def test_export_import_and_save(session, png_bytes, tmp_path):
    text = session.encrypt_image(png_bytes, 'pw')
    path = export_envelope(text, str(tmp_path), timestamp=1700000000000)
    assert os.path.basename(path) == 'data_1700000000000.txt'
    assert import_envelope(path) == text

    image = session.decrypt_image(import_envelope(path), 'pw')
    saved = save_image(image, str(tmp_path), timestamp=42)
    assert os.path.basename(saved) == 'decrypted_image_42.png'
    with open(saved, 'rb') as f:
        assert f.read() == png_bytes
    assert sorted(os.listdir(tmp_path)) == ['data_1700000000000.txt', 'decrypted_image_42.png']


def test_import_rejects_bad_files(tmp_path):
    empty = tmp_path / 'empty.txt'
    empty.write_text('  \n')
    binary = tmp_path / 'blob.txt'
    binary.write_bytes(b'\xff\xfe\x00\x01')
    with pytest.raises(InvalidInput):
        import_envelope(str(empty))
    with pytest.raises(InvalidInput):
        import_envelope(str(binary))
    with pytest.raises(CrypterIOError):
        import_envelope(str(tmp_path / 'missing.txt'))


def test_close_clears_owned_cache_only(png_bytes):
    shared = ResultCache()
    with CrypterSession(cache=shared) as session:
        session.encrypt_image(png_bytes, 'pw', source_id='x')
    assert len(shared.ciphertext) == 1

    session = CrypterSession()
    session.encrypt_image(png_bytes, 'pw', source_id='x')
    session.close()
    assert len(session.cache.ciphertext) == 0


def test_clear_cache(session, png_bytes):
    session.encrypt_image(png_bytes, 'pw', source_id='x')
    session.clear_cache()
    assert len(session.cache.ciphertext) == 0
    assert len(session.cache.raw) == 0
