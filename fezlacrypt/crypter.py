"""
crypter.py

Session-level API used by a UI (or the CLI/backend): encrypt a picked image
into shareable envelope text, turn envelope text back into a validated image,
and the same for short text messages.

A session allows one operation at a time and owns (or shares) a ResultCache.
"""

import base64
import binascii
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass

from .cache import ResultCache
from .config import CrypterConfig
from .envelope import Envelope
from .errors import DecryptionFailed, InvalidInput, OperationInProgress, SourceTooLarge
from .executors import ChunkExecutor
from .formats import ImageKind, classify
from .kdf import get_scheme
from .pipeline import CancelToken, Pipeline
from .sources import BufferSource, ByteSource, MediaItem, TempFileSink

logger = logging.getLogger(__name__)


@dataclass
class DecryptedImage:
    data: bytes
    kind: ImageKind

    @property
    def mime(self) -> str:
        return self.kind.mime

    @property
    def extension(self) -> str:
        return self.kind.extension

    def suggested_filename(self, timestamp: int = None) -> str:
        if timestamp is None:
            timestamp = time.time_ns() // 1_000_000
        return f'decrypted_image_{timestamp}.{self.extension}'


def save_image(image: DecryptedImage, directory: str, timestamp: int = None) -> str:
    """Write a decrypted image to ``directory`` for the gallery to pick up."""
    path = os.path.join(directory, image.suggested_filename(timestamp))
    with TempFileSink(path) as sink:
        sink.append(image.data)
        return sink.commit()


def _require(value, message):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidInput(message)


def _unwrap_base64_text(plaintext: bytes) -> bytes:
    """Older app builds encrypted the base64 text of the image; undo that."""
    try:
        return base64.b64decode(plaintext.decode('ascii'), validate=True)
    except (UnicodeDecodeError, binascii.Error, ValueError):
        return plaintext


class CrypterSession:
    def __init__(self, config: CrypterConfig = None, cache: ResultCache = None,
                 executor: ChunkExecutor = None):
        self.config = config or CrypterConfig()
        self._owns_cache = cache is None
        self.cache = cache if cache is not None else ResultCache(
            self.config.cache_capacity,
            ttl=self.config.raw_cache_ttl,
            sweep_threshold=self.config.cache_sweep_threshold,
        )
        self.executor = executor
        self._busy = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    @contextmanager
    def _operation(self, name: str):
        if not self._busy.acquire(blocking=False):
            raise OperationInProgress(f'Cannot start {name} while another operation is running')
        started = time.monotonic()
        try:
            yield
        finally:
            self._busy.release()
            logger.debug('%s finished in %.3fs', name, time.monotonic() - started)

    def _pipeline(self, progress=None) -> Pipeline:
        return Pipeline(
            self.config.chunk_size,
            self.config.concurrency,
            executor=self.executor,
            max_source_bytes=self.config.max_text_source_bytes,
            timeout=self.config.timeout,
            progress=progress,
        )

    def _cache_get(self, fn, *args):
        try:
            return fn(*args)
        except Exception as e:  # noqa: BLE001 - cache trouble only costs a recompute
            logger.warning('Cache lookup failed: %s', e)
            return None

    def _cache_put(self, fn, *args):
        try:
            fn(*args)
        except Exception as e:  # noqa: BLE001
            logger.warning('Cache insert failed: %s', e)

    # ------------------------------ images ------------------------------

    @staticmethod
    def _as_source(item, source_id: str = None) -> ByteSource:
        if isinstance(item, MediaItem):
            return item.open_source()
        if isinstance(item, ByteSource):
            return item
        if isinstance(item, (bytes, bytearray)):
            return BufferSource(item, identity=source_id)
        raise InvalidInput('Please select an image')

    def encrypt_image(self, item, password: str, *, scheme: str = None, source_id: str = None,
                      progress=None, cancel: CancelToken = None) -> str:
        """Encrypt a picked image (MediaItem, ByteSource or bytes) to envelope text.

        Results are cached by source identity; pass ``source_id`` to make raw
        bytes cacheable.
        """
        _require(item, 'Please select an image')
        _require(password, 'Please enter a key')
        scheme = scheme or self.config.scheme
        get_scheme(scheme)

        with self._operation('encrypt_image'):
            source = self._as_source(item, source_id)
            source_id = source.identity
            if source_id:
                cached = self._cache_get(self.cache.ciphertext.get, source_id, password, scheme,
                                         self.config.chunk_size)
                if cached is not None:
                    logger.debug('Ciphertext cache hit for %s', source_id)
                    return cached

            raw = self._cache_get(self.cache.raw.get, source_id) if source_id else None
            if raw is None:
                length = source.length()
                if length > self.config.max_text_source_bytes:
                    raise SourceTooLarge(length, self.config.max_text_source_bytes)
                raw = source.read_all()
                if source_id:
                    self._cache_put(self.cache.raw.put, source_id, raw)

            envelope = self._pipeline(progress).encrypt(BufferSource(raw, source_id), password,
                                                        scheme=scheme, cancel=cancel)
            text = envelope.to_text()
            if source_id:
                self._cache_put(self.cache.ciphertext.put, source_id, password, scheme,
                                self.config.chunk_size, text)
            return text

    def decrypt_image(self, envelope_text: str, password: str, *, scheme: str = None,
                      progress=None, cancel: CancelToken = None) -> DecryptedImage:
        """Decrypt envelope text and check the result is a JPEG/PNG/GIF.

        ``scheme`` may pin the expected key scheme; an envelope sealed with the
        other one is rejected rather than tried.
        """
        _require(envelope_text, 'Please paste the encrypted text')
        _require(password, 'Please enter a key')

        with self._operation('decrypt_image'):
            envelope = Envelope.from_text(envelope_text)
            plaintext = self._pipeline(progress).decrypt(envelope, password, scheme=scheme, cancel=cancel)
            if envelope.legacy:
                plaintext = _unwrap_base64_text(plaintext)
            return DecryptedImage(plaintext, classify(plaintext))

    # ------------------------------- text -------------------------------

    def encrypt_text(self, message: str, password: str, *, scheme: str = None, compact: bool = False) -> str:
        _require(message, 'Please enter a message')
        _require(password, 'Please enter a key')
        scheme = scheme or self.config.scheme

        data = message.encode('utf-8')
        # the compact blob is a single chunk without associated data
        compact = compact and scheme == 'pbkdf2' and len(data) <= self.config.chunk_size

        with self._operation('encrypt_text'):
            envelope = self._pipeline().encrypt(BufferSource(data), password, scheme=scheme, bound=not compact)
            return envelope.to_compact() if compact else envelope.to_text()

    def decrypt_text(self, envelope_text: str, password: str, *, scheme: str = None) -> str:
        _require(envelope_text, 'Please enter the encrypted message')
        _require(password, 'Please enter a key')

        with self._operation('decrypt_text'):
            envelope = Envelope.from_text(envelope_text)
            plaintext = self._pipeline().decrypt(envelope, password, scheme=scheme)
            if not plaintext:
                raise DecryptionFailed('Invalid key or corrupted message')
            try:
                return plaintext.decode('utf-8')
            except UnicodeDecodeError:
                raise DecryptionFailed('Invalid key or corrupted message') from None

    # ----------------------------- lifecycle -----------------------------

    def clear_cache(self) -> None:
        self.cache.clear()

    def close(self) -> None:
        if self._owns_cache:
            self.cache.clear()
        if self.executor is not None:
            self.executor.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
