"""
pipeline.py

Chunked encryption/decryption scheduler.

A source is split into ordered ranges of at most ``chunk_size`` bytes. Up to
``concurrency`` chunk jobs are in flight at once; each completion is stored at
its ordinal slot (never appended) and the next range is dispatched straight
away, so peak memory stays around ``concurrency * chunk_size``. The first
failing chunk stops further dispatch, lets in-flight jobs drain and is
re-raised; nothing partial is ever returned.

With a sink the finished prefix is written out as soon as it is contiguous
(the same next-to-write buffering the file tool uses), otherwise the ordered
results are returned.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, wait
from typing import Callable, Optional

from .codec import decrypt_chunk, encrypt_chunk
from .config import DEFAULT_CHUNK_SIZE, DEFAULT_CONCURRENCY, DEFAULT_SCHEME
from .envelope import Envelope, write_binary_chunk, write_binary_header
from .errors import (Cancelled, CrypterError, CrypterIOError, DecryptionFailed,
                     InvalidInput, PipelineTimeout, SourceTooLarge)
from .executors import ChunkExecutor, select_executor
from .kdf import derive_key, get_scheme
from .sources import BufferSink, ByteSink, ByteSource

logger = logging.getLogger(__name__)

ENCRYPT = 'encrypt'
DECRYPT = 'decrypt'

_PENDING = object()


class CancelToken:
    """Set from any thread; honoured before each chunk is dispatched."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Deadline:
    """Wall-clock budget for a whole pipeline run."""

    def __init__(self, seconds: float, clock=time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._expires_at


def plan_chunks(length: int, chunk_size: int):
    """Consecutive (offset, size) ranges covering [0, length). An empty source
    still yields one empty chunk so it round-trips."""
    if chunk_size <= 0:
        raise InvalidInput('chunk_size must be positive')
    if length == 0:
        return [(0, 0)]
    return [(off, min(chunk_size, length - off)) for off in range(0, length, chunk_size)]


def _encrypt_range(source: ByteSource, offset: int, size: int, key, index: int, total: int,
                   bound: bool = True) -> bytes:
    data = source.read_range(offset, size)
    if len(data) != size:
        raise CrypterIOError(f'Short read at offset {offset}: source changed while encrypting')
    return encrypt_chunk(data, key, index=index, total=total, bound=bound)


def _decrypt_blob(blob: bytes, key, index: int, total: int, bound: bool = True) -> bytes:
    return decrypt_chunk(blob, key, index=index, total=total, bound=bound)


def _check_dispatch(cancel: Optional[CancelToken], deadline: Optional[Deadline]) -> None:
    if cancel is not None and cancel.cancelled:
        raise Cancelled('Operation cancelled')
    if deadline is not None and deadline.expired():
        raise PipelineTimeout(f'Pipeline exceeded {deadline.seconds:g}s')


def run_ordered(executor: ChunkExecutor, count: int, make_job: Callable, concurrency: int, *,
                wrap_error: Callable, on_result: Callable = None, progress: Callable = None,
                cancel: CancelToken = None, deadline: Deadline = None) -> list:
    """Run ``count`` jobs with at most ``concurrency`` in flight.

    make_job(i) -> (fn, args) builds job i at dispatch time. Results land in a
    pre-sized list by index. If on_result is given it receives (i, result) in
    index order as soon as the prefix is complete and the slot is released.
    """
    results = [_PENDING] * count
    active = {}
    next_index = 0
    flushed = 0
    completed = 0
    first_error = None

    while True:
        while first_error is None and next_index < count and len(active) < concurrency:
            try:
                _check_dispatch(cancel, deadline)
                fn, args = make_job(next_index)
                fut = executor.submit(fn, *args)
            except CrypterError as e:
                first_error = e
                break
            active[fut] = next_index
            next_index += 1

        if not active:
            break

        timeout = deadline.remaining() if deadline is not None else None
        done, _ = wait(active, timeout=timeout, return_when=FIRST_COMPLETED)
        if not done:
            for fut in active:
                fut.cancel()
            if first_error is None:
                first_error = PipelineTimeout(f'Pipeline exceeded {deadline.seconds:g}s')
            break

        for fut in done:
            idx = active.pop(fut)
            try:
                results[idx] = fut.result()
            except CrypterError as e:
                if first_error is None:
                    first_error = e
            except Exception as e:  # noqa: BLE001
                if first_error is None:
                    first_error = wrap_error(idx, e)
            else:
                completed += 1
                if progress is not None:
                    progress(completed, count)

        if on_result is not None and first_error is None:
            try:
                while flushed < count and results[flushed] is not _PENDING:
                    on_result(flushed, results[flushed])
                    results[flushed] = None
                    flushed += 1
            except CrypterError as e:
                first_error = e

        # let the host breathe between completions
        time.sleep(0)

    if first_error is not None:
        raise first_error
    return results


class Pipeline:
    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, concurrency: int = DEFAULT_CONCURRENCY, *,
                 executor: ChunkExecutor = None, max_source_bytes: int = None,
                 timeout: float = None, progress: Callable = None):
        if chunk_size <= 0:
            raise InvalidInput('chunk_size must be positive')
        if concurrency <= 0:
            raise InvalidInput('concurrency must be positive')
        self.chunk_size = chunk_size
        self.concurrency = concurrency
        self.executor = executor
        self.max_source_bytes = max_source_bytes
        self.timeout = timeout
        self.progress = progress

    def _run(self, count, make_job, wrap_error, on_result=None, cancel=None):
        deadline = Deadline(self.timeout) if self.timeout else None
        executor = self.executor
        owned = executor is None
        if owned:
            executor = select_executor(self.concurrency)
        timed_out = False
        try:
            return run_ordered(executor, count, make_job, self.concurrency,
                               wrap_error=wrap_error, on_result=on_result, progress=self.progress,
                               cancel=cancel, deadline=deadline)
        except PipelineTimeout:
            timed_out = True
            raise
        finally:
            if owned:
                # a timed-out run must not block on the chunks still running
                executor.shutdown(wait=not timed_out)

    # ------------------------------ encrypt ------------------------------

    def _prepare_encrypt(self, source: ByteSource, password, scheme: str):
        if source is None:
            raise InvalidInput('No source selected')
        get_scheme(scheme)
        if not password:
            raise InvalidInput('Password must not be empty')
        length = source.length()
        if self.max_source_bytes is not None and length > self.max_source_bytes:
            raise SourceTooLarge(length, self.max_source_bytes)
        spans = plan_chunks(length, self.chunk_size)
        key = derive_key(password, scheme=scheme)
        logger.debug('Encrypting %d bytes in %d chunks (scheme=%s, concurrency=%d)',
                      length, len(spans), scheme, self.concurrency)
        return spans, key

    def _encrypt_jobs(self, source, spans, key, bound=True):
        total = len(spans)

        def make_job(i):
            offset, size = spans[i]
            return _encrypt_range, (source, offset, size, key, i, total, bound)

        def wrap_error(i, e):
            if isinstance(e, OSError):
                return CrypterIOError(f'Chunk {i}: {e}')
            return CrypterError(f'Chunk {i} failed to encrypt: {e}')

        return make_job, wrap_error

    def encrypt(self, source: ByteSource, password, *, scheme: str = DEFAULT_SCHEME,
                cancel: CancelToken = None, bound: bool = True) -> Envelope:
        """Encrypt ``source`` into an in-memory Envelope.

        ``bound=False`` leaves chunks without positional associated data, as the
        compact form requires.
        """
        started = time.monotonic()
        spans, key = self._prepare_encrypt(source, password, scheme)
        make_job, wrap_error = self._encrypt_jobs(source, spans, key, bound)
        chunks = self._run(len(spans), make_job, wrap_error, cancel=cancel)
        logger.debug('Encrypted %d chunks in %.3fs', len(chunks), time.monotonic() - started)
        return Envelope(scheme, key.salt, chunks, chunk_size=self.chunk_size, bound=bound)

    def encrypt_to(self, source: ByteSource, password, sink: ByteSink, *, scheme: str = DEFAULT_SCHEME,
                   cancel: CancelToken = None) -> int:
        """Stream a binary envelope into ``sink``; returns the chunk count."""
        spans, key = self._prepare_encrypt(source, password, scheme)
        make_job, wrap_error = self._encrypt_jobs(source, spans, key)
        write_binary_header(sink, scheme, key.salt, self.chunk_size, len(spans))
        self._run(len(spans), make_job, wrap_error,
                  on_result=lambda i, ct: write_binary_chunk(sink, i, ct), cancel=cancel)
        return len(spans)

    # ------------------------------ decrypt ------------------------------

    def _prepare_decrypt(self, envelope: Envelope, password, scheme: Optional[str]):
        if envelope is None:
            raise InvalidInput('No encrypted data provided')
        if not password:
            raise InvalidInput('Password must not be empty')
        if scheme is not None and scheme != envelope.scheme:
            get_scheme(scheme)
            raise DecryptionFailed(f'Envelope was sealed with the {envelope.scheme!r} scheme, not {scheme!r}')
        if envelope.num_chunks == 0:
            raise DecryptionFailed('Envelope holds no chunks')
        if get_scheme(envelope.scheme).uses_salt and not envelope.salt:
            raise DecryptionFailed('Envelope is missing its salt')
        key = derive_key(password, envelope.salt, scheme=envelope.scheme)
        total = envelope.num_chunks
        logger.debug('Decrypting %d chunks (scheme=%s, concurrency=%d)', total, envelope.scheme, self.concurrency)

        def make_job(i):
            return _decrypt_blob, (envelope.chunks[i], key, i, total, envelope.bound)

        def wrap_error(i, e):
            return DecryptionFailed(f'Chunk {i} failed to decrypt: {e}')

        return total, make_job, wrap_error

    def decrypt(self, envelope: Envelope, password, *, scheme: str = None,
                cancel: CancelToken = None) -> bytes:
        total, make_job, wrap_error = self._prepare_decrypt(envelope, password, scheme)
        sink = BufferSink()
        self._run(total, make_job, wrap_error, on_result=lambda i, pt: sink.append(pt), cancel=cancel)
        return sink.getvalue()

    def decrypt_to(self, envelope: Envelope, password, sink: ByteSink, *, scheme: str = None,
                   cancel: CancelToken = None) -> int:
        """Stream plaintext into ``sink``; returns the number of bytes written."""
        total, make_job, wrap_error = self._prepare_decrypt(envelope, password, scheme)
        written = 0

        def on_result(i, pt):
            nonlocal written
            sink.append(pt)
            written += len(pt)

        self._run(total, make_job, wrap_error, on_result=on_result, cancel=cancel)
        return written


def run_pipeline(source, password, direction: str, chunk_size: int = DEFAULT_CHUNK_SIZE,
                 concurrency: int = DEFAULT_CONCURRENCY, *, scheme: str = None, sink: ByteSink = None,
                 **options):
    """One-shot entry point.

    encrypt: ``source`` is a ByteSource; returns an Envelope, or the chunk
    count when streaming into ``sink``.
    decrypt: ``source`` is an Envelope, envelope text, or a ByteSource holding
    a binary envelope; returns plaintext bytes, or the byte count with a sink.
    Remaining keyword options go to Pipeline().
    """
    cancel = options.pop('cancel', None)
    pipeline = Pipeline(chunk_size, concurrency, **options)
    if direction == ENCRYPT:
        scheme = scheme or DEFAULT_SCHEME
        if sink is not None:
            return pipeline.encrypt_to(source, password, sink, scheme=scheme, cancel=cancel)
        return pipeline.encrypt(source, password, scheme=scheme, cancel=cancel)
    if direction == DECRYPT:
        if isinstance(source, str):
            envelope = Envelope.from_text(source)
        elif isinstance(source, ByteSource):
            envelope = Envelope.read_binary(source)
        else:
            envelope = source
        if sink is not None:
            return pipeline.decrypt_to(envelope, password, sink, scheme=scheme, cancel=cancel)
        return pipeline.decrypt(envelope, password, scheme=scheme, cancel=cancel)
    raise InvalidInput(f'Unknown direction: {direction!r}')
