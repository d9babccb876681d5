"""
cache.py

Two bounded caches owned by whoever drives the pipeline:

- CiphertextCache: (source identity, password, scheme, chunk size) -> envelope
  text, so re-encrypting the same item with the same password is free.
- RawBytesCache: source identity -> raw bytes, so a picked image is read once
  even when it is encrypted several times. Entries expire after a TTL.

Both evict strictly in insertion order once over capacity; a hit does not
refresh an entry. Passwords never appear in keys, only a salted digest.
"""

import logging
import os
import threading
import time
from collections import OrderedDict
from typing import Optional

from cryptography.hazmat.primitives import hashes

from .config import CACHE_SWEEP_THRESHOLD, DEFAULT_CACHE_CAPACITY, RAW_CACHE_TTL

logger = logging.getLogger(__name__)


class _BoundedCache:
    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY):
        if capacity <= 0:
            raise ValueError('capacity must be positive')
        self.capacity = capacity
        self._entries = OrderedDict()
        self._lock = threading.Lock()

    def _put(self, key, value) -> None:
        with self._lock:
            self._put_locked(key, value)

    def _put_locked(self, key, value) -> None:
        # re-inserting an existing key keeps its original insertion slot
        self._entries[key] = value
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)
            logger.debug('%s evicted its oldest entry', type(self).__name__)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class CiphertextCache(_BoundedCache):
    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY):
        super().__init__(capacity)
        # per-instance salt so digests are useless outside this process
        self._salt = os.urandom(16)

    def make_key(self, source_id: str, password: str, scheme: str, chunk_size: int) -> bytes:
        digest = hashes.Hash(hashes.SHA256())
        digest.update(self._salt)
        for part in (source_id, scheme, str(chunk_size), password):
            data = part.encode('utf-8')
            digest.update(len(data).to_bytes(4, 'big'))
            digest.update(data)
        return digest.finalize()

    def get(self, source_id: str, password: str, scheme: str, chunk_size: int) -> Optional[str]:
        key = self.make_key(source_id, password, scheme, chunk_size)
        with self._lock:
            return self._entries.get(key)

    def put(self, source_id: str, password: str, scheme: str, chunk_size: int, envelope_text: str) -> None:
        self._put(self.make_key(source_id, password, scheme, chunk_size), envelope_text)


class RawBytesCache(_BoundedCache):
    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY, ttl: float = RAW_CACHE_TTL,
                 sweep_threshold: int = CACHE_SWEEP_THRESHOLD, clock=time.monotonic):
        super().__init__(capacity)
        self.ttl = ttl
        self.sweep_threshold = sweep_threshold
        self._clock = clock
        self._accesses = 0

    def _expired(self, inserted_at: float, now: float) -> bool:
        return now - inserted_at >= self.ttl

    def get(self, source_id: str) -> Optional[bytes]:
        now = self._clock()
        with self._lock:
            self._accesses += 1
            if self._accesses >= self.sweep_threshold:
                self._sweep_locked(now)
            entry = self._entries.get(source_id)
            if entry is None:
                return None
            data, inserted_at = entry
            if self._expired(inserted_at, now):
                del self._entries[source_id]
                return None
            return data

    def put(self, source_id: str, data: bytes) -> None:
        now = self._clock()
        with self._lock:
            # a fresh read restarts the TTL, so drop the old slot first
            self._entries.pop(source_id, None)
            self._put_locked(source_id, (bytes(data), now))

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        stale = [k for k, (_, ts) in self._entries.items() if self._expired(ts, now)]
        for k in stale:
            del self._entries[k]
        if self._accesses >= self.sweep_threshold:
            logger.warning('Raw bytes cache accessed %d times, swept %d expired entries',
                           self._accesses, len(stale))
        self._accesses = 0
        return len(stale)


class ResultCache:
    """Both caches together, with a single clear() for low-memory signals."""

    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY, ttl: float = RAW_CACHE_TTL,
                 sweep_threshold: int = CACHE_SWEEP_THRESHOLD, clock=time.monotonic):
        self.ciphertext = CiphertextCache(capacity)
        self.raw = RawBytesCache(capacity, ttl=ttl, sweep_threshold=sweep_threshold, clock=clock)

    def clear(self) -> None:
        for cache in (self.ciphertext, self.raw):
            try:
                cache.clear()
            except Exception as e:  # noqa: BLE001 - housekeeping must not fail the caller
                logger.warning('Failed to clear %s: %s', type(cache).__name__, e)
