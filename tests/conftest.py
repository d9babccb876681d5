import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from fezlacrypt.executors import ChunkExecutor

PNG_MAGIC = b'\x89PNG\r\n\x1a\n'
JPEG_MAGIC = b'\xff\xd8\xff\xe0'


def make_png(size: int = 4096) -> bytes:
    return PNG_MAGIC + os.urandom(max(0, size - len(PNG_MAGIC)))


def make_jpeg(size: int = 4096) -> bytes:
    return JPEG_MAGIC + os.urandom(max(0, size - len(JPEG_MAGIC)))


class JitterExecutor(ChunkExecutor):
    """Thread pool that delays every other job so completions arrive out of
    submission order, and records how many jobs ran at once."""
    name = 'jitter'

    def __init__(self, workers: int = 4, delay: float = 0.02):
        self._pool = ThreadPoolExecutor(max_workers=workers)
        self._delay = delay
        self._lock = threading.Lock()
        self._submitted = 0
        self.active = 0
        self.max_active = 0

    def _wrap(self, slow, fn, args):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if slow:
                time.sleep(self._delay)
            return fn(*args)
        finally:
            with self._lock:
                self.active -= 1

    def submit(self, fn, *args):
        slow = self._submitted % 2 == 0
        self._submitted += 1
        return self._pool.submit(self._wrap, slow, fn, args)

    def shutdown(self, wait: bool = True):
        self._pool.shutdown(wait=wait)


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def jitter_executor():
    executor = JitterExecutor()
    yield executor
    executor.shutdown()
