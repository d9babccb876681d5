"""
executors.py

Where chunk jobs run. ParallelExecutor hands them to a thread pool (or a
process pool for CPU-heavy batch work, as the file tool does); the
CooperativeExecutor runs each job inline on the calling thread for hosts
without threads. Results are identical, only throughput differs.
"""

import logging
import os
import sys
from concurrent.futures import Future, ProcessPoolExecutor, ThreadPoolExecutor

logger = logging.getLogger(__name__)


def default_workers() -> int:
    # CPU-1, never below one
    return max(1, (os.cpu_count() or 1) - 1)


def threads_available() -> bool:
    if sys.platform in ('emscripten', 'wasi'):
        return False
    try:
        import _thread  # noqa: F401
    except ImportError:
        return False
    return True


class ChunkExecutor:
    name = 'base'

    def submit(self, fn, *args) -> Future:
        raise NotImplementedError

    def shutdown(self, wait: bool = True) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()


class ParallelExecutor(ChunkExecutor):
    name = 'parallel'

    def __init__(self, workers: int = None, use_processes: bool = False):
        self.workers = workers or default_workers()
        self.use_processes = use_processes
        self._pool = None

    def _get_pool(self):
        if self._pool is None:
            if self.use_processes:
                self._pool = ProcessPoolExecutor(max_workers=self.workers)
            else:
                self._pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='fzc-chunk')
        return self._pool

    def submit(self, fn, *args) -> Future:
        return self._get_pool().submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait, cancel_futures=True)
            self._pool = None


class CooperativeExecutor(ChunkExecutor):
    """Runs each job to completion inside submit(); the scheduler yields
    between jobs."""
    name = 'cooperative'

    def submit(self, fn, *args) -> Future:
        fut = Future()
        try:
            fut.set_result(fn(*args))
        except Exception as e:  # noqa: BLE001 - handed to the scheduler through the future
            fut.set_exception(e)
        return fut


def select_executor(workers: int = None, use_processes: bool = False) -> ChunkExecutor:
    if threads_available():
        executor = ParallelExecutor(workers, use_processes=use_processes)
    else:
        executor = CooperativeExecutor()
    logger.debug('Using %s chunk executor', executor.name)
    return executor
