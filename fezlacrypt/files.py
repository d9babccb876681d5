"""
files.py

File-to-file encryption using the binary envelope, for large payloads that
should never sit in memory whole.

Design decisions:
- Output is written to a uniquely named temp file beside the destination and
  renamed into place only when every chunk succeeded; any failure removes it.
- Chunk-level work uses threads by default. A ProcessPoolExecutor is used for
  file-level parallelism, and then each file gets a single chunk worker
  (workers=1) to avoid nested pools and oversubscription.
"""

import logging
import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from contextlib import contextmanager
from typing import List

from tqdm import tqdm

from .config import DEFAULT_CHUNK_SIZE, DEFAULT_SCHEME, DEFAULT_TIMEOUT, MAX_STREAM_SOURCE_BYTES
from .envelope import Envelope
from .errors import PipelineTimeout
from .executors import CooperativeExecutor, ParallelExecutor, default_workers
from .pipeline import Pipeline, plan_chunks
from .sources import FileSource, TempFileSink

logger = logging.getLogger(__name__)

ENCRYPTED_SUFFIX = '.fzc'


def _executor_for(workers: int, use_processes: bool):
    if workers is None:
        workers = default_workers()
    # a single worker runs chunks inline, no pool needed
    if workers <= 1:
        return CooperativeExecutor(), 1
    return ParallelExecutor(workers, use_processes=use_processes), workers


@contextmanager
def _running(executor):
    timed_out = False
    try:
        yield executor
    except PipelineTimeout:
        timed_out = True
        raise
    finally:
        # chunks still running after a timeout are abandoned, not awaited
        executor.shutdown(wait=not timed_out)


def encrypt_file(in_path: str, out_path: str, password: str, chunk_size: int = DEFAULT_CHUNK_SIZE,
                 workers: int = None, *, scheme: str = DEFAULT_SCHEME, use_processes: bool = False,
                 max_bytes: int = MAX_STREAM_SOURCE_BYTES, timeout: float = DEFAULT_TIMEOUT,
                 show_progress: bool = False, cancel=None) -> str:
    """Encrypt a single file into a binary envelope at ``out_path``."""
    source = FileSource(in_path)
    num_chunks = len(plan_chunks(source.length(), chunk_size))
    executor, concurrency = _executor_for(workers, use_processes)

    with _running(executor), tqdm(total=num_chunks, unit='chunk', disable=not show_progress,
                        desc=os.path.basename(in_path)) as pbar:
        pipeline = Pipeline(chunk_size, concurrency, executor=executor, max_source_bytes=max_bytes,
                            timeout=timeout, progress=lambda done, total: pbar.update(1))
        with TempFileSink(out_path) as sink:
            pipeline.encrypt_to(source, password, sink, scheme=scheme, cancel=cancel)
            sink.commit()
    logger.debug('Encrypted %s -> %s', in_path, out_path)
    return out_path


def decrypt_file(in_path: str, out_path: str, password: str, workers: int = None, *,
                 scheme: str = None, use_processes: bool = False, timeout: float = DEFAULT_TIMEOUT,
                 show_progress: bool = False, cancel=None) -> str:
    envelope = Envelope.read_binary(FileSource(in_path))
    executor, concurrency = _executor_for(workers, use_processes)

    with _running(executor), tqdm(total=envelope.num_chunks, unit='chunk', disable=not show_progress,
                        desc=os.path.basename(in_path)) as pbar:
        pipeline = Pipeline(envelope.chunk_size or DEFAULT_CHUNK_SIZE, concurrency, executor=executor,
                            timeout=timeout, progress=lambda done, total: pbar.update(1))
        with TempFileSink(out_path) as sink:
            pipeline.decrypt_to(envelope, password, sink, scheme=scheme, cancel=cancel)
            sink.commit()
    logger.debug('Decrypted %s -> %s', in_path, out_path)
    return out_path


def encrypted_name(path: str) -> str:
    return os.path.basename(path) + ENCRYPTED_SUFFIX


def decrypted_name(path: str) -> str:
    base = os.path.basename(path)
    if base.endswith(ENCRYPTED_SUFFIX):
        return base[:-len(ENCRYPTED_SUFFIX)]
    return base + '.dec'


def process_encrypt_wrapper(args):
    infile, outfile, password, chunk_size, chunk_workers, scheme = args
    # to avoid nested process pools chunk_workers is 1 when file-level parallelism > 1
    encrypt_file(infile, outfile, password, chunk_size=chunk_size, workers=chunk_workers, scheme=scheme)
    return infile, outfile


def process_decrypt_wrapper(args):
    infile, outfile, password, chunk_workers, scheme = args
    decrypt_file(infile, outfile, password, workers=chunk_workers, scheme=scheme)
    return infile, outfile


def collect_input_files(inputs: List[str], input_dir: str = None, recursive: bool = False) -> List[str]:
    files = []
    roots = [p for p in inputs or [] if os.path.isdir(p)]
    files.extend(p for p in inputs or [] if not os.path.isdir(p))
    if input_dir:
        roots.append(input_dir)
    for top in roots:
        for root, _, filenames in os.walk(top):
            for fn in filenames:
                files.append(os.path.join(root, fn))
            if not recursive:
                break
    # remove duplicates and non-files
    return [f for f in dict.fromkeys(files) if os.path.isfile(f)]


def run_files(mode: str, files: List[str], password: str, output_dir: str = None, *,
              chunk_size: int = DEFAULT_CHUNK_SIZE, file_workers: int = 2, chunk_workers: int = 1,
              scheme: str = None):
    """Encrypt or decrypt many files in parallel processes.

    ``scheme`` picks the key scheme when encrypting (pbkdf2 by default) and
    pins the expected one when decrypting.

    Returns (succeeded, failed) where succeeded is a list of (infile, outfile)
    and failed a list of (infile, exception).
    """
    tasks = []
    for infile in files:
        outdir = output_dir or os.path.dirname(infile)
        if mode == 'encrypt':
            outfile = os.path.join(outdir, encrypted_name(infile))
            tasks.append((infile, outfile, password, chunk_size, chunk_workers, scheme or DEFAULT_SCHEME))
        else:
            outfile = os.path.join(outdir, decrypted_name(infile))
            tasks.append((infile, outfile, password, chunk_workers, scheme))

    wrapper = process_encrypt_wrapper if mode == 'encrypt' else process_decrypt_wrapper
    succeeded, failed = [], []
    with ProcessPoolExecutor(max_workers=file_workers) as pool:
        futures = {pool.submit(wrapper, t): t[0] for t in tasks}
        for fut in as_completed(futures):
            infile = futures[fut]
            try:
                succeeded.append(fut.result())
            except Exception as e:  # noqa: BLE001 - reported per file
                logger.error('Failed to %s %s: %s', mode, infile, e)
                failed.append((infile, e))
    return succeeded, failed
