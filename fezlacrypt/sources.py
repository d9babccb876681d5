"""
sources.py

Byte sources and sinks the pipeline reads from and writes to, plus the media
item handed over by an image picker.

Sources are read by range so a chunk job only ever holds its own slice in
memory; sinks are append-only.
"""

import logging
import os
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from .errors import CrypterIOError, InvalidInput

logger = logging.getLogger(__name__)


class ByteSource:
    """Random-access, read-only byte source."""

    identity: Optional[str] = None

    def length(self) -> int:
        raise NotImplementedError

    def read_range(self, offset: int, size: int) -> bytes:
        raise NotImplementedError

    def read_all(self) -> bytes:
        return self.read_range(0, self.length())


class BufferSource(ByteSource):
    def __init__(self, data: bytes, identity: Optional[str] = None):
        self._data = bytes(data)
        self.identity = identity

    def length(self) -> int:
        return len(self._data)

    def read_range(self, offset: int, size: int) -> bytes:
        if offset < 0 or size < 0:
            raise InvalidInput('offset and size must be non-negative')
        return self._data[offset:offset + size]


class FileSource(ByteSource):
    """Reads ranges from a file path; each read opens the file anew so the
    source can be shared by concurrent chunk jobs (and pickled to workers)."""

    def __init__(self, path: str, identity: Optional[str] = None):
        self.path = os.fspath(path)
        self.identity = identity if identity is not None else os.path.abspath(self.path)

    def length(self) -> int:
        try:
            return os.path.getsize(self.path)
        except OSError as e:
            raise CrypterIOError(f'Cannot stat {self.path}: {e}') from e

    def read_range(self, offset: int, size: int) -> bytes:
        if offset < 0 or size < 0:
            raise InvalidInput('offset and size must be non-negative')
        try:
            with open(self.path, 'rb') as fin:
                fin.seek(offset)
                return fin.read(size)
        except OSError as e:
            raise CrypterIOError(f'Cannot read {self.path}: {e}') from e


class ByteSink:
    """Append-only byte sink."""

    def append(self, data: bytes) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class BufferSink(ByteSink):
    def __init__(self):
        self._parts = []

    def append(self, data: bytes) -> None:
        self._parts.append(bytes(data))

    def clear(self) -> None:
        self._parts = []

    def getvalue(self) -> bytes:
        return b''.join(self._parts)


class FileSink(ByteSink):
    def __init__(self, path: str):
        self.path = os.fspath(path)
        self._fout = None

    def _handle(self):
        if self._fout is None:
            try:
                self._fout = open(self.path, 'wb')
            except OSError as e:
                raise CrypterIOError(f'Cannot open {self.path}: {e}') from e
        return self._fout

    def append(self, data: bytes) -> None:
        try:
            self._handle().write(data)
        except OSError as e:
            raise CrypterIOError(f'Cannot write {self.path}: {e}') from e

    def clear(self) -> None:
        fout = self._handle()
        try:
            fout.seek(0)
            fout.truncate()
        except OSError as e:
            raise CrypterIOError(f'Cannot truncate {self.path}: {e}') from e

    def close(self) -> None:
        if self._fout is not None:
            self._fout.close()
            self._fout = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def unique_temp_name(prefix: str = 'fzc', suffix: str = '.part') -> str:
    """Per-run file name so concurrent runs never share a temp file."""
    return f'{prefix}_{time.time_ns()}_{secrets.token_hex(4)}{suffix}'


class TempFileSink(FileSink):
    """Writes to a uniquely named temp file next to ``final_path``.

    commit() renames it into place; discard() removes it. Used as a context
    manager, the temp file is discarded unless committed.
    """

    def __init__(self, final_path: str):
        self.final_path = os.fspath(final_path)
        directory = os.path.dirname(os.path.abspath(self.final_path))
        super().__init__(os.path.join(directory, '.' + unique_temp_name()))
        self.committed = False

    def commit(self) -> str:
        self.close()
        try:
            os.replace(self.path, self.final_path)
        except OSError as e:
            self.discard()
            raise CrypterIOError(f'Cannot move output into {self.final_path}: {e}') from e
        self.committed = True
        return self.final_path

    def discard(self) -> None:
        self.close()
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            # cleanup is best effort
            logger.warning('Could not remove temp file %s: %s', self.path, e)

    def __exit__(self, *exc):
        if not self.committed:
            self.discard()


@dataclass
class MediaItem:
    """An image picked from the gallery or camera."""
    uri: str
    byte_length: Optional[int] = None
    mime_hint: Optional[str] = None

    @property
    def path(self) -> str:
        if self.uri.startswith('file://'):
            return self.uri[len('file://'):]
        return self.uri

    def open_source(self) -> FileSource:
        if not self.uri:
            raise InvalidInput('No image selected')
        return FileSource(self.path, identity=self.uri)


def export_envelope(text: str, directory: str, timestamp: int = None) -> str:
    """Write envelope text to ``data_<ms timestamp>.txt`` for sharing."""
    if not text:
        raise InvalidInput('No data to export')
    timestamp = timestamp if timestamp is not None else time.time_ns() // 1_000_000
    path = os.path.join(directory, f'data_{timestamp}.txt')
    with TempFileSink(path) as sink:
        sink.append(text.encode('utf-8'))
        return sink.commit()


def import_envelope(path: str) -> str:
    try:
        with open(path, 'r', encoding='utf-8') as fin:
            content = fin.read()
    except UnicodeDecodeError:
        raise InvalidInput(f'{path} is not a UTF-8 text file') from None
    except OSError as e:
        raise CrypterIOError(f'Cannot read {path}: {e}') from e
    if not content.strip():
        raise InvalidInput('The selected file is empty or invalid')
    return content
