"""
envelope.py

Serialized forms of an encrypted payload.

Text envelope (copy/paste, .txt export):

    FZC1$<scheme>$<salt b64 or ->$<chunk0 b64>|CHUNK|<chunk1 b64>|CHUNK|...

Untagged text is read as the older format: one or more CryptoJS strings
("U2FsdGVkX1...") joined by the same separator, under the direct scheme.
Any other single untagged string is taken to be the compact form used for
short pbkdf2 text messages: base64(salt || iv || ct). Compact blobs carry no
associated data, so their one chunk is not bound to a position.

Binary envelope (file streaming):

    MAGIC (4) | scheme (1) | salt_len (1) | salt | chunk_size (<Q) | num_chunks (<Q)
    then per chunk: index (<Q) | length (<Q) | payload
"""

import base64
import binascii
import re
import struct
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Optional

from .codec import OPENSSL_MAGIC
from .config import SALT_LEN
from .errors import CrypterIOError, DecryptionFailed, InvalidInput
from .sources import ByteSink, ByteSource

TEXT_TAG = 'FZC1'
FIELD_SEP = '$'
CHUNK_SEP = '|CHUNK|'

MAGIC = b'FZC\x01'
_SCHEME_IDS = {'direct': 1, 'pbkdf2': 2}
_SCHEME_NAMES = {v: k for k, v in _SCHEME_IDS.items()}
_RECORD_HEADER = struct.Struct('<QQ')

_WHITESPACE = re.compile(r'\s+')


def _b64e(b: bytes) -> str:
    return base64.b64encode(b).decode('ascii')


def _b64d(s: str) -> bytes:
    try:
        return base64.b64decode(s.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise DecryptionFailed(f'Malformed envelope: {e}') from None


@dataclass
class Envelope:
    scheme: str
    salt: Optional[bytes] = None
    chunks: Sequence = field(default_factory=list)
    chunk_size: Optional[int] = None
    legacy: bool = False
    # chunks authenticate their (index, count); false only for compact blobs
    bound: bool = True

    @property
    def num_chunks(self) -> int:
        return len(self.chunks)

    # ------------------------------ text ------------------------------

    def to_text(self) -> str:
        if not self.bound:
            raise InvalidInput('Unbound chunks can only be written in compact form')
        salt = _b64e(self.salt) if self.salt else '-'
        body = CHUNK_SEP.join(_b64e(c) for c in self.chunks)
        return FIELD_SEP.join((TEXT_TAG, self.scheme, salt, body))

    @classmethod
    def from_text(cls, text: str) -> 'Envelope':
        if not isinstance(text, str):
            raise InvalidInput('Envelope text must be a string')
        text = _WHITESPACE.sub('', text)
        if not text:
            raise InvalidInput('Envelope text is empty')

        if not text.startswith(TEXT_TAG + FIELD_SEP):
            chunks = [_b64d(part) for part in text.split(CHUNK_SEP)]
            if all(c.startswith(OPENSSL_MAGIC) for c in chunks):
                # CryptoJS passphrase strings
                return cls('direct', None, chunks, legacy=True)
            if len(chunks) == 1:
                return cls.from_compact(text)
            raise DecryptionFailed('Malformed envelope: unrecognised format')

        parts = text.split(FIELD_SEP, 3)
        if len(parts) != 4:
            raise DecryptionFailed('Malformed envelope: missing fields')
        _, scheme, salt_field, body = parts
        if scheme not in _SCHEME_IDS:
            raise DecryptionFailed(f'Malformed envelope: unknown scheme {scheme!r}')
        salt = None if salt_field == '-' else _b64d(salt_field)
        if scheme == 'pbkdf2' and (salt is None or len(salt) != SALT_LEN):
            raise DecryptionFailed('Malformed envelope: bad salt')
        if not body:
            raise DecryptionFailed('Malformed envelope: no chunks')
        chunks = [_b64d(part) for part in body.split(CHUNK_SEP)]
        return cls(scheme, salt, chunks)

    # ----------------------------- compact ----------------------------

    def to_compact(self) -> str:
        if self.scheme != 'pbkdf2' or self.num_chunks != 1 or self.bound:
            raise InvalidInput('Compact form holds exactly one unbound pbkdf2 chunk')
        return _b64e(self.salt + self.chunks[0])

    @classmethod
    def from_compact(cls, text: str) -> 'Envelope':
        raw = _b64d(_WHITESPACE.sub('', text))
        if len(raw) <= SALT_LEN:
            raise DecryptionFailed('Malformed envelope: too short')
        return cls('pbkdf2', raw[:SALT_LEN], [raw[SALT_LEN:]], bound=False)

    # ----------------------------- binary -----------------------------

    def write_binary(self, sink: ByteSink) -> None:
        if not self.bound:
            raise InvalidInput('Unbound chunks can only be written in compact form')
        write_binary_header(sink, self.scheme, self.salt, self.chunk_size or 0, self.num_chunks)
        for idx, chunk in enumerate(self.chunks):
            write_binary_chunk(sink, idx, chunk)

    @classmethod
    def read_binary(cls, source: ByteSource) -> 'Envelope':
        """Parse the header and chunk index; payloads are read lazily."""
        head = source.read_range(0, len(MAGIC) + 2)
        if len(head) != len(MAGIC) + 2 or head[:len(MAGIC)] != MAGIC:
            raise DecryptionFailed('Input is not an encrypted envelope or version mismatch')
        scheme_id, salt_len = head[len(MAGIC)], head[len(MAGIC) + 1]
        scheme = _SCHEME_NAMES.get(scheme_id)
        if scheme is None:
            raise DecryptionFailed(f'Unknown scheme id {scheme_id}')
        pos = len(head)
        salt = source.read_range(pos, salt_len) or None
        pos += salt_len
        sizes = source.read_range(pos, 16)
        if len(sizes) != 16:
            raise DecryptionFailed('Truncated envelope header')
        chunk_size, num_chunks = struct.unpack('<QQ', sizes)
        pos += 16

        total = source.length()
        spans = []
        for expected in range(num_chunks):
            rec = source.read_range(pos, _RECORD_HEADER.size)
            if len(rec) != _RECORD_HEADER.size:
                raise DecryptionFailed('Truncated envelope: missing chunk records')
            idx, length = _RECORD_HEADER.unpack(rec)
            pos += _RECORD_HEADER.size
            if idx != expected or pos + length > total:
                raise DecryptionFailed(f'Corrupt chunk record {expected}')
            spans.append((pos, length))
            pos += length
        return cls(scheme, salt, LazyChunks(source, spans), chunk_size=chunk_size)


class LazyChunks(Sequence):
    """Chunk payloads of a binary envelope, read from the source on access."""

    def __init__(self, source: ByteSource, spans):
        self._source = source
        self._spans = list(spans)

    def __len__(self):
        return len(self._spans)

    def __getitem__(self, i):
        if isinstance(i, slice):
            return [self[j] for j in range(*i.indices(len(self)))]
        offset, length = self._spans[i]
        data = self._source.read_range(offset, length)
        if len(data) != length:
            raise CrypterIOError(f'Short read for chunk {i}')
        return data


def write_binary_header(sink: ByteSink, scheme: str, salt: Optional[bytes], chunk_size: int, num_chunks: int) -> None:
    salt = salt or b''
    sink.append(MAGIC)
    sink.append(struct.pack('BB', _SCHEME_IDS[scheme], len(salt)))
    sink.append(salt)
    sink.append(struct.pack('<QQ', chunk_size, num_chunks))


def write_binary_chunk(sink: ByteSink, idx: int, payload: bytes) -> None:
    sink.append(_RECORD_HEADER.pack(idx, len(payload)))
    sink.append(payload)

