"""
config.py

Tunable constants and the CrypterConfig bundle passed to sessions, the CLI
and the HTTP backend.
"""

from dataclasses import dataclass, replace

from .errors import InvalidInput

SALT_LEN = 16
IV_LEN = 16
KEY_LEN = 32  # AES-256
PBKDF2_ITERATIONS = 100_000

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1 MiB
DEFAULT_CONCURRENCY = 4
DEFAULT_SCHEME = 'pbkdf2'

DEFAULT_CACHE_CAPACITY = 5
RAW_CACHE_TTL = 5 * 60  # seconds
CACHE_SWEEP_THRESHOLD = 50

# text envelopes hold the whole ciphertext in memory, file streaming does not
MAX_TEXT_SOURCE_BYTES = 10 * 1024 * 1024
MAX_STREAM_SOURCE_BYTES = 50 * 1024 * 1024

DEFAULT_TIMEOUT = 60.0  # seconds, whole pipeline


@dataclass(frozen=True)
class CrypterConfig:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    scheme: str = DEFAULT_SCHEME
    cache_capacity: int = DEFAULT_CACHE_CAPACITY
    raw_cache_ttl: float = RAW_CACHE_TTL
    cache_sweep_threshold: int = CACHE_SWEEP_THRESHOLD
    max_text_source_bytes: int = MAX_TEXT_SOURCE_BYTES
    max_stream_source_bytes: int = MAX_STREAM_SOURCE_BYTES
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise InvalidInput('chunk_size must be positive')
        if self.concurrency <= 0:
            raise InvalidInput('concurrency must be positive')
        if self.cache_capacity <= 0:
            raise InvalidInput('cache_capacity must be positive')

    def with_overrides(self, **changes) -> 'CrypterConfig':
        """Copy with the given fields replaced; None values are ignored."""
        changes = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **changes) if changes else self
