"""
fezlacrypt

Password-based encryption of images and short text messages as shareable
text envelopes, built on a chunked, bounded-memory pipeline.

Usage:
    from fezlacrypt import CrypterSession, MediaItem
    with CrypterSession() as session:
        text = session.encrypt_image(MediaItem("photo.jpg"), "correct-horse")
        image = session.decrypt_image(text, "correct-horse")
"""

from fezlacrypt.cache import CiphertextCache, RawBytesCache, ResultCache
from fezlacrypt.config import CrypterConfig
from fezlacrypt.crypter import CrypterSession, DecryptedImage, save_image
from fezlacrypt.envelope import Envelope
from fezlacrypt.errors import (Cancelled, CrypterError, CrypterIOError, DecryptionFailed, ErrorCategory,
                               InvalidInput, NotAnImage, OperationInProgress, PipelineTimeout,
                               SourceTooLarge, describe)
from fezlacrypt.executors import CooperativeExecutor, ParallelExecutor, select_executor
from fezlacrypt.files import decrypt_file, encrypt_file
from fezlacrypt.formats import ImageKind, classify
from fezlacrypt.kdf import DerivedKey, derive_key
from fezlacrypt.pipeline import DECRYPT, ENCRYPT, CancelToken, Deadline, Pipeline, run_pipeline
from fezlacrypt.sources import (BufferSink, BufferSource, FileSink, FileSource, MediaItem,
                                export_envelope, import_envelope)

__version__ = "1.0.0"
__all__ = [
    "BufferSink",
    "BufferSource",
    "CancelToken",
    "Cancelled",
    "CiphertextCache",
    "CooperativeExecutor",
    "CrypterConfig",
    "CrypterError",
    "CrypterIOError",
    "CrypterSession",
    "DECRYPT",
    "Deadline",
    "DecryptedImage",
    "DecryptionFailed",
    "DerivedKey",
    "ENCRYPT",
    "Envelope",
    "ErrorCategory",
    "FileSink",
    "FileSource",
    "ImageKind",
    "InvalidInput",
    "MediaItem",
    "NotAnImage",
    "OperationInProgress",
    "ParallelExecutor",
    "Pipeline",
    "PipelineTimeout",
    "RawBytesCache",
    "ResultCache",
    "SourceTooLarge",
    "classify",
    "decrypt_file",
    "derive_key",
    "describe",
    "encrypt_file",
    "export_envelope",
    "import_envelope",
    "run_pipeline",
    "save_image",
    "select_executor",
]
