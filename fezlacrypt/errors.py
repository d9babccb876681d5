"""
errors.py

Error taxonomy for the crypter core. Every failure the library raises is a
CrypterError carrying an ErrorCategory; callers map the category to whatever
message or status code they present (see describe()).
"""

import enum


class ErrorCategory(str, enum.Enum):
    INVALID_INPUT = 'invalid_input'
    SOURCE_TOO_LARGE = 'source_too_large'
    IO = 'io_error'
    DECRYPTION_FAILED = 'decryption_failed'
    NOT_AN_IMAGE = 'not_an_image'
    TIMEOUT = 'timeout'
    CANCELLED = 'cancelled'
    IN_PROGRESS = 'in_progress'


class CrypterError(Exception):
    category = None

    def __init__(self, message: str = '', *args):
        super().__init__(message or describe_category(self.category), *args)


class InvalidInput(CrypterError, ValueError):
    """Missing password, missing source or malformed arguments."""
    category = ErrorCategory.INVALID_INPUT


class SourceTooLarge(CrypterError):
    category = ErrorCategory.SOURCE_TOO_LARGE

    def __init__(self, size: int, limit: int):
        super().__init__(f'Source is {size} bytes, limit is {limit} bytes')
        self.size = size
        self.limit = limit

    def __reduce__(self):
        # survive the trip back from worker processes
        return type(self), (self.size, self.limit)


class CrypterIOError(CrypterError, OSError):
    """Read/write/delete failure on a source, sink or temp file."""
    category = ErrorCategory.IO


class DecryptionFailed(CrypterError):
    """The cipher rejected the input, or the envelope could not be parsed."""
    category = ErrorCategory.DECRYPTION_FAILED


class NotAnImage(CrypterError):
    """Decryption produced bytes that do not look like a supported image."""
    category = ErrorCategory.NOT_AN_IMAGE


class PipelineTimeout(CrypterError, TimeoutError):
    category = ErrorCategory.TIMEOUT


class Cancelled(CrypterError):
    category = ErrorCategory.CANCELLED


class OperationInProgress(CrypterError):
    category = ErrorCategory.IN_PROGRESS


_MESSAGES = {
    ErrorCategory.INVALID_INPUT: 'Please provide both the data and a key.',
    ErrorCategory.SOURCE_TOO_LARGE: 'The file is too large. Please select a smaller file.',
    ErrorCategory.IO: 'Could not read or write the file.',
    ErrorCategory.DECRYPTION_FAILED: 'Invalid key or corrupted text.',
    ErrorCategory.NOT_AN_IMAGE: 'The decrypted data is not a valid image.',
    ErrorCategory.TIMEOUT: 'The operation took too long and was stopped.',
    ErrorCategory.CANCELLED: 'The operation was cancelled.',
    ErrorCategory.IN_PROGRESS: 'Another operation is already running.',
}


def describe_category(category) -> str:
    return _MESSAGES.get(category, 'Operation failed.')


def describe(error: BaseException) -> str:
    """Default user-facing message for an exception raised by the core."""
    if isinstance(error, CrypterError):
        return describe_category(error.category)
    return 'Operation failed.'
