"""
formats.py

Decrypt-side sanity check: does the plaintext start like an image we
support? This is a prefix heuristic, not an integrity check. It can be fooled
by a coincidental prefix and says nothing about the middle or tail of the
data; in unauthenticated (direct) mode it is the main signal that the key was
wrong.
"""

import enum

from .errors import NotAnImage

MIN_IMAGE_BYTES = 100


class ImageKind(enum.Enum):
    JPEG = ('image/jpeg', 'jpg')
    PNG = ('image/png', 'png')
    GIF = ('image/gif', 'gif')

    def __init__(self, mime, extension):
        self.mime = mime
        self.extension = extension


_SIGNATURES = (
    (b'\xff\xd8\xff', ImageKind.JPEG),
    (b'\x89PNG', ImageKind.PNG),
    (b'GIF87a', ImageKind.GIF),
    (b'GIF89a', ImageKind.GIF),
)


def classify(data: bytes) -> ImageKind:
    if data is None or len(data) < MIN_IMAGE_BYTES:
        raise NotAnImage('Decrypted data is too short to be an image')
    for magic, kind in _SIGNATURES:
        if data.startswith(magic):
            return kind
    raise NotAnImage('Decrypted data is not a valid image')

