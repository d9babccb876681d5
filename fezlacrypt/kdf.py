"""
kdf.py

Password -> key derivation. Two schemes are supported and must be chosen
explicitly, since ciphertext from one cannot be opened with the other:

- ``direct``: the password itself is handed to the cipher, which stretches it
  per chunk with OpenSSL's EVP_BytesToKey (the CryptoJS passphrase format).
- ``pbkdf2``: PBKDF2-HMAC-SHA256 over a random 16-byte salt, 100k rounds,
  256-bit key. The salt travels in the envelope header.
"""

import os
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import KEY_LEN, PBKDF2_ITERATIONS, SALT_LEN
from .errors import InvalidInput


@dataclass(frozen=True)
class DerivedKey:
    scheme: str
    material: bytes
    salt: Optional[bytes] = None

    def __repr__(self):
        # keep key material out of logs and tracebacks
        return f'DerivedKey(scheme={self.scheme!r}, salt={self.salt!r})'


def _password_bytes(password) -> bytes:
    if isinstance(password, (bytes, bytearray)):
        password = bytes(password)
    elif isinstance(password, str):
        password = password.encode('utf-8')
    else:
        raise InvalidInput('Password must be a string')
    if not password:
        raise InvalidInput('Password must not be empty')
    return password


class DirectPasswordScheme:
    name = 'direct'
    uses_salt = False

    def derive_key(self, password, salt: Optional[bytes] = None) -> DerivedKey:
        return DerivedKey(self.name, _password_bytes(password), None)


class Pbkdf2Scheme:
    name = 'pbkdf2'
    uses_salt = True

    def __init__(self, iterations: int = PBKDF2_ITERATIONS):
        self.iterations = iterations

    def derive_key(self, password, salt: Optional[bytes] = None) -> DerivedKey:
        password_bytes = _password_bytes(password)
        if salt is None:
            salt = os.urandom(SALT_LEN)
        elif len(salt) != SALT_LEN:
            raise InvalidInput(f'Salt must be {SALT_LEN} bytes')
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LEN,
            salt=salt,
            iterations=self.iterations,
        )
        return DerivedKey(self.name, kdf.derive(password_bytes), salt)


SCHEMES = {
    DirectPasswordScheme.name: DirectPasswordScheme(),
    Pbkdf2Scheme.name: Pbkdf2Scheme(),
}


def get_scheme(name: str):
    try:
        return SCHEMES[name]
    except KeyError:
        raise InvalidInput(f'Unknown key scheme: {name!r}') from None


def derive_key(password, salt: Optional[bytes] = None, *, scheme: str) -> DerivedKey:
    return get_scheme(scheme).derive_key(password, salt)
