"""
codec.py

Encrypt/decrypt one chunk under a DerivedKey. These are plain module-level
functions with picklable arguments so chunk jobs can run in worker threads or
worker processes.

Chunk layouts:

    pbkdf2:  iv(16) || AES-256-GCM ciphertext || tag(16)
             AAD = u64 chunk index || u64 chunk count, or none when the
             chunk is not position-bound (the compact single-blob form)
    direct:  b"Salted__" || salt(8) || AES-256-CBC ciphertext (PKCS7)
             key, iv = EVP_BytesToKey(MD5, password, salt)
"""

import os
import struct
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import IV_LEN, KEY_LEN
from .errors import DecryptionFailed, InvalidInput
from .kdf import DerivedKey

OPENSSL_MAGIC = b'Salted__'
OPENSSL_SALT_LEN = 8
GCM_TAG_LEN = 16


def _chunk_aad(index: int, total: int, bound: bool = True) -> Optional[bytes]:
    if not bound:
        return None
    return struct.pack('>QQ', index, total)


def evp_bytes_to_key(password: bytes, salt: bytes, key_len: int = KEY_LEN, iv_len: int = IV_LEN):
    """OpenSSL EVP_BytesToKey with MD5 and one iteration."""
    derived = b''
    block = b''
    while len(derived) < key_len + iv_len:
        digest = hashes.Hash(hashes.MD5())
        digest.update(block + password + salt)
        block = digest.finalize()
        derived += block
    return derived[:key_len], derived[key_len:key_len + iv_len]


def _encrypt_gcm(data: bytes, key: bytes, iv: Optional[bytes], index: int, total: int, bound: bool) -> bytes:
    if iv is None:
        iv = os.urandom(IV_LEN)
    elif len(iv) != IV_LEN:
        raise InvalidInput(f'IV must be {IV_LEN} bytes')
    ct = AESGCM(key).encrypt(iv, data, _chunk_aad(index, total, bound))
    return iv + ct


def _decrypt_gcm(blob: bytes, key: bytes, index: int, total: int, bound: bool) -> bytes:
    if len(blob) < IV_LEN + GCM_TAG_LEN:
        raise DecryptionFailed(f'Chunk {index} is truncated')
    iv, ct = blob[:IV_LEN], blob[IV_LEN:]
    try:
        return AESGCM(key).decrypt(iv, ct, _chunk_aad(index, total, bound))
    except InvalidTag:
        raise DecryptionFailed(f'Authentication failed for chunk {index}') from None


def _encrypt_cbc(data: bytes, password: bytes, salt: Optional[bytes] = None) -> bytes:
    if salt is None:
        salt = os.urandom(OPENSSL_SALT_LEN)
    key, iv = evp_bytes_to_key(password, salt)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return OPENSSL_MAGIC + salt + encryptor.update(padded) + encryptor.finalize()


def _decrypt_cbc(blob: bytes, password: bytes, index: int) -> bytes:
    header_len = len(OPENSSL_MAGIC) + OPENSSL_SALT_LEN
    if not blob.startswith(OPENSSL_MAGIC) or len(blob) < header_len + 16:
        raise DecryptionFailed(f'Chunk {index} is not a salted OpenSSL blob')
    body = blob[header_len:]
    if len(body) % 16:
        raise DecryptionFailed(f'Chunk {index} has a partial cipher block')
    key, iv = evp_bytes_to_key(password, blob[len(OPENSSL_MAGIC):header_len])
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        # bad padding is what a wrong password looks like in CBC mode
        raise DecryptionFailed(f'Invalid key or corrupted chunk {index}') from None


def encrypt_chunk(data: bytes, key: DerivedKey, iv: Optional[bytes] = None, *,
                  index: int = 0, total: int = 1, bound: bool = True) -> bytes:
    """Encrypt one chunk. ``iv`` and ``bound`` are only honoured by the pbkdf2
    scheme; the direct scheme derives its IV from a fresh per-chunk salt and
    carries no associated data."""
    if key.scheme == 'pbkdf2':
        return _encrypt_gcm(data, key.material, iv, index, total, bound)
    if key.scheme == 'direct':
        return _encrypt_cbc(data, key.material)
    raise InvalidInput(f'Unknown key scheme: {key.scheme!r}')


def decrypt_chunk(blob: bytes, key: DerivedKey, *, index: int = 0, total: int = 1, bound: bool = True) -> bytes:
    if key.scheme == 'pbkdf2':
        return _decrypt_gcm(blob, key.material, index, total, bound)
    if key.scheme == 'direct':
        return _decrypt_cbc(blob, key.material, index)
    raise InvalidInput(f'Unknown key scheme: {key.scheme!r}')
