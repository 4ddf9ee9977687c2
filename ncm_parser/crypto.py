"""Key unwrapping, keystream derivation and metadata unwrapping.

The audio cipher is RC4 keyed with material that sits AES-128-ECB
encrypted inside the container. Only the key scheduling half of RC4 is
standard: the output table is derived once from the permuted box and
repeated over the whole payload without any per-byte state advance.
"""

import base64
import binascii
import logging

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from .errors import DecryptMetadataFailed, DecryptRC4KeyFailed

logger = logging.getLogger(__name__)

CORE_KEY = binascii.a2b_hex("687A4852416D736F356B496E62617857")
META_KEY = binascii.a2b_hex("2331346C6A6B5F215C5D2630553C2728")

KEY_PREFIX = b'neteasecloudmusic'
META_PREFIX = b"163 key(Don't modify):"
MUSIC_PREFIX = b'music:'

# Multiple of 256 so every chunk starts at keystream offset 0.
_CHUNK = 0x100000


def _aes_ecb_decrypt(key, data):
    cryptor = AES.new(key, AES.MODE_ECB)
    return unpad(cryptor.decrypt(data), AES.block_size)


def unwrap_key(key_segment):
    """Decrypt the wrapped key segment and return the raw RC4 key material."""
    try:
        plain = _aes_ecb_decrypt(CORE_KEY, bytes(key_segment))
    except ValueError as e:
        raise DecryptRC4KeyFailed() from e
    if not plain.startswith(KEY_PREFIX):
        raise DecryptRC4KeyFailed()
    return plain[len(KEY_PREFIX):]


def derive_keystream(key):
    box = list(range(256))
    if key:
        j = 0
        for i in range(256):
            j = (box[i] + j + key[i % len(key)]) & 0xff
            box[i], box[j] = box[j], box[i]

    key_stream = bytearray(256)
    for p in range(256):
        i = (p + 1) & 0xff
        j = box[i]
        k = box[(i + j) & 0xff]
        key_stream[p] = box[(j + k) & 0xff]
    return bytes(key_stream)


def apply_keystream(buffer, key_stream):
    """XOR ``buffer`` in place with ``key_stream`` cycled from offset 0.

    Applying the same table twice restores the original bytes. The table
    must be the 256 bytes returned by :func:`derive_keystream`.
    """
    if len(key_stream) != 256:
        raise ValueError(f"key stream must be 256 bytes, got {len(key_stream)}")
    block = bytes(key_stream) * (_CHUNK // len(key_stream))
    total = len(buffer)
    for start in range(0, total, _CHUNK):
        size = min(_CHUNK, total - start)
        end = start + size
        mixed = int.from_bytes(buffer[start:end], 'little') ^ int.from_bytes(block[:size], 'little')
        buffer[start:end] = mixed.to_bytes(size, 'little')
    return buffer


def unwrap_metadata(metadata_segment):
    """Turn the obfuscated metadata segment into the raw JSON document bytes."""
    data = bytes(metadata_segment)
    if not data.startswith(META_PREFIX):
        raise DecryptMetadataFailed()
    encoded = data[len(META_PREFIX):]
    # Some writers drop the trailing '=' padding.
    encoded += b'=' * (-len(encoded) % 4)
    try:
        decoded = base64.b64decode(encoded, validate=True)
        plain = _aes_ecb_decrypt(META_KEY, decoded)
    except (binascii.Error, ValueError) as e:
        raise DecryptMetadataFailed() from e
    if not plain.startswith(MUSIC_PREFIX):
        raise DecryptMetadataFailed()
    logger.debug("unwrapped %d bytes of metadata", len(plain) - len(MUSIC_PREFIX))
    return plain[len(MUSIC_PREFIX):]
