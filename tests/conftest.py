"""Builders for synthetic NCM containers."""

import base64
import io
import json
import struct

import pytest
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad

CORE_KEY = b'hzHRAmso5kInbaxW'
META_KEY = b"#14ljk_!\\]&0U<'("

SAMPLE_METADATA = {
    "musicName": "T",
    "musicId": 1,
    "artist": [["A", 2]],
    "album": "Al",
    "albumId": 3,
    "albumPicDocId": 4,
    "albumPic": "http://x/y.jpg",
    "bitrate": 320000,
    "duration": 1000,
    "alias": [],
    "transNames": [],
    "format": "mp3",
}


class TrickleReader:
    """File-like object that hands out at most one byte per read."""

    def __init__(self, data):
        self._buf = io.BytesIO(data)

    def read(self, n=-1):
        return self._buf.read(1 if n is None or n < 0 else min(n, 1))


def reference_keystream(key):
    """Plain loop version of the NCM keystream, kept independent of the package."""
    box = list(range(256))
    j = 0
    for i in range(256):
        j = (box[i] + j + key[i % len(key)]) & 0xff
        box[i], box[j] = box[j], box[i]
    stream = []
    for p in range(256):
        i = (p + 1) & 0xff
        stream.append(box[(box[i] + box[(i + box[i]) & 0xff]) & 0xff])
    return bytes(stream)


def reference_cipher(data, key):
    stream = reference_keystream(key)
    return bytes(b ^ stream[n % 256] for n, b in enumerate(data))


def wrap_key(key_material, prefix=b'neteasecloudmusic'):
    return AES.new(CORE_KEY, AES.MODE_ECB).encrypt(pad(prefix + key_material, 16))


def wrap_metadata(document, inner_prefix=b'music:', outer_prefix=b"163 key(Don't modify):"):
    if not isinstance(document, bytes):
        document = json.dumps(document).encode('utf-8')
    encrypted = AES.new(META_KEY, AES.MODE_ECB).encrypt(pad(inner_prefix + document, 16))
    return outer_prefix + base64.b64encode(encrypted)


def segment(data, salt):
    return struct.pack('<I', len(data)) + bytes(b ^ salt for b in data)


def build_ncm(key_material=b'\x2a', metadata=None, image=b'', audio=b'ID3\x03\x00audio-payload',
              suffix=b'\x01\x70', key_segment=None, metadata_segment=None, magic=b'CTENFDAM'):
    if key_segment is None:
        key_segment = wrap_key(key_material)
    if metadata_segment is None:
        metadata_segment = wrap_metadata(SAMPLE_METADATA if metadata is None else metadata)
    return (
        magic + suffix
        + segment(key_segment, 0x64)
        + segment(metadata_segment, 0x63)
        + b'\x00' * 9
        + segment(image, 0x00)
        + reference_cipher(audio, key_material)
    )


@pytest.fixture
def sample_metadata():
    return json.loads(json.dumps(SAMPLE_METADATA))


@pytest.fixture
def ncm_bytes():
    return build_ncm()
