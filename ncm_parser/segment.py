"""Length-prefixed, XOR-salted segment reading.

A segment on disk looks like::

    +----------------+---------------------------+
    | length (u32le) | length bytes, each ^ salt |
    +----------------+---------------------------+

Two source shapes are supported: any iterator of byte values and any
object with a blocking ``read(n)``. Both return identical bytes.
"""

import logging
import struct
from itertools import islice

from .errors import EndOfFile

logger = logging.getLogger(__name__)

_LENGTH = struct.Struct('<I')


def _salted(data, salt):
    if not salt:
        return bytes(data)
    return bytes(data).translate(bytes(b ^ salt for b in range(256)))


def take_exact(iterator, n):
    data = bytes(islice(iterator, n))
    if len(data) != n:
        raise EndOfFile()
    return data


def read_exact(reader, n):
    chunks = []
    remaining = n
    while remaining > 0:
        chunk = reader.read(remaining)
        if not chunk:
            raise EndOfFile()
        chunks.append(chunk)
        remaining -= len(chunk)
    return b''.join(chunks)


def read_to_end(reader):
    chunks = []
    while True:
        chunk = reader.read(0x10000)
        if not chunk:
            return b''.join(chunks)
        chunks.append(chunk)


def read_segment_iter(iterator, salt):
    seg_len, = _LENGTH.unpack(take_exact(iterator, 4))
    data = _salted(take_exact(iterator, seg_len), salt)
    logger.debug("read segment of %d bytes (salt 0x%02x)", seg_len, salt)
    return data


def read_segment_reader(reader, salt):
    seg_len, = _LENGTH.unpack(read_exact(reader, 4))
    data = _salted(read_exact(reader, seg_len), salt)
    logger.debug("read segment of %d bytes (salt 0x%02x)", seg_len, salt)
    return data
