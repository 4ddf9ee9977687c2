"""NCM container parsing and the per-file handle.

Layout (integers little-endian)::

    "CTENFDAM"  2 bytes      key segment    metadata segment
    magic       (ignored)    (salt 0x64)    (salt 0x63)

    9 bytes     image segment   audio
    reserved    (salt 0x00)     (rest of file, RC4 ciphered)
"""

import enum
import logging
from itertools import islice

from .crypto import apply_keystream, derive_keystream, unwrap_key, unwrap_metadata
from .errors import EndOfFile, InvalidHeader
from .metadata import NCMMetadata
from .segment import read_exact, read_segment_iter, read_segment_reader, read_to_end, take_exact

logger = logging.getLogger(__name__)

MAGIC = b'CTENFDAM'
HEADER_SIZE = 10
RESERVED_SIZE = 9

KEY_SALT = 0x64
META_SALT = 0x63
IMAGE_SALT = 0x00


class BufferState(enum.Enum):
    RAW = 'raw'
    DECRYPTED = 'decrypted'


def _check_header(header):
    if header[:len(MAGIC)] != MAGIC:
        raise InvalidHeader()


def from_iter(iterable):
    """Parse a container from an iterable of byte values, e.g. ``bytes``."""
    iterator = iter(iterable)
    _check_header(take_exact(iterator, HEADER_SIZE))
    key_segment = read_segment_iter(iterator, KEY_SALT)
    metadata = read_segment_iter(iterator, META_SALT)
    if sum(1 for _ in islice(iterator, RESERVED_SIZE)) != RESERVED_SIZE:
        raise EndOfFile()
    image = read_segment_iter(iterator, IMAGE_SALT)
    music = bytes(iterator)
    return NCMFile(key_segment, metadata, image, music)


def from_reader(reader):
    """Parse a container from a binary file-like object."""
    _check_header(read_exact(reader, HEADER_SIZE))
    key_segment = read_segment_reader(reader, KEY_SALT)
    metadata = read_segment_reader(reader, META_SALT)
    read_exact(reader, RESERVED_SIZE)
    image = read_segment_reader(reader, IMAGE_SALT)
    music = read_to_end(reader)
    return NCMFile(key_segment, metadata, image, music)


def from_bytes(data):
    return from_iter(data)


def from_path(path):
    with open(path, 'rb') as f:
        return from_reader(f)


class NCMFile:
    """Everything parsed out of one container.

    Audio and metadata are decrypted lazily, at most once. Later calls
    return the cached plaintext; running the cipher again over decrypted
    data would scramble it. A failed decrypt leaves the buffer raw.
    Instances are not safe to share between threads while decrypting.
    """

    def __init__(self, key_segment, metadata, image, music):
        self._key_segment = bytes(key_segment)
        self._metadata = bytes(metadata)
        self._image = bytes(image)
        self._music = bytes(music)
        self.music_state = BufferState.RAW
        self.metadata_state = BufferState.RAW

    def __repr__(self):
        return (f"<NCMFile music={len(self._music)}B ({self.music_state.value}) "
                f"metadata={len(self._metadata)}B ({self.metadata_state.value}) "
                f"image={len(self._image)}B>")

    def get_music(self):
        """Decrypted audio, usually MP3 or FLAC."""
        if self.music_state is BufferState.DECRYPTED:
            return self._music

        key = unwrap_key(self._key_segment)
        key_stream = derive_keystream(key)
        self._music = bytes(apply_keystream(bytearray(self._music), key_stream))
        self._key_segment = key
        self.music_state = BufferState.DECRYPTED
        logger.debug("decrypted %d bytes of music", len(self._music))
        return self._music

    def get_metadata(self):
        """Decrypted metadata as raw JSON bytes."""
        if self.metadata_state is BufferState.DECRYPTED:
            return self._metadata

        self._metadata = unwrap_metadata(self._metadata)
        self.metadata_state = BufferState.DECRYPTED
        return self._metadata

    def get_parsed_metadata(self):
        return NCMMetadata.from_json(self.get_metadata())

    def get_image(self):
        """Cover image, usually JPEG or PNG. Stored unencrypted."""
        return self._image

    get_image_unchecked = get_image

    def get_music_unchecked(self):
        return self._music

    def get_metadata_unchecked(self):
        return self._metadata
