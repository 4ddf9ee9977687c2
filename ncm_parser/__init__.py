"""Parser for NetEase Cloud Music ``.ncm`` containers."""

from .container import BufferState, NCMFile, from_bytes, from_iter, from_path, from_reader
from .crypto import apply_keystream, derive_keystream, unwrap_key, unwrap_metadata
from .errors import (
    DecryptMetadataFailed,
    DecryptRC4KeyFailed,
    EndOfFile,
    InvalidHeader,
    NCMError,
    ParseMetadataFailed,
)
from .metadata import NCMMetadata

__version__ = '0.3.0'

__all__ = [
    'BufferState', 'NCMFile', 'NCMMetadata',
    'from_bytes', 'from_iter', 'from_path', 'from_reader',
    'apply_keystream', 'derive_keystream', 'unwrap_key', 'unwrap_metadata',
    'NCMError', 'EndOfFile', 'InvalidHeader',
    'DecryptRC4KeyFailed', 'DecryptMetadataFailed', 'ParseMetadataFailed',
]
