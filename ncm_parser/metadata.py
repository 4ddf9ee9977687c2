"""Typed view of the decrypted NCM metadata JSON."""

import json
from dataclasses import dataclass, field
from typing import Optional

from .errors import ParseMetadataFailed

_MISSING = object()


def _as_int(value, key):
    """Accept a JSON integer or a numeric string, return an int."""
    if isinstance(value, bool):
        raise ParseMetadataFailed(key)
    if isinstance(value, int):
        number = value
    elif isinstance(value, str):
        try:
            number = int(value.strip())
        except ValueError:
            raise ParseMetadataFailed(key) from None
    else:
        raise ParseMetadataFailed(key)
    if number < 0:
        raise ParseMetadataFailed(key)
    return number


def _as_str(value, key):
    if not isinstance(value, str):
        raise ParseMetadataFailed(key)
    return value


def _as_id_str(value, key):
    if isinstance(value, str):
        return value
    return str(_as_int(value, key))


def _as_str_list(value, key):
    if not isinstance(value, list):
        raise ParseMetadataFailed(key)
    return tuple(_as_str(item, key) for item in value)


def _as_artists(value, key):
    if not isinstance(value, list):
        raise ParseMetadataFailed(key)
    artists = []
    for entry in value:
        if not isinstance(entry, list) or len(entry) < 2:
            raise ParseMetadataFailed(key)
        artists.append((_as_str(entry[0], key), _as_int(entry[1], key)))
    return tuple(artists)


def _optional(doc, key, convert):
    value = doc.get(key)
    if value is None or value == '':
        return None
    return convert(value, key)


def _required(doc, key, convert):
    value = doc.get(key, _MISSING)
    if value is _MISSING:
        raise ParseMetadataFailed(key)
    return convert(value, key)


def _resolve_flag(doc):
    if 'flag' in doc:
        return _optional(doc, 'flag', _as_int)
    privilege = doc.get('privilege')
    if isinstance(privilege, dict) and 'flag' in privilege:
        return _optional(privilege, 'flag', _as_int)
    return None


@dataclass(frozen=True)
class NCMMetadata:
    music_name: str
    music_id: str
    artist: tuple
    album: str
    album_id: int
    album_pic_doc_id: int
    album_pic: str
    bitrate: int
    duration: int
    alias: tuple = field(default_factory=tuple)
    trans_names: tuple = field(default_factory=tuple)
    format: str = 'mp3'
    mp3_doc_id: Optional[str] = None
    mv_id: Optional[int] = None
    fee: Optional[int] = None
    flag: Optional[int] = None

    @classmethod
    def from_json(cls, data):
        """Parse decrypted metadata bytes.

        ``musicId``, ``albumId``, ``albumPicDocId``, ``mvId`` and artist ids
        may be JSON numbers or numeric strings. ``musicId`` is kept as a
        string. ``flag`` falls back to ``privilege.flag`` and stays None
        when neither is present.
        """
        try:
            doc = json.loads(data)
        except (UnicodeDecodeError, ValueError) as e:
            raise ParseMetadataFailed() from e
        if not isinstance(doc, dict):
            raise ParseMetadataFailed()

        return cls(
            music_name=_required(doc, 'musicName', _as_str),
            music_id=_required(doc, 'musicId', _as_id_str),
            artist=_required(doc, 'artist', _as_artists),
            album=_required(doc, 'album', _as_str),
            album_id=_required(doc, 'albumId', _as_int),
            album_pic_doc_id=_required(doc, 'albumPicDocId', _as_int),
            album_pic=_required(doc, 'albumPic', _as_str),
            bitrate=_required(doc, 'bitrate', _as_int),
            duration=_required(doc, 'duration', _as_int),
            alias=_required(doc, 'alias', _as_str_list),
            trans_names=_required(doc, 'transNames', _as_str_list),
            format=_required(doc, 'format', _as_str),
            mp3_doc_id=_optional(doc, 'mp3DocId', _as_str),
            mv_id=_optional(doc, 'mvId', _as_int),
            fee=_optional(doc, 'fee', _as_int),
            flag=_resolve_flag(doc),
        )

    @property
    def artist_names(self):
        return [name for name, _ in self.artist]

    def image_extension(self):
        """File extension of the cover, taken from the picture URL."""
        path = self.album_pic.split('?', 1)[0].rsplit('/', 1)[-1]
        if '.' not in path:
            return None
        return path.rsplit('.', 1)[1].lower() or None
