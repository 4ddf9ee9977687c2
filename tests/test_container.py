"""Tests for container parsing and the decrypt-once file handle."""

import io

import pytest

from conftest import SAMPLE_METADATA, TrickleReader, build_ncm, reference_keystream
import ncm_parser
from ncm_parser import (
    BufferState,
    DecryptMetadataFailed,
    DecryptRC4KeyFailed,
    EndOfFile,
    InvalidHeader,
    ParseMetadataFailed,
)

AUDIO = b'ID3\x03\x00audio-payload'


def parse_all_ways(data):
    return [
        ncm_parser.from_iter(iter(data)),
        ncm_parser.from_bytes(data),
        ncm_parser.from_reader(io.BytesIO(data)),
    ]


class TestParse:

    def test_sample_container(self, ncm_bytes):
        ncm = ncm_parser.from_bytes(ncm_bytes)
        assert ncm.music_state is BufferState.RAW
        assert ncm.metadata_state is BufferState.RAW

        meta = ncm.get_parsed_metadata()
        assert meta.music_name == "T"
        assert meta.format == "mp3"

        music = ncm.get_music()
        assert len(music) == len(AUDIO)
        assert music == AUDIO
        table = reference_keystream(b'\x2a')
        assert bytes(a ^ b for a, b in zip(AUDIO, table)) == ncm_bytes[-len(AUDIO):]

    def test_shapes_agree(self):
        data = build_ncm(key_material=b'secret key', image=b'\x89PNG\r\n\x1a\nimg', audio=bytes(range(256)) * 3)
        handles = parse_all_ways(data)
        for ncm in handles:
            ncm.get_music()
            ncm.get_metadata()
        first = handles[0]
        for other in handles[1:]:
            assert other.get_music() == first.get_music()
            assert other.get_metadata() == first.get_metadata()
            assert other.get_image() == first.get_image()
        assert first.get_image() == b'\x89PNG\r\n\x1a\nimg'
        assert first.get_music() == bytes(range(256)) * 3

    def test_reader_short_reads_keep_whole_audio(self):
        audio = bytes(range(256)) + AUDIO
        data = build_ncm(image=b"cover", audio=audio)
        ncm = ncm_parser.from_reader(TrickleReader(data))
        assert ncm.get_music() == ncm_parser.from_bytes(data).get_music() == audio
        assert ncm.get_image() == b"cover"

    def test_header_suffix_not_validated(self):
        ncm = ncm_parser.from_bytes(build_ncm(suffix=b'\xff\xff'))
        assert ncm.get_parsed_metadata().music_name == "T"

    @pytest.mark.parametrize("magic", [b'CTENFDAN', b'ctenfdam', b'\x00' * 8])
    def test_invalid_header(self, magic):
        data = build_ncm(magic=magic)
        for parse in (ncm_parser.from_bytes, lambda d: ncm_parser.from_reader(io.BytesIO(d))):
            with pytest.raises(InvalidHeader):
                parse(data)

    def test_invalid_header_checked_before_segments(self):
        with pytest.raises(InvalidHeader):
            ncm_parser.from_bytes(b'NOTANCM!\x01\x70')

    def test_truncated_everywhere(self, ncm_bytes):
        # Everything up to the end of the image segment is required; audio may be empty.
        required = len(ncm_bytes) - len(AUDIO)
        for cut in range(required):
            data = ncm_bytes[:cut]
            with pytest.raises(EndOfFile):
                ncm_parser.from_bytes(data)
            with pytest.raises(EndOfFile):
                ncm_parser.from_reader(io.BytesIO(data))

    def test_empty_audio(self):
        ncm = ncm_parser.from_bytes(build_ncm(audio=b''))
        assert ncm.get_music() == b''

    def test_from_path(self, tmp_path, ncm_bytes):
        path = tmp_path / "song.ncm"
        path.write_bytes(ncm_bytes)
        assert ncm_parser.from_path(path).get_music() == AUDIO


class TestDecryptOnce:

    def test_music_idempotent(self, ncm_bytes):
        ncm = ncm_parser.from_bytes(ncm_bytes)
        first = ncm.get_music()
        assert ncm.music_state is BufferState.DECRYPTED
        assert ncm.get_music() == first
        assert ncm.get_music_unchecked() == first

    def test_metadata_idempotent(self, ncm_bytes):
        ncm = ncm_parser.from_bytes(ncm_bytes)
        raw = ncm.get_metadata_unchecked()
        first = ncm.get_metadata()
        assert first != raw
        assert ncm.get_metadata() == first
        assert ncm.metadata_state is BufferState.DECRYPTED

    def test_unchecked_before_decrypt(self, ncm_bytes):
        ncm = ncm_parser.from_bytes(ncm_bytes)
        assert ncm.get_music_unchecked() == ncm_bytes[-len(AUDIO):]
        assert ncm.get_metadata_unchecked().startswith(b"163 key(Don't modify):")

    def test_states_are_independent(self, ncm_bytes):
        ncm = ncm_parser.from_bytes(ncm_bytes)
        ncm.get_metadata()
        assert ncm.music_state is BufferState.RAW
        assert ncm.metadata_state is BufferState.DECRYPTED

    def test_bad_key_stays_raw(self):
        ncm = ncm_parser.from_bytes(build_ncm(key_segment=b'\x00' * 16))
        ciphered = ncm.get_music_unchecked()
        for _ in range(2):
            with pytest.raises(DecryptRC4KeyFailed):
                ncm.get_music()
        assert ncm.music_state is BufferState.RAW
        assert ncm.get_music_unchecked() == ciphered

    def test_bad_metadata_stays_raw(self):
        ncm = ncm_parser.from_bytes(build_ncm(metadata_segment=b'plain text'))
        for _ in range(2):
            with pytest.raises(DecryptMetadataFailed):
                ncm.get_metadata()
        assert ncm.metadata_state is BufferState.RAW

    def test_missing_music_name_leaves_buffers(self):
        doc = dict(SAMPLE_METADATA)
        del doc['musicName']
        ncm = ncm_parser.from_bytes(build_ncm(image=b'cover', metadata=doc))
        ciphered = ncm.get_music_unchecked()
        with pytest.raises(ParseMetadataFailed):
            ncm.get_parsed_metadata()
        assert ncm.get_music_unchecked() == ciphered
        assert ncm.music_state is BufferState.RAW
        assert ncm.get_image() == b'cover'
