#!/usr/bin/env python3
"""
NCM Dumper - Decrypt NetEase Cloud Music NCM files

Usage:
    ncm-dumper -i song.ncm some/dir -d out -c -m
    ncm-dumper -f filelist.txt -r -t 4 -s

Music is written next to each input (or into --output-dir) as .mp3/.flac,
the cover as .jpg/.png and the decrypted metadata as .json.

Requirements:
    pip install pycryptodome mutagen requests pillow
"""

import argparse
import logging
import os
import re
import sys
from io import BytesIO
from pathlib import Path
from concurrent.futures import ThreadPoolExecutor, as_completed

try:
    import mutagen
    from mutagen.flac import FLAC, Picture
    from mutagen.mp3 import MP3
    from mutagen.id3 import APIC, ID3, TALB, TIT2, TPE1
    import requests
    from PIL import Image, UnidentifiedImageError
except ImportError:
    print("Error: Missing required libraries.")
    print("Install with: pip install pycryptodome mutagen requests pillow")
    sys.exit(1)

import ncm_parser
from ncm_parser import InvalidHeader, NCMError

logger = logging.getLogger('ncm_dumper')

COVER_API = "https://music.163.com/api/song/detail/?ids=[{}]"

MESSAGES = {
    'en_US': {
        'header': "\x1b[1;91mError:\x1b[0m",
        'invalid_utf8': "Filelist is neither UTF-8 nor GBK encoded.",
        'get_path_meta': "Failed in reading metadata of path.",
        'walkdir': "Failed to read files in directory.",
        'no_output': "No output when enabling '--no-music' only.",
        'no_input': "No NCM files found.",
        'reading_file': "Failed in reading files.",
        'saving_ncm': "Failed in saving ncm files.",
        'saving_img': "Failed in saving cover image.",
        'saving_meta': "Failed in saving metadata.",
        'not_ncm': "This file is not a valid ncm file.",
        'parsing_ncm': "Failed in parsing ncm files.",
        'verify_failed': "Output verification failed.",
        'ok_msg': "Success",
        'found': "Found {} NCM files. ({} threads)",
        'total': "Total: {} | Success: {} | Fail: {}",
    },
    'zh_CN': {
        'header': "\x1b[1;91m错误:\x1b[0m",
        'invalid_utf8': "文件列表既不是 UTF-8 编码也不是 GBK 编码。",
        'get_path_meta': "读取路径信息失败。",
        'walkdir': "读取目录中的文件失败。",
        'no_output': "仅启用 '--no-music' 时没有任何输出。",
        'no_input': "没有找到 NCM 文件。",
        'reading_file': "读取文件失败。",
        'saving_ncm': "保存音乐文件失败。",
        'saving_img': "保存封面图片失败。",
        'saving_meta': "保存元数据失败。",
        'not_ncm': "该文件不是有效的 ncm 文件。",
        'parsing_ncm': "解析 ncm 文件失败。",
        'verify_failed': "输出文件校验失败。",
        'ok_msg': "成功",
        'found': "找到 {} 个 NCM 文件。({} 线程)",
        'total': "总计: {} | 成功: {} | 失败: {}",
    },
}


def get_messages(lang=None):
    lang = lang if lang is not None else os.environ.get('LANG', '')
    if lang.split('.', 1)[0] == 'zh_CN':
        return MESSAGES['zh_CN']
    return MESSAGES['en_US']


def get_worker_count():
    cpu_count = os.cpu_count() or 4
    if cpu_count >= 4:
        return cpu_count - 2
    return max(1, cpu_count - 1)


def verify_output(file_path, audio_format):
    try:
        with open(file_path, 'rb') as f:
            header = f.read(4)
    except OSError:
        return False
    if audio_format == 'flac':
        return header == b'fLaC'
    elif audio_format == 'mp3':
        return header[:3] == b'ID3' or (len(header) >= 2 and header[0] == 0xff and header[1] & 0xe0 == 0xe0)
    return False


def read_filelist(path):
    raw = Path(path).read_bytes()
    try:
        text = raw.decode('utf-8')
    except UnicodeDecodeError:
        text = raw.decode('gbk')
    return [line.strip() for line in text.splitlines() if line.strip()]


def collect_files(inputs, filelists, recursive, msgs):
    """Expand inputs and filelists into NCM paths. Returns (files, errors)."""
    paths = []
    errors = []
    for filelist in filelists or []:
        try:
            paths.extend(read_filelist(filelist))
        except UnicodeDecodeError:
            errors.append(f"{msgs['invalid_utf8']} [{filelist}]")
        except OSError as e:
            errors.append(f"{msgs['reading_file']} [{filelist}] {e}")
    paths.extend(inputs or [])

    files = []
    for path in map(Path, paths):
        if path.is_file():
            files.append(path)
        elif path.is_dir():
            try:
                candidates = path.rglob('*') if recursive else path.iterdir()
                files.extend(p for p in candidates if p.suffix.lower() == '.ncm' and p.is_file())
            except OSError as e:
                errors.append(f"{msgs['walkdir']} [{path}] {e}")
        else:
            errors.append(f"{msgs['get_path_meta']} [{path}]")

    seen = set()
    unique = []
    for f in files:
        key = f.resolve()
        if key not in seen:
            seen.add(key)
            unique.append(f)
    return unique, errors


def fetch_cover(music_id):
    response = requests.get(COVER_API.format(music_id), timeout=5)
    if response.status_code != 200:
        return None
    data = response.json()
    if not data.get('songs'):
        return None
    cover_url = data['songs'][0]['album']['picUrl']
    try:
        return requests.get(cover_url, timeout=5).content
    except requests.RequestException:
        return requests.get(f"{cover_url}?param=3000y3000", timeout=5).content


def image_info(data):
    """Return (mime, extension, size) of an image, detected with Pillow."""
    img = Image.open(BytesIO(data))
    fmt = (img.format or 'JPEG').lower()
    ext = 'jpg' if fmt == 'jpeg' else fmt
    return f"image/{fmt}", ext, img.size


def embed_tags(output_path, audio_format, meta, cover_data):
    mime = None
    if cover_data:
        mime, _, _ = image_info(cover_data)
    artist = '/'.join(meta.artist_names)

    if audio_format == 'flac':
        audio = FLAC(str(output_path))
        audio['title'] = meta.music_name
        audio['album'] = meta.album
        if artist:
            audio['artist'] = artist
        if cover_data:
            audio.clear_pictures()
            pic = Picture()
            pic.type = 3
            pic.mime = mime
            pic.data = cover_data
            audio.add_picture(pic)
        audio.save()
    elif audio_format == 'mp3':
        audio = MP3(str(output_path), ID3=ID3)
        if audio.tags is None:
            audio.add_tags()
        audio.tags.add(TIT2(encoding=3, text=meta.music_name))
        audio.tags.add(TALB(encoding=3, text=meta.album))
        if artist:
            audio.tags.add(TPE1(encoding=3, text=artist))
        if cover_data:
            audio.tags.add(APIC(encoding=3, mime=mime, type=3, data=cover_data))
        audio.save()


def _cover_for(ncm, meta, fetch):
    if fetch and meta.music_id:
        try:
            cover_data = fetch_cover(meta.music_id)
            if cover_data:
                return cover_data, "Online"
        except (requests.RequestException, ValueError, KeyError, IndexError) as e:
            logger.warning("cover download failed for %s: %s", meta.music_id, e)
    image = ncm.get_image()
    if image:
        return image, "Embedded"
    return None, "None"


def output_path_for(base, ext):
    if not re.fullmatch(r'[A-Za-z0-9]+', ext or ''):
        raise ValueError(f"invalid file extension {ext!r}")
    return base.with_suffix(f'.{ext}')


def _failure(file_path, message, error=None):
    detail = f"{message} {error}" if error is not None else message
    return {'success': False, 'file': file_path.name, 'error': detail}


def dump_ncm(file_path, options, msgs=None):
    """Decrypt one NCM file according to ``options``; returns a result dict."""
    msgs = msgs or get_messages()
    file_path = Path(file_path)

    try:
        ncm = ncm_parser.from_path(file_path)
    except InvalidHeader as e:
        return _failure(file_path, msgs['not_ncm'], e)
    except NCMError as e:
        return _failure(file_path, msgs['parsing_ncm'], e)
    except OSError as e:
        return _failure(file_path, msgs['reading_file'], e)

    try:
        meta = ncm.get_parsed_metadata()
    except NCMError as e:
        return _failure(file_path, msgs['parsing_ncm'], e)

    output_dir = Path(options.output_dir) if options.output_dir else file_path.parent
    base = output_dir / file_path.name
    result = {
        'success': True,
        'file': file_path.name,
        'outputs': [],
        'title': meta.music_name,
        'artist': meta.artist_names[0] if meta.artist else 'Unknown',
        'album': meta.album,
        'format': meta.format.upper(),
        'cover': "None",
    }

    if not options.no_music:
        try:
            music = ncm.get_music()
        except NCMError as e:
            return _failure(file_path, msgs['parsing_ncm'], e)
        try:
            output_path = output_path_for(base, meta.format)
        except ValueError as e:
            return _failure(file_path, msgs['saving_ncm'], e)
        try:
            output_path.write_bytes(music)
        except OSError as e:
            return _failure(file_path, msgs['saving_ncm'], e)
        if not verify_output(output_path, meta.format):
            output_path.unlink(missing_ok=True)
            return _failure(file_path, msgs['verify_failed'])
        result['outputs'].append(output_path.name)

        if not options.no_tag:
            cover_data, source = _cover_for(ncm, meta, options.fetch_cover)
            try:
                embed_tags(output_path, meta.format, meta, cover_data)
                if cover_data:
                    _, _, size = image_info(cover_data)
                    result['cover'] = f"{source} {size[0]}x{size[1]}"
            except (mutagen.MutagenError, UnidentifiedImageError, OSError) as e:
                logger.warning("tagging %s failed: %s", output_path, e)
                result['cover'] = "Failed"

    if options.cover_img:
        image = ncm.get_image()
        if image:
            ext = meta.image_extension()
            if ext is None:
                try:
                    _, ext, _ = image_info(image)
                except UnidentifiedImageError:
                    ext = 'jpg'
            try:
                image_path = output_path_for(base, ext)
                image_path.write_bytes(image)
            except (ValueError, OSError) as e:
                return _failure(file_path, msgs['saving_img'], e)
            result['outputs'].append(image_path.name)
        else:
            logger.info("%s has no embedded cover", file_path.name)

    if options.metadata:
        meta_path = base.with_suffix('.json')
        try:
            meta_path.write_bytes(ncm.get_metadata_unchecked())
        except OSError as e:
            return _failure(file_path, msgs['saving_meta'], e)
        result['outputs'].append(meta_path.name)

    return result


def build_parser():
    parser = argparse.ArgumentParser(
        prog='ncm-dumper',
        description="Decrypt NetEase Cloud Music .ncm files into music, cover and metadata.",
    )
    io_group = parser.add_argument_group('Input/Output')
    io_group.add_argument('-i', '--inputs', nargs='+', metavar='FILE|DIR',
                          help="paths of *.ncm files or directories containing them")
    io_group.add_argument('-f', '--filelists', nargs='+', metavar='TXT',
                          help="text files listing one FILE or DIR per line")
    io_group.add_argument('-d', '--output-dir', metavar='DIR',
                          help="output directory (default: beside each input)")
    io_group.add_argument('-r', '--dir-recursive', action='store_true',
                          help="search directories recursively")

    out_group = parser.add_argument_group('OutputFlag')
    out_group.add_argument('-n', '--no-music', action='store_true', help="don't write the music file")
    out_group.add_argument('-c', '--cover-img', action='store_true', help="write the cover image")
    out_group.add_argument('-m', '--metadata', action='store_true', help="write the metadata json")
    out_group.add_argument('--no-tag', action='store_true',
                           help="don't embed title, artist, album and cover into the music file")
    out_group.add_argument('--fetch-cover', action='store_true',
                           help="download the full size cover instead of the embedded one")

    parser.add_argument('-t', '--threads', type=int, default=0, metavar='N',
                        help="number of parallel tasks, 0 for auto")
    parser.add_argument('-s', '--skip-errors', action='store_true',
                        help="report errors and keep going")
    parser.add_argument('-v', '--verbose', action='store_true', help="debug logging")
    return parser


def main(argv=None):
    parser = build_parser()
    options = parser.parse_args(argv)
    msgs = get_messages()

    logging.basicConfig(
        level=logging.DEBUG if options.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    if not options.inputs and not options.filelists:
        parser.error("one of -i/--inputs or -f/--filelists is required")
    if options.threads < 0:
        parser.error("--threads must be >= 0")
    if options.no_music and not options.cover_img and not options.metadata:
        print(f"{msgs['header']} {msgs['no_output']}", file=sys.stderr)
        return 1

    files, errors = collect_files(options.inputs, options.filelists, options.dir_recursive, msgs)
    for error in errors:
        print(f"{msgs['header']} {error}", file=sys.stderr)
    if errors and not options.skip_errors:
        return 1

    if not files:
        print(msgs['no_input'])
        return 0

    if options.output_dir:
        Path(options.output_dir).mkdir(parents=True, exist_ok=True)

    worker_count = options.threads or get_worker_count()
    print(msgs['found'].format(len(files), worker_count))
    print("-" * 50)

    success_count = 0
    fail_count = 0

    with ThreadPoolExecutor(max_workers=worker_count) as executor:
        futures = {executor.submit(dump_ncm, f, options, msgs): f for f in files}

        for i, future in enumerate(as_completed(futures), 1):
            result = future.result()

            if result['success']:
                success_count += 1
                print(f"[{i}/{len(files)}] {result['title']} - {result['artist']} - {msgs['ok_msg']} [{futures[future]}]")
                if result['cover'] != "None":
                    print(f"Cover: {result['cover']}")
            else:
                fail_count += 1
                print(f"{msgs['header']} [{i}/{len(files)}] {result['file']} - {result['error']}", file=sys.stderr)
                if not options.skip_errors:
                    executor.shutdown(wait=True, cancel_futures=True)
                    break

    print("-" * 50)
    print(msgs['total'].format(len(files), success_count, fail_count))
    return 0 if fail_count == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
