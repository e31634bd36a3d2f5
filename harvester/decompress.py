"""
Decompress standalone .gz files in place

Extracted artifacts often contain individually gzipped logs. Each one is
decompressed next to itself, named after the gzip header's original file
name when present, and the .gz is removed afterwards.
"""

import gzip
import logging
import os
import shutil
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import FilesystemError, FormatError, HarvesterError

logger = logging.getLogger(__name__)

_FEXTRA = 0x04
_FNAME = 0x08


@dataclass(frozen=True)
class GzFileInfo:
    """A gzipped file and the directory it lives in"""
    file_path: Path
    dir_path: Path


def find_gz_files(root: Path) -> List[GzFileInfo]:
    """
    All .gz files below ``root``

    Args:
        root: Directory to walk

    Returns:
        List of GzFileInfo, in walk order
    """
    gz_files = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in sorted(filenames):
            if name.endswith('.gz'):
                gz_files.append(GzFileInfo(file_path=Path(dirpath) / name, dir_path=Path(dirpath)))
    return gz_files


def read_gzip_name(path: Path) -> Optional[str]:
    """Original file name stored in a gzip header (FNAME), if any"""
    with open(path, 'rb') as f:
        header = f.read(10)
        if len(header) < 10 or header[:2] != b'\x1f\x8b':
            raise FormatError(f'{path} is not a gzip file')

        flags = header[3]
        if flags & _FEXTRA:
            extra_len = int.from_bytes(f.read(2), 'little')
            f.read(extra_len)
        if not flags & _FNAME:
            return None

        name = bytearray()
        while True:
            byte = f.read(1)
            if not byte or byte == b'\x00':
                break
            name += byte
    return name.decode('latin-1') or None


def extract_gz_file(gz_path: Path, dest_dir: Path) -> Optional[Path]:
    """
    Decompress one .gz file into ``dest_dir``

    Empty files are skipped. The output name comes from the gzip header
    (base name only) or from the file name without ".gz".

    Args:
        gz_path: Path of the .gz file
        dest_dir: Directory for the decompressed file

    Returns:
        Path of the decompressed file, or None when skipped
    """
    gz_path = Path(gz_path)
    try:
        if gz_path.stat().st_size == 0:
            return None
    except OSError as e:
        raise FilesystemError(f'failed to get stat for .gz file {gz_path}: {e}', path=str(gz_path)) from e

    try:
        header_name = read_gzip_name(gz_path)
    except OSError as e:
        raise FilesystemError(f'failed to open .gz file {gz_path}: {e}', path=str(gz_path)) from e

    output_name = os.path.basename(header_name) if header_name else ''
    if output_name == gz_path.name:
        output_name = ''
    if output_name in ('', '.', '..'):
        output_name = gz_path.name[:-len('.gz')] if gz_path.name.endswith('.gz') else gz_path.name + '.out'
    output_path = Path(dest_dir) / output_name

    try:
        with gzip.open(gz_path, 'rb') as source, open(output_path, 'wb') as out:
            shutil.copyfileobj(source, out)
    except (gzip.BadGzipFile, EOFError, zlib.error) as e:
        raise FormatError(f'failed to decompress {gz_path}: {e}') from e
    except OSError as e:
        raise FilesystemError(f'failed to write decompressed data to {output_path}: {e}', path=str(output_path)) from e

    return output_path


def uncompress_gz_files(root: Path) -> Tuple[List[Path], List[Tuple[Path, HarvesterError]]]:
    """
    Decompress every .gz file below ``root`` and remove the originals

    A file that fails to decompress is logged and still removed.

    Args:
        root: Directory to walk

    Returns:
        (decompressed paths, [(gz path, error), ...])
    """
    decompressed = []
    failures = []

    for info in find_gz_files(root):
        try:
            output = extract_gz_file(info.file_path, info.dir_path)
            if output:
                decompressed.append(output)
        except HarvesterError as e:
            logger.warning('file %s was not extracted successfully: %s', info.file_path, e)
            failures.append((info.file_path, e))

        try:
            info.file_path.unlink()
        except OSError as e:
            logger.warning('failed to remove gz file %s: %s', info.file_path, e)

    return decompressed, failures
