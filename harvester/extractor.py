"""
Archive blob detection and extraction

Blobs in the local store are scanned, gzip-compressed tar archives among
them are unpacked into an output directory. Each blob gets its own
deadline and runs on a bounded pool; a slow or broken blob only fails
itself.
"""

import gzip
import logging
import os
import tarfile
import tempfile
import threading
import zlib
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Collection, List, Optional

from .errors import FilesystemError, FormatError, HarvesterError, OperationTimeoutError
from .pool import TaskPool, TaskResult

logger = logging.getLogger(__name__)

GZIP_MAGIC = b'\x1f\x8b'
ARCHIVE_SUFFIXES = ('.tar.gz', '.tgz')
COPY_CHUNK_SIZE = 64 * 1024
DIR_MODE = 0o750
FILE_MODE = 0o640

BlobResult = TaskResult


class ExtractionCancelled(HarvesterError):
    """Raised inside an extraction whose caller stopped waiting for it"""


def is_archive_blob(path: Path) -> bool:
    """
    Whether a blob should be treated as a tar.gz archive

    Non-empty files qualify when they start with the gzip magic bytes or
    carry a .tar.gz/.tgz suffix.
    """
    try:
        if path.stat().st_size == 0:
            return False
        with open(path, 'rb') as f:
            head = f.read(2)
    except OSError:
        return False
    return head == GZIP_MAGIC or path.name.endswith(ARCHIVE_SUFFIXES)


def _member_destination(dest: Path, name: str) -> Path:
    """Destination of a tar member, refusing paths that leave ``dest``"""
    if os.path.isabs(name) or '..' in Path(name).parts:
        raise FormatError(f'tar entry {name!r} escapes the destination directory')
    return dest / name


def _is_empty_gzip(archive: Path) -> bool:
    """Whether ``archive`` is a complete gzip stream of zero bytes"""
    try:
        with gzip.open(archive, 'rb') as f:
            return f.read(1) == b''
    except (OSError, EOFError, zlib.error):
        return False


def _check_cancel(cancel: Optional[threading.Event]):
    if cancel is not None and cancel.is_set():
        raise ExtractionCancelled('extraction cancelled')


def extract_tar_gz(archive: Path, dest: Path, cancel: Optional[threading.Event] = None) -> int:
    """
    Stream-extract a tar.gz archive into ``dest``

    Directories are created recursively. Regular files that already exist
    at their destination are left untouched, also when another extraction
    creates them meanwhile. Any other entry type is an error. An archive
    without entries extracts nothing. ``cancel`` is checked between entries
    and between copied chunks.

    Args:
        archive: Path of the gzip-compressed tar
        dest: Destination directory
        cancel: Optional event that aborts the extraction when set

    Returns:
        Number of files written
    """
    written = 0
    try:
        with open(archive, 'rb') as fileobj, tarfile.open(fileobj=fileobj, mode='r|gz') as tar:
            for member in tar:
                _check_cancel(cancel)
                target = _member_destination(dest, member.name)

                if member.isdir():
                    target.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
                elif member.isfile():
                    if target.exists():
                        continue
                    target.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
                    if _copy_member(tar.extractfile(member), target, cancel):
                        written += 1
                else:
                    raise FormatError(f'unsupported tar entry {member.name!r} (type {member.type!r})')
    except tarfile.ReadError as e:
        # tarfile refuses a stream that ends before the first header
        if str(e) == 'empty file' and _is_empty_gzip(archive):
            logger.debug('%s holds no tar entries', archive)
            return 0
        raise FormatError(f'malformed tar.gz stream in {archive}: {e}') from e
    except (tarfile.TarError, EOFError, zlib.error) as e:
        raise FormatError(f'malformed tar.gz stream in {archive}: {e}') from e
    except OSError as e:
        raise FilesystemError(f'failed to extract {archive} into {dest}: {e}', path=str(dest)) from e

    return written


def _copy_member(source, target: Path, cancel: Optional[threading.Event]) -> bool:
    """
    Write a tar member beside ``target``, then link it into place

    The link fails when ``target`` exists, so a file created meanwhile by
    another extraction is kept and the partial copy never shows up.

    Returns:
        False if ``target`` already existed
    """
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f'.{target.name}.', suffix='.part')
    try:
        with source, os.fdopen(fd, 'wb') as out:
            while True:
                _check_cancel(cancel)
                chunk = source.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
        os.chmod(tmp_name, FILE_MODE)
        try:
            os.link(tmp_name, target)
        except FileExistsError:
            return False
        return True
    finally:
        os.unlink(tmp_name)


class BlobExtractor:
    """Extracts archive blobs with bounded concurrency and per-blob deadlines"""

    def __init__(self, max_workers: int = 10, timeout: float = 60.0):
        """
        Initialize extractor

        Args:
            max_workers: Concurrent extraction slots (default: 10)
            timeout: Per-blob extraction deadline in seconds (default: 60)
        """
        self.max_workers = max_workers
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> 'BlobExtractor':
        return cls(max_workers=config.blob_workers, timeout=config.extract_timeout)

    def extract_dir(
        self,
        blob_dir: Path,
        output_dir: Path,
        only: Optional[Collection[str]] = None,
    ) -> List[BlobResult]:
        """
        Extract every archive blob found in ``blob_dir``

        Args:
            blob_dir: Directory holding blob files
            output_dir: Destination directory
            only: Optional file names to restrict extraction to

        Returns:
            One BlobResult per blob: value True (extracted), False (not an
            archive) or an error
        """
        try:
            entries = sorted(p for p in Path(blob_dir).iterdir() if p.is_file())
        except OSError as e:
            raise FilesystemError(f'failed to read blob directory {blob_dir}: {e}', path=str(blob_dir)) from e

        if only is not None:
            wanted = set(only)
            entries = [p for p in entries if p.name in wanted]

        with TaskPool(self.max_workers, name='blob') as pool:
            for path in entries:
                pool.submit(str(path), self.process_blob, path, Path(output_dir))
            results = pool.results()

        for result in results:
            if not result.ok:
                logger.error('Error: %s', result.error)

        extracted = sum(1 for r in results if r.ok and r.value)
        logger.info('extracted %d of %d blobs into %s', extracted, len(results), output_dir)
        return results

    def process_blob(self, blob_path: Path, output_dir: Path) -> bool:
        """
        Extract one blob if it is an archive

        Returns:
            True when extracted, False when ignored
        """
        if not is_archive_blob(blob_path):
            return False

        self.extract_blob(blob_path, output_dir)
        return True

    def extract_blob(self, blob_path: Path, output_dir: Path):
        """
        Extract one archive under the per-blob deadline

        The extraction runs on its own thread; this call waits on its
        completion for at most ``timeout`` seconds. On expiry the extraction
        is told to stop at its next chunk boundary and OperationTimeoutError
        names the blob.
        """
        done: Future = Future()
        cancel = threading.Event()

        def run():
            try:
                done.set_result(extract_tar_gz(blob_path, output_dir, cancel))
            except BaseException as e:
                done.set_exception(e)

        worker = threading.Thread(target=run, name=f'extract-{blob_path.name[:12]}', daemon=True)
        worker.start()

        try:
            done.result(timeout=self.timeout)
        except FutureTimeoutError:
            cancel.set()
            raise OperationTimeoutError(
                f'timeout while extracting blob {blob_path}', target=str(blob_path)
            ) from None
