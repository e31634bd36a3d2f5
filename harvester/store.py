"""
Local content-addressed store in OCI image layout

    <root>/oci-layout
    <root>/index.json
    <root>/blobs/sha256/<hex>

Blobs are append-only: once a digest is in place it is never rewritten.
Downloads are staged under <root>/ingest and renamed into the blob
directory only after their digest checks out, so the blob directory never
holds partial content.
"""

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .errors import FilesystemError, FormatError
from .registry import Descriptor

logger = logging.getLogger(__name__)

_SHA256_RE = re.compile(r'^sha256:([a-f0-9]{64})$')
TAG_ANNOTATION = 'org.opencontainers.image.ref.name'


def digest_hex(digest: str) -> str:
    """Hex part of a sha256 digest; anything else is a FormatError"""
    match = _SHA256_RE.match(digest or '')
    if not match:
        raise FormatError(f'unsupported or malformed digest {digest!r}')
    return match.group(1)


def _file_sha256(path: Path) -> str:
    hasher = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b''):
            hasher.update(chunk)
    return hasher.hexdigest()


class LocalContentStore:
    """Digest-addressed blob store on local disk"""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.blob_dir = self.root / 'blobs' / 'sha256'
        self.ingest_dir = self.root / 'ingest'
        self.index_path = self.root / 'index.json'
        self._index_lock = threading.Lock()
        self._init_layout()

    def _init_layout(self):
        try:
            self.blob_dir.mkdir(parents=True, exist_ok=True)
            self.ingest_dir.mkdir(parents=True, exist_ok=True)
            layout = self.root / 'oci-layout'
            if not layout.exists():
                layout.write_text(json.dumps({'imageLayoutVersion': '1.0.0'}))
            if not self.index_path.exists():
                self._write_index({'schemaVersion': 2, 'manifests': []})
        except OSError as e:
            raise FilesystemError(f'failed to initialize OCI store at {self.root}: {e}', path=str(self.root)) from e

    def blob_path(self, digest: str) -> Path:
        return self.blob_dir / digest_hex(digest)

    def exists(self, digest: str) -> bool:
        return self.blob_path(digest).is_file()

    def write_blob(self, digest: str, chunks: Iterable[bytes]) -> Path:
        """
        Store a blob under its digest

        An existing blob is kept as is and ``chunks`` is not consumed.

        Args:
            digest: Expected sha256 digest
            chunks: Blob content

        Returns:
            Path of the stored blob
        """
        def write(path: Path):
            with open(path, 'wb') as f:
                for chunk in chunks:
                    f.write(chunk)

        return self.ingest(digest, write)

    def ingest(self, digest: str, fetch: Callable[[Path], object]) -> Path:
        """
        Store a blob that ``fetch`` writes to a staging file

        ``fetch`` is not called when the digest is already stored.

        Args:
            digest: Expected sha256 digest
            fetch: Writes the blob content to the path it is given

        Returns:
            Path of the stored blob
        """
        target = self.blob_path(digest)
        if target.is_file():
            return target

        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.ingest_dir, prefix=digest_hex(digest)[:12] + '-')
            os.close(fd)
        except OSError as e:
            raise FilesystemError(f'failed to stage blob {digest}: {e}', path=str(self.ingest_dir)) from e

        tmp_path = Path(tmp_name)
        try:
            fetch(tmp_path)

            actual = 'sha256:' + _file_sha256(tmp_path)
            if actual != digest:
                raise FormatError(f'digest mismatch for blob {digest}: content hashes to {actual}')

            if target.exists():
                # Another task stored the same digest meanwhile
                return target
            os.replace(tmp_path, target)
            logger.debug('stored blob %s', digest)
            return target
        except OSError as e:
            raise FilesystemError(f'failed to write blob {digest}: {e}', path=str(target)) from e
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def read_blob(self, digest: str) -> bytes:
        try:
            return self.blob_path(digest).read_bytes()
        except OSError as e:
            raise FilesystemError(f'failed to read blob {digest}: {e}', path=str(self.blob_path(digest))) from e

    def tag(self, descriptor: Descriptor, tag: str):
        """Point ``tag`` at a manifest in index.json, replacing any previous target"""
        entry = descriptor.to_dict()
        entry['annotations'] = {**entry.get('annotations', {}), TAG_ANNOTATION: tag}

        with self._index_lock:
            index = self._read_index()
            manifests = [
                m for m in index.get('manifests', [])
                if (m.get('annotations') or {}).get(TAG_ANNOTATION) != tag
            ]
            manifests.append(entry)
            index['manifests'] = manifests
            self._write_index(index)

    def resolve(self, tag: str) -> Optional[Descriptor]:
        """Descriptor of the manifest ``tag`` points at, if any"""
        with self._index_lock:
            index = self._read_index()
        for entry in index.get('manifests', []):
            if (entry.get('annotations') or {}).get(TAG_ANNOTATION) == tag:
                return Descriptor.from_dict(entry)
        return None

    def tags(self) -> List[str]:
        with self._index_lock:
            index = self._read_index()
        return [
            (m.get('annotations') or {})[TAG_ANNOTATION]
            for m in index.get('manifests', [])
            if TAG_ANNOTATION in (m.get('annotations') or {})
        ]

    def _read_index(self) -> dict:
        try:
            return json.loads(self.index_path.read_text())
        except FileNotFoundError:
            return {'schemaVersion': 2, 'manifests': []}
        except ValueError as e:
            raise FormatError(f'malformed OCI index {self.index_path}: {e}') from e
        except OSError as e:
            raise FilesystemError(f'failed to read {self.index_path}: {e}', path=str(self.index_path)) from e

    def _write_index(self, index: dict):
        tmp_path = self.index_path.with_suffix('.json.tmp')
        try:
            tmp_path.write_text(json.dumps(index, indent=2))
            os.replace(tmp_path, self.index_path)
        except OSError as e:
            raise FilesystemError(f'failed to write {self.index_path}: {e}', path=str(self.index_path)) from e
