"""
Pulls one repository tag into the local content store and extracts it
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Set, Tuple

from .config import HarvesterConfig
from .deadline import Deadline
from .errors import FilesystemError
from .extractor import BlobExtractor, BlobResult
from .registry import Descriptor, Manifest, RegistryClient, parse_manifest
from .store import LocalContentStore, digest_hex

logger = logging.getLogger(__name__)


@dataclass
class PullResult:
    """What one process_tag call copied and extracted"""
    repository: str
    tag: str
    output_dir: Path
    digests: List[str]
    blobs: List[BlobResult] = field(default_factory=list)

    @property
    def failed_blobs(self) -> List[BlobResult]:
        return [b for b in self.blobs if not b.ok]


class ArtifactPuller:
    """Copies a tag's manifest and blobs locally, then extracts the archives"""

    def __init__(
        self,
        config: HarvesterConfig,
        store: Optional[LocalContentStore] = None,
        extractor: Optional[BlobExtractor] = None,
        client_factory: Optional[Callable[[str], RegistryClient]] = None,
    ):
        """
        Initialize puller

        Args:
            config: Harvester configuration
            store: Local content store (default: one at config.cache_dir)
            extractor: Blob extractor (default: built from config)
            client_factory: Builds a RegistryClient for a repository path
        """
        self.config = config
        self.store = store or LocalContentStore(config.cache_dir)
        self.extractor = extractor or BlobExtractor.from_config(config)
        self._client_factory = client_factory or self._default_client

    def _default_client(self, repository: str) -> RegistryClient:
        return RegistryClient.from_config(self.config, repository)

    def setup_remote_repository(self, repository: str) -> RegistryClient:
        return self._client_factory(repository)

    def process_tag(self, repository: str, tag: str, created: Optional[datetime] = None) -> PullResult:
        """
        Pull a tag and extract its archive blobs

        The registry part runs under a single pull_timeout deadline; each
        blob extraction then runs under its own extract_timeout.

        Args:
            repository: Repository path (e.g., "org/test-artifacts")
            tag: Tag name
            created: Tag last-modified time, used for the output path (default: now)

        Returns:
            PullResult
        """
        created = created or datetime.now(timezone.utc)
        deadline = Deadline(self.config.pull_timeout, operation=f'pull of {repository}:{tag}')

        client = self.setup_remote_repository(repository)
        _, digests = self.copy_tag(client, tag, deadline)
        deadline.check(f'{repository}:{tag}')

        output_dir = self.output_directory(repository, created, tag)
        try:
            output_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f'failed to create output directory {output_dir}: {e}', path=str(output_dir)) from e

        only = None
        if self.config.extract_scope == 'manifest':
            only = {digest_hex(d) for d in digests}

        blobs = self.extractor.extract_dir(self.store.blob_dir, output_dir, only=only)
        result = PullResult(repository=repository, tag=tag, output_dir=output_dir, digests=digests, blobs=blobs)

        if result.failed_blobs:
            logger.warning('%s:%s: %d blob(s) failed to extract', repository, tag, len(result.failed_blobs))
        return result

    def output_directory(self, repository: str, created: datetime, tag: str) -> Path:
        """output_root/<repository>/<YYYY-MM-DD>/<tag>"""
        return self.config.output_root / repository / created.strftime('%Y-%m-%d') / tag

    def copy_tag(self, client: RegistryClient, tag: str, deadline: Deadline) -> Tuple[Descriptor, List[str]]:
        """
        Copy a tag's manifest graph into the store and tag it there

        Returns:
            (manifest descriptor, digests referenced by the tag)
        """
        manifest = client.fetch_manifest(tag, deadline)
        digests = self._copy_manifest(client, manifest, deadline, set())
        self.store.tag(manifest.descriptor, tag)
        logger.info('copied %s:%s (%s, %d blobs)', client.repository, tag, manifest.descriptor.digest, len(digests))
        return manifest.descriptor, digests

    def _copy_manifest(self, client: RegistryClient, manifest: Manifest, deadline: Deadline, seen: Set[str]) -> List[str]:
        digests = []
        seen.add(manifest.descriptor.digest)

        if manifest.is_index:
            for child in manifest.children():
                if child.digest in seen:
                    continue
                child_manifest = self._load_manifest(client, child, deadline)
                digests.extend(self._copy_manifest(client, child_manifest, deadline, seen))
        else:
            for descriptor in manifest.blobs():
                if descriptor.digest in seen:
                    continue
                seen.add(descriptor.digest)
                self.store.ingest(
                    descriptor.digest,
                    lambda path, digest=descriptor.digest: client.fetch_blob(digest, path, deadline),
                )
                digests.append(descriptor.digest)

        # Manifest goes in last: a stored manifest implies its content is stored
        self.store.write_blob(manifest.descriptor.digest, [manifest.content])
        digests.append(manifest.descriptor.digest)
        return digests

    def _load_manifest(self, client: RegistryClient, descriptor: Descriptor, deadline: Deadline) -> Manifest:
        if self.store.exists(descriptor.digest):
            return parse_manifest(self.store.read_blob(descriptor.digest), descriptor.media_type, descriptor.digest)
        return client.fetch_manifest(descriptor.digest, deadline)

    def pull_files(self, repository: str, tag: str, dest: Path) -> List[Path]:
        """
        Pull a tag's layers as named files, the way ``oras pull`` does

        Layers are written under their org.opencontainers.image.title
        annotation; layers annotated for unpacking are extracted into
        ``dest``. Untitled layers are skipped.

        Args:
            repository: Repository path
            tag: Tag name
            dest: Destination directory

        Returns:
            Paths written
        """
        dest = Path(dest)
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f'failed to create {dest}: {e}', path=str(dest)) from e

        deadline = Deadline(self.config.pull_timeout, operation=f'pull of {repository}:{tag}')
        client = self.setup_remote_repository(repository)
        written = client.pull(tag, dest, deadline)
        logger.info('pulled %d file(s) of %s:%s into %s', len(written), repository, tag, dest)
        return written
