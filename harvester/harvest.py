"""
Harvester facade

Wires the fetcher, puller, extractor and processor from one
HarvesterConfig and runs the two download modes: a single tag, or every
recent tag of a set of repositories.
"""

import logging
import shutil
from datetime import timedelta
from typing import List, Optional

from .base import RepositoryReference
from .config import HarvesterConfig
from .decompress import uncompress_gz_files
from .errors import ConfigurationError, FilesystemError
from .extractor import BlobExtractor
from .processor import HarvestReport, RepositoryProcessor
from .puller import ArtifactPuller, PullResult
from .quay import QuayTagFetcher
from .store import LocalContentStore

logger = logging.getLogger(__name__)


class Harvester:
    """Downloads CI artifacts from a registry into config.output_root"""

    def __init__(
        self,
        config: HarvesterConfig,
        tag_source=None,
        puller: Optional[ArtifactPuller] = None,
    ):
        self.config = config
        try:
            config.cache_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f'could not create cache directory {config.cache_dir}: {e}',
                                  path=str(config.cache_dir)) from e

        self.tag_source = tag_source or QuayTagFetcher.from_config(config)
        self.puller = puller or ArtifactPuller(
            config,
            store=LocalContentStore(config.cache_dir),
            extractor=BlobExtractor.from_config(config),
        )
        self.processor = RepositoryProcessor(
            self.tag_source,
            self.puller,
            max_workers=config.repository_workers,
            min_tag_size=config.min_tag_size,
        )

    def _repository_path(self, reference: str) -> RepositoryReference:
        ref = RepositoryReference.parse(reference)
        if ref.registry != self.config.registry:
            raise ConfigurationError(f"the repository must start with '{self.config.registry}/'")
        return ref

    def download_tag(self, reference: str) -> PullResult:
        """
        Download one tag, e.g. "quay.io/org/repo:1.0"

        The output date is today's date.
        """
        ref = self._repository_path(reference)
        if not ref.tag:
            raise ConfigurationError('tag is missing in the repository reference')

        result = self.puller.process_tag(ref.repository, ref.tag)
        self._post_process()
        return result

    def download_repositories(self, repos: List[str], since: Optional[timedelta] = None) -> HarvestReport:
        """
        Download every recent tag of ``repos`` (e.g. ["quay.io/org/repo"])

        Args:
            repos: Repository references, without tags
            since: Maximum tag age (default: config.since)

        Returns:
            HarvestReport
        """
        since = since if since is not None else self.config.since
        if since is None:
            raise ConfigurationError('a time window (since) is required when downloading repositories')

        paths = [self._repository_path(repo).repository for repo in repos]
        logger.info('Downloading latest artifacts from the last %s', since)

        report = self.processor.run(paths, since)
        if report.failures:
            logger.warning('Errors encountered during processing:')
            for failure in report.failures:
                logger.warning(' - %s', failure)

        self._post_process()
        return report

    def _post_process(self):
        if self.config.uncompress_gz_files and self.config.output_root.exists():
            uncompress_gz_files(self.config.output_root)

    def close(self):
        """Remove the cache directory when no_cache is set"""
        if self.config.no_cache and self.config.cache_dir.exists():
            try:
                shutil.rmtree(self.config.cache_dir)
            except OSError as e:
                logger.warning('could not remove cache directory %s: %s', self.config.cache_dir, e)

    def __enter__(self) -> 'Harvester':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
