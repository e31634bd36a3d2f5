"""
Repository-level orchestration

Fans out over repositories, filters each repository's tags by age and size
and pulls the survivors. Failures stay local: a repository failure is
recorded without touching the others, a tag failure is recorded without
stopping the repository.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from .base import TagSource, TagInfo
from .errors import HarvesterError
from .pool import TaskPool
from .puller import ArtifactPuller, PullResult

logger = logging.getLogger(__name__)


@dataclass
class RepositoryFailure:
    """A repository whose processing failed, and why"""
    repo: str
    error: Exception

    def __str__(self) -> str:
        return f'repository {self.repo}: {self.error}'


@dataclass
class RepositoryReport:
    """Tags pulled and tags failed for one repository"""
    repo: str
    candidates: List[TagInfo] = field(default_factory=list)
    pulled: List[PullResult] = field(default_factory=list)
    failed: Dict[str, Exception] = field(default_factory=dict)


@dataclass
class HarvestReport:
    """Everything that succeeded and everything that failed in one run"""
    repositories: List[RepositoryReport] = field(default_factory=list)
    failures: List[RepositoryFailure] = field(default_factory=list)

    @property
    def pulled(self) -> List[PullResult]:
        return [p for r in self.repositories for p in r.pulled]

    @property
    def failed_tags(self) -> List[Tuple[str, str, Exception]]:
        return [(r.repo, tag, e) for r in self.repositories for tag, e in r.failed.items()]


class RepositoryProcessor:
    """Processes many repositories concurrently with failure isolation"""

    def __init__(
        self,
        tag_source: TagSource,
        puller: ArtifactPuller,
        max_workers: int = 10,
        min_tag_size: int = 2,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize processor

        Args:
            tag_source: Tag listing API
            puller: Puller invoked for every retained tag
            max_workers: Repositories processed at once (default: 10)
            min_tag_size: Tags of this many bytes or fewer are skipped (default: 2)
            clock: Returns the current time (default: UTC now)
        """
        self.tag_source = tag_source
        self.puller = puller
        self.max_workers = max_workers
        self.min_tag_size = min_tag_size
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._claim_lock = threading.Lock()

    def process_repositories(self, repos: List[str], since: timedelta) -> List[RepositoryFailure]:
        """
        Process repositories and return the ones that failed

        Args:
            repos: Repository paths
            since: Maximum tag age

        Returns:
            List of RepositoryFailure
        """
        return self.run(repos, since).failures

    def run(self, repos: List[str], since: timedelta) -> HarvestReport:
        """
        Process repositories and return the full report

        Results are collected only after every repository task finished.
        Each (repository, tag) pair is pulled at most once per call.
        """
        unique = list(dict.fromkeys(repos))
        claimed: Set[Tuple[str, str]] = set()

        with TaskPool(self.max_workers, name='repository') as pool:
            for repo in unique:
                pool.submit(repo, self.process_repository, repo, since, claimed)
            results = pool.results()

        report = HarvestReport()
        for result in results:
            if result.ok:
                report.repositories.append(result.value)
            else:
                report.failures.append(RepositoryFailure(repo=result.key, error=result.error))

        for failure in report.failures:
            logger.error('%s', failure)
        return report

    def process_repository(
        self,
        repo: str,
        since: timedelta,
        claimed: Optional[Set[Tuple[str, str]]] = None,
    ) -> RepositoryReport:
        """
        Fetch, filter and pull the tags of one repository

        Tag listing errors propagate; pull errors are recorded per tag.

        Args:
            repo: Repository path
            since: Maximum tag age
            claimed: (repository, tag) pairs already pulled in this run
        """
        claimed = set() if claimed is None else claimed
        tags = self.tag_source.list_tags(repo)
        candidates = self.tag_source.filter_tags(tags, since, min_size=self.min_tag_size, now=self.clock())
        logger.info('%s: %d of %d tags within %s', repo, len(candidates), len(tags), since)

        report = RepositoryReport(repo=repo, candidates=candidates)
        for tag in candidates:
            if not self._claim(claimed, repo, tag.name):
                continue
            try:
                report.pulled.append(self.puller.process_tag(repo, tag.name, tag.last_modified))
            except HarvesterError as e:
                logger.warning(
                    'failed to process tag %s in repository %s (the tag might have been deleted): %s',
                    tag.name, repo, e,
                )
                report.failed[tag.name] = e

        return report

    def _claim(self, claimed: Set[Tuple[str, str]], repo: str, tag: str) -> bool:
        """Mark (repo, tag) as processed; False if it already was this run"""
        key = (repo, tag)
        with self._claim_lock:
            if key in claimed:
                return False
            claimed.add(key)
            return True
