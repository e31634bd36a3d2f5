"""
Base tag source class and shared data types
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional

from .errors import ConfigurationError, FormatError


@dataclass(frozen=True)
class RepositoryReference:
    """Registry host plus repository path, with an optional tag"""
    registry: str
    repository: str
    tag: Optional[str] = None

    @classmethod
    def parse(cls, reference: str) -> 'RepositoryReference':
        """
        Parse a reference into registry, repository and tag

        Examples:
            quay.io/org/repo:tag → ('quay.io', 'org/repo', 'tag')
            localhost:5000/org/repo → ('localhost:5000', 'org/repo', None)

        Args:
            reference: Reference string

        Returns:
            RepositoryReference
        """
        text = reference.strip()
        if '/' not in text:
            raise ConfigurationError(f"reference '{reference}' has no registry host")

        registry, rest = text.split('/', 1)
        if not ('.' in registry or ':' in registry or registry == 'localhost'):
            raise ConfigurationError(f"reference '{reference}' has no registry host")

        # Digest references are not tags
        if '@' in rest:
            raise ConfigurationError(f"digest references are not supported: '{reference}'")

        tag = None
        last = rest.rsplit('/', 1)[-1]
        if ':' in last:
            rest, tag = rest.rsplit(':', 1)
            if not tag:
                raise ConfigurationError(f"reference '{reference}' has an empty tag")

        if not rest or rest.startswith('/') or rest.endswith('/'):
            raise ConfigurationError(f"reference '{reference}' has an invalid repository path")

        return cls(registry=registry, repository=rest, tag=tag)

    def __str__(self) -> str:
        base = f'{self.registry}/{self.repository}'
        return f'{base}:{self.tag}' if self.tag else base


@dataclass(frozen=True)
class TagInfo:
    """A tag in a repository with its last-modified time and size"""
    name: str
    last_modified: datetime
    size: int

    def age(self, now: Optional[datetime] = None) -> timedelta:
        """Time elapsed since the tag was last modified"""
        now = now or datetime.now(timezone.utc)
        return now - self.last_modified

    def __repr__(self) -> str:
        return f"TagInfo(name='{self.name}', last_modified='{self.last_modified.isoformat()}', size={self.size})"


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 1123 ("Thu, 01 Feb 2024 10:00:00 -0000") or ISO 8601 timestamp

    Naive results are taken to be UTC.

    Raises:
        FormatError: If the value matches neither format
    """
    if not isinstance(value, str) or not value.strip():
        raise FormatError(f'invalid timestamp {value!r}')

    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        parsed = None

    if parsed is None:
        try:
            # ISO 8601, as some registries report it
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError as e:
            raise FormatError(f'invalid timestamp {value!r}') from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TagSource(ABC):
    """Abstract base class for tag listing APIs"""

    def __init__(self, base_url: str):
        """
        Initialize tag source

        Args:
            base_url: Base URL of the tag listing API
        """
        self.base_url = base_url

    @abstractmethod
    def list_tags(self, repository: str) -> List[TagInfo]:
        """
        List all tags for a repository

        Args:
            repository: Repository path (e.g., "org/test-artifacts")

        Returns:
            List of TagInfo objects, in server order
        """
        pass

    def filter_tags(
        self,
        tags: List[TagInfo],
        since: timedelta,
        min_size: int = 2,
        now: Optional[datetime] = None,
    ) -> List[TagInfo]:
        """
        Keep recent, non-degenerate tags

        Args:
            tags: List of tags to filter
            since: Maximum age of a tag
            min_size: Tags must be strictly larger than this many bytes (default: 2)
            now: Reference time (default: current UTC time)

        Returns:
            Tags where now - last_modified < since and size > min_size
        """
        now = now or datetime.now(timezone.utc)
        return [t for t in tags if t.age(now) < since and t.size > min_size]
