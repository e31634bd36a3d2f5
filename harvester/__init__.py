"""
OCI Artifact Harvester

Pulls CI test-run artifacts pushed as OCI images, extracts their archive
blobs onto local disk and indexes the files of interest.
"""

from .base import RepositoryReference, TagInfo, TagSource
from .config import HarvesterConfig, parse_duration
from .errors import (
    ConfigurationError,
    FilesystemError,
    FormatError,
    HarvesterError,
    NetworkError,
    OperationTimeoutError,
)
from .extractor import BlobExtractor
from .harvest import Harvester
from .pool import TaskPool, TaskResult
from .processor import HarvestReport, RepositoryFailure, RepositoryProcessor
from .puller import ArtifactPuller, PullResult
from .quay import QuayTagFetcher
from .scanner import ArtifactScanner, FileIndex, ScannedFile, scan
from .store import LocalContentStore

__all__ = [
    'ArtifactPuller',
    'ArtifactScanner',
    'BlobExtractor',
    'ConfigurationError',
    'FileIndex',
    'FilesystemError',
    'FormatError',
    'Harvester',
    'HarvesterConfig',
    'HarvesterError',
    'HarvestReport',
    'LocalContentStore',
    'NetworkError',
    'OperationTimeoutError',
    'PullResult',
    'QuayTagFetcher',
    'RepositoryFailure',
    'RepositoryProcessor',
    'RepositoryReference',
    'ScannedFile',
    'TagInfo',
    'TagSource',
    'TaskPool',
    'TaskResult',
    'parse_duration',
    'scan',
]

__version__ = '0.1.0'
