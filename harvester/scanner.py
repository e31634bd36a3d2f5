"""
Indexes extracted artifact files by path pattern
"""

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Pattern

from .base import RepositoryReference
from .errors import ConfigurationError, FilesystemError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScannedFile:
    """Bare file name and full content of an indexed file"""
    filename: str
    content: str


# e.g. {"/tmp/x/e2e-test/e2e-report.xml": ScannedFile("e2e-report.xml", "<testsuites ...")}
FileIndex = Dict[str, ScannedFile]


def compile_patterns(patterns: List[str]) -> List[Pattern]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise ConfigurationError(f'invalid file pattern {pattern!r}: {e}') from e
    return compiled


def scan(root, patterns: List[str]) -> FileIndex:
    """
    Index every file below ``root`` whose path matches any pattern

    Matched files are read fully into memory; there is no size cap.

    Args:
        root: Directory to walk
        patterns: Regular expressions, searched in the full path

    Returns:
        FileIndex keyed by full path
    """
    compiled = compile_patterns(patterns)
    index: FileIndex = {}

    def on_error(error: OSError):
        raise FilesystemError(f'failed to visit file in path {error.filename}: {error}', path=error.filename)

    for dirpath, _dirnames, filenames in os.walk(root, onerror=on_error):
        for name in filenames:
            path = os.path.join(dirpath, name)
            if not os.path.isfile(path):
                continue
            if not any(p.search(path) for p in compiled):
                continue
            try:
                with open(path, 'rb') as f:
                    content = f.read().decode('utf-8', errors='replace')
            except OSError as e:
                raise FilesystemError(f'failed to read {path}: {e}', path=path) from e
            index[path] = ScannedFile(filename=name, content=content)

    logger.debug('indexed %d files under %s', len(index), root)
    return index


class ArtifactScanner:
    """Pulls an artifact (optionally) and indexes the files of interest"""

    def __init__(self, patterns: List[str], puller=None):
        """
        Initialize scanner

        Args:
            patterns: File path patterns (regular expressions, OR-ed)
            puller: ArtifactPuller, only needed for run()
        """
        compile_patterns(patterns)
        self.patterns = list(patterns)
        self.puller = puller
        self.artifact_dir: Optional[Path] = None
        self.files: FileIndex = {}

    def scan(self, root) -> FileIndex:
        self.files = scan(root, self.patterns)
        return self.files

    def run(self, reference: str) -> FileIndex:
        """
        Pull ``registry/repo:tag`` into a new temporary directory and scan it

        The directory is kept after the call (see ``artifact_dir``).
        """
        if self.puller is None:
            raise ConfigurationError('ArtifactScanner.run needs a puller')

        ref = RepositoryReference.parse(reference)
        if not ref.tag:
            raise ConfigurationError(f"reference '{reference}' has no tag")
        if ref.registry != self.puller.config.registry:
            raise ConfigurationError(f"the repository must start with '{self.puller.config.registry}/'")

        try:
            self.artifact_dir = Path(tempfile.mkdtemp(prefix='artifact-content'))
        except OSError as e:
            raise FilesystemError(f'failed to create temporary directory for pulling {reference}: {e}') from e

        self.puller.pull_files(ref.repository, ref.tag, self.artifact_dir)
        return self.scan(self.artifact_dir)
