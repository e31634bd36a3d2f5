"""
Error taxonomy for the harvester

Every failure raised by the package derives from HarvesterError so callers
can isolate a repository, tag or blob with a single except clause.
"""

from typing import Optional


class HarvesterError(Exception):
    """Base class for harvester errors"""


class ConfigurationError(HarvesterError):
    """Missing or invalid configuration (paths, references, patterns)"""


class NetworkError(HarvesterError):
    """Registry or tag API unreachable, or answered with a non-2xx status"""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class OperationTimeoutError(HarvesterError):
    """A pull or an extraction exceeded its deadline"""

    def __init__(self, message: str, target: Optional[str] = None):
        super().__init__(message)
        self.target = target


class FormatError(HarvesterError):
    """Malformed gzip/tar stream, tag listing, manifest or digest"""


class FilesystemError(HarvesterError):
    """A path could not be created, read or written"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
