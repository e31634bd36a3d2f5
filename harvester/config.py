"""
Harvester configuration

A single HarvesterConfig is built once (directly, from a dict or from a YAML
file) and handed to every component constructor.
"""

import re
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

DEFAULT_CACHE_DIR = Path.home() / '.config' / 'oci-artifact-harvester' / 'cache'
EXTRACT_SCOPES = ('store', 'manifest')

_DURATION_RE = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h|d)')
_DURATION_UNITS = {
    'ms': timedelta(milliseconds=1),
    's': timedelta(seconds=1),
    'm': timedelta(minutes=1),
    'h': timedelta(hours=1),
    'd': timedelta(days=1),
}


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration such as "4h", "10m", "2d" or "1h30m"

    Args:
        value: Duration string

    Returns:
        timedelta for the duration

    Raises:
        ConfigurationError: If the string is not a valid duration
    """
    text = str(value).strip()
    if not text:
        raise ConfigurationError('empty duration')

    total = timedelta()
    position = 0
    for match in _DURATION_RE.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ConfigurationError(f"invalid duration '{value}' (expected e.g. 4h, 10m, 2d)")

    return total


@dataclass
class HarvesterConfig:
    """Settings shared by the fetcher, puller, extractor and processor"""
    output_root: Path
    cache_dir: Path = DEFAULT_CACHE_DIR
    registry: str = 'quay.io'
    tags_api_url: str = 'https://quay.io/api/v1/repository/'
    tags_page_size: int = 100
    repository_workers: int = 10
    blob_workers: int = 10
    pull_timeout: float = 120.0
    extract_timeout: float = 60.0
    request_timeout: float = 30.0
    min_tag_size: int = 2
    extract_scope: str = 'store'
    no_cache: bool = False
    uncompress_gz_files: bool = True
    docker_config: Optional[Path] = None
    registry_username: Optional[str] = None
    registry_password: Optional[str] = field(default=None, repr=False)
    insecure_registry: bool = False
    since: Optional[timedelta] = None
    user_agent: str = 'oci-artifact-harvester/0.1.0'
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if not self.output_root:
            raise ConfigurationError('output_root is mandatory')
        if not self.cache_dir:
            raise ConfigurationError('cache_dir must not be empty')

        self.output_root = Path(self.output_root).expanduser()
        self.cache_dir = Path(self.cache_dir).expanduser()
        if self.docker_config is not None:
            self.docker_config = Path(self.docker_config).expanduser()
        if bool(self.registry_username) != bool(self.registry_password):
            raise ConfigurationError('registry_username and registry_password must be set together')
        if isinstance(self.since, str):
            self.since = parse_duration(self.since)

        if not self.tags_api_url.startswith(('http://', 'https://')):
            raise ConfigurationError(f"unsupported URL scheme in tags_api_url '{self.tags_api_url}'")
        if not self.tags_api_url.endswith('/'):
            self.tags_api_url += '/'

        for name in ('tags_page_size', 'repository_workers', 'blob_workers'):
            if int(getattr(self, name)) < 1:
                raise ConfigurationError(f'{name} must be at least 1')
        for name in ('pull_timeout', 'extract_timeout', 'request_timeout'):
            if float(getattr(self, name)) <= 0:
                raise ConfigurationError(f'{name} must be positive')

        if self.extract_scope not in EXTRACT_SCOPES:
            raise ConfigurationError(
                f"extract_scope must be one of {', '.join(EXTRACT_SCOPES)}, got '{self.extract_scope}'"
            )

    @property
    def blob_dir(self) -> Path:
        """Blob directory of the local content store"""
        return self.cache_dir / 'blobs' / 'sha256'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HarvesterConfig':
        """
        Build a config from a mapping, keeping unknown keys in ``extra``

        Args:
            data: Mapping of config keys (e.g. parsed YAML)

        Returns:
            HarvesterConfig instance
        """
        if not isinstance(data, dict):
            raise ConfigurationError('configuration must be a mapping')

        known = {f.name for f in fields(cls)} - {'extra'}
        kwargs = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}

        if 'output_root' not in kwargs:
            raise ConfigurationError('output_root is mandatory')

        return cls(**kwargs, extra=extra)

    @classmethod
    def from_file(cls, path) -> 'HarvesterConfig':
        """
        Load a config from a YAML file

        Args:
            path: Path to the YAML file

        Returns:
            HarvesterConfig instance
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f'Config file not found: {config_path}')

        with open(config_path, 'r') as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f'invalid YAML in {config_path}: {e}') from e

        # Allow the settings to live under a top-level "harvester" key
        if isinstance(data, dict) and isinstance(data.get('harvester'), dict):
            data = data['harvester']

        return cls.from_dict(data)
