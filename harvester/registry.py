"""
OCI distribution API client

Fetches manifests and blobs for one repository through an ORAS client.
ORAS answers the registry's auth challenges, with credentials from the
docker config file or from an explicit login.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests
from oras.client import OrasClient
from requests.adapters import HTTPAdapter

from .deadline import Deadline
from .errors import FormatError, HarvesterError, NetworkError, OperationTimeoutError

logger = logging.getLogger(__name__)

OCI_MANIFEST = 'application/vnd.oci.image.manifest.v1+json'
OCI_INDEX = 'application/vnd.oci.image.index.v1+json'
OCI_ARTIFACT_MANIFEST = 'application/vnd.oci.artifact.manifest.v1+json'
DOCKER_MANIFEST = 'application/vnd.docker.distribution.manifest.v2+json'
DOCKER_MANIFEST_LIST = 'application/vnd.docker.distribution.manifest.list.v2+json'

MANIFEST_MEDIA_TYPES = (OCI_MANIFEST, OCI_INDEX, OCI_ARTIFACT_MANIFEST, DOCKER_MANIFEST, DOCKER_MANIFEST_LIST)
INDEX_MEDIA_TYPES = (OCI_INDEX, DOCKER_MANIFEST_LIST)


@dataclass(frozen=True)
class Descriptor:
    """Content descriptor: media type, digest and size of a referenced object"""
    media_type: str
    digest: str
    size: int
    annotations: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict) -> 'Descriptor':
        try:
            return cls(
                media_type=data.get('mediaType', ''),
                digest=data['digest'],
                size=int(data.get('size', 0)),
                annotations=dict(data.get('annotations') or {}),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise FormatError(f'malformed descriptor {data!r}') from e

    def to_dict(self) -> dict:
        data = {'mediaType': self.media_type, 'digest': self.digest, 'size': self.size}
        if self.annotations:
            data['annotations'] = dict(self.annotations)
        return data

    @property
    def title(self) -> Optional[str]:
        return self.annotations.get('org.opencontainers.image.title')


@dataclass(frozen=True)
class Manifest:
    """A fetched manifest: its raw bytes plus the parsed document"""
    descriptor: Descriptor
    content: bytes
    data: dict

    @property
    def is_index(self) -> bool:
        return self.descriptor.media_type in INDEX_MEDIA_TYPES or (
            'manifests' in self.data and 'layers' not in self.data
        )

    def children(self) -> List[Descriptor]:
        """Manifests referenced by an image index"""
        return [Descriptor.from_dict(d) for d in self.data.get('manifests') or []]

    def blobs(self) -> List[Descriptor]:
        """Config and layer (or artifact blob) descriptors of an image manifest"""
        descriptors = []
        if self.data.get('config'):
            descriptors.append(Descriptor.from_dict(self.data['config']))
        for key in ('layers', 'blobs'):
            descriptors.extend(Descriptor.from_dict(d) for d in self.data.get(key) or [])
        return descriptors

    def layers(self) -> List[Descriptor]:
        return [Descriptor.from_dict(d) for d in (self.data.get('layers') or self.data.get('blobs') or [])]


def parse_manifest(content: bytes, media_type: str = '', expected_digest: Optional[str] = None) -> Manifest:
    """
    Parse manifest bytes and compute their digest

    Args:
        content: Raw manifest bytes
        media_type: Content-Type reported by the registry
        expected_digest: Digest the bytes must hash to, if known

    Returns:
        Manifest
    """
    digest = 'sha256:' + hashlib.sha256(content).hexdigest()
    if expected_digest and expected_digest != digest:
        raise FormatError(f'manifest digest mismatch: expected {expected_digest}, got {digest}')

    try:
        data = json.loads(content)
    except ValueError as e:
        raise FormatError(f'failed to decode manifest {digest}: {e}') from e
    if not isinstance(data, dict):
        raise FormatError(f'manifest {digest} is not a JSON object')

    media_type = data.get('mediaType') or media_type.split(';')[0].strip()
    if media_type and media_type not in MANIFEST_MEDIA_TYPES:
        raise FormatError(f'unsupported manifest media type {media_type}')

    return Manifest(
        descriptor=Descriptor(media_type=media_type or OCI_MANIFEST, digest=digest, size=len(content)),
        content=content,
        data=data,
    )


class DeadlineAdapter(HTTPAdapter):
    """
    Transport adapter that gives every request a timeout

    ORAS sends its requests without one. The timeout is the request timeout,
    shortened to what is left of the current deadline.
    """

    def __init__(self, timeout: float, **kwargs):
        super().__init__(**kwargs)
        self.timeout = timeout
        self.deadline: Optional[Deadline] = None

    def send(self, request, **kwargs):
        if kwargs.get('timeout') is None:
            deadline = self.deadline
            kwargs['timeout'] = deadline.timeout(self.timeout, request.url) if deadline else self.timeout
        return super().send(request, **kwargs)


class RegistryClient:
    """Client for one repository on an OCI registry"""

    def __init__(
        self,
        registry: str,
        repository: str,
        oras_client=None,
        timeout: float = 30.0,
        user_agent: str = 'oci-artifact-harvester/0.1.0',
        docker_config: Optional[Path] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        insecure: bool = False,
    ):
        """
        Initialize registry client

        Without a username and password, credentials for the registry are
        looked up in the docker config file; a registry without an entry is
        pulled from anonymously.

        Args:
            registry: Registry host (e.g., "quay.io")
            repository: Repository path (e.g., "org/test-artifacts")
            oras_client: ORAS client to use (default: a new OrasClient)
            timeout: Per-request timeout in seconds
            user_agent: User-Agent header value
            docker_config: Docker config file (default: ORAS's own lookup)
            username: Registry user name
            password: Registry password or token
            insecure: Talk plain HTTP to the registry
        """
        self.registry = registry
        self.repository = repository
        self.timeout = timeout
        self.docker_config = str(docker_config) if docker_config else None
        self.oras = oras_client or OrasClient(hostname=registry, insecure=insecure)

        self.oras.session.headers.update({
            'User-Agent': user_agent
        })
        self.adapter = DeadlineAdapter(timeout)
        self.oras.session.mount('https://', self.adapter)
        self.oras.session.mount('http://', self.adapter)

        self.container = self.oras.get_container(f'{registry}/{repository}')
        self._authenticate(username, password)

    @classmethod
    def from_config(cls, config, repository: str) -> 'RegistryClient':
        return cls(
            registry=config.registry,
            repository=repository,
            timeout=config.request_timeout,
            user_agent=config.user_agent,
            docker_config=config.docker_config,
            username=config.registry_username,
            password=config.registry_password,
            insecure=config.insecure_registry,
        )

    def _authenticate(self, username: Optional[str], password: Optional[str]):
        # ORAS prompts interactively when either value is empty
        if username and password:
            try:
                self.oras.login(hostname=self.registry, username=username, password=password)
            except Exception as e:
                raise NetworkError(f'failed to authenticate with registry {self.registry}: {e}') from e
            return

        configs = [self.docker_config] if self.docker_config else None
        self.oras.auth.load_configs(self.container, configs=configs)
        logger.debug('using docker config credentials for %s, if any', self.registry)

    def fetch_manifest(self, reference: str, deadline: Optional[Deadline] = None) -> Manifest:
        """
        Fetch a manifest by tag or digest

        The raw bytes are kept so the manifest keeps its registry digest.

        Args:
            reference: Tag name or digest
            deadline: Optional deadline bounding the request

        Returns:
            Manifest
        """
        url = f'{self.oras.prefix}://{self.container.manifest_url(reference)}'
        headers = {'Accept': ', '.join(MANIFEST_MEDIA_TYPES)}

        response = self._call(url, deadline, self.oras.do_request, url, 'GET', headers=headers)
        with response:
            if response.status_code != 200:
                raise NetworkError(
                    f'GET {url} failed: {response.status_code} {response.reason}',
                    url=url,
                    status=response.status_code,
                )
            content = response.content
            media_type = response.headers.get('Content-Type', '')
            header_digest = response.headers.get('Docker-Content-Digest')

        expected = reference if reference.startswith('sha256:') else None
        manifest = parse_manifest(content, media_type, expected)

        if header_digest and header_digest.startswith('sha256:') and header_digest != manifest.descriptor.digest:
            raise FormatError(
                f'manifest digest mismatch for {reference}: registry reported {header_digest}, '
                f'content hashes to {manifest.descriptor.digest}'
            )
        return manifest

    def fetch_blob(self, digest: str, dest: Path, deadline: Optional[Deadline] = None) -> Path:
        """
        Download a blob into ``dest``

        Args:
            digest: Blob digest
            dest: File to write
            deadline: Optional deadline bounding the transfer

        Returns:
            dest
        """
        self._call(digest, deadline, self.oras.download_blob,
                   container=self.container, digest=digest, outfile=str(dest))
        return Path(dest)

    def pull(self, tag: str, outdir: Path, deadline: Optional[Deadline] = None) -> List[Path]:
        """
        Pull a tag's titled layers into ``outdir``

        Layers are named by their org.opencontainers.image.title annotation
        and unpacked when annotated for it; untitled layers are skipped.

        Returns:
            Paths written
        """
        target = f'{self.registry}/{self.repository}:{tag}'
        files = self._call(target, deadline, self.oras.pull,
                           target=target, outdir=str(outdir), config_path=self.docker_config)
        return [Path(f) for f in files or []]

    def _call(self, target: str, deadline: Optional[Deadline], fn: Callable, /, *args, **kwargs):
        """Run an ORAS call under ``deadline``, mapping its errors"""
        if deadline:
            deadline.check(target)

        self.adapter.deadline = deadline
        try:
            return fn(*args, **kwargs)
        except HarvesterError:
            raise
        except requests.exceptions.Timeout as e:
            raise OperationTimeoutError(f'request for {target} timed out: {e}', target=target) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise NetworkError(f'request for {target} failed: {e}', url=target, status=status) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f'request for {target} failed: {e}', url=target) from e
        except Exception as e:
            raise NetworkError(f'registry operation on {target} failed: {e}', url=target) from e
        finally:
            self.adapter.deadline = None
