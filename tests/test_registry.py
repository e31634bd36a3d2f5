"""Tests for the ORAS-backed registry client and manifest parsing."""

from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace

import pytest
import requests
from requests.adapters import HTTPAdapter

import harvester.registry as registry_module
from conftest import FakeResponse, sha256_digest
from harvester.deadline import Deadline
from harvester.errors import FormatError, NetworkError, OperationTimeoutError
from harvester.registry import OCI_INDEX, OCI_MANIFEST, DeadlineAdapter, RegistryClient, parse_manifest
from harvester.store import LocalContentStore

MANIFEST = json.dumps({
    "schemaVersion": 2,
    "mediaType": OCI_MANIFEST,
    "config": {"mediaType": "application/vnd.oci.empty.v1+json", "digest": sha256_digest(b"{}"), "size": 2},
    "layers": [{
        "mediaType": "application/vnd.oci.image.layer.v1.tar+gzip",
        "digest": sha256_digest(b"layer"),
        "size": 5,
        "annotations": {"org.opencontainers.image.title": "logs.tar.gz"},
    }],
}).encode()


class FakeContainer:
    def __init__(self, name: str) -> None:
        self.name = name
        self.registry, self.path = name.split("/", 1)

    def manifest_url(self, tag=None) -> str:
        return f"{self.registry}/v2/{self.path}/manifests/{tag}"


class FakeAuth:
    def __init__(self) -> None:
        self.loaded = []

    def load_configs(self, container, configs=None) -> None:
        self.loaded.append((container.name, configs))


class FakeOras:
    """Stands in for oras.client.OrasClient."""

    prefix = "https"

    def __init__(self, hostname=None, insecure=False, responses=None, blobs=None, login_error=None) -> None:
        self.hostname = hostname
        self.insecure = insecure
        self.session = requests.Session()
        self.auth = FakeAuth()
        self.responses = list(responses or [])
        self.blobs = dict(blobs or {})
        self.login_error = login_error
        self.requests = []
        self.logins = []
        self.pulls = []

    def get_container(self, name):
        return FakeContainer(name)

    def login(self, hostname=None, username=None, password=None):
        self.logins.append((hostname, username, password))
        if self.login_error:
            raise self.login_error
        return {"Status": "Login Succeeded"}

    def do_request(self, url, method="GET", data=None, headers=None, json=None, stream=False):
        self.requests.append((method, url, headers))
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def download_blob(self, container, digest, outfile):
        if digest not in self.blobs:
            raise requests.exceptions.HTTPError("404 Client Error", response=FakeResponse(status_code=404))
        Path(outfile).write_bytes(self.blobs[digest])
        return outfile

    def pull(self, target, config_path=None, allowed_media_type=None, overwrite=True, outdir=None):
        self.pulls.append((target, config_path, outdir))
        path = Path(outdir) / "build.log"
        path.write_text("log")
        return [str(path)]


def _client(oras: FakeOras, **kwargs) -> RegistryClient:
    return RegistryClient("quay.example", "org/repo", oras_client=oras, **kwargs)


def test_parse_manifest_lists_blobs() -> None:
    manifest = parse_manifest(MANIFEST)

    assert manifest.descriptor.digest == sha256_digest(MANIFEST)
    assert manifest.descriptor.media_type == OCI_MANIFEST
    assert not manifest.is_index
    assert [d.digest for d in manifest.blobs()] == [sha256_digest(b"{}"), sha256_digest(b"layer")]
    assert manifest.layers()[0].title == "logs.tar.gz"


def test_parse_manifest_detects_index_and_bad_input() -> None:
    index = json.dumps({"schemaVersion": 2, "mediaType": OCI_INDEX, "manifests": []}).encode()
    assert parse_manifest(index).is_index

    with pytest.raises(FormatError):
        parse_manifest(b"not json")
    with pytest.raises(FormatError, match="unsupported manifest media type"):
        parse_manifest(json.dumps({"mediaType": "text/plain"}).encode())
    with pytest.raises(FormatError, match="digest mismatch"):
        parse_manifest(MANIFEST, expected_digest=sha256_digest(b"other"))


def test_fetch_manifest_keeps_registry_bytes() -> None:
    oras = FakeOras(responses=[FakeResponse(body=MANIFEST, headers={"Content-Type": OCI_MANIFEST})])

    manifest = _client(oras).fetch_manifest("v1")

    assert manifest.descriptor.digest == sha256_digest(MANIFEST)
    assert manifest.content == MANIFEST
    ((method, url, headers),) = oras.requests
    assert (method, url) == ("GET", "https://quay.example/v2/org/repo/manifests/v1")
    assert OCI_MANIFEST in headers["Accept"]
    assert OCI_INDEX in headers["Accept"]


def test_not_found_reports_url_and_status() -> None:
    oras = FakeOras(responses=[FakeResponse(status_code=404)])

    with pytest.raises(NetworkError) as excinfo:
        _client(oras).fetch_manifest("gone")

    assert excinfo.value.status == 404
    assert excinfo.value.url == "https://quay.example/v2/org/repo/manifests/gone"


def test_header_digest_mismatch_is_rejected() -> None:
    oras = FakeOras(responses=[FakeResponse(body=MANIFEST, headers={"Docker-Content-Digest": sha256_digest(b"other")})])

    with pytest.raises(FormatError, match="digest mismatch"):
        _client(oras).fetch_manifest("v1")


def test_expired_deadline_stops_before_requesting() -> None:
    oras = FakeOras()

    with pytest.raises(OperationTimeoutError):
        _client(oras).fetch_manifest("v1", Deadline(0.0, operation="pull"))
    assert oras.requests == []


@pytest.mark.parametrize("error, expected", [
    (requests.exceptions.ConnectTimeout("slow"), OperationTimeoutError),
    (requests.exceptions.ConnectionError("refused"), NetworkError),
    (ValueError("Issue with request: 500"), NetworkError),
])
def test_oras_errors_are_mapped(error: Exception, expected: type) -> None:
    with pytest.raises(expected):
        _client(FakeOras(responses=[error])).fetch_manifest("v1")


def test_fetch_blob_into_store(tmp_path: Path) -> None:
    digest = sha256_digest(b"layer")
    client = _client(FakeOras(blobs={digest: b"layer"}))
    store = LocalContentStore(tmp_path / "cache")

    path = store.ingest(digest, lambda dest: client.fetch_blob(digest, dest))

    assert path.read_bytes() == b"layer"


def test_missing_blob_carries_status(tmp_path: Path) -> None:
    with pytest.raises(NetworkError) as excinfo:
        _client(FakeOras()).fetch_blob(sha256_digest(b"gone"), tmp_path / "blob")

    assert excinfo.value.status == 404


def test_pull_delegates_to_oras(tmp_path: Path) -> None:
    oras = FakeOras()
    client = _client(oras, docker_config=tmp_path / "config.json")

    written = client.pull("pr-1", tmp_path)

    assert written == [tmp_path / "build.log"]
    assert oras.pulls == [("quay.example/org/repo:pr-1", str(tmp_path / "config.json"), str(tmp_path))]


def test_docker_config_credentials_without_login(tmp_path: Path) -> None:
    oras = FakeOras()

    _client(oras, docker_config=tmp_path / "config.json")

    assert oras.logins == []
    assert oras.auth.loaded == [("quay.example/org/repo", [str(tmp_path / "config.json")])]


def test_explicit_credentials_log_in() -> None:
    oras = FakeOras()

    _client(oras, username="robot", password="s3cret")

    assert oras.logins == [("quay.example", "robot", "s3cret")]
    assert oras.auth.loaded == []


def test_failed_login() -> None:
    with pytest.raises(NetworkError, match="failed to authenticate"):
        _client(FakeOras(login_error=RuntimeError("denied")), username="robot", password="bad")


def test_from_config_builds_oras_client(config, monkeypatch) -> None:
    created = []

    def factory(**kwargs):
        oras = FakeOras(**kwargs)
        created.append(oras)
        return oras

    monkeypatch.setattr(registry_module, "OrasClient", factory)
    config.registry_username = "robot"
    config.registry_password = "s3cret"
    config.insecure_registry = True

    client = RegistryClient.from_config(config, "org/repo")

    (oras,) = created
    assert (oras.hostname, oras.insecure) == ("quay.io", True)
    assert oras.logins == [("quay.io", "robot", "s3cret")]
    assert oras.session.headers["User-Agent"] == config.user_agent
    assert oras.session.get_adapter("https://quay.io/v2/") is client.adapter
    assert client.adapter.timeout == config.request_timeout


def test_adapter_bounds_request_timeout(monkeypatch) -> None:
    sent = []
    monkeypatch.setattr(HTTPAdapter, "send", lambda self, request, **kwargs: sent.append(kwargs["timeout"]))
    adapter = DeadlineAdapter(5.0)
    request = SimpleNamespace(url="https://quay.example/v2/")

    adapter.send(request, timeout=None)
    adapter.deadline = Deadline(1.0)
    adapter.send(request, timeout=None)
    adapter.send(request, timeout=2.0)

    assert sent[0] == 5.0
    assert 0 < sent[1] <= 1.0
    assert sent[2] == 2.0

    adapter.deadline = Deadline(0.0)
    with pytest.raises(OperationTimeoutError):
        adapter.send(request, timeout=None)
