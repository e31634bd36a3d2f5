"""Shared fixtures: fake requests sessions and archive builders."""

from __future__ import annotations

import hashlib
import io
import json
import tarfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import requests

from harvester.config import HarvesterConfig


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(
        self,
        status_code: int = 200,
        body: bytes | str | dict | list = b"",
        headers: Optional[Dict[str, str]] = None,
        reason: str = "",
    ) -> None:
        if isinstance(body, (dict, list)):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.status_code = status_code
        self.content = body
        self.headers = dict(headers or {})
        self.reason = reason or {200: "OK", 401: "Unauthorized", 404: "Not Found", 500: "Internal Server Error"}.get(
            status_code, ""
        )
        self.closed = False

    def json(self):
        return json.loads(self.content)

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeSession:
    """Records requests and answers them from a handler or a queue."""

    def __init__(self, handler=None, responses: Optional[List] = None) -> None:
        self.headers: Dict[str, str] = {}
        self.handler = handler
        self.responses = list(responses or [])
        self.calls: List[dict] = []

    def _answer(self, method: str, url: str, **kwargs):
        call = {"method": method, "url": url, **kwargs}
        self.calls.append(call)
        if self.handler is not None:
            result = self.handler(call)
        else:
            result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def get(self, url, **kwargs):
        return self._answer("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._answer("POST", url, **kwargs)


def make_tar_gz(files: Dict[str, str | bytes], dirs: tuple = ()) -> bytes:
    """Build a tar.gz archive in memory."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, data in files.items():
            payload = data.encode("utf-8") if isinstance(data, str) else data
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            info.mode = 0o600
            tar.addfile(info, io.BytesIO(payload))
    return buf.getvalue()


def sha256_digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


@pytest.fixture
def config(tmp_path: Path) -> HarvesterConfig:
    return HarvesterConfig(
        output_root=tmp_path / "out",
        cache_dir=tmp_path / "cache",
        docker_config=tmp_path / "docker" / "config.json",
    )


@pytest.fixture
def no_network(monkeypatch):
    def refuse(*args, **kwargs):
        raise AssertionError("tests must not reach the network")

    monkeypatch.setattr(requests.Session, "request", refuse)
