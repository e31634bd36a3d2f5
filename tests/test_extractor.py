"""Tests for archive blob detection and extraction."""

from __future__ import annotations

import gzip
import io
import os
import tarfile
import threading
from pathlib import Path

import pytest

import harvester.extractor as extractor_mod
from conftest import make_tar_gz
from harvester.errors import FormatError, OperationTimeoutError
from harvester.extractor import BlobExtractor, extract_tar_gz, is_archive_blob


def _write(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def test_extract_tar_gz(tmp_path: Path) -> None:
    archive = _write(tmp_path / "test.gz", make_tar_gz(
        {"file1.txt": "This is the content of file1.", "logs/file2.txt": "This is the content of file2."},
        dirs=("logs",),
    ))
    dest = tmp_path / "out"
    dest.mkdir()

    written = extract_tar_gz(archive, dest)

    assert written == 2
    assert (dest / "file1.txt").read_text() == "This is the content of file1."
    assert (dest / "logs" / "file2.txt").read_text() == "This is the content of file2."


def test_files_without_directory_entries_get_parents(tmp_path: Path) -> None:
    archive = _write(tmp_path / "blob", make_tar_gz({"a/b/c.xml": "<ok/>"}))

    extract_tar_gz(archive, tmp_path / "out")

    assert (tmp_path / "out" / "a" / "b" / "c.xml").read_text() == "<ok/>"


def test_re_extraction_keeps_existing_files(tmp_path: Path) -> None:
    dest = tmp_path / "out"
    archive = _write(tmp_path / "blob", make_tar_gz({"report.xml": "from archive", "new.txt": "new"}))
    _write(dest / "report.xml", b"already here")

    extract_tar_gz(archive, dest)
    extract_tar_gz(archive, dest)

    assert (dest / "report.xml").read_bytes() == b"already here"
    assert (dest / "new.txt").read_text() == "new"


def test_corrupt_stream_after_magic_is_a_format_error(tmp_path: Path) -> None:
    archive = _write(tmp_path / "blob", b"\x1f\x8b" + b"\x00garbage" * 20)

    with pytest.raises(FormatError):
        extract_tar_gz(archive, tmp_path / "out")


def test_truncated_archive_is_a_format_error(tmp_path: Path) -> None:
    payload = make_tar_gz({"big.txt": "x" * 50000})
    archive = _write(tmp_path / "blob", payload[: len(payload) // 2])

    with pytest.raises(FormatError):
        extract_tar_gz(archive, tmp_path / "out")


def test_truncated_member_leaves_no_partial_file(tmp_path: Path) -> None:
    payload = make_tar_gz({"big.bin": os.urandom(300_000)})
    archive = _write(tmp_path / "blob", payload[: len(payload) * 3 // 5])
    dest = tmp_path / "out"

    with pytest.raises(FormatError):
        extract_tar_gz(archive, dest)

    assert not (dest / "big.bin").exists()
    assert not list(dest.glob(".big.bin.*"))


def test_gzip_without_tar_entries_extracts_nothing(tmp_path: Path) -> None:
    archive = _write(tmp_path / "blob.tar.gz", gzip.compress(b""))

    assert extract_tar_gz(archive, tmp_path / "out") == 0


def test_concurrent_extractions_never_mix_a_file(tmp_path: Path) -> None:
    first = b"A" * (2 * 1024 * 1024)
    second = b"B" * (512 * 1024)
    archives = [
        _write(tmp_path / "a.tar.gz", make_tar_gz({"report.xml": first})),
        _write(tmp_path / "b.tar.gz", make_tar_gz({"report.xml": second})),
    ]

    for attempt in range(10):
        dest = tmp_path / f"out{attempt}"
        barrier = threading.Barrier(2)
        counts = []

        def run(archive: Path) -> None:
            barrier.wait()
            counts.append(extract_tar_gz(archive, dest))

        threads = [threading.Thread(target=run, args=(a,)) for a in archives]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(counts) == [0, 1]
        assert (dest / "report.xml").read_bytes() in (first, second)
        assert sorted(p.name for p in dest.iterdir()) == ["report.xml"]


def test_symlink_entries_are_rejected(tmp_path: Path) -> None:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        link = tarfile.TarInfo("link")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/passwd"
        tar.addfile(link)
    archive = _write(tmp_path / "blob", buf.getvalue())

    with pytest.raises(FormatError, match="unsupported tar entry"):
        extract_tar_gz(archive, tmp_path / "out")
    assert not (tmp_path / "out" / "link").exists()


def test_path_traversal_is_rejected(tmp_path: Path) -> None:
    archive = _write(tmp_path / "blob", make_tar_gz({"../escape.txt": "nope"}))

    with pytest.raises(FormatError, match="escapes"):
        extract_tar_gz(archive, tmp_path / "out")
    assert not (tmp_path / "escape.txt").exists()


def test_is_archive_blob(tmp_path: Path) -> None:
    assert is_archive_blob(_write(tmp_path / "gz", gzip.compress(b"data")))
    assert is_archive_blob(_write(tmp_path / "named.tar.gz", b"not really gzip"))
    assert not is_archive_blob(_write(tmp_path / "manifest", b'{"schemaVersion": 2}'))
    assert not is_archive_blob(_write(tmp_path / "empty.tar.gz", b""))


def test_extract_dir_reports_per_blob_results(tmp_path: Path) -> None:
    blobs = tmp_path / "blobs"
    _write(blobs / "aaa", make_tar_gz({"suite1/e2e-report.xml": "<ok/>"}))
    _write(blobs / "bbb", b'{"mediaType": "application/vnd.oci.image.manifest.v1+json"}')
    _write(blobs / "ccc", b"\x1f\x8b broken")
    _write(blobs / "ddd", b"")
    (blobs / "subdir").mkdir()
    out = tmp_path / "out"

    results = BlobExtractor(max_workers=2).extract_dir(blobs, out)

    by_name = {Path(r.key).name: r for r in results}
    assert sorted(by_name) == ["aaa", "bbb", "ccc", "ddd"]
    assert by_name["aaa"].value is True
    assert by_name["bbb"].value is False
    assert by_name["ddd"].value is False
    assert isinstance(by_name["ccc"].error, FormatError)
    assert (out / "suite1" / "e2e-report.xml").read_text() == "<ok/>"


def test_extract_dir_can_be_restricted(tmp_path: Path) -> None:
    blobs = tmp_path / "blobs"
    _write(blobs / "keep", make_tar_gz({"kept.txt": "1"}))
    _write(blobs / "skip", make_tar_gz({"skipped.txt": "2"}))

    results = BlobExtractor().extract_dir(blobs, tmp_path / "out", only={"keep"})

    assert [Path(r.key).name for r in results] == ["keep"]
    assert (tmp_path / "out" / "kept.txt").exists()
    assert not (tmp_path / "out" / "skipped.txt").exists()


def test_hung_blob_times_out_without_blocking_its_sibling(tmp_path: Path, monkeypatch) -> None:
    blobs = tmp_path / "blobs"
    _write(blobs / "aaa-hangs", make_tar_gz({"never.txt": "x"}))
    _write(blobs / "bbb-works", make_tar_gz({"done.txt": "ok"}))
    real_extract = extractor_mod.extract_tar_gz
    cancelled = threading.Event()

    def fake_extract(archive, dest, cancel=None):
        if archive.name == "aaa-hangs":
            # Never finishes on its own; stops once cancelled
            cancel.wait()
            cancelled.set()
            raise extractor_mod.ExtractionCancelled("cancelled")
        return real_extract(archive, dest, cancel)

    monkeypatch.setattr(extractor_mod, "extract_tar_gz", fake_extract)

    results = BlobExtractor(max_workers=2, timeout=0.3).extract_dir(blobs, tmp_path / "out")

    hung, works = results
    assert isinstance(hung.error, OperationTimeoutError)
    assert hung.error.target == str(blobs / "aaa-hangs")
    assert "aaa-hangs" in str(hung.error)
    assert works.ok and works.value is True
    assert (tmp_path / "out" / "done.txt").read_text() == "ok"
    assert cancelled.wait(2)


def test_cancel_event_stops_extraction(tmp_path: Path) -> None:
    archive = _write(tmp_path / "blob", make_tar_gz({"a.txt": "a", "b.txt": "b"}))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(extractor_mod.ExtractionCancelled):
        extract_tar_gz(archive, tmp_path / "out", cancel)
    assert not (tmp_path / "out" / "a.txt").exists()
