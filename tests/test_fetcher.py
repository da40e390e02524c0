"""
Tests for kiln.fetcher - source classification, placement and extraction.

No network: the HTTP and git collaborators are monkeypatched.
"""

import io
import os
import tarfile
import zipfile

import pytest
import zstandard

from kiln import fetcher
from kiln.config import BuildOptions
from kiln.errors import SourceError
from kiln.fetcher import (
    SourceResolver,
    archive_base_name,
    classify_source,
    extract_archive,
    is_archive,
)


def _options():
    return BuildOptions(show_progress=False)


def _make_tar_gz(path, top="pkg-1.0", files=None):
    """Write a .tar.gz at path holding top/<name> for each files entry."""
    files = files or {"README": b"hello\n"}
    with tarfile.open(path, "w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(f"{top}/{name}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


# ── Classification ────────────────────────────────────────────────────


class TestClassifySource:
    def test_git_with_fragment(self):
        spec = classify_source("git+https://host/org/repo.git#branch=main")
        assert spec.kind == fetcher.GIT
        assert spec.url == "https://host/org/repo.git"
        assert spec.filename == "repo"
        assert spec.ref == "branch=main"

    def test_git_with_query(self):
        spec = classify_source("git+https://host/repo?rev=abc")
        assert spec.url == "https://host/repo"
        assert spec.filename == "repo"

    def test_custom_named(self):
        spec = classify_source("foo.tar.gz::https://host/download?id=1")
        assert spec.kind == fetcher.CUSTOM
        assert spec.filename == "foo.tar.gz"
        assert spec.url == "https://host/download?id=1"

    def test_custom_without_scheme_is_malformed(self):
        with pytest.raises(SourceError):
            classify_source("foo::host/path")

    def test_plain_url(self):
        spec = classify_source("https://host/files/foo-1.0.tar.xz")
        assert spec.kind == fetcher.URL
        assert spec.filename == "foo-1.0.tar.xz"

    def test_plain_url_with_empty_last_segment(self):
        assert classify_source("https://host/files/").filename == "source.tar"

    def test_local(self):
        spec = classify_source("patches/fix.patch")
        assert spec.kind == fetcher.LOCAL
        assert spec.filename == "fix.patch"

    def test_noextract_marker(self):
        assert classify_source("https://host/NOEXTRACT/data.tar.gz").no_extract

    @pytest.mark.parametrize("name,base", [
        ("foo-1.2.tar.xz", "foo-1.2"),
        ("foo.tgz", "foo"),
        ("foo.tar.zst", "foo"),
        ("foo.zip", "foo"),
        ("foo.c", "foo.c"),
    ])
    def test_archive_base_name(self, name, base):
        assert archive_base_name(name) == base


# ── Archives ──────────────────────────────────────────────────────────


class TestArchives:
    def test_tar_gz_detected_and_extracted(self, tmp_path):
        archive = _make_tar_gz(str(tmp_path / "pkg-1.0.tar.gz"))
        assert is_archive(archive)
        assert extract_archive(archive, str(tmp_path)) is True
        assert (tmp_path / "pkg-1.0" / "README").read_bytes() == b"hello\n"

    def test_extraction_skipped_when_directory_populated(self, tmp_path):
        archive = _make_tar_gz(str(tmp_path / "pkg-1.0.tar.gz"))
        existing = tmp_path / "pkg-1.0"
        existing.mkdir()
        (existing / "README").write_text("local edit\n")
        assert extract_archive(archive, str(tmp_path)) is False
        assert (existing / "README").read_text() == "local edit\n"

    def test_zip(self, tmp_path):
        archive = tmp_path / "data.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("data/file.txt", "zipped")
        assert is_archive(str(archive))
        extract_archive(str(archive), str(tmp_path))
        assert (tmp_path / "data" / "file.txt").read_text() == "zipped"

    def test_tar_zst(self, tmp_path):
        raw = io.BytesIO()
        with tarfile.open(fileobj=raw, mode="w") as tar:
            info = tarfile.TarInfo("z-1/file")
            info.size = 3
            tar.addfile(info, io.BytesIO(b"zst"))
        archive = tmp_path / "z-1.tar.zst"
        archive.write_bytes(zstandard.ZstdCompressor().compress(raw.getvalue()))
        assert is_archive(str(archive))
        extract_archive(str(archive), str(tmp_path))
        assert (tmp_path / "z-1" / "file").read_bytes() == b"zst"

    def test_plain_file_is_not_an_archive(self, tmp_path):
        src = tmp_path / "main.c"
        src.write_text("int main(void) { return 0; }\n")
        assert not is_archive(str(src))

    def test_corrupt_archive_raises(self, tmp_path):
        archive = tmp_path / "broken.tar.zst"
        archive.write_bytes(b"\x28\xb5\x2f\xfd" + b"garbage" * 8)
        with pytest.raises(SourceError):
            extract_archive(str(archive), str(tmp_path))

    def test_zstd_file_that_is_not_a_tar(self, tmp_path):
        data = tmp_path / "data.json.zst"
        data.write_bytes(zstandard.ZstdCompressor().compress(b'{"key": "value"}\n'))
        assert not is_archive(str(data))

    def test_zip_keeps_unix_modes(self, tmp_path):
        archive = tmp_path / "src-1.0.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            info = zipfile.ZipInfo("src-1.0/configure")
            info.external_attr = (0o100755 << 16)
            zf.writestr(info, "#!/bin/sh\nexit 0\n")
            zf.writestr("src-1.0/README", "plain")
        extract_archive(str(archive), str(tmp_path))
        assert os.stat(tmp_path / "src-1.0" / "configure").st_mode & 0o777 == 0o755
        assert (tmp_path / "src-1.0" / "README").read_text() == "plain"


# ── Resolution ────────────────────────────────────────────────────────


class TestSourceResolver:
    def test_git_skip_when_checkout_exists(self, tmp_path, monkeypatch):
        calls = []
        monkeypatch.setattr(fetcher, "_fetch_git", lambda *a: calls.append(a))
        repo = tmp_path / "repo"
        repo.mkdir()
        (repo / "file").write_text("x")
        resolver = SourceResolver(str(tmp_path), _options())
        res = resolver.resolve(["git+https://host/repo.git"])
        assert res["ok"]
        assert calls == []
        assert str(repo) in resolver.intermediates

    def test_git_clone_when_missing(self, tmp_path, monkeypatch):
        calls = []
        monkeypatch.setattr(fetcher, "_fetch_git", lambda url, dest, opts: calls.append((url, dest)))
        resolver = SourceResolver(str(tmp_path), _options())
        assert resolver.resolve(["git+https://host/repo.git#tag=v1"])["ok"]
        assert calls == [("https://host/repo.git", str(tmp_path / "repo"))]

    def test_url_download_and_extract(self, tmp_path, monkeypatch):
        def fake_http(url, dest, opts):
            _make_tar_gz(dest, top="pkg-1.0")
        monkeypatch.setattr(fetcher, "_fetch_http", fake_http)
        resolver = SourceResolver(str(tmp_path), _options())
        res = resolver.resolve(["https://host/pkg-1.0.tar.gz"])
        assert res["ok"]
        assert (tmp_path / "pkg-1.0" / "README").exists()
        assert resolver.intermediates.as_list() == [str(tmp_path / "pkg-1.0.tar.gz")]

    def test_existing_download_is_not_refetched(self, tmp_path, monkeypatch):
        (tmp_path / "blob.bin").write_bytes(b"\x00\x01")
        monkeypatch.setattr(fetcher, "_fetch_http", lambda *a: pytest.fail("should not download"))
        resolver = SourceResolver(str(tmp_path), _options())
        assert resolver.resolve(["https://host/blob.bin"])["ok"]
        assert str(tmp_path / "blob.bin") in resolver.intermediates

    def test_noextract_leaves_archive_alone(self, tmp_path, monkeypatch):
        monkeypatch.setattr(fetcher, "_fetch_http", lambda url, dest, opts: _make_tar_gz(dest))
        resolver = SourceResolver(str(tmp_path), _options())
        assert resolver.resolve(["pkg-1.0.tar.gz::https://host/NOEXTRACT/x"])["ok"]
        assert not (tmp_path / "pkg-1.0").exists()

    def test_local_file_in_recipe_dir_not_recorded(self, tmp_path):
        (tmp_path / "main.c").write_text("int main(void) { return 0; }\n")
        resolver = SourceResolver(str(tmp_path), _options())
        res = resolver.resolve(["main.c"])
        assert res["ok"]
        assert res["paths"] == [str(tmp_path / "main.c")]
        assert len(resolver.intermediates) == 0

    def test_local_file_copied_into_work_dir(self, tmp_path):
        (tmp_path / "patches").mkdir()
        (tmp_path / "patches" / "fix.patch").write_text("--- a\n+++ b\n")
        resolver = SourceResolver(str(tmp_path), _options())
        assert resolver.resolve(["patches/fix.patch"])["ok"]
        assert (tmp_path / "fix.patch").read_text() == "--- a\n+++ b\n"
        assert str(tmp_path / "fix.patch") in resolver.intermediates

    def test_missing_local_source_aborts(self, tmp_path):
        resolver = SourceResolver(str(tmp_path), _options())
        res = resolver.resolve(["missing.c", "https://host/never.tar.gz"])
        assert not res["ok"]
        assert res["source"] == "missing.c"
        assert "missing.c" in res["error"]

    def test_compressed_non_archive_left_untouched(self, tmp_path):
        payload = zstandard.ZstdCompressor().compress(b'{"key": "value"}\n')
        (tmp_path / "data.json.zst").write_bytes(payload)
        resolver = SourceResolver(str(tmp_path), _options())
        res = resolver.resolve(["data.json.zst"])
        assert res["ok"], res
        assert (tmp_path / "data.json.zst").read_bytes() == payload
        assert sorted(os.listdir(tmp_path)) == ["data.json.zst"]

    def test_malformed_custom_source_aborts(self, tmp_path):
        res = SourceResolver(str(tmp_path), _options()).resolve(["name::not-a-url"])
        assert not res["ok"]
        assert os.listdir(tmp_path) == []
