"""
Tests for kiln.postprocess - stripping and static/libtool archive removal.
"""

import os

from kiln import postprocess
from kiln.config import BuildOptions
from kiln.postprocess import PostProcessor, strip_command


def _tree(tmp_path):
    root = tmp_path / "files"
    (root / "usr" / "lib").mkdir(parents=True)
    (root / "usr" / "lib" / "libfoo.la").write_text("libtool")
    (root / "usr" / "lib" / "libfoo.a").write_bytes(b"!<arch>\n")
    (root / "usr" / "lib" / "libfoo.so").write_bytes(b"\x7fELF")
    return root


class TestPostProcessor:
    def test_strip_command(self):
        assert strip_command("/t") == [
            "find", "/t", "-type", "f", "!", "-name", "*.o",
            "-exec", "strip", "--strip-unneeded", "--strip-debug", "{}", "+",
        ]

    def test_nostrip_is_a_noop(self, tmp_path):
        root = _tree(tmp_path)
        res = PostProcessor(BuildOptions(nostrip=True)).run(str(root))
        assert res["ok"] and res["detail"]["skipped"]
        assert (root / "usr" / "lib" / "libfoo.a").exists()

    def test_removes_la_then_a(self, tmp_path, monkeypatch):
        monkeypatch.setattr(postprocess.shutil, "which", lambda name: None)
        root = _tree(tmp_path)
        res = PostProcessor(BuildOptions()).run(str(root))
        assert res["ok"]
        assert res["detail"]["stripped"] is False
        assert [os.path.basename(p) for p in res["detail"]["removed"]] == ["libfoo.la", "libfoo.a"]
        assert os.listdir(root / "usr" / "lib") == ["libfoo.so"]

    def test_symlinks_are_not_followed(self, tmp_path, monkeypatch):
        monkeypatch.setattr(postprocess.shutil, "which", lambda name: None)
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "keep.a").write_bytes(b"!<arch>\n")
        root = tmp_path / "files"
        root.mkdir()
        os.symlink(outside, root / "linked")
        os.symlink(outside / "keep.a", root / "alias.a")

        PostProcessor(BuildOptions()).run(str(root))

        assert (outside / "keep.a").exists()
        assert os.path.islink(root / "alias.a")

    def test_strip_failure_is_only_a_warning(self, tmp_path, monkeypatch):
        class _Proc:
            returncode = 1
            stderr = "strip: file format not recognized"

        monkeypatch.setattr(postprocess.shutil, "which", lambda name: "/usr/bin/strip")
        monkeypatch.setattr(postprocess.subprocess, "run", lambda *a, **k: _Proc())
        root = _tree(tmp_path)
        res = PostProcessor(BuildOptions()).run(str(root))
        assert res["ok"]
        assert res["detail"]["stripped"] is False
