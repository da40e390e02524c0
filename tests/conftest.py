import pytest


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Run from an empty directory with no user or environment config in reach."""
    work = tmp_path / "work"
    work.mkdir()
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.chdir(work)
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("KILN_CONFIG", raising=False)
    return work
