"""
Tests for kiln.config - file discovery, coercion, validation and BuildOptions.
"""

import json

import pytest

from kiln import config
from kiln.config import BuildOptions, load
from kiln.errors import ConfigError


class TestLoad:
    def test_defaults_when_no_file(self, isolated_env, monkeypatch):
        monkeypatch.setattr(config, "_find_path", lambda explicit=None: None)
        cfg = load()
        assert cfg.path is None
        assert cfg.get("build.recipe_name") == "KILNBUILD"
        assert cfg.get("pkgtool.compression_level") == 22
        assert cfg.get("logging.max_size_bytes") == 10 * 1024 ** 2
        assert cfg.get("no.such.key", "fallback") == "fallback"

    def test_cwd_yaml_is_merged_and_coerced(self, isolated_env):
        (isolated_env / "kiln.yaml").write_text(
            "build:\n  nostrip: 'yes'\n  fakeroot: 'off'\npkgtool:\n  compression_level: '19'\n")
        cfg = load()
        assert cfg.path == isolated_env / "kiln.yaml"
        assert cfg.get("build.nostrip") is True
        assert cfg.get("build.fakeroot") is False
        assert cfg.get("pkgtool.compression_level") == 19
        assert cfg.get("build.shell") == "/bin/bash"

    def test_env_override(self, isolated_env, tmp_path, monkeypatch):
        path = tmp_path / "custom.json"
        path.write_text(json.dumps({"pkgtool": {"extension": "pkg"}}))
        monkeypatch.setenv("KILN_CONFIG", str(path))
        assert load().get("pkgtool.extension") == "pkg"

    def test_explicit_missing_path_raises(self, isolated_env):
        with pytest.raises(ConfigError):
            load(str(isolated_env / "nope.yaml"))

    def test_invalid_values_fatal(self, isolated_env):
        (isolated_env / "kiln.yaml").write_text("pkgtool:\n  compression_level: 40\n")
        with pytest.raises(ConfigError):
            load(fatal=True)

    def test_invalid_values_non_fatal(self, isolated_env):
        (isolated_env / "kiln.yaml").write_text("surprise: 1\n")
        cfg = load()
        assert cfg.get("surprise") == 1

    def test_unparsable_file_fatal(self, isolated_env):
        (isolated_env / "kiln.yaml").write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            load(fatal=True)


class TestBuildOptions:
    def test_from_config_with_overrides(self, isolated_env):
        (isolated_env / "kiln.yaml").write_text("build:\n  fakeroot: true\n  clean: true\n")
        opts = BuildOptions.from_config(load(), nostrip=True, clean=None)
        assert opts.nostrip is True
        assert opts.clean is True
        assert opts.use_fakeroot is True

    def test_auto_fakeroot_follows_euid(self, isolated_env, monkeypatch):
        monkeypatch.setattr(config.os, "geteuid", lambda: 0)
        assert BuildOptions.from_config(load()).use_fakeroot is False
        monkeypatch.setattr(config.os, "geteuid", lambda: 1000)
        assert BuildOptions.from_config(load()).use_fakeroot is True

    def test_unknown_override_rejected(self, isolated_env):
        with pytest.raises(ConfigError):
            BuildOptions.from_config(load(), turbo=True)


class TestModuleState:
    def test_reload_and_get_section(self, isolated_env):
        (isolated_env / "kiln.yaml").write_text("build:\n  shell: /bin/sh\n")
        config.reload()
        section = config.get_section("build")
        assert section["shell"] == "/bin/sh"
        section["shell"] = "changed"
        assert config.get_config().get("build.shell") == "/bin/sh"
        assert config.get_section("missing") == {}
