"""
Tests for kiln.resume - the two-line resume marker.
"""

from kiln.resume import GLOBAL_PHASES, ResumeState, ResumeStore


class TestResumeStore:
    def test_missing_file_means_fresh_start(self, tmp_path):
        store = ResumeStore(str(tmp_path))
        assert store.load() is None
        assert store.phases_to_run(None) == GLOBAL_PHASES

    def test_save_writes_two_lines(self, tmp_path):
        store = ResumeStore(str(tmp_path))
        store.save(ResumeState("compile", 0))
        assert (tmp_path / ".kiln_resume").read_text() == "compile\n0\n"
        assert not (tmp_path / ".kiln_resume.tmp").exists()

    def test_round_trip(self, tmp_path):
        store = ResumeStore(str(tmp_path))
        store.save(ResumeState("verify", 3))
        assert store.load() == ResumeState("verify", 3)

    def test_persisted_compile_skips_prepare(self, tmp_path):
        store = ResumeStore(str(tmp_path))
        store.save(ResumeState("compile", 0))
        assert store.phases_to_run(store.load()) == ["compile", "verify"]

    def test_unknown_phase_is_ignored(self, tmp_path):
        (tmp_path / ".kiln_resume").write_text("assemble\n0\n")
        assert ResumeStore(str(tmp_path)).load() is None

    def test_bad_index_defaults_to_zero(self, tmp_path):
        (tmp_path / ".kiln_resume").write_text("prepare\nnot-a-number\n")
        assert ResumeStore(str(tmp_path)).load() == ResumeState("prepare", 0)

    def test_clear(self, tmp_path):
        store = ResumeStore(str(tmp_path), filename=".custom")
        store.save(ResumeState("prepare"))
        store.clear()
        assert not (tmp_path / ".custom").exists()
        store.clear()
