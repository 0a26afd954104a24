"""Tests for resume state persistence."""

import json

from ibackup2fs.normalizer.resume import ResumeState


class TestResumeState:
    """Test completed-file bookkeeping."""

    def test_matches_resolved_paths(self, tmp_path):
        """Test that state is tied to one backup/output pair."""
        state = ResumeState.new(tmp_path / "b", tmp_path / "o")

        assert state.matches(tmp_path / "b", tmp_path / "o")
        assert not state.matches(tmp_path / "b", tmp_path / "other")

    def test_lookup_requires_intact_destination(self, tmp_path):
        """Test that a completed file is trusted only while unchanged on disk."""
        dest = tmp_path / "out" / "f.txt"
        dest.parent.mkdir()
        dest.write_bytes(b"12345")
        state = ResumeState.new(tmp_path / "b", tmp_path / "out")
        state.mark_completed("abcd", dest, 5, {"md5": "x"})

        assert state.lookup("abcd", dest).digests == {"md5": "x"}
        assert state.lookup("abcd", tmp_path / "elsewhere") is None
        assert state.lookup("other", dest) is None

        dest.write_bytes(b"123")
        assert state.lookup("abcd", dest) is None

        dest.unlink()
        assert state.lookup("abcd", dest) is None

    def test_save_and_load(self, tmp_path):
        """Test that saved state loads back with its records."""
        state_file = tmp_path / "state" / "resume.json"
        dest = tmp_path / "f"
        state = ResumeState.new(tmp_path / "b", tmp_path / "o")
        state.mark_completed("abcd", dest, 3, {"sha1": "y"})

        state.save(state_file)
        loaded = ResumeState.load(state_file)

        assert loaded is not None
        assert len(loaded) == 1
        assert loaded.completed["abcd"].size == 3
        assert loaded.completed["abcd"].digests == {"sha1": "y"}
        assert loaded.matches(tmp_path / "b", tmp_path / "o")
        assert not state_file.with_suffix(".json.tmp").exists()

    def test_load_missing_or_corrupt(self, tmp_path):
        """Test that unusable state files are ignored."""
        state_file = tmp_path / "resume.json"
        assert ResumeState.load(state_file) is None

        state_file.write_text("{not json", encoding="utf-8")
        assert ResumeState.load(state_file) is None

        state_file.write_text(json.dumps({"version": 99}), encoding="utf-8")
        assert ResumeState.load(state_file) is None

    def test_clear(self, tmp_path):
        """Test that clearing removes the file and tolerates absence."""
        state_file = tmp_path / "resume.json"
        ResumeState.new(tmp_path, tmp_path).save(state_file)

        ResumeState.clear(state_file)
        ResumeState.clear(state_file)

        assert not state_file.exists()
