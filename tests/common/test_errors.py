"""Tests for standardized error handling."""

from ibackup2fs.common import (
    Backup2FSError, ConfigurationError, FileProcessingError, UnsupportedDigestError
)


class TestStandardizedErrors:
    """Test standardized error types."""

    def test_base_error(self):
        """Test base Backup2FSError functionality."""
        error = Backup2FSError("Test error")

        assert str(error) == "Test error"
        assert error.message == "Test error"
        assert error.context == {}

    def test_context_rendered_in_message(self):
        """Test that context is appended to the string form."""
        error = FileProcessingError("Copy failed", file_path="/x/y", size=3)

        assert error.message == "Copy failed"
        assert str(error) == "Copy failed (file_path=/x/y, size=3)"
        assert error.context == {"file_path": "/x/y", "size": 3}

    def test_inheritance(self):
        """Test that every error derives from the package base."""
        assert isinstance(ConfigurationError("x"), Backup2FSError)
        assert isinstance(FileProcessingError("x"), Backup2FSError)

    def test_unsupported_digest_is_value_error(self):
        """Test that digest errors can be caught as ValueError."""
        error = UnsupportedDigestError("bad", supported="md5")
        assert isinstance(error, ValueError)
        assert isinstance(error, Backup2FSError)
