"""Tests for domain-to-path mapping."""

from pathlib import Path, PurePosixPath

import pytest

from ibackup2fs.normalizer.domain_mapper import (
    DEFAULT_DOMAIN_TABLE, DomainMapper, DomainTable,
    device_path, sanitize_segment, split_segments
)


class TestDomainTable:
    """Test rule lookup."""

    @pytest.mark.parametrize("domain,root", [
        ("HomeDomain", "private/var/mobile"),
        ("CameraRollDomain", "private/var/mobile"),
        ("MediaDomain", "private/var/mobile/Media"),
        ("KeychainDomain", "private/var/Keychains"),
        ("InstallDomain", "private/var/installd"),
        ("ManagedPreferencesDomain", "private/var/Managed Preferences"),
    ])
    def test_exact_domains(self, domain, root):
        """Test whole-domain rules."""
        assert DEFAULT_DOMAIN_TABLE.lookup(domain) == (root, None)

    def test_prefix_domain_keeps_suffix(self):
        """Test that the part after a prefix is returned as suffix."""
        assert DEFAULT_DOMAIN_TABLE.lookup("AppDomain-com.example.app") == (
            "private/var/mobile/Containers/Data/Application", "com.example.app"
        )

    def test_longest_prefix_wins(self):
        """Test that AppDomainGroup- is not swallowed by AppDomain-."""
        root, suffix = DEFAULT_DOMAIN_TABLE.lookup("AppDomainGroup-group.example")

        assert root == "private/var/mobile/Containers/Shared/AppGroup"
        assert suffix == "group.example"

    def test_unknown_domain_falls_back(self):
        """Test that unknown domains never fail."""
        assert DEFAULT_DOMAIN_TABLE.lookup("BrandNewDomain") == ("private/var/Other", None)
        assert DEFAULT_DOMAIN_TABLE.lookup("") == ("private/var/Other", None)

    def test_custom_table(self):
        """Test that a custom mapping and fallback are honoured."""
        table = DomainTable.from_mappings({"X-": "x", "Y": "y/z"}, fallback_root="other")

        assert table.lookup("X-1") == ("x", "1")
        assert table.lookup("Y") == ("y/z", None)
        assert table.lookup("Z") == ("other", None)


class TestSanitizeSegment:
    """Test per-segment cleanup."""

    def test_illegal_characters_removed(self):
        """Test that reserved punctuation and control chars are stripped."""
        assert sanitize_segment('a<b>c:d"e|f?g*h\x01') == "abcdefgh"

    def test_trailing_dots_and_spaces(self):
        """Test that trailing dots and spaces are dropped."""
        assert sanitize_segment("name. .") == "name"

    def test_reserved_names_prefixed(self):
        """Test that Windows device names are escaped."""
        assert sanitize_segment("CON") == "_CON"
        assert sanitize_segment("nul.txt") == "_nul.txt"

    def test_never_empty(self):
        """Test that fully stripped segments become a placeholder."""
        assert sanitize_segment("???") == "_"


class TestSplitSegments:
    """Test separator handling."""

    def test_foreign_separators(self):
        """Test that ':' and '\\' split like '/'."""
        assert split_segments("a:b\\c/d") == ["a", "b", "c", "d"]

    def test_dot_segments(self):
        """Test that '.' and empty segments vanish and '..' cannot climb."""
        assert split_segments("./a//../b/") == ["a", "_", "b"]

    def test_unsanitized_keeps_characters(self):
        """Test that sanitize=False leaves segment text alone."""
        assert split_segments("what?.txt ", sanitize=False) == ["what?.txt "]

    def test_unsanitized_still_neutralises_parent(self):
        """Test that traversal is blocked even without sanitization."""
        assert split_segments("../../etc", sanitize=False) == ["_", "_", "etc"]


class TestDevicePath:
    """Test full path construction."""

    def test_home_domain(self):
        """Test a plain exact-domain path."""
        assert device_path("HomeDomain", "Library/SMS/sms.db") == PurePosixPath(
            "private/var/mobile/Library/SMS/sms.db"
        )

    def test_app_container(self):
        """Test that the bundle id becomes a directory."""
        assert device_path("AppDomain-com.example.app", "Documents/a.txt") == PurePosixPath(
            "private/var/mobile/Containers/Data/Application/com.example.app/Documents/a.txt"
        )

    def test_suffix_is_sanitized(self):
        """Test that the domain suffix is treated like a path segment."""
        path = device_path("AppDomain-bad:id", "x")
        assert path.parts[-3:] == ("bad", "id", "x")

    def test_deterministic(self):
        """Test that the same input always gives the same path."""
        first = device_path("MediaDomain", "Media/DCIM/IMG.JPG")
        assert all(device_path("MediaDomain", "Media/DCIM/IMG.JPG") == first for _ in range(5))


class TestDomainMapper:
    """Test destination resolution under an output root."""

    def test_resolves_under_root(self, tmp_path):
        """Test that every destination stays inside the output root."""
        mapper = DomainMapper(tmp_path)
        dest = mapper.resolve("RootDomain", "../../../../etc/passwd")

        assert dest.is_relative_to(tmp_path)
        assert dest == tmp_path / "private/var/root/_/_/_/_/etc/passwd"

    def test_uses_custom_table(self, tmp_path):
        """Test that a mapper can be given its own table."""
        mapper = DomainMapper(tmp_path, table=DomainTable.from_mappings({}, "misc"))
        assert mapper.resolve("HomeDomain", "a") == Path(tmp_path) / "misc" / "a"

    def test_no_side_effects(self, tmp_path):
        """Test that resolving does not create anything on disk."""
        DomainMapper(tmp_path / "out").resolve("HomeDomain", "Library/x")
        assert not (tmp_path / "out").exists()
