"""Tests for `fl pub sort`."""

from __future__ import annotations

from fl.tools.pubspec import sort_dependency_section, sort_pubspec, sort_pubspec_text

PUBSPEC = """\
name: demo
description: A demo app.

dependencies:
  http: ^1.2.0
  flutter:
    sdk: flutter
  Provider: ^6.1.0
  args: ^2.5.0

dev_dependencies:
  test: any
  flutter_test:
    sdk: flutter

flutter:
  uses-material-design: true
"""

SORTED = """\
name: demo
description: A demo app.

dependencies:
  args: ^2.5.0
  flutter:
    sdk: flutter
  http: ^1.2.0
  Provider: ^6.1.0

dev_dependencies:
  flutter_test:
    sdk: flutter
  test: any

flutter:
  uses-material-design: true
"""


class TestSortPubspecText:
    def test_sorts_both_sections(self):
        assert sort_pubspec_text(PUBSPEC) == SORTED

    def test_already_sorted_is_stable(self):
        assert sort_pubspec_text(SORTED) == SORTED

    def test_other_sections_untouched(self):
        text = "name: x\nflutter:\n  zeta: 1\n  alpha: 2\n"
        assert sort_pubspec_text(text) == text

    def test_multi_line_entry_moves_with_header(self):
        section = [
            "  zed:",
            "    git:",
            "      url: https://example.com/zed.git",
            "  alpha: ^1.0.0",
        ]
        assert sort_dependency_section(section, "  ") == [
            "  alpha: ^1.0.0",
            "  zed:",
            "    git:",
            "      url: https://example.com/zed.git",
        ]


class TestSortPubspecFile:
    def test_missing_pubspec(self, tmp_path, capsys):
        assert sort_pubspec(tmp_path) == 1
        assert "pubspec.yaml not found" in capsys.readouterr().err

    def test_sorts_in_place(self, tmp_path):
        (tmp_path / "pubspec.yaml").write_text(PUBSPEC)
        assert sort_pubspec(tmp_path) == 0
        assert (tmp_path / "pubspec.yaml").read_text() == SORTED
        assert not (tmp_path / "pubspec.yaml.backup").exists()

    def test_backup(self, tmp_path):
        (tmp_path / "pubspec.yaml").write_text(PUBSPEC)
        assert sort_pubspec(tmp_path, create_backup=True) == 0
        assert (tmp_path / "pubspec.yaml.backup").read_text() == PUBSPEC
