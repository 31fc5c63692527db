"""Tests for extracting local file paths from agent replies."""

from __future__ import annotations

from pathlib import Path

import pytest

from wxbridge.core.reply_paths import (
    FILE_EXTENSIONS,
    IMAGE_EXTENSIONS,
    ReplyPath,
    ReplyPathExtractor,
    match_candidate,
    replace_paths,
    tokenize,
)

ROOTS = ("/Users/", "/tmp/", "~/")


class TestTokenize:
    def test_splits_on_whitespace_and_quotes(self):
        assert tokenize("see `/tmp/a.png` and 'b' \"c\"\nd") == [
            "see",
            "/tmp/a.png",
            "and",
            "b",
            "c",
            "d",
        ]

    def test_empty(self):
        assert tokenize("   ") == []


class TestMatchCandidate:
    def test_plain_path(self):
        assert match_candidate("/tmp/photo.png", ROOTS, IMAGE_EXTENSIONS) == "/tmp/photo.png"

    def test_trailing_punctuation_dropped(self):
        assert match_candidate("/tmp/photo.png.", ROOTS, IMAGE_EXTENSIONS) == "/tmp/photo.png"
        assert match_candidate("/tmp/a.pdf)", ROOTS, FILE_EXTENSIONS) == "/tmp/a.pdf"

    def test_case_insensitive_extension(self):
        assert match_candidate("/tmp/PHOTO.JPG", ROOTS, IMAGE_EXTENSIONS) == "/tmp/PHOTO.JPG"

    def test_prefers_longer_extension(self):
        assert match_candidate("/tmp/a.docx", ROOTS, FILE_EXTENSIONS) == "/tmp/a.docx"

    def test_longest_prefix(self):
        assert match_candidate("/tmp/a.tar.gz", ROOTS, FILE_EXTENSIONS) == "/tmp/a.tar.gz"

    def test_root_inside_token(self):
        assert match_candidate("path:/tmp/x.png", ROOTS, IMAGE_EXTENSIONS) == "/tmp/x.png"

    def test_earliest_root_wins(self):
        assert (
            match_candidate("/tmp/Users/x.png", ROOTS, IMAGE_EXTENSIONS)
            == "/tmp/Users/x.png"
        )

    def test_requires_name_before_extension(self):
        assert match_candidate("/tmp/.png", ROOTS, IMAGE_EXTENSIONS) is None

    def test_no_root(self):
        assert match_candidate("/var/x.png", ROOTS, IMAGE_EXTENSIONS) is None

    def test_unknown_extension(self):
        assert match_candidate("/tmp/x.exe", ROOTS, FILE_EXTENSIONS) is None


class TestReplyPathExtractor:
    def test_only_existing_paths_returned(self, tmp_path):
        photo = tmp_path / "photo.png"
        photo.write_bytes(b"png")
        missing = tmp_path / "missing.png"
        extractor = ReplyPathExtractor([f"{tmp_path}/"])

        found = extractor.image_paths(f"Here: {photo} and {missing}")

        assert found == [ReplyPath(raw=str(photo), resolved=str(photo))]

    def test_backticked_path(self, tmp_path):
        report = tmp_path / "report.pdf"
        report.write_bytes(b"%PDF")
        extractor = ReplyPathExtractor([f"{tmp_path}/"])

        found = extractor.file_paths(f"Saved to `{report}`.")

        assert [p.resolved for p in found] == [str(report)]

    def test_deduplicates_in_order(self, tmp_path):
        a = tmp_path / "a.txt"
        b = tmp_path / "b.txt"
        a.write_text("a")
        b.write_text("b")
        extractor = ReplyPathExtractor([f"{tmp_path}/"])

        found = extractor.file_paths(f"{b} {a} {b}")

        assert [p.resolved for p in found] == [str(b), str(a)]

    def test_home_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / "pic.webp").write_bytes(b"w")
        extractor = ReplyPathExtractor()

        found = extractor.image_paths("look at ~/pic.webp")

        assert found == [ReplyPath(raw="~/pic.webp", resolved=str(tmp_path / "pic.webp"))]

    def test_images_not_matched_as_files(self, tmp_path):
        (tmp_path / "p.png").write_bytes(b"p")
        extractor = ReplyPathExtractor([f"{tmp_path}/"])
        assert extractor.file_paths(f"{tmp_path}/p.png") == []

    def test_default_roots(self):
        assert ReplyPathExtractor().roots == ROOTS


class TestReplacePaths:
    def test_replaces_and_unwraps_backticks(self):
        paths = [ReplyPath(raw="/tmp/a.png", resolved="/tmp/a.png")]
        assert replace_paths("Done: `/tmp/a.png`", paths, "[Image]") == "Done: [Image]"

    @pytest.mark.parametrize("text", ["/tmp/a.png", "  `/tmp/a.png`  "])
    def test_only_placeholder_left(self, text):
        paths = [ReplyPath(raw="/tmp/a.png", resolved="/tmp/a.png")]
        assert replace_paths(text, paths, "[Image]") == "[Image]"

    def test_raw_form_is_replaced(self):
        home = str(Path.home())
        paths = [ReplyPath(raw="~/x.pdf", resolved=f"{home}/x.pdf")]
        assert replace_paths("file ~/x.pdf", paths, "[File]") == "file [File]"


class TestMixedReply:
    def test_only_existing_image_found(self, tmp_path):
        folder = tmp_path / "x"
        folder.mkdir()
        (folder / "photo.jpg").write_bytes(b"jpg")
        extractor = ReplyPathExtractor([f"{tmp_path}/"])
        text = f"here: {folder}/photo.jpg and {folder}/notes.pdf"

        assert [p.resolved for p in extractor.image_paths(text)] == [str(folder / "photo.jpg")]
        assert extractor.file_paths(text) == []
