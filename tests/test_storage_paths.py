import os
import re
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from uploadserver import storage
from uploadserver.errors import InvalidNameError, NotFoundError, PathTraversalError, PermissionDeniedError


class ResolvePathTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.base = Path(self.tmp.name).resolve()
        self.root = self.base / "root"
        (self.root / "docs").mkdir(parents=True)
        (self.root / "docs" / "readme.txt").write_text("hello", encoding="utf-8")
        (self.base / "secret.txt").write_text("top secret", encoding="utf-8")

    def tearDown(self):
        self.tmp.cleanup()

    def test_empty_path_is_root(self):
        self.assertEqual(storage.resolve_path(self.root, ""), self.root)
        self.assertEqual(storage.resolve_path(self.root, "/"), self.root)

    def test_nested_path_resolves_under_root(self):
        resolved = storage.resolve_path(self.root, "docs/readme.txt", must_exist=True)
        self.assertEqual(resolved, self.root / "docs" / "readme.txt")

    def test_dot_segments_and_duplicate_slashes_collapse(self):
        resolved = storage.resolve_path(self.root, "./docs//./readme.txt")
        self.assertEqual(resolved, self.root / "docs" / "readme.txt")

    def test_parent_segments_rejected_even_when_target_exists(self):
        for candidate in [
            "../secret.txt",
            "docs/../../secret.txt",
            "docs/../docs/readme.txt",
            "..",
            "docs/..",
        ]:
            with self.subTest(candidate=candidate):
                with self.assertRaises(PathTraversalError):
                    storage.resolve_path(self.root, candidate)

    def test_backslash_parent_segments_rejected(self):
        with self.assertRaises(PathTraversalError):
            storage.resolve_path(self.root, "docs\\..\\..\\secret.txt")

    def test_absolute_request_path_stays_under_root(self):
        resolved = storage.resolve_path(self.root, "/docs/readme.txt")
        self.assertEqual(resolved, self.root / "docs" / "readme.txt")
        outside = storage.resolve_path(self.root, str(self.base / "secret.txt"))
        self.assertTrue(str(outside).startswith(str(self.root)))

    def test_nul_byte_rejected(self):
        with self.assertRaises(PathTraversalError):
            storage.resolve_path(self.root, "docs/readme.txt\x00.png")

    def test_missing_path_raises_not_found_only_when_required(self):
        missing = storage.resolve_path(self.root, "nope.txt")
        self.assertEqual(missing, self.root / "nope.txt")
        with self.assertRaises(NotFoundError):
            storage.resolve_path(self.root, "nope.txt", must_exist=True)

    def test_symlink_escaping_root_rejected(self):
        link = self.root / "escape"
        try:
            os.symlink(self.base, link, target_is_directory=True)
        except (OSError, NotImplementedError):
            self.skipTest("symlinks not supported")
        with self.assertRaises(PathTraversalError):
            storage.resolve_path(self.root, "escape/secret.txt")

    def test_relative_url_path(self):
        self.assertEqual(storage.relative_url_path(self.root, self.root), "")
        self.assertEqual(
            storage.relative_url_path(self.root, self.root / "docs" / "readme.txt"),
            "docs/readme.txt",
        )


class AllocateFilenameTests(unittest.TestCase):
    TOKEN_PATTERN = r"[0-9a-f]{%d}" % (storage.RANDOM_TOKEN_BYTES * 2)

    def test_keep_original_returns_bare_name(self):
        self.assertEqual(storage.allocate_filename("report.pdf", keep_original=True), "report.pdf")

    def test_directory_components_stripped(self):
        self.assertEqual(
            storage.allocate_filename("../../etc/passwd", keep_original=True), "passwd"
        )
        self.assertEqual(
            storage.allocate_filename("C:\\Users\\me\\photo.jpg", keep_original=True),
            "photo.jpg",
        )

    def test_randomized_name_preserves_stem_and_extension(self):
        name = storage.allocate_filename("report.pdf")
        self.assertRegex(name, r"^report-%s\.pdf$" % self.TOKEN_PATTERN)

    def test_randomized_names_are_distinct(self):
        names = [storage.allocate_filename("photo.jpg") for _ in range(500)]
        self.assertEqual(len(set(names)), len(names))
        for name in names:
            self.assertTrue(name.startswith("photo-"))
            self.assertTrue(name.endswith(".jpg"))

    def test_only_last_suffix_is_the_extension(self):
        name = storage.allocate_filename("archive.tar.gz")
        self.assertRegex(name, r"^archive\.tar-%s\.gz$" % self.TOKEN_PATTERN)

    def test_name_without_extension(self):
        self.assertRegex(storage.allocate_filename("Makefile"), r"^Makefile-%s$" % self.TOKEN_PATTERN)
        self.assertRegex(storage.allocate_filename(".env"), r"^\.env-%s$" % self.TOKEN_PATTERN)

    def test_token_uses_secrets(self):
        with mock.patch("uploadserver.storage.secrets.token_hex", return_value="abc123") as token_hex:
            self.assertEqual(storage.allocate_filename("a.txt"), "a-abc123.txt")
        token_hex.assert_called_once_with(storage.RANDOM_TOKEN_BYTES)

    def test_empty_names_rejected(self):
        for candidate in ["", "   ", "dir/", "a/b/", "/", "..", "."]:
            with self.subTest(candidate=candidate):
                with self.assertRaises(InvalidNameError):
                    storage.allocate_filename(candidate)

    def test_control_characters_rejected(self):
        with self.assertRaises(InvalidNameError):
            storage.allocate_filename("bad\nname.txt", keep_original=True)
        with self.assertRaises(InvalidNameError):
            storage.allocate_filename("bad\x00name.txt")

    def test_overlong_names_rejected(self):
        with self.assertRaises(InvalidNameError):
            storage.allocate_filename("a" * (storage.MAX_FILENAME_LENGTH + 1) + ".txt")

    def test_name_at_length_limit_accepted(self):
        self.assertEqual(storage.MAX_FILENAME_LENGTH, 255)
        with mock.patch.dict(os.environ, {"UPLOADSERVER_MAX_FILENAME_LENGTH": "not-a-number"}):
            name = "a" * 251 + ".txt"
            self.assertEqual(storage.allocate_filename(name, keep_original=True), name)

    def test_long_names_truncated_to_fit_token(self):
        desired = "b" * (storage.MAX_FILENAME_LENGTH - 4) + ".txt"
        name = storage.allocate_filename(desired)
        self.assertLessEqual(len(name.encode("utf-8")), storage.MAX_FILENAME_LENGTH)
        self.assertTrue(name.endswith(".txt"))
        self.assertIsNotNone(re.search(self.TOKEN_PATTERN, name))

    def test_unicode_names_preserved(self):
        self.assertEqual(
            storage.allocate_filename("résumé 2024.pdf", keep_original=True), "résumé 2024.pdf"
        )
        self.assertTrue(storage.allocate_filename("résumé.pdf").startswith("résumé-"))


class ListDirectoryTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_entries_sorted_by_name_with_sizes(self):
        (self.root / "b.txt").write_bytes(b"12345")
        (self.root / "a.txt").write_bytes(b"1")
        (self.root / "c").mkdir()

        entries = storage.list_directory(self.root)
        self.assertEqual([entry.name for entry in entries], ["a.txt", "b.txt", "c"])
        self.assertEqual([entry.is_dir for entry in entries], [False, False, True])
        self.assertEqual([entry.size for entry in entries], [1, 5, None])

    def test_in_flight_uploads_hidden(self):
        (self.root / "done.txt").write_bytes(b"done")
        (self.root / storage.temp_upload_name()).write_bytes(b"partial")
        (self.root / ".upload-notes").write_bytes(b"user file")

        names = [entry.name for entry in storage.list_directory(self.root)]
        self.assertEqual(names, [".upload-notes", "done.txt"])

    def test_unreadable_directory_is_permission_denied(self):
        with mock.patch("uploadserver.storage.os.scandir", side_effect=PermissionError(13, "Permission denied")):
            with self.assertRaises(PermissionDeniedError):
                storage.list_directory(self.root)

    def test_missing_directory(self):
        with self.assertRaises(NotFoundError):
            storage.list_directory(self.root / "missing")


if __name__ == "__main__":
    unittest.main()
