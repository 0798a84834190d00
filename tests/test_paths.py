import unittest

from audiotree.paths import RESERVED_CHARACTERS, Cleaner, is_trash_file


class TestTrashFiles(unittest.TestCase):
    def test_finder_info(self):
        self.assertTrue(is_trash_file(".DS_Store"))
        self.assertTrue(is_trash_file("foo/bar/.DS_Store"))

    def test_apple_double(self):
        self.assertTrue(is_trash_file("._DS_Store"))
        self.assertTrue(is_trash_file("foo/bar/._file.ext"))

    def test_hidden_files_are_not_trash(self):
        self.assertFalse(is_trash_file(".hidden"))
        self.assertFalse(is_trash_file("album/01.flac"))


class TestCleaner(unittest.TestCase):
    def setUp(self):
        self.cleaner = Cleaner("_", RESERVED_CHARACTERS)

    def test_clean_path(self):
        self.assertEqual(
            self.cleaner.clean_path('/ham<>:/spam"\\|?/eggs/file*name.ext'),
            "/ham___/spam____/eggs/file_name.ext",
        )
        self.assertEqual(self.cleaner.clean_path("/foo//bar"), "/foo/bar")
        self.assertEqual(self.cleaner.clean_path("rel/a:b"), "rel/a_b")

    def test_clean_name(self):
        self.assertEqual(self.cleaner.clean_name('foo<>:"/\\|?*bar'), "foo_________bar")

    def test_control_characters(self):
        for cp in range(32):
            self.assertEqual(self.cleaner.clean_name(chr(cp)), "_", f"code point {cp}")

    def test_multi_character_replacement(self):
        self.assertEqual(Cleaner("--").clean_name("a?b"), "a--b")

    def test_empty_cleaner_is_identity(self):
        c = Cleaner("_", [])
        path = "/foo<>bar/ham \\ spam/quux.ext"
        self.assertEqual(c.clean_path(path), path)
        self.assertEqual(c.clean_name("foo?bar.ext"), "foo?bar.ext")


if __name__ == "__main__":
    unittest.main()
