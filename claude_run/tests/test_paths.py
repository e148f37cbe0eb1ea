import unittest
from pathlib import Path

from claude_run.paths import (
    encode_project_path,
    is_history_path,
    is_session_file,
    project_name,
    session_id_from_path,
)


class PathHelperTests(unittest.TestCase):
    def test_encode_project_path_replaces_slashes_and_dots(self) -> None:
        self.assertEqual(encode_project_path("/Users/me/my.app"), "-Users-me-my-app")
        self.assertEqual(encode_project_path("relative"), "relative")

    def test_encode_project_path_is_lossy(self) -> None:
        self.assertEqual(encode_project_path("/a.b"), encode_project_path("/a/b"))

    def test_project_name_uses_last_segment(self) -> None:
        self.assertEqual(project_name("/Users/me/project"), "project")
        self.assertEqual(project_name("/Users/me/project/"), "project")
        self.assertEqual(project_name("single"), "single")
        self.assertEqual(project_name("/"), "/")
        self.assertEqual(project_name(""), "")

    def test_session_file_classification(self) -> None:
        self.assertTrue(is_session_file("abc.jsonl"))
        self.assertFalse(is_session_file("abc.json"))
        self.assertFalse(is_session_file("notes.md"))
        self.assertEqual(session_id_from_path(Path("/x/proj/abc-123.jsonl")), "abc-123")
        self.assertEqual(session_id_from_path("abc.jsonl"), "abc")

    def test_history_path_matches_by_name_suffix(self) -> None:
        self.assertTrue(is_history_path("/home/me/.claude/history.jsonl"))
        self.assertFalse(is_history_path("/home/me/.claude/projects/p/s.jsonl"))


if __name__ == "__main__":
    unittest.main()
