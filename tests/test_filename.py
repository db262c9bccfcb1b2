"""FileNameGenerator のテスト"""

import os

from course_mirror.filename import FileNameGenerator


def test_sanitize_replaces_forbidden_characters():
    assert FileNameGenerator.sanitize_filename('Q&A: "Why?" <1/2>') == 'Q&A：_＂Why？＂_＜1／2＞'


def test_sanitize_collapses_whitespace_and_strips_control_characters():
    assert FileNameGenerator.sanitize_filename("  Intro \t to\x00  AI  ") == "Intro_to_AI"


def test_sanitize_rejects_dot_names():
    assert FileNameGenerator.sanitize_filename("..") == ""
    assert FileNameGenerator.sanitize_filename(".") == ""


def test_sanitize_truncates():
    assert len(FileNameGenerator.sanitize_filename("x" * 300)) == 200


def test_generate_output_path():
    path = FileNameGenerator.generate_output_path(
        "downloads", "AI Course", 0, "Getting Started", 9, "Wrap up"
    )
    assert path == os.path.join("downloads", "AI_Course", "01_Getting_Started", "10_Wrap_up")


def test_generate_output_path_with_empty_titles():
    path = FileNameGenerator.generate_output_path("downloads", "..", 1, "", 0, "")
    assert path == os.path.join("downloads", "course", "02", "01")


def test_course_key():
    assert FileNameGenerator.course_key("https://school.example.com/ai-course/lessons/1") == "ai-course"
    assert FileNameGenerator.course_key("https://school.example.com/") == "school.example.com"
    assert FileNameGenerator.course_key("https://x.example.com/%%%") == "unknown"


def test_course_key_for_manifest_includes_path_hash(tmp_path, monkeypatch):
    key = FileNameGenerator.course_key(str(tmp_path / "manifests" / "My Course.xlsx"))
    assert key.startswith("My-Course-")
    assert len(key) == len("My-Course-") + 8

    monkeypatch.chdir(tmp_path)
    assert FileNameGenerator.course_key("manifests/My Course.xlsx") == key


def test_same_named_manifests_in_different_directories_get_separate_keys(tmp_path):
    first = FileNameGenerator.course_key(str(tmp_path / "a" / "course.xlsx"))
    second = FileNameGenerator.course_key(str(tmp_path / "b" / "course.xlsx"))

    assert first != second
    assert first.startswith("course-")
    assert second.startswith("course-")
