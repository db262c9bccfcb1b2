"""ManifestDiscovery のテスト"""

import pytest

from course_mirror.discovery import ManifestDiscovery
from course_mirror.errors import DiscoveryFailure
from course_mirror.models import TargetKind

MANIFEST = """module,lesson,url
Getting Started,Welcome,https://fast.wistia.net/embed/iframe/abc
,Setup,https://files.example.com/setup.pdf
Deep Dive,Prompting,https://player.vimeo.com/video/3
,Notes,
Getting Started,Bonus,https://youtu.be/xyz
"""


@pytest.fixture
def manifest(tmp_path):
    path = tmp_path / "ai-course.csv"
    path.write_text(MANIFEST, encoding="utf-8")
    return path


def test_discover_reads_lessons_in_order(manifest):
    outline = ManifestDiscovery().discover(str(manifest))

    assert outline.name == "ai-course"
    assert [l.title for l in outline.lessons] == ["Welcome", "Setup", "Prompting", "Notes", "Bonus"]
    assert [l.parent_title for l in outline.lessons] == [
        "Getting Started", "Getting Started", "Deep Dive", "Deep Dive", "Getting Started"
    ]
    assert [(l.parent_position, l.position) for l in outline.lessons] == [
        (0, 0), (0, 1), (1, 0), (1, 1), (0, 2)
    ]
    assert outline.lessons[3].source_locator is None


def test_lesson_ids_are_stable_and_unique(manifest):
    first = ManifestDiscovery().discover(str(manifest))
    second = ManifestDiscovery().discover(str(manifest))

    ids = [l.id for l in first.lessons]
    assert ids == [l.id for l in second.lessons]
    assert len(set(ids)) == len(ids)


def test_explicit_id_column_and_course_name(tmp_path):
    path = tmp_path / "m.csv"
    path.write_text("id,title,link\nL1,Intro,https://www.loom.com/share/a\n", encoding="utf-8")

    outline = ManifestDiscovery(course_name="Loom Course").discover(str(path))

    assert outline.name == "Loom Course"
    assert outline.lessons[0].id == "L1"
    assert outline.lessons[0].parent_title == ""


def test_missing_manifest(tmp_path):
    with pytest.raises(DiscoveryFailure):
        ManifestDiscovery().discover(str(tmp_path / "nope.csv"))


def test_manifest_without_lesson_column(tmp_path):
    path = tmp_path / "m.csv"
    path.write_text("module,url\nA,https://example.com\n", encoding="utf-8")

    with pytest.raises(DiscoveryFailure):
        ManifestDiscovery().discover(str(path))


def test_manifest_without_lessons(tmp_path):
    path = tmp_path / "m.csv"
    path.write_text("module,lesson,url\nA,,https://example.com\n", encoding="utf-8")

    with pytest.raises(DiscoveryFailure):
        ManifestDiscovery().discover(str(path))


def test_resolve_target_detects_kind():
    discovery = ManifestDiscovery()

    target = discovery.resolve_target("https://files.example.com/setup.pdf")
    assert target.target_url == "https://files.example.com/setup.pdf"
    assert target.target_kind == TargetKind.RESOURCE

    assert discovery.resolve_target("") is None
