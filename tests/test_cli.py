"""コマンドラインインターフェースのテスト"""

from pathlib import Path

import pytest

from course_mirror.cli import main, parse_arguments


@pytest.fixture
def manifest(tmp_path):
    path = tmp_path / "ai-course.csv"
    path.write_text(
        "module,lesson,url\n"
        "Getting Started,Welcome,https://fast.wistia.net/embed/iframe/abc\n",
        encoding="utf-8",
    )
    return str(path)


def global_args(tmp_path):
    return ["--state-dir", str(tmp_path / "state"), "--log-dir", str(tmp_path / "logs")]


def test_parse_download_options():
    args = parse_arguments(["download", "course.csv", "-o", "out", "-c", "4", "--no-subs"])

    assert args.command == "download"
    assert args.source == "course.csv"
    assert args.download_dir == "out"
    assert args.concurrency == 4
    assert args.no_subs is True
    assert args.dry_run is False


def test_dry_run_lists_lessons_without_state(tmp_path, manifest):
    code = main(global_args(tmp_path) + ["download", manifest, "--dry-run"])

    assert code == 0
    assert not (tmp_path / "state").exists()


def test_missing_manifest_exits_with_error(tmp_path):
    code = main(global_args(tmp_path) + ["download", str(tmp_path / "missing.csv"), "--dry-run"])

    assert code == 1


def test_invalid_concurrency_is_rejected(tmp_path, manifest):
    code = main(global_args(tmp_path) + ["download", manifest, "-c", "0"])

    assert code == 2


def test_status_and_reset_without_history(tmp_path, manifest):
    assert main(global_args(tmp_path) + ["status", manifest]) == 0
    assert main(global_args(tmp_path) + ["reset", manifest]) == 0
    assert len(list(Path(tmp_path / "state").glob("ai-course-*-progress.json"))) == 1
