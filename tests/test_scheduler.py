"""DownloadQueue のテスト"""

import threading
import time

import pytest

from conftest import FakeExecutor, make_record
from course_mirror.errors import AuthRequired, NotFound
from course_mirror.executor import ExecutorRegistry
from course_mirror.models import DownloadResult, LessonStatus, QueuedDownload, TargetKind
from course_mirror.observer import ProgressObserver
from course_mirror.scheduler import DownloadQueue


def seed(ledger, count):
    for i in range(count):
        ledger.add_lesson(make_record(f"l{i}", index=i))


def item(lesson_id, kind=TargetKind.RESOURCE):
    return QueuedDownload(
        lesson_id=lesson_id,
        title=f"Lesson {lesson_id}",
        target_url=f"https://files.example.com/{lesson_id}.pdf",
        target_kind=kind,
        output_path=f"/out/{lesson_id}",
    )


class RecordingObserver(ProgressObserver):

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def on_start(self, item, position, total):
        with self._lock:
            self.events.append(("start", item.lesson_id))

    def on_progress(self, item, percent):
        with self._lock:
            self.events.append(("progress", item.lesson_id, percent))

    def on_finish(self, item, result, position, total):
        with self._lock:
            self.events.append(("finish", item.lesson_id, result.success))


def test_never_exceeds_concurrency(make_ledger, logger):
    ledger = make_ledger()
    seed(ledger, 10)
    executor = FakeExecutor(ledger, delay=0.05)
    registry = ExecutorRegistry({TargetKind.RESOURCE: executor})

    with DownloadQueue(ledger, registry, concurrency=2, logger=logger) as queue:
        for i in range(10):
            queue.enqueue(item(f"l{i}"))
        stats = queue.wait_for_all()

    assert executor.max_active == 2
    assert executor.max_in_progress <= 2
    assert stats.total == 10
    assert stats.completed == 10
    assert ledger.stats().completed == 10
    assert all(ledger.get_lesson(f"l{i}").attempts == 1 for i in range(10))
    assert ledger.get_lesson("l3").output_path == "/out/l3.mp4"


def test_dequeues_in_enqueue_order(make_ledger, logger):
    ledger = make_ledger()
    seed(ledger, 5)
    executor = FakeExecutor()
    registry = ExecutorRegistry({TargetKind.RESOURCE: executor})

    with DownloadQueue(ledger, registry, concurrency=1, logger=logger) as queue:
        for i in range(5):
            queue.enqueue(item(f"l{i}"))
        queue.wait_for_all()

    assert executor.calls == [f"https://files.example.com/l{i}.pdf" for i in range(5)]


def test_auth_failure_marks_lesson_skipped(make_ledger, logger):
    ledger = make_ledger()
    seed(ledger, 1)
    executor = FakeExecutor(result=lambda url, dest: DownloadResult(success=False, error=AuthRequired()))
    registry = ExecutorRegistry({TargetKind.RESOURCE: executor})

    with DownloadQueue(ledger, registry, logger=logger) as queue:
        queue.enqueue(item("l0"))
        stats = queue.wait_for_all()

    record = ledger.get_lesson("l0")
    assert record.status == LessonStatus.SKIPPED
    assert record.last_error == "Authentication required"
    assert stats.skipped == 1
    assert ledger.get_pending() == []


def test_transfer_failure_marks_lesson_failed(make_ledger, logger):
    ledger = make_ledger()
    seed(ledger, 1)
    executor = FakeExecutor(result=lambda url, dest: DownloadResult(success=False, error=NotFound()))
    registry = ExecutorRegistry({TargetKind.RESOURCE: executor})

    with DownloadQueue(ledger, registry, logger=logger) as queue:
        queue.enqueue(item("l0"))
        stats = queue.wait_for_all()

    record = ledger.get_lesson("l0")
    assert record.status == LessonStatus.FAILED
    assert record.last_error == "File not found (404)"
    assert record.attempts == 1
    assert stats.failed == 1


def test_unexpected_executor_exception_is_contained(make_ledger, logger):
    ledger = make_ledger()
    seed(ledger, 2)

    def explode(url, dest):
        if url.endswith("l0.pdf"):
            raise RuntimeError("disk on fire")
        return DownloadResult(success=True, file_path=dest + ".pdf")

    registry = ExecutorRegistry({TargetKind.RESOURCE: FakeExecutor(result=explode)})

    with DownloadQueue(ledger, registry, logger=logger) as queue:
        queue.enqueue(item("l0"))
        queue.enqueue(item("l1"))
        queue.wait_for_all()

    assert ledger.get_lesson("l0").status == LessonStatus.FAILED
    assert ledger.get_lesson("l0").last_error == "disk on fire"
    assert ledger.get_lesson("l1").status == LessonStatus.COMPLETED


def test_missing_executor_fails_the_lesson(make_ledger, logger):
    ledger = make_ledger()
    seed(ledger, 1)
    registry = ExecutorRegistry({TargetKind.RESOURCE: FakeExecutor()})

    with DownloadQueue(ledger, registry, logger=logger) as queue:
        queue.enqueue(item("l0", kind=TargetKind.LOOM))
        queue.wait_for_all()

    record = ledger.get_lesson("l0")
    assert record.status == LessonStatus.FAILED
    assert "loom" in record.last_error


def test_pause_holds_new_work_until_resume(make_ledger, logger):
    ledger = make_ledger()
    seed(ledger, 3)
    executor = FakeExecutor()
    registry = ExecutorRegistry({TargetKind.RESOURCE: executor})

    with DownloadQueue(ledger, registry, logger=logger) as queue:
        queue.pause()
        for i in range(3):
            queue.enqueue(item(f"l{i}"))
        time.sleep(0.1)

        assert executor.calls == []
        assert ledger.stats().pending == 3

        queue.resume()
        stats = queue.wait_for_all()

    assert stats.completed == 3


def test_clear_drops_unstarted_items(make_ledger, logger):
    ledger = make_ledger()
    seed(ledger, 4)
    executor = FakeExecutor()
    registry = ExecutorRegistry({TargetKind.RESOURCE: executor})

    with DownloadQueue(ledger, registry, logger=logger) as queue:
        queue.pause()
        for i in range(4):
            queue.enqueue(item(f"l{i}"))

        assert queue.clear() == 4
        queue.resume()
        stats = queue.wait_for_all()

    assert executor.calls == []
    assert stats.total == 0
    assert [r.id for r in ledger.get_pending()] == ["l0", "l1", "l2", "l3"]


def test_observer_receives_lifecycle_events(make_ledger, logger):
    ledger = make_ledger()
    seed(ledger, 1)
    observer = RecordingObserver()
    registry = ExecutorRegistry({TargetKind.RESOURCE: FakeExecutor()})

    with DownloadQueue(ledger, registry, observer=observer, logger=logger) as queue:
        queue.enqueue(item("l0"))
        queue.wait_for_all()

    assert observer.events == [
        ("start", "l0"),
        ("progress", "l0", 50.0),
        ("progress", "l0", 100.0),
        ("finish", "l0", True),
    ]


class FailingObserver(ProgressObserver):

    def on_start(self, item, position, total):
        raise RuntimeError("render failed")

    def on_progress(self, item, percent):
        raise RuntimeError("render failed")

    def on_finish(self, item, result, position, total):
        raise RuntimeError("render failed")


def test_observer_errors_do_not_stop_the_queue(make_ledger, logger):
    ledger = make_ledger()
    seed(ledger, 4)
    executor = FakeExecutor()
    registry = ExecutorRegistry({TargetKind.RESOURCE: executor})
    done = threading.Event()
    stats = []

    with DownloadQueue(ledger, registry, concurrency=2, observer=FailingObserver(),
                       logger=logger) as queue:
        for i in range(4):
            queue.enqueue(item(f"l{i}"))

        def wait():
            stats.append(queue.wait_for_all())
            done.set()

        threading.Thread(target=wait, daemon=True).start()
        assert done.wait(timeout=5)

        # 同じワーカーが後から登録した分も処理できる
        queue.enqueue(item("l0"))
        queue.wait_for_all()

    assert stats[0].completed == 4
    assert len(executor.calls) == 5
    assert [ledger.get_lesson(f"l{i}").status for i in range(4)] == [LessonStatus.COMPLETED] * 4


def test_closed_queue_rejects_new_items(make_ledger, logger):
    ledger = make_ledger()
    queue = DownloadQueue(ledger, ExecutorRegistry(), logger=logger)
    queue.close()

    with pytest.raises(RuntimeError):
        queue.enqueue(item("l0"))


def test_concurrency_must_be_positive(make_ledger, logger):
    with pytest.raises(ValueError):
        DownloadQueue(make_ledger(), ExecutorRegistry(), concurrency=0, logger=logger)
