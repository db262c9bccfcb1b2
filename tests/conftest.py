"""テスト共通のフィクスチャとスタブ"""

import io
import threading
import time
from typing import Callable, Dict, List, Optional, Union

import pytest
import requests
from requests.structures import CaseInsensitiveDict
from rich.console import Console

from course_mirror.config import get_config
from course_mirror.ledger import LessonLedger
from course_mirror.logger import Logger
from course_mirror.models import DownloadResult, LessonRecord


@pytest.fixture
def logger(tmp_path):
    return Logger(log_dir=str(tmp_path / "logs"), console=Console(file=io.StringIO(), width=120))


@pytest.fixture
def config(tmp_path):
    return get_config(
        state_dir=str(tmp_path / "state"),
        download_dir=str(tmp_path / "downloads"),
        log_dir=str(tmp_path / "logs"),
        autosave_every=0,
    )


@pytest.fixture
def make_ledger(tmp_path, logger):
    def _make(course_key: str = "course", **kwargs) -> LessonLedger:
        return LessonLedger(str(tmp_path / "state"), course_key, logger=logger, **kwargs)

    return _make


def make_record(lesson_id: str, index: int = 0, module: str = "Module", **kwargs) -> LessonRecord:
    return LessonRecord(
        id=lesson_id,
        module_index=kwargs.pop("module_index", 0),
        lesson_index=index,
        module_title=module,
        lesson_title=kwargs.pop("lesson_title", f"Lesson {lesson_id}"),
        **kwargs,
    )


class FakeResponse:
    """ストリーミング本文を返す requests.Response の代用品"""

    def __init__(self, status_code: int = 200, headers: Optional[Dict[str, str]] = None,
                 body: bytes = b"", chunk_size: int = 4, delay: float = 0.0,
                 stream_error: Optional[Exception] = None):
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        self.url = ""
        self.closed = False
        self._body = body
        self._chunk_size = chunk_size
        self._delay = delay
        self._stream_error = stream_error

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self._body), self._chunk_size):
            if self._delay:
                time.sleep(self._delay)
            yield self._body[start:start + self._chunk_size]
        if self._stream_error is not None:
            raise self._stream_error

    def close(self):
        self.closed = True


Route = Union[FakeResponse, Exception, Callable[[], FakeResponse]]


class FakeSession:
    """URLごとに用意したレスポンスを返す requests.Session の代用品"""

    def __init__(self, routes: Dict[str, Union[Route, List[Route]]]):
        self.routes = routes
        self.calls: List[Dict] = []
        self.headers: Dict[str, str] = {}
        self.cookies = requests.cookies.RequestsCookieJar()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def get(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        route = self.routes[url]
        if isinstance(route, list):
            route = route.pop(0)
        if isinstance(route, Exception):
            raise route
        if callable(route) and not isinstance(route, FakeResponse):
            return route()
        return route


class FakeExecutor:
    """同時実行数を記録し、指定した結果を返す Executor"""

    def __init__(self, ledger: Optional[LessonLedger] = None, delay: float = 0.0,
                 result: Optional[Callable[[str, str], DownloadResult]] = None):
        self.ledger = ledger
        self.delay = delay
        self.result = result
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0
        self.max_in_progress = 0
        self._lock = threading.Lock()

    def download(self, url, destination, options, on_progress=None):
        with self._lock:
            self.calls.append(url)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            if self.ledger is not None:
                self.max_in_progress = max(self.max_in_progress, self.ledger.stats().in_progress)
        try:
            if self.delay:
                time.sleep(self.delay)
            if on_progress:
                on_progress(50.0)
                on_progress(100.0)
            if self.result is not None:
                return self.result(url, destination)
            return DownloadResult(success=True, file_path=destination + ".mp4", file_size=1)
        finally:
            with self._lock:
                self.active -= 1
