"""ダウンロードキュー（並列数制限付き）"""

import threading
from collections import deque
from typing import Deque, List, Optional

from .errors import TransferFailure
from .executor import ExecutorRegistry
from .ledger import LessonLedger
from .logger import Logger
from .models import DownloadResult, QueuedDownload, QueueStats
from .observer import ProgressObserver


class DownloadQueue:
    """ダウンロードキュー

    登録順に取り出し、最大 concurrency 件まで並列に Executor を実行する。
    1件ごとに mark_started → Executor → mark_completed / mark_failed /
    mark_skipped の順で進捗を更新する。完了順は登録順と一致しない。
    """

    def __init__(self, ledger: LessonLedger, registry: ExecutorRegistry,
                 concurrency: int = 2, observer: Optional[ProgressObserver] = None,
                 logger: Optional[Logger] = None):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self.ledger = ledger
        self.registry = registry
        self.concurrency = concurrency
        self.observer = observer or ProgressObserver()
        self.logger = logger or Logger()

        # スレッド制御
        self._cond = threading.Condition()
        self._pending: Deque[QueuedDownload] = deque()
        self._workers: List[threading.Thread] = []
        self._active = 0
        self._paused = False
        self._closed = False

        # 統計情報
        self._total = 0
        self._started = 0
        self._completed = 0
        self._failed = 0
        self._skipped = 0

    def __enter__(self) -> "DownloadQueue":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def enqueue(self, item: QueuedDownload):
        """ダウンロードを追加"""
        with self._cond:
            if self._closed:
                raise RuntimeError("Download queue is closed")
            self._pending.append(item)
            self._total += 1
            self._ensure_workers()
            self._cond.notify()

        self.logger.debug(f"Queued: {item.title} ({item.target_kind.value})")

    def _ensure_workers(self):
        """ワーカースレッドを起動（呼び出し側で _cond を保持）"""
        self._workers = [t for t in self._workers if t.is_alive()]
        while len(self._workers) < self.concurrency:
            thread = threading.Thread(
                target=self._worker,
                name=f"DownloadWorker-{len(self._workers) + 1}",
                daemon=True
            )
            self._workers.append(thread)
            thread.start()

    def _worker(self):
        """ワーカースレッド"""
        while True:
            with self._cond:
                while not self._closed and (self._paused or not self._pending):
                    self._cond.wait()
                if self._closed:
                    return

                item = self._pending.popleft()
                self._active += 1
                self._started += 1
                position = self._started
                total = self._total

            try:
                self._process(item, position, total)
            finally:
                with self._cond:
                    self._active -= 1
                    self._cond.notify_all()

    def _notify(self, event: str, *args):
        """Observer への通知（通知の失敗はログのみでダウンロードには影響させない）"""
        try:
            getattr(self.observer, event)(*args)
        except Exception as e:
            self.logger.error(f"Progress observer {event} failed: {e}", exc_info=True)

    def _process(self, item: QueuedDownload, position: int, total: int):
        """1件のダウンロードを実行して進捗を更新"""
        self.ledger.mark_started(item.lesson_id)

        result = DownloadResult(success=False, error=TransferFailure("Interrupted"))
        try:
            self._notify("on_start", item, position, total)
            result = self._execute(item)
        finally:
            # どの経路でも mark_started の後に終端状態を1回だけ記録する
            self._record(item, result)

        self._notify("on_finish", item, result, position, total)

    def _execute(self, item: QueuedDownload) -> DownloadResult:
        """Executor を実行（例外は失敗結果に変換）"""
        def on_progress(percent: float):
            self._notify("on_progress", item, percent)

        try:
            executor = self.registry.get(item.target_kind)
            return executor.download(
                item.target_url, item.output_path, item.options, on_progress=on_progress
            )
        except Exception as e:
            self.logger.error(f"Unexpected error while processing {item.title}: {e}", exc_info=True)
            return DownloadResult(success=False, error=TransferFailure(str(e) or type(e).__name__))

    def _record(self, item: QueuedDownload, result: DownloadResult):
        """結果を進捗と統計に反映"""
        if result.success:
            self.ledger.mark_completed(item.lesson_id, result.file_path or item.output_path)
        elif result.skipped:
            self.ledger.mark_skipped(item.lesson_id, result.error_message)
            self.logger.info(f"[SKIP] {item.title}: {result.error_message}", "skip")
        else:
            self.ledger.mark_failed(item.lesson_id, result.error_message or "Unknown error")

        with self._cond:
            if result.success:
                self._completed += 1
            elif result.skipped:
                self._skipped += 1
            else:
                self._failed += 1

    def wait_for_all(self) -> QueueStats:
        """登録済みのすべてのダウンロードが終わるまで待つ

        一時停止中に未処理のものが残っている場合は resume() されるまで戻らない。
        """
        with self._cond:
            while self._pending or self._active:
                self._cond.wait()
        return self.stats()

    def pause(self):
        """新しいダウンロードの開始を止める（実行中のものは最後まで続ける）"""
        with self._cond:
            self._paused = True

    def resume(self):
        """一時停止を解除"""
        with self._cond:
            self._paused = False
            self._cond.notify_all()

    def clear(self) -> int:
        """未開始のダウンロードを破棄（進捗上は pending のまま残る）"""
        with self._cond:
            dropped = len(self._pending)
            self._pending.clear()
            self._total -= dropped
            self._cond.notify_all()
        return dropped

    def close(self):
        """ワーカースレッドを停止"""
        with self._cond:
            self._closed = True
            self._cond.notify_all()
            workers = list(self._workers)

        for thread in workers:
            if thread is not threading.current_thread():
                thread.join()

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    def stats(self) -> QueueStats:
        """統計情報を取得"""
        with self._cond:
            return QueueStats(
                total=self._total,
                completed=self._completed,
                failed=self._failed,
                skipped=self._skipped,
            )
