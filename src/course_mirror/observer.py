"""進捗通知

キューと統括処理は ProgressObserver を受け取って進捗を通知する。
通知は表示のためだけのもので、スケジューリングには影響しない。
"""

import threading
from typing import Dict, Optional

from rich.console import Console
from rich.progress import (
    BarColumn, Progress, SpinnerColumn, TaskID, TaskProgressColumn, TextColumn
)

from .models import DownloadResult, LessonRecord, QueuedDownload


class ProgressObserver:
    """何もしない Observer（各メソッドを必要に応じて上書きする）"""

    def on_extract(self, record: LessonRecord, position: int, total: int):
        """ダウンロード対象の解決を開始"""

    def on_start(self, item: QueuedDownload, position: int, total: int):
        """ダウンロード開始"""

    def on_progress(self, item: QueuedDownload, percent: float):
        """ダウンロード中の進捗（0-100）"""

    def on_finish(self, item: QueuedDownload, result: DownloadResult,
                  position: int, total: int):
        """ダウンロード終了（成功・失敗・スキップ）"""


class RichProgressObserver(ProgressObserver):
    """rich のプログレスバーで進捗を表示"""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=self.console,
            transient=True,
        )
        self._tasks: Dict[str, TaskID] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "RichProgressObserver":
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.progress.stop()

    def on_extract(self, record, position, total):
        self.console.print(f"[dim][{position}/{total}] Extracting: {record.lesson_title}[/dim]")

    def on_start(self, item, position, total):
        with self._lock:
            self._tasks[item.lesson_id] = self.progress.add_task(
                f"[cyan][{position}/{total}] {item.title}", total=100
            )

    def on_progress(self, item, percent):
        with self._lock:
            task_id = self._tasks.get(item.lesson_id)
        if task_id is not None:
            self.progress.update(task_id, completed=percent)

    def on_finish(self, item, result, position, total):
        with self._lock:
            task_id = self._tasks.pop(item.lesson_id, None)
        if task_id is not None:
            self.progress.remove_task(task_id)

        if result.success:
            self.console.print(f"[green]✓ [{position}/{total}] Completed: {item.title}[/green]")
        elif result.skipped:
            self.console.print(
                f"[yellow]⊘ [{position}/{total}] Skipped: {item.title} - {result.error_message}[/yellow]"
            )
        else:
            self.console.print(
                f"[red]✗ [{position}/{total}] Failed: {item.title} - {result.error_message}[/red]"
            )
