"""データモデルとEnum定義"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.table import Table

from .errors import TransferFailure

# 失敗したレッスンを再スケジュールする試行回数の上限
MAX_ATTEMPTS = 3


class LessonStatus(Enum):
    """レッスンの状態"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TargetKind(Enum):
    """ダウンロード対象の種別（Executor の選択キー）"""
    WISTIA = "wistia"
    VIMEO = "vimeo"
    YOUTUBE = "youtube"
    LOOM = "loom"
    NATIVE = "native"
    MEDIA = "unknown"
    GOOGLE_DRIVE = "google_drive"
    RESOURCE = "resource"

    @property
    def is_media(self) -> bool:
        return self not in (TargetKind.GOOGLE_DRIVE, TargetKind.RESOURCE)


@dataclass
class LessonRecord:
    """レッスンレコード（Resume用）"""
    id: str
    module_index: int
    lesson_index: int
    module_title: str
    lesson_title: str
    target_url: Optional[str] = None
    target_kind: Optional[TargetKind] = None
    source_locator: Optional[str] = None
    status: LessonStatus = LessonStatus.PENDING
    output_path: Optional[str] = None
    last_error: Optional[str] = None
    attempts: int = 0

    def is_eligible(self, max_attempts: int = MAX_ATTEMPTS) -> bool:
        """(再)スケジュール対象かどうか"""
        if self.status == LessonStatus.PENDING:
            return True
        return self.status == LessonStatus.FAILED and self.attempts < max_attempts

    @property
    def needs_extraction(self) -> bool:
        """スケジュール対象だがダウンロードURLが未解決"""
        return self.is_eligible() and not self.target_url

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'moduleIndex': self.module_index,
            'lessonIndex': self.lesson_index,
            'moduleTitle': self.module_title,
            'lessonTitle': self.lesson_title,
            'targetUrl': self.target_url,
            'targetKind': self.target_kind.value if self.target_kind else None,
            'sourceLocator': self.source_locator,
            'status': self.status.value,
            'outputPath': self.output_path,
            'lastError': self.last_error,
            'attempts': self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LessonRecord":
        kind = data.get('targetKind')
        return cls(
            id=str(data['id']),
            module_index=int(data.get('moduleIndex', 0)),
            lesson_index=int(data.get('lessonIndex', 0)),
            module_title=str(data.get('moduleTitle', '')),
            lesson_title=str(data.get('lessonTitle', '')),
            target_url=data.get('targetUrl'),
            target_kind=TargetKind(kind) if kind else None,
            source_locator=data.get('sourceLocator'),
            status=LessonStatus(data.get('status', 'pending')),
            output_path=data.get('outputPath'),
            last_error=data.get('lastError'),
            attempts=int(data.get('attempts', 0)),
        )


@dataclass
class CourseState:
    """進捗ファイルのルート"""
    source_url: str = ""
    course_name: str = ""
    started_at: str = ""
    last_updated: str = ""
    lessons: List[LessonRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sourceUrl': self.source_url,
            'courseName': self.course_name,
            'startedAt': self.started_at,
            'lastUpdated': self.last_updated,
            'lessons': [lesson.to_dict() for lesson in self.lessons],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CourseState":
        lessons = data.get('lessons', [])
        if not isinstance(lessons, list):
            raise ValueError("'lessons' must be a list")
        return cls(
            source_url=str(data.get('sourceUrl', '')),
            course_name=str(data.get('courseName', '')),
            started_at=str(data.get('startedAt', '')),
            last_updated=str(data.get('lastUpdated', '')),
            lessons=[LessonRecord.from_dict(lesson) for lesson in lessons],
        )


@dataclass
class LedgerStats:
    """進捗統計"""
    total: int
    completed: int
    failed: int
    pending: int
    skipped: int
    in_progress: int = 0


@dataclass
class ExecutorOptions:
    """Executor に渡す設定"""
    cookies_file: Optional[str] = None
    referer: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    download_subs: bool = True
    subs_lang: str = "en"
    retries: int = 3
    timeout: float = 30.0
    transfer_timeout: Optional[float] = None
    max_redirects: int = 5


@dataclass
class QueuedDownload:
    """ダウンロードキューの1件"""
    lesson_id: str
    title: str
    target_url: str
    target_kind: TargetKind
    output_path: str
    options: ExecutorOptions = field(default_factory=ExecutorOptions)


@dataclass
class DownloadResult:
    """ダウンロード結果"""
    success: bool
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[TransferFailure] = None

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error else None

    @property
    def skipped(self) -> bool:
        return self.error is not None and self.error.skippable


@dataclass
class QueueStats:
    """キュー統計"""
    total: int
    completed: int
    failed: int
    skipped: int


@dataclass
class LessonDescriptor:
    """Discovery が返すレッスン情報"""
    id: str
    title: str
    parent_title: str
    position: int
    parent_position: int = 0
    source_locator: Optional[str] = None


@dataclass
class CourseOutline:
    """Discovery の結果"""
    name: str
    lessons: List[LessonDescriptor]


@dataclass
class ResolvedTarget:
    """Extraction の結果"""
    target_url: str
    target_kind: TargetKind


@dataclass
class RunSummary:
    """実行結果レポート"""
    course_name: str
    total: int
    completed: int
    failed: int
    skipped: int
    pending: int
    failures: List[Tuple[str, str]] = field(default_factory=list)
    execution_time: float = 0.0

    @classmethod
    def from_stats(cls, course_name: str, stats: LedgerStats,
                   failures: Optional[List[Tuple[str, str]]] = None,
                   execution_time: float = 0.0) -> "RunSummary":
        return cls(
            course_name=course_name,
            total=stats.total,
            completed=stats.completed,
            failed=stats.failed,
            skipped=stats.skipped,
            pending=stats.pending,
            failures=failures or [],
            execution_time=execution_time,
        )

    def print_summary(self, console: Console):
        """サマリーを出力"""
        console.print("\n[bold cyan]===== ダウンロード完了レポート =====[/bold cyan]\n")

        table = Table(title=self.course_name or "全体統計")
        table.add_column("項目", style="cyan")
        table.add_column("件数", style="magenta", justify="right")

        table.add_row("総レッスン数", str(self.total))
        table.add_row("✓ 完了", f"[green]{self.completed}[/green]")
        table.add_row("⊗ 失敗", f"[red]{self.failed}[/red]")
        table.add_row("⊘ スキップ", f"[yellow]{self.skipped}[/yellow]")
        table.add_row("⏳ 未処理", f"[blue]{self.pending}[/blue]")
        if self.execution_time:
            table.add_row("実行時間", f"{self.execution_time:.2f}秒")

        console.print(table)

        if self.failures:
            console.print("\n[bold red]失敗したレッスン:[/bold red]")
            for title, error in self.failures:
                console.print(f"  - {title}: {error}")
