"""システム全体の統括"""

import time
from itertools import groupby
from typing import List, Optional

from rich.table import Table

from .config import DownloadConfig, get_config
from .discovery import Discovery, Extractor, ManifestDiscovery
from .errors import DiscoveryFailure, ExtractionMiss, LedgerWriteError
from .executor import ExecutorRegistry, detect_target_kind
from .filename import FileNameGenerator
from .ledger import LessonLedger
from .logger import Logger
from .models import (
    CourseOutline, LessonDescriptor, LessonRecord, QueuedDownload, ResolvedTarget,
    RunSummary
)
from .observer import ProgressObserver
from .scheduler import DownloadQueue


class CourseDownloadManager:
    """システム全体の統括

    load → discover → seed → persist → schedule → wait → persist → report
    の順に処理し、どの経路で終了しても進捗ファイルを保存する。
    """

    def __init__(
        self,
        config: Optional[DownloadConfig] = None,
        discovery: Optional[Discovery] = None,
        extractor: Optional[Extractor] = None,
        registry: Optional[ExecutorRegistry] = None,
        observer: Optional[ProgressObserver] = None,
        logger: Optional[Logger] = None
    ):
        self.config = config or get_config()

        # コンポーネント初期化
        self.logger = logger or Logger(self.config.log_dir)
        self.console = self.logger.console
        manifest = ManifestDiscovery()
        self.discovery = discovery or manifest
        self.extractor = extractor or (
            self.discovery if hasattr(self.discovery, 'resolve_target') else manifest
        )
        self.registry = registry or ExecutorRegistry.default(self.logger)
        self.observer = observer or ProgressObserver()

    def open_ledger(self, source: str) -> LessonLedger:
        """ソースに対応する進捗管理を生成"""
        return LessonLedger(
            self.config.state_dir,
            FileNameGenerator.course_key(source),
            max_attempts=self.config.max_attempts,
            autosave_every=self.config.autosave_every,
            logger=self.logger,
        )

    def run(self, source: str, resume: bool = False,
            module_filter: Optional[str] = None, dry_run: bool = False) -> RunSummary:
        """
        ダウンロードを実行

        Args:
            source: コースの識別子（URL またはマニフェストのパス）
            resume: 前回の進捗がある場合、レッスン一覧の再取得を省略する
            module_filter: モジュール名・レッスン名の部分一致で絞り込む
            dry_run: レッスン一覧を表示するだけでダウンロードしない

        Returns:
            RunSummary: 実行結果
        """
        start_time = time.time()

        if dry_run:
            return self._dry_run(source, module_filter)

        ledger = self.open_ledger(source)
        loaded = ledger.load()
        if loaded:
            ledger.recover_interrupted()

        try:
            if resume and loaded and ledger.has_existing_progress():
                candidates = ledger.get_pending()
                self.logger.info(
                    f"[RESUME] {len(candidates)} lessons remaining: {ledger.course_name}", "resume"
                )
                rediscovered = False
            else:
                if resume:
                    self.logger.warning("No previous download found; starting a full run")
                candidates = self._seed(ledger, source)
                rediscovered = True

            candidates = self._filter_records(candidates, module_filter)
            if not candidates:
                self.logger.console_print("ダウンロード対象のレッスンはありません", "yellow")
            else:
                with DownloadQueue(ledger, self.registry, self.config.concurrency,
                                   observer=self.observer, logger=self.logger) as queue:
                    self._schedule(ledger, queue, candidates, rediscovered)
                    ledger.persist()
                    queue.wait_for_all()
        except BaseException:
            self._persist_on_error(ledger)
            raise

        ledger.persist()

        stats = ledger.stats()
        failures = [(r.lesson_title, r.last_error or '') for r in ledger.get_failed()]
        return RunSummary.from_stats(
            ledger.course_name, stats, failures, time.time() - start_time
        )

    def _persist_on_error(self, ledger: LessonLedger):
        """例外発生時の保存（保存の失敗で元の例外を隠さない）"""
        try:
            ledger.persist()
        except LedgerWriteError as e:
            self.logger.error(str(e))

    def _discover(self, source: str) -> CourseOutline:
        """レッスン一覧を取得（失敗は致命的）"""
        try:
            outline = self.discovery.discover(source)
        except DiscoveryFailure:
            raise
        except Exception as e:
            raise DiscoveryFailure(f"Failed to discover lessons from {source}: {e}") from e

        if not outline.lessons:
            raise DiscoveryFailure(f"No lessons found: {source}")
        return outline

    def _seed(self, ledger: LessonLedger, source: str) -> List[LessonRecord]:
        """レッスン一覧を取得して進捗に登録し、スケジュール対象を返す"""
        outline = self._discover(source)
        ledger.initialize(source, outline.name)

        added = 0
        for descriptor in outline.lessons:
            if ledger.add_lesson(self._to_record(descriptor)):
                added += 1
        ledger.persist()

        self.logger.info(
            f"Discovered {len(outline.lessons)} lessons ({added} new): {outline.name}", "success"
        )
        self.console.print(f"\nCourse: [bold]{outline.name}[/bold] ({len(outline.lessons)} lessons)\n")

        discovered = {d.id for d in outline.lessons}
        return [r for r in ledger.get_pending() if r.id in discovered]

    @staticmethod
    def _to_record(descriptor: LessonDescriptor) -> LessonRecord:
        return LessonRecord(
            id=descriptor.id,
            module_index=descriptor.parent_position,
            lesson_index=descriptor.position,
            module_title=descriptor.parent_title,
            lesson_title=descriptor.title,
            source_locator=descriptor.source_locator,
        )

    @staticmethod
    def _filter_records(records: List[LessonRecord],
                        module_filter: Optional[str]) -> List[LessonRecord]:
        if not module_filter:
            return records
        needle = module_filter.lower()
        return [
            r for r in records
            if needle in r.module_title.lower() or needle in r.lesson_title.lower()
        ]

    def _schedule(self, ledger: LessonLedger, queue: DownloadQueue,
                  candidates: List[LessonRecord], rediscovered: bool):
        """ダウンロード対象を解決してキューに登録"""
        total = len(candidates)
        for position, record in enumerate(candidates, 1):
            if rediscovered or not record.target_url:
                try:
                    self.observer.on_extract(record, position, total)
                except Exception as e:
                    self.logger.error(f"Progress observer on_extract failed: {e}", exc_info=True)
                target = self._extract(ledger, record, rediscovered)
            else:
                target = ResolvedTarget(
                    target_url=record.target_url,
                    target_kind=record.target_kind or detect_target_kind(record.target_url),
                )
            if target is None:
                continue

            output_path = FileNameGenerator.generate_output_path(
                self.config.download_dir,
                ledger.course_name,
                record.module_index,
                record.module_title,
                record.lesson_index,
                record.lesson_title,
            )

            referer = None
            locator = record.source_locator or ''
            if locator.startswith(('http://', 'https://')) and locator != target.target_url:
                referer = locator

            queue.enqueue(QueuedDownload(
                lesson_id=record.id,
                title=record.lesson_title,
                target_url=target.target_url,
                target_kind=target.target_kind,
                output_path=output_path,
                options=self.config.executor_options(referer=referer),
            ))

    def _extract(self, ledger: LessonLedger, record: LessonRecord,
                 rediscovered: bool) -> Optional[ResolvedTarget]:
        """1件のダウンロード対象を解決（失敗はそのレッスンだけ skipped）"""
        if not record.source_locator:
            if not rediscovered:
                # 再取得の手段がないので pending のまま残す
                self.logger.warning(
                    f"Cannot re-extract '{record.lesson_title}' without a source locator; left pending"
                )
                return None
            ledger.mark_skipped(record.id, "no target found")
            self.logger.info(f"[SKIP] No target found: {record.lesson_title}", "skip")
            return None

        try:
            target = self.extractor.resolve_target(record.source_locator)
        except ExtractionMiss as e:
            target = None
            reason = str(e) or "no target found"
        except Exception as e:
            self.logger.error(f"Extraction failed for {record.lesson_title}: {e}", exc_info=True)
            target = None
            reason = f"Extraction failed: {e}"
        else:
            reason = "no target found"

        if target is None:
            ledger.mark_skipped(record.id, reason)
            self.logger.info(f"[SKIP] {reason}: {record.lesson_title}", "skip")
            return None

        ledger.update_lesson(
            record.id, target_url=target.target_url, target_kind=target.target_kind
        )
        self.logger.debug(f"Resolved {target.target_kind.value}: {record.lesson_title}")
        return target

    def _dry_run(self, source: str, module_filter: Optional[str]) -> RunSummary:
        """レッスン一覧を表示（進捗ファイルは変更しない）"""
        outline = self._discover(source)
        lessons = [
            d for d in outline.lessons
            if not module_filter
            or module_filter.lower() in d.parent_title.lower()
            or module_filter.lower() in d.title.lower()
        ]

        self.console.print(f"\nCourse: [bold]{outline.name}[/bold]")
        for module, group in groupby(lessons, key=lambda d: d.parent_title):
            self.console.print(f"\n[cyan]{module}:[/cyan]")
            for descriptor in group:
                self.console.print(f"  {descriptor.position + 1}. {descriptor.title}")
        self.console.print("\n[dim](Dry run - no files downloaded)[/dim]")

        return RunSummary(
            course_name=outline.name,
            total=len(lessons),
            completed=0,
            failed=0,
            skipped=0,
            pending=len(lessons),
        )

    def status(self, source: str) -> Optional[RunSummary]:
        """最後に保存された進捗を返す（ダウンロードは行わない）"""
        ledger = self.open_ledger(source)
        if not ledger.load() or not ledger.has_existing_progress():
            return None

        failures = [(r.lesson_title, r.last_error or '') for r in ledger.get_failed()]
        return RunSummary.from_stats(ledger.course_name, ledger.stats(), failures)

    def show_status(self, source: str):
        """現在のダウンロード状態を表示"""
        ledger = self.open_ledger(source)
        if not ledger.load() or not ledger.has_existing_progress():
            self.console.print("[yellow]このコースのダウンロード履歴はありません[/yellow]")
            return

        state = ledger.state
        stats = ledger.stats()

        table = Table(title=f"ダウンロード状態: {state.course_name}")
        table.add_column("項目", style="cyan")
        table.add_column("値", style="magenta", justify="right")

        table.add_row("URL", state.source_url)
        table.add_row("開始日時", state.started_at)
        table.add_row("最終更新", state.last_updated)
        table.add_row("✓ 完了", f"[green]{stats.completed}/{stats.total}[/green]")
        table.add_row("⊗ 失敗", f"[red]{stats.failed}[/red]")
        table.add_row("⊘ スキップ", f"[yellow]{stats.skipped}[/yellow]")
        table.add_row("⏳ 未処理", f"[blue]{stats.pending}[/blue]")
        if stats.in_progress:
            table.add_row("中断", str(stats.in_progress))

        self.console.print(table)

        failed = ledger.get_failed()
        if failed:
            self.console.print("\n[bold red]失敗したレッスン:[/bold red]")
            for record in failed:
                self.console.print(
                    f"  - {record.lesson_title}: {record.last_error} (試行 {record.attempts}回)"
                )

    def reset(self, source: str):
        """ダウンロード状態をリセット"""
        self.open_ledger(source).reset()
        self.console.print("[bold green]ダウンロード状態をリセットしました[/bold green]")
