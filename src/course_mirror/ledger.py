"""レッスン進捗の管理（Resume機能）"""

import copy
import json
import os
import tempfile
import threading
from dataclasses import fields
from pathlib import Path
from typing import Dict, List, Optional

from .errors import LedgerCorruption, LedgerWriteError
from .logger import Logger
from .models import (
    MAX_ATTEMPTS, CourseState, LedgerStats, LessonRecord, LessonStatus
)
from .utils import now_iso

_UPDATABLE_FIELDS = {f.name for f in fields(LessonRecord)} - {'id'}


class LessonLedger:
    """レッスン進捗の管理

    コース単位の進捗を1つの JSON ファイルとして保持する。
    すべての操作は内部ロックで直列化されるので、
    複数のダウンロードスレッドから同時に呼び出してよい。
    """

    def __init__(self, state_dir: str, course_key: str,
                 max_attempts: int = MAX_ATTEMPTS, autosave_every: int = 10,
                 logger: Optional[Logger] = None):
        self.state_path = Path(state_dir) / f"{course_key}-progress.json"
        self.max_attempts = max_attempts
        self.autosave_every = autosave_every
        self.logger = logger or Logger()

        self._lock = threading.RLock()
        self._state = CourseState()
        self._index: Dict[str, LessonRecord] = {}
        self._dirty = 0

    def load(self) -> bool:
        """進捗ファイルを読み込む

        Returns:
            bool: 既存の進捗を読み込めた場合 True。
                  ファイルがない、または壊れている場合は False（新規開始）。
        """
        with self._lock:
            if not self.state_path.exists():
                return False

            try:
                with open(self.state_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise LedgerCorruption("root element is not an object")
                state = CourseState.from_dict(data)
            except (OSError, ValueError, KeyError, TypeError, AttributeError,
                    LedgerCorruption) as e:
                self.logger.warning(
                    f"Could not load progress state {self.state_path}: {e}; starting fresh"
                )
                self._state = CourseState()
                self._index = {}
                self._dirty = 0
                return False

            # 重複IDは先に現れたものを採用
            index: Dict[str, LessonRecord] = {}
            lessons: List[LessonRecord] = []
            for record in state.lessons:
                if record.id in index:
                    self.logger.debug(f"Duplicate lesson id in state file: {record.id}")
                    continue
                index[record.id] = record
                lessons.append(record)
            state.lessons = lessons

            self._state = state
            self._index = index
            self._dirty = 0
            self.logger.info(
                f"Loaded progress: {self.state_path} ({len(lessons)} lessons)", "resume"
            )
            return True

    def persist(self):
        """進捗ファイルに保存（一時ファイルに書いてから置き換える）"""
        with self._lock:
            self._state.last_updated = now_iso()
            payload = json.dumps(self._state.to_dict(), ensure_ascii=False, indent=2)

            tmp_path = None
            try:
                self.state_path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(
                    prefix=f".{self.state_path.name}.",
                    suffix=".tmp",
                    dir=str(self.state_path.parent)
                )
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.state_path)
            except OSError as e:
                if tmp_path and os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise LedgerWriteError(
                    f"Cannot write progress state {self.state_path}: {e}"
                ) from e

            self._dirty = 0

    def _touch(self):
        """変更を記録し、一定回数ごとに自動保存"""
        self._dirty += 1
        if self.autosave_every and self._dirty >= self.autosave_every:
            try:
                self.persist()
            except LedgerWriteError as e:
                # 自動保存の失敗は次の明示的な保存で再度表面化する
                self.logger.error(str(e))

    def initialize(self, source_url: str, course_name: str):
        """コース情報を設定（レッスン一覧は変更しない）"""
        with self._lock:
            self._state.source_url = source_url
            self._state.course_name = course_name
            if not self._state.started_at:
                self._state.started_at = now_iso()
            self._touch()

    def add_lesson(self, record: LessonRecord) -> bool:
        """レッスンを追加（既存IDの場合は何もしない）"""
        with self._lock:
            if record.id in self._index:
                return False

            new_record = copy.copy(record)
            new_record.status = LessonStatus.PENDING
            new_record.attempts = 0
            new_record.output_path = None
            new_record.last_error = None

            self._state.lessons.append(new_record)
            self._index[new_record.id] = new_record
            self._touch()
            return True

    def update_lesson(self, lesson_id: str, **updates) -> bool:
        """レッスンのフィールドを更新"""
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown lesson fields: {', '.join(sorted(unknown))}")

        with self._lock:
            record = self._index.get(lesson_id)
            if record is None:
                self.logger.debug(f"Ignoring update for unknown lesson id: {lesson_id}")
                return False

            for name, value in updates.items():
                setattr(record, name, value)
            self._touch()
            return True

    def mark_started(self, lesson_id: str) -> bool:
        """ダウンロード開始をマーク（試行回数を加算）"""
        with self._lock:
            record = self._index.get(lesson_id)
            if record is None:
                self.logger.debug(f"Ignoring start for unknown lesson id: {lesson_id}")
                return False
            return self.update_lesson(
                lesson_id,
                status=LessonStatus.IN_PROGRESS,
                attempts=record.attempts + 1,
            )

    def mark_completed(self, lesson_id: str, output_path: str) -> bool:
        """ダウンロード完了をマーク"""
        return self.update_lesson(
            lesson_id,
            status=LessonStatus.COMPLETED,
            output_path=output_path,
            last_error=None,
        )

    def mark_failed(self, lesson_id: str, reason: str) -> bool:
        """ダウンロード失敗をマーク"""
        return self.update_lesson(lesson_id, status=LessonStatus.FAILED, last_error=reason)

    def mark_skipped(self, lesson_id: str, reason: str) -> bool:
        """スキップをマーク（再試行しない）"""
        return self.update_lesson(lesson_id, status=LessonStatus.SKIPPED, last_error=reason)

    def recover_interrupted(self) -> int:
        """前回の実行で中断された in_progress のレッスンを failed に戻す"""
        with self._lock:
            interrupted = [
                r for r in self._state.lessons if r.status == LessonStatus.IN_PROGRESS
            ]
            for record in interrupted:
                self.mark_failed(record.id, "Interrupted")
                self.logger.info(
                    f"[RESUME] Interrupted download will be retried: {record.lesson_title}",
                    "resume"
                )
            return len(interrupted)

    def get_lesson(self, lesson_id: str) -> Optional[LessonRecord]:
        """IDに対応するレッスンのコピーを取得"""
        with self._lock:
            record = self._index.get(lesson_id)
            return copy.copy(record) if record else None

    def get_pending(self) -> List[LessonRecord]:
        """スケジュール対象のレッスン一覧（登録順）"""
        with self._lock:
            return [
                copy.copy(r) for r in self._state.lessons
                if r.is_eligible(self.max_attempts)
            ]

    def get_needs_extraction(self) -> List[LessonRecord]:
        """スケジュール対象だがダウンロードURLが未解決のレッスン"""
        return [r for r in self.get_pending() if not r.target_url]

    def get_failed(self) -> List[LessonRecord]:
        """失敗したレッスン一覧"""
        with self._lock:
            return [
                copy.copy(r) for r in self._state.lessons
                if r.status == LessonStatus.FAILED
            ]

    def stats(self) -> LedgerStats:
        """統計情報を取得"""
        with self._lock:
            counts = {status: 0 for status in LessonStatus}
            for record in self._state.lessons:
                counts[record.status] += 1

            return LedgerStats(
                total=len(self._state.lessons),
                completed=counts[LessonStatus.COMPLETED],
                failed=counts[LessonStatus.FAILED],
                pending=counts[LessonStatus.PENDING],
                skipped=counts[LessonStatus.SKIPPED],
                in_progress=counts[LessonStatus.IN_PROGRESS],
            )

    @property
    def state(self) -> CourseState:
        """現在の状態のスナップショット"""
        with self._lock:
            return copy.deepcopy(self._state)

    @property
    def course_name(self) -> str:
        return self._state.course_name

    def has_existing_progress(self) -> bool:
        with self._lock:
            return len(self._state.lessons) > 0

    def reset(self):
        """すべてのレッスンをクリア"""
        with self._lock:
            self._state.lessons = []
            self._index = {}
            self.persist()
