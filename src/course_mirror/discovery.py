"""レッスン一覧の取得（Discovery）とダウンロード対象の解決（Extraction）

ブラウザを使ったサイト固有の実装は外部から注入する。
ここでは両者のインターフェースと、Excel/CSV のマニフェストから
レッスン一覧を読み込む実装を提供する。
"""

import hashlib
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

import pandas as pd

from .errors import DiscoveryFailure
from .executor import detect_target_kind
from .models import CourseOutline, LessonDescriptor, ResolvedTarget


class Discovery(Protocol):
    """レッスン一覧の取得"""

    def discover(self, source: str) -> CourseOutline:
        """レッスン一覧を登録順に返す（取得できない場合は DiscoveryFailure）"""
        ...


class Extractor(Protocol):
    """レッスンのダウンロード対象の解決"""

    def resolve_target(self, source_locator: str) -> Optional[ResolvedTarget]:
        """ダウンロードURLと種別を返す（見つからない場合は None）"""
        ...


class ManifestDiscovery:
    """Excel/CSV のマニフェストからレッスン一覧を読み込む

    1行が1レッスン。module 列が空の行は直前の行のモジュールを引き継ぐ。
    """

    COLUMN_ALIASES = {
        'id': ['id', 'lesson_id', 'レッスンid'],
        'module': ['module', 'module_title', 'section', 'モジュール', '章'],
        'lesson': ['lesson', 'lesson_title', 'title', 'レッスン', 'タイトル'],
        'url': ['url', 'link', 'video_url', 'リンク', '動画リンク'],
    }

    def __init__(self, course_name: Optional[str] = None,
                 sheet_name: Union[int, str] = 0):
        self.course_name = course_name
        self.sheet_name = sheet_name

    def _read(self, path: Path) -> pd.DataFrame:
        """マニフェストを読み込む"""
        try:
            if path.suffix.lower() == '.csv':
                return pd.read_csv(path, dtype=str)
            return pd.read_excel(path, sheet_name=self.sheet_name, dtype=str)
        except (OSError, ValueError, ImportError) as e:
            raise DiscoveryFailure(f"Failed to read manifest {path}: {e}") from e

    def _map_columns(self, df: pd.DataFrame) -> Dict[str, str]:
        """列名をエイリアスから解決"""
        normalized = {str(c).strip().lower(): c for c in df.columns}
        mapping: Dict[str, str] = {}
        for key, aliases in self.COLUMN_ALIASES.items():
            for alias in aliases:
                if alias in normalized:
                    mapping[key] = normalized[alias]
                    break
        if 'lesson' not in mapping:
            raise DiscoveryFailure(
                f"Manifest has no lesson column (expected one of: {', '.join(self.COLUMN_ALIASES['lesson'])})"
            )
        return mapping

    @staticmethod
    def _cell(row: pd.Series, column: Optional[str]) -> str:
        if column is None:
            return ''
        value = row[column]
        if pd.isna(value):
            return ''
        return str(value).strip()

    @staticmethod
    def lesson_id(module: str, lesson: str, url: str) -> str:
        """行の内容から安定したIDを生成"""
        digest = hashlib.sha1(f"{module}\n{lesson}\n{url}".encode('utf-8')).hexdigest()
        return digest[:16]

    def discover(self, source: str) -> CourseOutline:
        """マニフェストからレッスン一覧を生成"""
        path = Path(source)
        if not path.exists():
            raise DiscoveryFailure(f"Manifest not found: {source}")

        df = self._read(path)
        columns = self._map_columns(df)

        lessons: List[LessonDescriptor] = []
        module_positions: Dict[str, int] = {}
        lesson_counts: Dict[str, int] = {}
        previous_module = ''

        for _, row in df.iterrows():
            title = self._cell(row, columns['lesson'])
            if not title:
                continue

            # モジュール名の継承
            module = self._cell(row, columns.get('module')) or previous_module
            previous_module = module

            url = self._cell(row, columns.get('url'))
            lesson_id = self._cell(row, columns.get('id')) or self.lesson_id(module, title, url)

            if module not in module_positions:
                module_positions[module] = len(module_positions)
            position = lesson_counts.get(module, 0)
            lesson_counts[module] = position + 1

            lessons.append(LessonDescriptor(
                id=lesson_id,
                title=title,
                parent_title=module,
                position=position,
                parent_position=module_positions[module],
                source_locator=url or None,
            ))

        if not lessons:
            raise DiscoveryFailure(f"No lessons found in manifest: {source}")

        return CourseOutline(name=self.course_name or path.stem, lessons=lessons)

    def resolve_target(self, source_locator: str) -> Optional[ResolvedTarget]:
        """マニフェストのURLをそのままダウンロード対象とする"""
        if not source_locator:
            return None
        return ResolvedTarget(
            target_url=source_locator,
            target_kind=detect_target_kind(source_locator),
        )
