"""
コースミラー・ダウンロードシステム

コースのレッスン一覧から動画と資料を一括ダウンロードし、
レッスン単位の進捗を保存しながらローカルにミラーします。

Features:
- Resume機能: 中断しても続きから再開
- 並列ダウンロード: 同時実行数を制限したキュー
- 進捗表示: ダウンロード状況をリアルタイム表示
"""

from .manager import CourseDownloadManager
from .cli import main

__version__ = "1.0.0"
__license__ = "MIT"

__all__ = ["CourseDownloadManager", "main"]
