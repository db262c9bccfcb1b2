"""ユーティリティ関数"""

from datetime import datetime


def format_file_size(size_bytes: int) -> str:
    """ファイルサイズを人間が読みやすい形式にフォーマット"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def now_iso() -> str:
    """現在時刻を ISO 8601 文字列で返す"""
    return datetime.now().isoformat()
