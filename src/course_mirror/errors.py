"""エラー分類

レッスン単位の失敗はすべて TransferFailure の派生クラスとして表現し、
Executor は例外を送出せずに DownloadResult.error に格納して返す。
run() の外へ伝播するのは DiscoveryFailure と LedgerWriteError のみ。
"""


class CourseMirrorError(Exception):
    """全エラーの基底クラス"""


class DiscoveryFailure(CourseMirrorError):
    """レッスン一覧を取得できない（実行全体を中断）"""


class ExtractionMiss(CourseMirrorError):
    """レッスンのダウンロード対象を解決できない（skipped 扱い）"""


class TransferFailure(CourseMirrorError):
    """1件の転送失敗（failed 扱い、試行回数の上限まで再試行対象）"""

    #: 再試行しても結果が変わらない失敗かどうか
    skippable = False

    def __init__(self, message: str = "Transfer failed"):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class AuthRequired(TransferFailure):
    """401/403: 認証が必要（skipped 扱い）"""

    skippable = True

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class NotFound(TransferFailure):
    """404"""

    def __init__(self, message: str = "File not found (404)"):
        super().__init__(message)


class HttpError(TransferFailure):
    """その他の HTTP エラー"""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class TooManyRedirects(TransferFailure):
    """リダイレクト回数の上限超過、またはループ"""

    def __init__(self, message: str = "Too many redirects"):
        super().__init__(message)


class Unavailable(TransferFailure):
    """動画が非公開または削除済み"""

    def __init__(self, message: str = "Video is unavailable or private"):
        super().__init__(message)


class TransferTimeout(TransferFailure):
    """転送タイムアウト"""

    def __init__(self, message: str = "Download timeout"):
        super().__init__(message)


class LedgerCorruption(CourseMirrorError):
    """進捗ファイルが壊れている（警告のみ、新規開始として扱う）"""


class LedgerWriteError(CourseMirrorError):
    """進捗ファイルを書き込めない（致命的）"""
