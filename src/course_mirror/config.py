"""設定"""

from dataclasses import dataclass, fields, replace
from typing import Optional

from .models import MAX_ATTEMPTS, ExecutorOptions


@dataclass
class DownloadConfig:
    """ダウンロード設定"""
    # パス
    state_dir: str = ".course-mirror-state"
    download_dir: str = "downloads"
    log_dir: str = "logs"
    cookies_file: Optional[str] = None

    # ダウンロード設定
    concurrency: int = 2
    download_subs: bool = True
    subs_lang: str = "en"
    referer: Optional[str] = None
    retries: int = 3

    # タイムアウト（秒）
    request_timeout: float = 30.0
    transfer_timeout: Optional[float] = 3600.0
    max_redirects: int = 5

    # 進捗管理
    max_attempts: int = MAX_ATTEMPTS
    autosave_every: int = 10

    def executor_options(self, referer: Optional[str] = None) -> ExecutorOptions:
        """Executor 向けの設定を生成"""
        return ExecutorOptions(
            cookies_file=self.cookies_file,
            referer=referer or self.referer,
            download_subs=self.download_subs,
            subs_lang=self.subs_lang,
            retries=self.retries,
            timeout=self.request_timeout,
            transfer_timeout=self.transfer_timeout,
            max_redirects=self.max_redirects,
        )


def get_config(**overrides) -> DownloadConfig:
    """デフォルト設定に上書き値を適用する

    値が None の上書きは無視する（CLI の未指定オプション向け）。
    """
    known = {f.name for f in fields(DownloadConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    values = {k: v for k, v in overrides.items() if v is not None}
    config = replace(DownloadConfig(), **values)
    if config.concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    return config
