"""ログ出力の管理"""

import logging
from pathlib import Path
from typing import Dict, Optional

from rich.console import Console


class Logger:
    """ログ出力の管理

    カテゴリ別のファイルログとコンソール出力をまとめたもの。
    グローバルなインスタンスは持たず、各コンポーネントへ注入して使う。
    """

    CATEGORIES = {
        'success': 'download_success.log',
        'error': 'download_error.log',
        'skip': 'download_skip.log',
        'resume': 'download_resume.log',
        'debug': 'download_debug.log',
    }

    def __init__(self, log_dir: str = "logs", console: Optional[Console] = None,
                 verbose: bool = False):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.console = console or Console()
        self.verbose = verbose

        # ログファイルの設定
        self.loggers: Dict[str, logging.Logger] = {}
        self._setup_loggers()

    def _setup_loggers(self):
        """ロガーのセットアップ"""
        formatter = logging.Formatter(
            '[%(asctime)s] [%(levelname)s] [%(threadName)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        for name, filename in self.CATEGORIES.items():
            logger = logging.getLogger(f'course_mirror.{name}')
            logger.setLevel(logging.DEBUG if name == 'debug' else logging.INFO)

            # 別ディレクトリで作り直された場合に古いハンドラを残さない
            for handler in list(logger.handlers):
                if isinstance(handler, logging.FileHandler):
                    logger.removeHandler(handler)
                    handler.close()

            fh = logging.FileHandler(self.log_dir / filename, encoding='utf-8')
            fh.setLevel(logger.level)
            fh.setFormatter(formatter)

            logger.addHandler(fh)
            self.loggers[name] = logger

    def info(self, message: str, category: str = "success"):
        """INFOレベルのログを出力"""
        if category in self.loggers:
            self.loggers[category].info(message)

    def warning(self, message: str, category: str = "error"):
        """WARNINGレベルのログを出力（コンソールにも表示）"""
        self.loggers.get(category, self.loggers['error']).warning(message)
        self.console_print(f"! {message}", "yellow")

    def error(self, message: str, exc_info: bool = False):
        """ERRORレベルのログを出力"""
        self.loggers['error'].error(message, exc_info=exc_info)

    def debug(self, message: str):
        """DEBUGレベルのログを出力"""
        self.loggers['debug'].debug(message)
        if self.verbose:
            self.console_print(f"  [debug] {message}", "dim")

    def console_print(self, message: str, style: str = ""):
        """コンソールに出力"""
        if style:
            self.console.print(f"[{style}]{message}[/{style}]")
        else:
            self.console.print(message)
