"""コマンドラインインターフェース"""

import argparse
import sys
from typing import List, Optional

import yt_dlp

from .config import get_config
from .errors import DiscoveryFailure, LedgerWriteError
from .logger import Logger
from .manager import CourseDownloadManager
from .observer import RichProgressObserver


def _add_download_options(parser: argparse.ArgumentParser):
    """download / resume 共通のオプション"""
    parser.add_argument(
        "-o", "--output",
        dest="download_dir",
        help="ダウンロード先ディレクトリ (default: downloads)"
    )

    parser.add_argument(
        "-c", "--concurrency",
        type=int,
        help="並列ダウンロード数 (default: 2)"
    )

    parser.add_argument(
        "-m", "--module",
        help="モジュール名・レッスン名で絞り込む"
    )

    parser.add_argument(
        "--cookies",
        dest="cookies_file",
        help="Netscape 形式の Cookie ファイル"
    )

    parser.add_argument(
        "--no-subs",
        action="store_true",
        help="字幕をダウンロードしない"
    )

    parser.add_argument(
        "--subs-lang",
        help="字幕の言語 (default: en)"
    )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """コマンドライン引数をパース"""
    parser = argparse.ArgumentParser(
        prog="course-mirror",
        description="コースのレッスン動画・資料を一括ダウンロード（中断しても続きから再開）"
    )

    parser.add_argument(
        "--state-dir",
        help="進捗ファイルの保存先 (default: .course-mirror-state)"
    )

    parser.add_argument(
        "--log-dir",
        help="ログファイルの保存先 (default: logs)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="デバッグログをコンソールにも表示"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    download = subparsers.add_parser("download", help="すべてのレッスンをダウンロード")
    download.add_argument("source", help="コースのマニフェスト（.xlsx/.csv）またはURL")
    _add_download_options(download)
    download.add_argument(
        "--dry-run",
        action="store_true",
        help="ドライランモード（一覧表示のみ）"
    )

    resume = subparsers.add_parser("resume", help="中断したダウンロードを再開")
    resume.add_argument("source", help="コースのマニフェスト（.xlsx/.csv）またはURL")
    _add_download_options(resume)

    status = subparsers.add_parser("status", help="ダウンロード状態を表示")
    status.add_argument("source", help="コースのマニフェスト（.xlsx/.csv）またはURL")

    reset = subparsers.add_parser("reset", help="ダウンロード状態をリセット")
    reset.add_argument("source", help="コースのマニフェスト（.xlsx/.csv）またはURL")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """メインエントリーポイント"""
    args = parse_arguments(argv)

    overrides = {
        'state_dir': args.state_dir,
        'log_dir': args.log_dir,
    }
    if args.command in ("download", "resume"):
        overrides.update({
            'download_dir': args.download_dir,
            'concurrency': args.concurrency,
            'cookies_file': args.cookies_file,
            'subs_lang': args.subs_lang,
        })
        if args.no_subs:
            overrides['download_subs'] = False

    try:
        config = get_config(**overrides)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    logger = Logger(config.log_dir, verbose=args.verbose)
    console = logger.console

    if args.command == "status":
        CourseDownloadManager(config=config, logger=logger).show_status(args.source)
        return 0

    if args.command == "reset":
        CourseDownloadManager(config=config, logger=logger).reset(args.source)
        return 0

    console.print("[bold cyan]course-mirror[/bold cyan]")
    console.print(f"Source: {args.source}")
    console.print(f"Using yt-dlp {yt_dlp.version.__version__}\n")

    observer = RichProgressObserver(console)
    manager = CourseDownloadManager(config=config, observer=observer, logger=logger)

    try:
        with observer:
            summary = manager.run(
                args.source,
                resume=args.command == "resume",
                module_filter=args.module,
                dry_run=getattr(args, "dry_run", False),
            )
    except DiscoveryFailure as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        return 1
    except LedgerWriteError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. Run 'resume' to continue.[/yellow]")
        return 130

    summary.print_summary(console)
    console.print(f"\nSaved to: {config.download_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
