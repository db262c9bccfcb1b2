#!/usr/bin/env python3
"""
コースミラー・ダウンロードシステム

コースのレッスン一覧から動画と資料を一括ダウンロードし、
レッスン単位の進捗を保存しながらローカルにミラーします。
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
