"""ファイル名の生成とサニタイズ"""

import hashlib
import os
import re
from pathlib import Path
from urllib.parse import urlparse


class FileNameGenerator:
    """ファイル名の生成とサニタイズ"""

    @staticmethod
    def sanitize_filename(filename: str, max_length: int = 200) -> str:
        """
        ファイル名をサニタイズ

        Args:
            filename: 元のファイル名
            max_length: 最大文字数

        Returns:
            str: サニタイズされたファイル名
        """
        # 禁止文字を全角に置換
        replacements = {
            '/': '／',
            '\\': '＼',
            ':': '：',
            '*': '＊',
            '?': '？',
            '"': '＂',
            '<': '＜',
            '>': '＞',
            '|': '｜',
        }

        for char, replacement in replacements.items():
            filename = filename.replace(char, replacement)

        # 制御文字を除去し、空白はアンダースコアにまとめる
        filename = re.sub(r'[\x00-\x1f\x7f]+', '', filename)
        filename = filename.strip()
        filename = re.sub(r'\s+', '_', filename)
        filename = re.sub(r'_+', '_', filename)

        # "." や ".." だけの名前はディレクトリ移動になるので使わない
        if filename.strip('.') == '':
            return ''

        # 最大長を制限
        if len(filename) > max_length:
            filename = filename[:max_length]

        return filename

    @staticmethod
    def generate_output_path(base_dir: str, course_name: str,
                             module_index: int, module_title: str,
                             lesson_index: int, lesson_title: str) -> str:
        """
        レッスンの出力パスを生成（拡張子なし）

        Args:
            base_dir: ダウンロード先ディレクトリ
            course_name: コース名
            module_index: モジュール番号（0始まり）
            module_title: モジュール名
            lesson_index: レッスン番号（0始まり）
            lesson_title: レッスン名

        Returns:
            str: base_dir/コース名/01_モジュール名/01_レッスン名
        """
        sanitize = FileNameGenerator.sanitize_filename
        course_dir = sanitize(course_name) or "course"
        module_dir = f"{module_index + 1:02d}_{sanitize(module_title)}".rstrip('_')
        lesson_file = f"{lesson_index + 1:02d}_{sanitize(lesson_title)}".rstrip('_')

        return os.path.join(base_dir, course_dir, module_dir, lesson_file)

    @staticmethod
    def course_key(source: str) -> str:
        """
        進捗ファイル名に使うコース識別子を生成

        URL の場合は最初のパス要素（なければホスト名）、
        ローカルファイルの場合は拡張子を除いたファイル名に
        絶対パスのハッシュを付ける（同名のマニフェストを区別するため）。
        """
        parsed = urlparse(source)
        if parsed.scheme in ('http', 'https'):
            segments = [s for s in parsed.path.split('/') if s]
            key = segments[0] if segments else parsed.netloc
            suffix = ''
        else:
            path = Path(source)
            key = path.stem
            suffix = hashlib.sha1(str(path.resolve()).encode('utf-8')).hexdigest()[:8]

        key = re.sub(r'[^\w.-]+', '-', key).strip('-.') or "unknown"
        return f"{key}-{suffix}" if suffix else key
