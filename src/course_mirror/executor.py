"""実際のダウンロード処理の実行

Executor は対象種別（TargetKind）ごとに分かれており、
いずれも download() から例外を送出せず、失敗は DownloadResult.error に
分類済みの TransferFailure として返す。
"""

import glob
import os
import re
import shutil
import tempfile
import time
from http.cookiejar import LoadError, MozillaCookieJar
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import unquote, urljoin, urlparse

import gdown
import requests
import yt_dlp
from gdown.exceptions import FileURLRetrievalError
from tenacity import (
    Retrying, retry, retry_if_exception_type, stop_after_attempt, wait_exponential
)
from urllib3.exceptions import ReadTimeoutError

from .errors import (
    AuthRequired, HttpError, NotFound, TooManyRedirects, TransferFailure,
    TransferTimeout, Unavailable
)
from .logger import Logger
from .models import DownloadResult, ExecutorOptions, TargetKind
from .utils import format_file_size

ProgressCallback = Callable[[float], None]

DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36'
)

MIME_EXTENSIONS = {
    'application/pdf': '.pdf',
    'application/msword': '.doc',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document': '.docx',
    'application/vnd.ms-excel': '.xls',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet': '.xlsx',
    'application/vnd.ms-powerpoint': '.ppt',
    'application/vnd.openxmlformats-officedocument.presentationml.presentation': '.pptx',
    'application/zip': '.zip',
    'application/x-zip-compressed': '.zip',
    'text/plain': '.txt',
    'text/html': '.html',
    'text/markdown': '.md',
    'text/csv': '.csv',
    'image/png': '.png',
    'image/jpeg': '.jpg',
    'image/gif': '.gif',
    'image/webp': '.webp',
    'application/json': '.json',
    'audio/mpeg': '.mp3',
    'video/mp4': '.mp4',
}

FILE_EXTENSIONS = {
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx', '.zip', '.rar',
    '.7z', '.txt', '.csv', '.md', '.json', '.html', '.mp3', '.wav', '.mp4',
    '.mov', '.avi', '.png', '.jpg', '.jpeg', '.gif', '.webp', '.svg',
}

FILE_HOST_PATTERNS = [
    'dropbox.com/s/',
    'dropbox.com/scl/',
    'dl.dropboxusercontent.com',
    'amazonaws.com',
    'cloudfront.net',
]

VIDEO_EXTENSIONS = ['.mp4', '.mkv', '.webm', '.mov']
SIDECAR_EXTENSIONS = {'.part', '.ytdl', '.vtt', '.srt', '.ass', '.json', '.tmp'}

_EXTENSION_RE = re.compile(r'\.[A-Za-z0-9]{1,10}')


def detect_target_kind(url: str) -> TargetKind:
    """URLからダウンロード対象の種別を判定"""
    url_lower = url.lower()
    path = urlparse(url_lower).path

    if 'wistia.com' in url_lower or 'wistia.net' in url_lower:
        return TargetKind.WISTIA
    elif 'vimeo.com' in url_lower:
        return TargetKind.VIMEO
    elif 'youtube.com' in url_lower or 'youtu.be' in url_lower:
        return TargetKind.YOUTUBE
    elif 'loom.com' in url_lower:
        return TargetKind.LOOM
    elif path.endswith('.m3u8') or path.endswith('.mpd'):
        return TargetKind.NATIVE
    elif 'drive.google.com' in url_lower or 'docs.google.com' in url_lower:
        return TargetKind.GOOGLE_DRIVE
    elif Path(path).suffix in FILE_EXTENSIONS:
        return TargetKind.RESOURCE
    elif any(pattern in url_lower for pattern in FILE_HOST_PATTERNS):
        return TargetKind.RESOURCE
    else:
        return TargetKind.MEDIA


def drive_direct_url(url: str) -> Optional[str]:
    """Google Drive の共有URLを直接ダウンロードURLに変換"""
    for pattern in (r'/file/d/([a-zA-Z0-9_-]+)', r'[?&]id=([a-zA-Z0-9_-]+)', r'/d/([a-zA-Z0-9_-]+)'):
        match = re.search(pattern, url)
        if match:
            return f"https://drive.google.com/uc?export=download&id={match.group(1)}"
    return None


def dropbox_direct_url(url: str) -> str:
    """Dropbox の共有URLを直接ダウンロードURLに変換"""
    return url.replace('dl=0', 'dl=1').replace('www.dropbox.com', 'dl.dropboxusercontent.com')


def filename_from_content_disposition(header: Optional[str]) -> str:
    """Content-Disposition ヘッダからファイル名を取得"""
    if not header:
        return ''

    # RFC 5987: filename*=UTF-8''%E8%B3%87%E6%96%99.pdf
    match = re.search(r"filename\*\s*=\s*([^']*)'[^']*'([^;]+)", header, re.IGNORECASE)
    if match:
        encoding = match.group(1) or 'utf-8'
        value = match.group(2).strip().strip('"')
        try:
            return unquote(value, encoding=encoding, errors='replace')
        except LookupError:
            return unquote(value)

    match = re.search(r'filename\s*=\s*("([^"]*)"|[^;]+)', header, re.IGNORECASE)
    if match:
        value = match.group(2) if match.group(2) is not None else match.group(1)
        return unquote(value.strip().strip('"\''))

    return ''


def filename_from_url(url: str) -> str:
    """URLの最後のパス要素からファイル名を取得（拡張子がない場合は空文字）"""
    segments = [s for s in urlparse(url).path.split('/') if s]
    if segments and '.' in segments[-1]:
        return unquote(segments[-1])
    return ''


def extension_from_content_type(content_type: Optional[str]) -> str:
    """Content-Type から拡張子を推定"""
    if not content_type:
        return ''
    base_mime = content_type.split(';')[0].strip().lower()
    return MIME_EXTENSIONS.get(base_mime, '')


def _valid_extension(filename: str) -> str:
    suffix = Path(filename).suffix
    return suffix if _EXTENSION_RE.fullmatch(suffix) else ''


def load_cookie_jar(cookies_file: Optional[str]) -> Optional[MozillaCookieJar]:
    """Netscape 形式の Cookie ファイルを読み込む"""
    if not cookies_file or not os.path.exists(cookies_file):
        return None
    jar = MozillaCookieJar(cookies_file)
    jar.load(ignore_discard=True, ignore_expires=True)
    return jar


class DownloadExecutor:
    """ダウンロード処理の基底クラス"""

    def __init__(self, logger: Optional[Logger] = None):
        self.logger = logger or Logger()

    @staticmethod
    def get_file_size(file_path: str) -> int:
        """ファイルサイズを取得"""
        try:
            return os.path.getsize(file_path)
        except OSError:
            return 0

    def _report_progress(self, on_progress: ProgressCallback, percent: float):
        """進捗コールバックを呼ぶ（表示側の失敗で転送を止めない）"""
        try:
            on_progress(percent)
        except Exception as e:
            self.logger.error(f"Progress callback failed: {e}", exc_info=True)

    def download(self, url: str, destination: str, options: ExecutorOptions,
                 on_progress: Optional[ProgressCallback] = None) -> DownloadResult:
        """
        1件のダウンロードを実行

        Args:
            url: ダウンロードURL
            destination: 出力パス（拡張子なしでもよい）
            options: Cookie・リファラ・タイムアウト等の設定
            on_progress: 進捗（0-100）を受け取るコールバック

        Returns:
            DownloadResult: ダウンロード結果（例外は送出しない）
        """
        try:
            file_path = self._download(url, destination, options, on_progress)
        except TransferFailure as e:
            self.logger.error(f"Failed to download {url}: {e}")
            return DownloadResult(success=False, error=e)
        except Exception as e:
            self.logger.error(f"Unexpected error while downloading {url}: {e}", exc_info=True)
            return DownloadResult(success=False, error=TransferFailure(str(e) or type(e).__name__))

        file_size = self.get_file_size(file_path)
        self.logger.info(f"Downloaded: {file_path} ({format_file_size(file_size)})", "success")
        return DownloadResult(success=True, file_path=file_path, file_size=file_size)

    def _download(self, url: str, destination: str, options: ExecutorOptions,
                  on_progress: Optional[ProgressCallback]) -> str:
        """ダウンロードして最終的なファイルパスを返す（失敗時は TransferFailure）"""
        raise NotImplementedError


class ResourceExecutor(DownloadExecutor):
    """HTTP GET による添付ファイル等の直接ダウンロード"""

    CHUNK_SIZE = 64 * 1024

    def __init__(self, logger: Optional[Logger] = None,
                 session_factory: Callable[[], requests.Session] = requests.Session):
        super().__init__(logger)
        self.session_factory = session_factory

    @staticmethod
    def normalize_url(url: str) -> str:
        """共有URLを直接ダウンロード可能なURLに変換"""
        if 'drive.google.com' in url or 'docs.google.com' in url:
            return drive_direct_url(url) or url
        if 'dropbox.com' in url:
            return dropbox_direct_url(url)
        return url

    def _download(self, url, destination, options, on_progress):
        url = self.normalize_url(url)
        self.logger.debug(f"GET {url} -> {destination}")

        try:
            with self.session_factory() as session:
                jar = load_cookie_jar(options.cookies_file)
                if jar is not None:
                    session.cookies.update(jar)

                response = self._open(session, url, options)
                try:
                    final_path = self.resolve_output_path(destination, response)
                    self._stream_to_file(response, final_path, options, on_progress)
                finally:
                    response.close()
        except requests.Timeout as e:
            raise TransferTimeout() from e
        except requests.ConnectionError as e:
            if e.args and isinstance(e.args[0], ReadTimeoutError):
                raise TransferTimeout() from e
            raise TransferFailure(f"Connection error: {e}") from e
        except requests.RequestException as e:
            raise TransferFailure(str(e)) from e
        except LoadError as e:
            raise TransferFailure(f"Invalid cookies file: {e}") from e

        return final_path

    def _request_headers(self, options: ExecutorOptions) -> Dict[str, str]:
        headers = {
            'User-Agent': DEFAULT_USER_AGENT,
            'Accept': '*/*',
        }
        if options.referer:
            headers['Referer'] = options.referer
        headers.update(options.headers)
        return headers

    def _open(self, session: requests.Session, url: str,
              options: ExecutorOptions) -> requests.Response:
        """リダイレクトを上限回数まで追跡し、最終レスポンスを返す"""
        retrying = Retrying(
            stop=stop_after_attempt(max(1, options.retries)),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(requests.ConnectionError),
            reraise=True,
        )
        headers = self._request_headers(options)
        visited = set()
        current = url

        for _ in range(options.max_redirects + 1):
            if current in visited:
                raise TooManyRedirects(f"Redirect loop detected at {current}")
            visited.add(current)

            response = retrying(
                session.get, current, headers=headers, stream=True,
                timeout=options.timeout, allow_redirects=False
            )
            status = response.status_code

            if 300 <= status < 400 and response.headers.get('location'):
                current = urljoin(current, response.headers['location'])
                response.close()
                continue

            if status in (401, 403):
                response.close()
                raise AuthRequired()
            if status == 404:
                response.close()
                raise NotFound()
            if status >= 300:
                response.close()
                raise HttpError(f"HTTP {status}", status)

            # 拡張子推定用に最終URLを保持
            response.url = current
            return response

        raise TooManyRedirects(
            f"Too many redirects (more than {options.max_redirects}) starting from {url}"
        )

    @staticmethod
    def resolve_output_path(destination: str, response: requests.Response) -> str:
        """
        出力ファイルの拡張子を決定

        優先順位: Content-Disposition のファイル名 > 最終URLのパス > Content-Type > なし
        """
        if Path(destination).suffix.lower() in FILE_EXTENSIONS:
            return destination

        candidates = [
            filename_from_content_disposition(response.headers.get('content-disposition')),
            filename_from_url(response.url or ''),
        ]
        for name in candidates:
            ext = _valid_extension(name)
            if ext:
                return destination + ext

        return destination + extension_from_content_type(response.headers.get('content-type'))

    def _stream_to_file(self, response: requests.Response, final_path: str,
                        options: ExecutorOptions,
                        on_progress: Optional[ProgressCallback]):
        """レスポンスを .part ファイルに書き出し、完了後に名前を変更"""
        part_path = final_path + '.part'
        Path(final_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            total_size = int(response.headers.get('content-length') or 0)
        except ValueError:
            total_size = 0

        deadline = None
        if options.transfer_timeout:
            deadline = time.monotonic() + options.transfer_timeout

        downloaded = 0
        try:
            with open(part_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                    if deadline is not None and time.monotonic() > deadline:
                        raise TransferTimeout()
                    if not chunk:
                        continue
                    f.write(chunk)
                    downloaded += len(chunk)
                    if on_progress and total_size:
                        self._report_progress(on_progress, min(100.0, downloaded * 100.0 / total_size))
            os.replace(part_path, final_path)
        except Exception:
            if os.path.exists(part_path):
                os.remove(part_path)
            raise


class MediaExecutor(DownloadExecutor):
    """yt-dlp による動画ダウンロード（プロバイダ不明の汎用版）"""

    def build_options(self, destination: str, options: ExecutorOptions) -> Dict[str, Any]:
        """yt-dlp のオプションを組み立てる"""
        ydl_opts: Dict[str, Any] = {
            'outtmpl': destination + '.%(ext)s',
            'format': 'bestvideo+bestaudio/best',
            'merge_output_format': 'mp4',
            'noplaylist': True,
            'overwrites': False,
            'retries': options.retries,
            'fragment_retries': options.retries,
            'socket_timeout': options.timeout,
            'quiet': True,
            'no_warnings': True,
            'noprogress': True,
        }

        if options.download_subs:
            ydl_opts['writesubtitles'] = True
            ydl_opts['subtitleslangs'] = [options.subs_lang]
            ydl_opts['postprocessors'] = [
                {'key': 'FFmpegEmbedSubtitle', 'already_have_subtitle': True},
            ]

        ydl_opts.update(self.provider_options(options))

        if options.headers:
            headers = dict(ydl_opts.get('http_headers', {}))
            headers.update(options.headers)
            ydl_opts['http_headers'] = headers

        return ydl_opts

    def provider_options(self, options: ExecutorOptions) -> Dict[str, Any]:
        """プロバイダ固有のオプション"""
        opts: Dict[str, Any] = {}
        if options.cookies_file:
            opts['cookiefile'] = options.cookies_file
        return opts

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
        reraise=True
    )
    def _run_ytdlp(self, url: str, ydl_opts: Dict[str, Any]):
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            ydl.download([url])

    def _download(self, url, destination, options, on_progress):
        ydl_opts = self.build_options(destination, options)

        def progress_hook(d: Dict[str, Any]):
            if d.get('status') != 'downloading' or on_progress is None:
                return
            total = d.get('total_bytes') or d.get('total_bytes_estimate')
            if total:
                self._report_progress(on_progress, min(100.0, d.get('downloaded_bytes', 0) * 100.0 / total))

        ydl_opts['progress_hooks'] = [progress_hook]
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        self.logger.debug(f"yt-dlp {url} -> {ydl_opts['outtmpl']}")

        try:
            self._run_ytdlp(url, ydl_opts)
        except yt_dlp.utils.DownloadError as e:
            raise self.classify_error(str(e)) from e
        except (ConnectionError, TimeoutError) as e:
            raise TransferFailure(f"Connection error: {e}") from e

        output_file = self.find_output_file(destination)
        if not output_file:
            raise TransferFailure("Downloaded file not found")
        return output_file

    @staticmethod
    def classify_error(message: str) -> TransferFailure:
        """yt-dlp のエラーメッセージを分類"""
        message = re.sub(r'^ERROR:\s*', '', message.strip())
        if 'Video unavailable' in message or 'Private video' in message:
            return Unavailable()
        if '403' in message:
            return HttpError("Access denied - may need fresh cookies", 403)
        if '404' in message:
            return NotFound("Video not found")
        return TransferFailure(message or "yt-dlp failed")

    @staticmethod
    def find_output_file(destination: str) -> Optional[str]:
        """yt-dlp が拡張子を付けて出力したファイルを探す"""
        base = Path(destination)
        pattern = os.path.join(glob.escape(str(base.parent)), glob.escape(base.name) + '.*')
        candidates = [
            Path(p) for p in glob.glob(pattern)
            if Path(p).suffix.lower() not in SIDECAR_EXTENSIONS
            and Path(p).stem == base.name
        ]
        if not candidates:
            return None

        for ext in VIDEO_EXTENSIONS:
            for candidate in candidates:
                if candidate.suffix.lower() == ext:
                    return str(candidate)
        return str(sorted(candidates)[0])


class WistiaExecutor(MediaExecutor):
    """Wistia（非公開動画は Cookie とリファラが必要）"""

    def provider_options(self, options):
        opts = super().provider_options(options)
        if options.referer:
            opts['http_headers'] = {'Referer': options.referer}
        return opts


class VimeoExecutor(MediaExecutor):
    """Vimeo（非公開動画は Cookie とリファラが必要）"""

    def provider_options(self, options):
        opts = super().provider_options(options)
        if options.referer:
            opts['http_headers'] = {'Referer': options.referer}
        return opts


class YouTubeExecutor(MediaExecutor):
    """YouTube（年齢制限付きの動画向けにブラウザの Cookie を使う）"""

    def provider_options(self, options):
        if options.cookies_file:
            return super().provider_options(options)
        return {'cookiesfrombrowser': ('chrome',)}


class LoomExecutor(MediaExecutor):
    """Loom"""


class NativeExecutor(MediaExecutor):
    """HLS/DASH マニフェストの直接指定（認証ヘッダが必要）"""

    def provider_options(self, options):
        opts = super().provider_options(options)
        headers = {'User-Agent': DEFAULT_USER_AGENT}
        if options.referer:
            headers['Referer'] = options.referer
        opts['http_headers'] = headers
        return opts


class DriveExecutor(DownloadExecutor):
    """gdown による Google Drive ファイルのダウンロード"""

    def _download(self, url, destination, options, on_progress):
        parent = Path(destination).parent
        parent.mkdir(parents=True, exist_ok=True)

        # リモートのファイル名で一時ディレクトリに保存してから拡張子を引き継ぐ
        work_dir = tempfile.mkdtemp(prefix=f".{Path(destination).name}.part-", dir=str(parent))
        try:
            try:
                downloaded = gdown.download(
                    url, output=work_dir + os.sep, quiet=True, fuzzy=True
                )
            except FileURLRetrievalError as e:
                raise AuthRequired() from e

            if not downloaded or not os.path.exists(downloaded):
                raise TransferFailure("Failed to retrieve file from Google Drive")

            final_path = destination
            if Path(destination).suffix.lower() not in FILE_EXTENSIONS:
                final_path = destination + _valid_extension(downloaded)
            os.replace(downloaded, final_path)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        if on_progress:
            self._report_progress(on_progress, 100.0)
        return final_path


class ExecutorRegistry:
    """TargetKind ごとの Executor の対応表"""

    def __init__(self, executors: Optional[Dict[TargetKind, DownloadExecutor]] = None):
        self._executors: Dict[TargetKind, DownloadExecutor] = dict(executors or {})

    def register(self, kind: TargetKind, executor: DownloadExecutor):
        self._executors[kind] = executor

    def get(self, kind: TargetKind) -> DownloadExecutor:
        try:
            return self._executors[kind]
        except KeyError:
            raise KeyError(f"No executor registered for target kind: {kind.value}") from None

    def __contains__(self, kind: TargetKind) -> bool:
        return kind in self._executors

    @classmethod
    def default(cls, logger: Optional[Logger] = None) -> "ExecutorRegistry":
        """標準の Executor 一式"""
        logger = logger or Logger()
        return cls({
            TargetKind.WISTIA: WistiaExecutor(logger),
            TargetKind.VIMEO: VimeoExecutor(logger),
            TargetKind.YOUTUBE: YouTubeExecutor(logger),
            TargetKind.LOOM: LoomExecutor(logger),
            TargetKind.NATIVE: NativeExecutor(logger),
            TargetKind.MEDIA: MediaExecutor(logger),
            TargetKind.GOOGLE_DRIVE: DriveExecutor(logger),
            TargetKind.RESOURCE: ResourceExecutor(logger),
        })
