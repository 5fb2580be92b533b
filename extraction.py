import json
import logging
import os
import subprocess
import urllib.parse
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional


log = logging.getLogger("fetch.extraction")

SUPPORTED_SITES = ["youtube.com", "youtu.be", "m.youtube.com", "www.youtube.com"]
MAX_URL_LENGTH = 500


class ExtractionError(Exception):
    pass


def is_valid_youtube_url(url: str) -> bool:
    if not url or len(url) > MAX_URL_LENGTH:
        return False
    try:
        parsed = urllib.parse.urlparse(url)
    except Exception:
        return False
    if parsed.scheme not in ["http", "https"]:
        return False
    if parsed.netloc not in SUPPORTED_SITES:
        return False
    # Bare playlist pages have no single video to fetch.
    if parsed.path.rstrip("/") == "/playlist":
        return False
    return bool(parsed.path.strip("/") or parsed.query)


class ByteStream:
    """Iterable of byte chunks with an optional known total size."""

    def __init__(self, chunks: Iterable[bytes], total_bytes: Optional[int] = None, on_close: Optional[Callable[[], None]] = None):
        self._chunks = chunks
        self.total_bytes = total_bytes
        self._on_close = on_close
        self.closed = False

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._chunks)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        close = getattr(self._chunks, "close", None)
        if close is not None:
            close()
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> "ByteStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Extractor:
    """A way of turning a video URL into metadata and a byte stream."""

    name = ""

    def validate(self, url: str) -> bool:
        return is_valid_youtube_url(url)

    def get_info(self, url: str) -> Dict[str, Any]:
        raise NotImplementedError

    def open_stream(self, url: str, fmt: Dict[str, Any]) -> ByteStream:
        raise NotImplementedError


# ----------------------------
# yt-dlp
# ----------------------------


def get_ytdlp_binary() -> str:
    return os.getenv("YTDLP_BINARY", "yt-dlp")


def get_ytdlp_version() -> Optional[str]:
    try:
        result = subprocess.run([get_ytdlp_binary(), "--version"], capture_output=True, text=True, timeout=5, check=True)
        return result.stdout.strip()
    except Exception:
        return None


def describe_ytdlp_error(error_msg: str) -> str:
    for line in error_msg.splitlines():
        if "ERROR:" in line:
            error_msg = line.split("ERROR:", 1)[1].strip()
            break
    lowered = error_msg.lower()
    if "sign in to confirm your age" in lowered:
        return "Age-restricted video (not supported)"
    if "video unavailable" in lowered or "private" in lowered:
        return "Video is unavailable or private"
    if "unsupported url" in lowered:
        return "URL not recognized as valid YouTube link"
    if "403" in error_msg or "forbidden" in lowered:
        return "YouTube blocked the download (403 Forbidden)"
    if "410" in error_msg:
        return "YouTube no longer serves this stream (410 Gone)"
    if error_msg:
        return f"yt-dlp error: {error_msg[:200]}"
    return "yt-dlp failed without an error message"


class YtDlpExtractor(Extractor):
    name = "yt-dlp"

    def __init__(self, timeout: int = 30, stream_timeout: int = 300, chunk_size: int = 64 * 1024):
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        self.chunk_size = chunk_size

    def get_info(self, url: str) -> Dict[str, Any]:
        try:
            info = self._run_yt_dlp_info(url, self.timeout)
        except subprocess.TimeoutExpired:
            raise ExtractionError("yt-dlp took too long to respond")
        except subprocess.CalledProcessError as e:
            stderr = e.stderr if isinstance(e.stderr, str) else (e.stderr.decode() if e.stderr else str(e))
            raise ExtractionError(describe_ytdlp_error(stderr))
        except json.JSONDecodeError:
            raise ExtractionError("yt-dlp output format unreadable (try updating)")
        except OSError as e:
            raise ExtractionError(f"yt-dlp could not be started: {e}")
        return self._parse_info(info)

    def _run_yt_dlp_info(self, url: str, timeout: int) -> Dict[str, Any]:
        result = subprocess.run(
            [
                get_ytdlp_binary(),
                "--dump-json",
                "--no-playlist",
                "--no-warnings",
                "--skip-download",
                url,
            ],
            capture_output=True,
            timeout=timeout,
            check=True,
            text=True,
            shell=False,
            env={**os.environ, "HOME": "/tmp"},
        )
        return json.loads(result.stdout)

    def _parse_info(self, info: Dict[str, Any]) -> Dict[str, Any]:
        thumbnails = [t["url"] for t in info.get("thumbnails") or [] if t.get("url")]
        return {
            "title": info.get("title") or "Unknown Title",
            "description": info.get("description") or "",
            "thumbnail": info.get("thumbnail") or (thumbnails[-1] if thumbnails else None),
            "thumbnails": thumbnails,
            "duration": info.get("duration") or 0,
            "formats": self._parse_formats(info.get("formats") or []),
        }

    def _parse_formats(self, raw_formats: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        formats: List[Dict[str, Any]] = []
        for f in raw_formats:
            # Storyboards are image sprites, not media.
            if f.get("format_note") == "storyboard" or f.get("ext") == "mhtml":
                continue
            vcodec = f.get("vcodec") or "none"
            acodec = f.get("acodec") or "none"
            if vcodec == "none" and acodec == "none":
                continue

            height = f.get("height")
            label = None
            if vcodec != "none":
                if height:
                    label = f"{height}p"
                else:
                    label = f.get("format_note")
            formats.append(
                {
                    "format_id": f.get("format_id", ""),
                    "ext": f.get("ext", "mp4"),
                    "quality_label": label,
                    "height": height,
                    "has_video": vcodec != "none",
                    "has_audio": acodec != "none",
                    "content_length": f.get("filesize") or f.get("filesize_approx"),
                    "source": self.name,
                }
            )
        return formats

    def open_stream(self, url: str, fmt: Dict[str, Any]) -> ByteStream:
        cmd = [
            get_ytdlp_binary(),
            "-f",
            fmt["format_id"],
            "--no-playlist",
            "--quiet",
            "--no-warnings",
            "--no-progress",
            "--retries",
            "10",
            "-o",
            "-",
            url,
        ]
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                shell=False,
                env={**os.environ, "HOME": "/tmp"},
            )
        except OSError as e:
            raise ExtractionError(f"yt-dlp could not be started: {e}")

        def release() -> None:
            if process.poll() is None:
                process.kill()
                process.wait()
            for pipe in (process.stdout, process.stderr):
                if pipe is not None:
                    pipe.close()

        return ByteStream(self._pipe(process), total_bytes=fmt.get("content_length"), on_close=release)

    def _pipe(self, process: subprocess.Popen) -> Iterator[bytes]:
        if not process.stdout:
            raise ExtractionError("Failed to read yt-dlp output")
        for chunk in iter(lambda: process.stdout.read(self.chunk_size), b""):
            yield chunk
        try:
            returncode = process.wait(timeout=self.stream_timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            raise ExtractionError("yt-dlp did not exit after the stream ended")
        if returncode != 0:
            stderr = process.stderr.read().decode("utf-8", errors="replace") if process.stderr else ""
            raise ExtractionError(describe_ytdlp_error(stderr))


# ----------------------------
# Fallback chain
# ----------------------------


class ExtractionChain(Extractor):
    """Tries each extractor in order until one succeeds."""

    name = "chain"

    def __init__(self, extractors: List[Extractor]):
        if not extractors:
            raise ValueError("ExtractionChain needs at least one extractor")
        self.extractors = list(extractors)

    def validate(self, url: str) -> bool:
        return any(extractor.validate(url) for extractor in self.extractors)

    def get_info(self, url: str) -> Dict[str, Any]:
        errors = []
        for extractor in self.extractors:
            try:
                info = extractor.get_info(url)
            except ExtractionError as e:
                log.warning(f"{extractor.name} could not read {url}: {e}")
                errors.append(f"{extractor.name}: {e}")
                continue
            for fmt in info.get("formats", []):
                fmt.setdefault("source", extractor.name)
            info["source"] = extractor.name
            return info
        raise ExtractionError("; ".join(errors))

    def open_stream(self, url: str, fmt: Dict[str, Any]) -> ByteStream:
        source = fmt.get("source")
        for extractor in self.extractors:
            if extractor.name == source:
                return extractor.open_stream(url, fmt)

        errors = []
        for extractor in self.extractors:
            try:
                return extractor.open_stream(url, fmt)
            except ExtractionError as e:
                log.warning(f"{extractor.name} could not stream {url}: {e}")
                errors.append(f"{extractor.name}: {e}")
        raise ExtractionError("; ".join(errors))
