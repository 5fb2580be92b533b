import os
import sys
import time
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import (
    Flask,
    Response,
    jsonify,
    request,
    send_file,
    stream_with_context,
    url_for,
)

from cobalt_fallback import CobaltExtractor
from downloader import DownloadOrchestrator, ensure_download_dir, sanitize_title
from extraction import ExtractionChain, ExtractionError, Extractor, YtDlpExtractor, get_ytdlp_version
from formats import choose_format, select_qualities
from jobs import COMPLETE, FAILED, InMemoryJobStore, JobNotFound, JobStore
from reaper import Reaper


# ----------------------------
# Configuration & Constants
# ----------------------------


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


DOWNLOAD_DIR = os.getenv("DOWNLOAD_DIR", "./downloads")
MAX_CONCURRENT = int(os.getenv("MAX_CONCURRENT", "3"))
FILE_RETENTION_MINUTES = int(os.getenv("FILE_RETENTION_MINUTES", "60"))
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "60"))
DELIVER_ONCE = env_flag("DELIVER_ONCE", False)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", str(64 * 1024)))
YTDLP_TIMEOUT = int(os.getenv("YTDLP_TIMEOUT", "300"))
COBALT_API_URL = os.getenv("COBALT_API_URL", "https://api.cobalt.tools")
ENABLE_COBALT = env_flag("ENABLE_COBALT", True)
MAX_INFO_PER_MINUTE = int(os.getenv("MAX_INFO_PER_MINUTE", "10"))
PORT = int(os.getenv("PORT", "5000"))

MIN_FREE_DISK_BYTES = 1024**3
BEST_QUALITY_ALIASES = {"", "best", "highest", "max"}

MIMETYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".3gp": "video/3gpp",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".opus": "audio/opus",
}


# ----------------------------
# Logger
# ----------------------------


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    stream=sys.stdout,
)
log = logging.getLogger("fetch")


def guess_mimetype(filename: str) -> str:
    return MIMETYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


def normalize_quality(quality: Any) -> Optional[str]:
    value = str(quality or "").strip()
    if value.lower() in BEST_QUALITY_ALIASES:
        return None
    return value


def build_adapter() -> Extractor:
    extractors: List[Extractor] = [YtDlpExtractor(timeout=30, stream_timeout=YTDLP_TIMEOUT, chunk_size=CHUNK_SIZE)]
    if ENABLE_COBALT:
        extractors.append(CobaltExtractor(api_url=COBALT_API_URL, chunk_size=CHUNK_SIZE))
    return ExtractionChain(extractors)


def startup_checks(download_dir: str) -> None:
    log.info("Fetch started")
    log.info(f"Downloads directory: {download_dir}")
    version = get_ytdlp_version()
    if version:
        log.info(f"yt-dlp version: {version}")
    else:
        # Do not sys.exit in hosted environments; /health reports the degraded state
        log.error("ERROR: yt-dlp not installed or not accessible")


# ----------------------------
# App factory
# ----------------------------


def create_app(
    store: Optional[JobStore] = None,
    adapter: Optional[Extractor] = None,
    download_dir: Optional[str] = None,
    deliver_once: Optional[bool] = None,
    max_workers: Optional[int] = None,
    retention_seconds: Optional[float] = None,
    max_info_per_minute: Optional[int] = None,
    start_reaper: bool = True,
) -> Flask:
    app = Flask(__name__)
    app.json.sort_keys = False

    if adapter is None:
        adapter = build_adapter()
        startup_checks(download_dir or DOWNLOAD_DIR)
    retention = FILE_RETENTION_MINUTES * 60 if retention_seconds is None else retention_seconds
    store = store if store is not None else InMemoryJobStore(reuse_guard_seconds=retention)
    downloads_path = ensure_download_dir(download_dir or DOWNLOAD_DIR).resolve()
    deliver_once = DELIVER_ONCE if deliver_once is None else deliver_once
    info_limit = MAX_INFO_PER_MINUTE if max_info_per_minute is None else max_info_per_minute

    orchestrator = DownloadOrchestrator(
        store=store,
        adapter=adapter,
        download_dir=str(downloads_path),
        max_workers=max_workers or MAX_CONCURRENT,
    )
    reaper = Reaper(
        store=store,
        retention_seconds=retention,
        interval_seconds=CLEANUP_INTERVAL_SECONDS,
    )
    if start_reaper:
        reaper.start()

    app.extensions["fetch"] = {
        "store": store,
        "adapter": adapter,
        "orchestrator": orchestrator,
        "reaper": reaper,
        "download_dir": downloads_path,
    }

    # Simple in-memory rate limiting for /api/video-info
    info_attempts: Dict[str, List[float]] = {}

    @app.before_request
    def rate_limit() -> Optional[Response]:
        if request.endpoint != "video_info" or info_limit <= 0:
            return None
        ip = request.remote_addr or "unknown"
        now = time.time()
        timestamps = [t for t in info_attempts.get(ip, []) if now - t < 60]
        if len(timestamps) >= info_limit:
            return jsonify({"error": "Too many requests - wait a minute"}), 429
        timestamps.append(now)
        info_attempts[ip] = timestamps
        return None

    @app.errorhandler(JobNotFound)
    def job_not_found(e: JobNotFound) -> Response:
        return jsonify({"error": "Download not found or expired"}), 404

    # ----------------------------
    # HTTP Routes
    # ----------------------------

    @app.route("/api/video-info")
    def video_info() -> Response:
        url = (request.args.get("url") or "").strip()
        if not url:
            return jsonify({"error": "Missing url parameter"}), 400
        if not adapter.validate(url):
            return jsonify({"error": "Invalid YouTube URL"}), 400
        try:
            log.info(f"Fetching info for: {url}")
            info = adapter.get_info(url)
        except ExtractionError as e:
            log.warning(f"Info lookup failed for {url}: {e}")
            return jsonify({"error": f"Could not fetch video info: {e}"}), 500
        except Exception as e:
            log.exception("Unexpected error during info lookup")
            return jsonify({"error": f"Unexpected error: {e}"}), 500

        qualities = select_qualities(info.get("formats") or [])
        log.info(f"Offering {len(qualities)} qualities for: {info.get('title', 'Unknown')}")
        thumbnails = info.get("thumbnails") or []
        return jsonify(
            {
                "title": info.get("title"),
                "description": info.get("description") or "",
                "thumbnail": info.get("thumbnail") or (thumbnails[-1] if thumbnails else None),
                "duration": info.get("duration") or 0,
                "format_options": {"video": {"mp4": qualities}},
            }
        )

    @app.route("/api/start-download", methods=["POST"])
    def start_download() -> Response:
        body = request.get_json(silent=True) or {}
        url = str(body.get("url") or "").strip()
        if not url:
            return jsonify({"error": "Missing url"}), 400
        if not adapter.validate(url):
            return jsonify({"error": "Invalid YouTube URL"}), 400

        try:
            download_id = orchestrator.start_download(url, normalize_quality(body.get("quality")))
        except Exception as e:
            log.exception("Failed to start download")
            return jsonify({"error": f"Download failed to start: {e}"}), 500
        log.info(f"Download started: {download_id}")
        return jsonify({"download_id": download_id, "status": "pending"})

    @app.route("/api/get-download")
    def get_download() -> Response:
        download_id = (request.args.get("download_id") or "").strip()
        if not download_id:
            return jsonify({"error": "Missing download_id parameter"}), 400

        job = store.get(download_id)
        if job.status == FAILED:
            return jsonify({"status": job.status, "progress": job.progress, "error": job.error}), 500
        if job.status == COMPLETE:
            return jsonify(
                {
                    "status": job.status,
                    "progress": 100,
                    "download_url": url_for("download_file", download_id=job.id),
                    "filename": job.file_name,
                }
            )
        return jsonify({"status": job.status, "progress": job.progress})

    @app.route("/api/download/<download_id>")
    def download_file(download_id: str) -> Response:
        job = store.get(download_id)
        if job.status != COMPLETE or not job.file_path:
            return jsonify({"error": "Download is not complete"}), 404

        filepath = Path(job.file_path).resolve()
        if downloads_path not in filepath.parents:
            log.error(f"Refusing to serve {filepath} outside {downloads_path}")
            return jsonify({"error": "File not found"}), 404
        if not filepath.exists():
            return jsonify({"error": "File not found"}), 404

        response = send_file(
            filepath,
            mimetype=guess_mimetype(filepath.name),
            as_attachment=True,
            download_name=job.file_name,
        )
        # HEAD, 304 and ranged replies do not hand over the whole file.
        if deliver_once and request.method == "GET" and response.status_code == 200:
            # Passthrough bodies skip Response.close(), which is what runs the callback below.
            response.direct_passthrough = False

            @response.call_on_close
            def discard_delivered() -> None:
                try:
                    orchestrator.discard(download_id)
                except JobNotFound:
                    pass

        return response

    @app.route("/api/cancel/<download_id>", methods=["POST"])
    def cancel_download(download_id: str) -> Response:
        cancelled = orchestrator.cancel(download_id)
        return jsonify({"download_id": download_id, "cancelled": cancelled})

    @app.route("/download")
    def stream_direct() -> Response:
        """Stream the best available quality straight to the client, without a job."""
        url = (request.args.get("url") or "").strip()
        if not adapter.validate(url):
            return jsonify({"error": "Invalid YouTube URL"}), 400
        try:
            info = adapter.get_info(url)
            fmt = choose_format(info.get("formats"), None)
            if fmt is None:
                raise ExtractionError("no suitable format found")
            stream = adapter.open_stream(url, fmt)
        except ExtractionError as e:
            log.error(f"Error downloading video: {e}")
            return jsonify({"error": f"Failed to download video: {e}"}), 500

        file_name = f"{sanitize_title(info.get('title'))}.{fmt.get('ext') or 'mp4'}"

        def generate() -> Any:
            with stream:
                try:
                    for chunk in stream:
                        yield chunk
                except ExtractionError as e:
                    # Headers are already sent; the client sees a truncated body.
                    log.error(f"Direct stream for {url} broke off: {e}")

        headers = {"Content-Disposition": f'attachment; filename="{file_name}"'}
        return Response(stream_with_context(generate()), mimetype=guess_mimetype(file_name), headers=headers)

    @app.route("/health")
    def health_check() -> Response:
        def check_disk_space() -> bool:
            try:
                stat = os.statvfs(str(downloads_path))
                return stat.f_bavail * stat.f_frsize > MIN_FREE_DISK_BYTES
            except (AttributeError, OSError):
                return False

        checks = {
            "ytdlp": get_ytdlp_version() is not None,
            "disk_space": check_disk_space(),
            "downloads_dir": downloads_path.exists(),
            "active_downloads": orchestrator.active_downloads(),
            "tracked_jobs": len(store.list_jobs()),
        }
        if checks["ytdlp"] and checks["disk_space"] and checks["downloads_dir"]:
            return jsonify({**checks, "status": "healthy"}), 200
        return jsonify({**checks, "status": "degraded"}), 503

    return app


# ----------------------------
# Main
# ----------------------------


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=PORT, threaded=True)
