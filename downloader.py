import errno
import logging
import os
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import IO, Any, Dict, Iterator, Optional, Tuple

from extraction import ByteStream, ExtractionError, Extractor
from formats import choose_format
from jobs import COMPLETE, FAILED, RUNNING, InvalidTransition, JobNotFound, JobStore


log = logging.getLogger("fetch.downloader")

# With an unknown content length the estimate reaches 49% at this many bytes and approaches 99%.
UNKNOWN_SIZE_MIDPOINT = 8 * 1024**2
MAX_TITLE_LENGTH = 80


class DownloadCancelled(Exception):
    pass


def ensure_download_dir(path: str) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def sanitize_title(title: Optional[str]) -> str:
    cleaned = re.sub(r"[^\w\s]", "", title or "", flags=re.UNICODE)
    cleaned = re.sub(r"\s+", "_", cleaned.strip())
    return cleaned[:MAX_TITLE_LENGTH] or "video"


def build_file_name(job_id: str, title: Optional[str], ext: Optional[str]) -> str:
    ext = re.sub(r"[^\w]", "", ext or "") or "mp4"
    return f"{job_id}_{sanitize_title(title)}.{ext}"


def compute_progress(bytes_received: int, total_bytes: Optional[int]) -> int:
    """Percent done, never 100 before the stream has actually ended."""
    if total_bytes:
        return min(99, bytes_received * 100 // total_bytes)
    if bytes_received <= 0:
        return 0
    return 99 * bytes_received // (bytes_received + UNKNOWN_SIZE_MIDPOINT)


def iter_progress(stream: ByteStream, fh: IO[bytes]) -> Iterator[Tuple[int, Optional[int]]]:
    received = 0
    for chunk in stream:
        if not chunk:
            continue
        fh.write(chunk)
        received += len(chunk)
        yield received, stream.total_bytes


def remove_file(path: Optional[str]) -> bool:
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        log.warning(f"Could not delete {path}: {e}")
        return False


class DownloadOrchestrator:
    def __init__(self, store: JobStore, adapter: Extractor, download_dir: str, max_workers: int = 3):
        self.store = store
        self.adapter = adapter
        self.download_dir = ensure_download_dir(download_dir)
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fetch-download")
        self._cancel_events: Dict[str, threading.Event] = {}
        self._futures: Dict[str, Future] = {}
        # Serialises cancel() against the move to complete.
        self._finish_lock = threading.Lock()

    def start_download(self, url: str, quality: Optional[str] = None) -> str:
        job_id = self.store.create(url, quality)
        self._cancel_events[job_id] = threading.Event()
        future = self.executor.submit(self._download_worker, job_id)
        self._futures[job_id] = future
        future.add_done_callback(lambda f: self._handle_completion(job_id, f))
        return job_id

    def _download_worker(self, job_id: str) -> None:
        cancel = self._cancel_events.get(job_id) or threading.Event()
        path: Optional[Path] = None
        try:
            if cancel.is_set():
                raise DownloadCancelled()
            job = self.store.update(job_id, status=RUNNING, started_at=time.time())

            info = self.adapter.get_info(job.source_url)
            fmt = choose_format(info.get("formats"), job.requested_quality)
            if fmt is None:
                raise ExtractionError("no suitable format found")
            self.store.update(job_id, title=info.get("title"))

            file_name = build_file_name(job_id, info.get("title"), fmt.get("ext"))
            path = self.download_dir / file_name
            log.info(f"Download {job_id}: {fmt.get('quality_label') or fmt.get('format_id')} via {fmt.get('source', self.adapter.name)}")

            with self.adapter.open_stream(job.source_url, fmt) as stream, open(path, "wb") as fh:
                for received, total in iter_progress(stream, fh):
                    if cancel.is_set():
                        raise DownloadCancelled()
                    self.store.update(
                        job_id,
                        progress=compute_progress(received, total),
                        bytes_received=received,
                        total_bytes=total,
                    )

            with self._finish_lock:
                # A cancel acknowledged by cancel() wins over completion.
                if cancel.is_set():
                    raise DownloadCancelled()
                self.store.update(
                    job_id,
                    status=COMPLETE,
                    progress=100,
                    file_path=str(path),
                    file_name=file_name,
                    finished_at=time.time(),
                )
            size_mb = path.stat().st_size / (1024**2)
            log.info(f"Download complete: {job_id} - {size_mb:.1f}MB")
        except DownloadCancelled:
            log.info(f"Download {job_id} cancelled")
            self._fail(job_id, "cancelled", path)
        except ExtractionError as e:
            log.error(f"Download {job_id} failed: {e}")
            self._fail(job_id, str(e), path)
        except OSError as e:
            if e.errno == errno.ENOSPC:
                log.error(f"Download {job_id} failed: Disk full")
                self._fail(job_id, "Storage full - contact admin", path)
            else:
                log.error(f"Download {job_id} failed: {e}")
                self._fail(job_id, str(e), path)
        except Exception as e:
            log.exception(f"Download {job_id} failed unexpectedly")
            self._fail(job_id, str(e) or e.__class__.__name__, path)
        finally:
            self._cancel_events.pop(job_id, None)

    def _fail(self, job_id: str, error: str, partial_path: Optional[Path] = None) -> None:
        # Partial files are removed here so only complete jobs own files on disk.
        if partial_path is not None:
            remove_file(str(partial_path))
        try:
            self.store.update(job_id, status=FAILED, error=error, finished_at=time.time())
        except (JobNotFound, InvalidTransition) as e:
            log.warning(f"Could not mark {job_id} failed: {e!r}")

    def _handle_completion(self, job_id: str, future: Future) -> None:
        self._futures.pop(job_id, None)
        if future.cancelled():
            self._cancel_events.pop(job_id, None)
            log.info(f"Download {job_id} cancelled before it started")
            self._fail(job_id, "cancelled")
            return
        try:
            future.result()
        except Exception as e:
            log.exception(f"Download {job_id} crashed")
            self._fail(job_id, str(e) or e.__class__.__name__)

    def get_progress(self, job_id: str) -> Dict[str, Any]:
        job = self.store.get(job_id)
        return {
            "status": job.status,
            "progress": job.progress,
            "bytes_received": job.bytes_received,
            "total_bytes": job.total_bytes,
            "filename": job.file_name,
            "error": job.error,
        }

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; True means the job will end failed with "cancelled"."""
        with self._finish_lock:
            job = self.store.get(job_id)
            if job.is_terminal:
                return False
            event = self._cancel_events.get(job_id)
            if event is not None:
                event.set()
        future = self._futures.get(job_id)
        if future is not None:
            future.cancel()
        return True

    def discard(self, job_id: str) -> None:
        job = self.store.delete(job_id)
        remove_file(job.file_path)
        log.info(f"Discarded delivered download: {job_id}")

    def active_downloads(self) -> int:
        return sum(1 for job in self.store.list_jobs() if not job.is_terminal)

    def shutdown(self, wait: bool = True) -> None:
        for event in list(self._cancel_events.values()):
            event.set()
        self.executor.shutdown(wait=wait)
