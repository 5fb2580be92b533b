import logging
import threading
import time
from typing import List, Optional

from downloader import remove_file
from jobs import JobNotFound, JobStore


log = logging.getLogger("fetch.reaper")


class Reaper:
    """Deletes finished jobs, and their files, once they outlive the retention window."""

    def __init__(self, store: JobStore, retention_seconds: float, interval_seconds: float = 60):
        self.store = store
        self.retention_seconds = retention_seconds
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        cutoff = now - self.retention_seconds
        reaped = []
        for job in self.store.list_jobs():
            # A running worker may still be writing its file; only finished jobs are eligible.
            if not job.is_terminal or job.created_at > cutoff:
                continue
            if job.file_path:
                remove_file(job.file_path)
            try:
                self.store.delete(job.id)
            except JobNotFound:
                continue
            reaped.append(job.id)
            log.info(f"Cleaned up expired download: {job.id}")
        return reaped

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception as e:
                log.warning(f"Cleanup error: {e}")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="fetch-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
