import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


# Ensure tests can import project modules regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from extraction import ByteStream, ExtractionError, Extractor  # noqa: E402
from jobs import InMemoryJobStore  # noqa: E402


def fmt(label, video=True, audio=True, height=None, size=None, format_id=None, ext="mp4", source="fake"):
    return {
        "format_id": format_id or label or "x",
        "ext": ext,
        "quality_label": label,
        "height": height,
        "has_video": video,
        "has_audio": audio,
        "content_length": size,
        "source": source,
    }


class FakeExtractor(Extractor):
    """In-process stand-in for yt-dlp: serves a fixed payload in fixed chunks."""

    name = "fake"

    def __init__(
        self,
        payload: bytes = b"0123456789" * 100,
        chunk_size: int = 100,
        formats: Optional[List[Dict[str, Any]]] = None,
        total_known: bool = True,
        info_error: Optional[str] = None,
        stream_error_after: Optional[int] = None,
        gate: Optional[threading.Event] = None,
        end_gate: Optional[threading.Event] = None,
    ):
        self.payload = payload
        self.chunk_size = chunk_size
        self.formats = formats if formats is not None else [fmt("720p", height=720), fmt("360p", height=360)]
        self.total_known = total_known
        self.info_error = info_error
        self.stream_error_after = stream_error_after
        self.gate = gate
        self.end_gate = end_gate
        self.info_calls: List[str] = []
        self.opened: List[Dict[str, Any]] = []
        self.closed_streams = 0

    def validate(self, url: str) -> bool:
        return url.startswith(("http://", "https://"))

    def get_info(self, url: str) -> Dict[str, Any]:
        self.info_calls.append(url)
        if self.info_error:
            raise ExtractionError(self.info_error)
        return {
            "title": "Test: Video / Title!",
            "description": "a description",
            "thumbnail": "https://img.example/t.jpg",
            "thumbnails": ["https://img.example/t.jpg"],
            "duration": 12,
            "formats": [dict(f) for f in self.formats],
        }

    def _chunks(self):
        sent = 0
        for start in range(0, len(self.payload), self.chunk_size):
            if self.gate is not None:
                self.gate.wait(5)
            if self.stream_error_after is not None and sent >= self.stream_error_after:
                raise ExtractionError("upstream returned 410")
            chunk = self.payload[start:start + self.chunk_size]
            sent += len(chunk)
            yield chunk
        if self.end_gate is not None:
            self.end_gate.wait(5)

    def open_stream(self, url: str, fmt: Dict[str, Any]) -> ByteStream:
        self.opened.append(fmt)
        total = len(self.payload) if self.total_known else None

        def on_close():
            self.closed_streams += 1

        return ByteStream(self._chunks(), total_bytes=total, on_close=on_close)


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture()
def store():
    return InMemoryJobStore()


@pytest.fixture()
def extractor():
    return FakeExtractor()
