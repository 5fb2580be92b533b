"""
Cobalt API fallback for when yt-dlp fails with 403 errors.
Cobalt (cobalt.tools) is a modern download service that handles YouTube restrictions well.
Video metadata comes from YouTube's public oEmbed endpoint, since Cobalt only hands out media URLs.
"""

import logging
from typing import Any, Dict, Iterator, List

import requests

from extraction import ByteStream, ExtractionError, Extractor


log = logging.getLogger("fetch.cobalt")

OEMBED_URL = "https://www.youtube.com/oembed"

# Cobalt muxes video and audio server-side, so every rung is a complete file.
COBALT_QUALITIES = ["2160", "1440", "1080", "720", "480", "360"]


class CobaltExtractor(Extractor):
    """Fallback extractor using Cobalt API"""

    name = "cobalt"

    def __init__(self, api_url: str = "https://api.cobalt.tools", timeout: int = 30, chunk_size: int = 64 * 1024, session=None):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.session = session or requests.Session()

    def get_info(self, url: str) -> Dict[str, Any]:
        try:
            response = self.session.get(
                OEMBED_URL,
                params={"url": url, "format": "json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ExtractionError(f"oEmbed lookup failed: {e}")

        if response.status_code in (401, 403):
            raise ExtractionError("Video is private or embedding is disabled")
        if response.status_code == 404:
            raise ExtractionError("Video is unavailable or private")
        if response.status_code != 200:
            raise ExtractionError(f"oEmbed lookup failed with HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise ExtractionError("oEmbed response was not JSON")

        thumbnail = data.get("thumbnail_url")
        return {
            "title": data.get("title") or "Unknown Title",
            "description": "",
            "thumbnail": thumbnail,
            "thumbnails": [thumbnail] if thumbnail else [],
            "duration": 0,
            "formats": self._ladder(),
        }

    def _ladder(self) -> List[Dict[str, Any]]:
        return [
            {
                "format_id": quality,
                "ext": "mp4",
                "quality_label": f"{quality}p",
                "height": int(quality),
                "has_video": True,
                "has_audio": True,
                "content_length": None,
                "source": self.name,
            }
            for quality in COBALT_QUALITIES
        ]

    def get_download_url(self, video_url: str, quality: str = "max") -> Dict[str, Any]:
        """
        Get direct download URL from Cobalt API

        Args:
            video_url: YouTube video URL
            quality: Video quality (max, 2160, 1440, 1080, 720, 480, 360)

        Returns:
            Dict with the media ``url`` and suggested ``filename``
        """
        try:
            response = self.session.post(
                f"{self.api_url}/",
                json={
                    "url": video_url,
                    "vQuality": quality,
                    "videoQuality": quality,
                    "filenamePattern": "basic",
                    "isAudioOnly": False,
                    "disableMetadata": False,
                },
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ExtractionError(f"Cobalt API error: {e}")

        if response.status_code != 200:
            raise ExtractionError(f"Cobalt API returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise ExtractionError("Cobalt API response was not JSON")

        # Cobalt returns different response types
        status = data.get("status")
        if status == "error":
            error = data.get("error") or data.get("text") or "unknown error"
            if isinstance(error, dict):
                error = error.get("code", "unknown error")
            raise ExtractionError(f"Cobalt API error: {error}")

        if status in ("redirect", "tunnel", "stream") and data.get("url"):
            return {
                "url": data["url"],
                "filename": data.get("filename", "video.mp4"),
            }

        if status == "picker":
            # Multiple items; the first is usually the best quality
            picker = data.get("picker", [])
            if picker and picker[0].get("url"):
                return {
                    "url": picker[0]["url"],
                    "filename": data.get("filename", "video.mp4"),
                }

        raise ExtractionError("Cobalt API did not return a download URL")

    def open_stream(self, url: str, fmt: Dict[str, Any]) -> ByteStream:
        result = self.get_download_url(url, fmt.get("format_id") or "max")
        log.info(f"Cobalt resolved {url} to {result['filename']}")
        try:
            response = self.session.get(result["url"], stream=True, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExtractionError(f"Cobalt download failed: {e}")

        total = response.headers.get("Content-Length")
        total_bytes = int(total) if total and total.isdigit() else None
        return ByteStream(self._iter_body(response), total_bytes=total_bytes, on_close=response.close)

    def _iter_body(self, response) -> Iterator[bytes]:
        try:
            for chunk in response.iter_content(chunk_size=self.chunk_size):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise ExtractionError(f"Cobalt download interrupted: {e}")
