import re
from typing import Any, Dict, Iterable, List, Optional


# Offered when no combined video+audio format is known, so the quality menu is never empty.
FALLBACK_QUALITIES = ["720p", "480p", "360p"]

_RESOLUTION_RE = re.compile(r"(\d+)\s*p", re.IGNORECASE)
_DIGITS_RE = re.compile(r"(\d+)")


def parse_resolution(label: Optional[str]) -> Optional[int]:
    """'1080p60' -> 1080, '720p HDR' -> 720, 'audio only' -> None."""
    if not label:
        return None
    match = _RESOLUTION_RE.search(label) or _DIGITS_RE.search(label)
    if not match:
        return None
    return int(match.group(1))


def is_playable(fmt: Dict[str, Any]) -> bool:
    return bool(fmt.get("has_video")) and bool(fmt.get("has_audio"))


def format_resolution(fmt: Dict[str, Any]) -> Optional[int]:
    resolution = parse_resolution(fmt.get("quality_label"))
    if resolution is None and fmt.get("height"):
        resolution = int(fmt["height"])
    return resolution


def _descending(formats: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # sorted() is stable, so ties keep their input order; unknown resolutions sink to the end.
    def sort_key(fmt):
        resolution = format_resolution(fmt)
        return (resolution is None, -(resolution or 0))

    return sorted(formats, key=sort_key)


def select_qualities(raw_formats: Iterable[Dict[str, Any]]) -> List[str]:
    playable = [f for f in (raw_formats or []) if is_playable(f) and f.get("quality_label")]

    labels: List[str] = []
    seen = set()
    for fmt in _descending(playable):
        label = fmt["quality_label"]
        if label in seen:
            continue
        seen.add(label)
        labels.append(label)

    if not labels:
        return list(FALLBACK_QUALITIES)
    return labels


def choose_format(raw_formats: Iterable[Dict[str, Any]], requested_quality: Optional[str]) -> Optional[Dict[str, Any]]:
    """Pick the format a download job should fetch.

    An exact (case-insensitive) label match among the playable formats wins,
    preferring a variant whose content length is known. Without a match the
    highest-resolution playable format is used. Video-only formats are a last
    resort when nothing playable exists; ``None`` means there is nothing to
    download at all.
    """
    formats = list(raw_formats or [])
    if not formats:
        return None

    playable = [f for f in formats if is_playable(f)]
    if requested_quality:
        wanted = requested_quality.strip().lower()
        matches = [f for f in playable if (f.get("quality_label") or "").lower() == wanted]
        if matches:
            sized = [f for f in matches if f.get("content_length")]
            return (sized or matches)[0]

    if playable:
        return _descending(playable)[0]

    with_video = [f for f in formats if f.get("has_video")]
    if with_video:
        return _descending(with_video)[0]
    return None
