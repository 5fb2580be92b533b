import pytest

from conftest import fmt
from formats import FALLBACK_QUALITIES, choose_format, parse_resolution, select_qualities


def test_select_qualities_excludes_video_only() -> None:
    raw = [fmt("1080p", video=True, audio=False), fmt("720p", video=True, audio=True)]
    assert select_qualities(raw) == ["720p"]


def test_select_qualities_excludes_audio_only() -> None:
    raw = [fmt(None, video=False, audio=True), fmt("360p")]
    assert select_qualities(raw) == ["360p"]


def test_select_qualities_empty_input_returns_fallback() -> None:
    assert select_qualities([]) == FALLBACK_QUALITIES
    assert select_qualities(None) == FALLBACK_QUALITIES


def test_select_qualities_nothing_playable_returns_fallback() -> None:
    raw = [fmt("1080p", audio=False), fmt("720p", audio=False)]
    assert select_qualities(raw) == ["720p", "480p", "360p"]


def test_fallback_list_is_not_shared() -> None:
    result = select_qualities([])
    result.append("144p")
    assert select_qualities([]) == ["720p", "480p", "360p"]


def test_select_qualities_dedupes_and_orders_descending() -> None:
    raw = [
        fmt("360p", format_id="18"),
        fmt("720p", format_id="22"),
        fmt("720p", format_id="22-webm", ext="webm"),
        fmt("1080p60", format_id="37"),
        fmt("240p", format_id="5"),
    ]
    assert select_qualities(raw) == ["1080p60", "720p", "360p", "240p"]


def test_unparseable_labels_sort_last_in_input_order() -> None:
    raw = [fmt("medium"), fmt("360p"), fmt("hd"), fmt("720p")]
    assert select_qualities(raw) == ["720p", "360p", "medium", "hd"]


def test_select_qualities_is_idempotent() -> None:
    raw = [fmt("360p"), fmt("720p"), fmt("hd"), fmt("720p"), fmt("1080p", audio=False)]
    assert select_qualities(raw) == select_qualities(raw)


@pytest.mark.parametrize(
    "label,expected",
    [("720p", 720), ("1080p60", 1080), ("2160p HDR", 2160), ("480", 480), ("audio only", None), (None, None), ("", None)],
)
def test_parse_resolution(label, expected) -> None:
    assert parse_resolution(label) == expected


def test_choose_format_exact_match() -> None:
    raw = [fmt("1080p"), fmt("720p", format_id="22"), fmt("360p")]
    assert choose_format(raw, "720p")["format_id"] == "22"


def test_choose_format_match_is_case_insensitive() -> None:
    raw = [fmt("720P", format_id="22"), fmt("360p")]
    assert choose_format(raw, "720p")["format_id"] == "22"


def test_choose_format_prefers_variant_with_known_size() -> None:
    raw = [fmt("720p", format_id="a"), fmt("720p", format_id="b", size=1234)]
    assert choose_format(raw, "720p")["format_id"] == "b"


def test_choose_format_without_match_takes_highest_playable() -> None:
    raw = [fmt("360p", format_id="18"), fmt("2160p", audio=False, format_id="313"), fmt("720p", format_id="22")]
    assert choose_format(raw, "1440p")["format_id"] == "22"
    assert choose_format(raw, None)["format_id"] == "22"


def test_choose_format_uses_height_when_label_missing_number() -> None:
    raw = [fmt("sd", height=480, format_id="sd"), fmt("hd", height=720, format_id="hd")]
    assert choose_format(raw, None)["format_id"] == "hd"


def test_choose_format_video_only_is_last_resort() -> None:
    raw = [fmt("480p", audio=False, format_id="v480"), fmt("1080p", audio=False, format_id="v1080")]
    assert choose_format(raw, "720p")["format_id"] == "v1080"


def test_choose_format_none_without_formats() -> None:
    assert choose_format([], "720p") is None
    assert choose_format([fmt(None, video=False, audio=True)], None) is None
