from __future__ import annotations

import random
from datetime import datetime

import pytest

from engine.formats import (
    FormatDescriptor,
    content_length_from_url,
    expiry_epoch_ms,
    format_score,
    is_device_preferred,
    parse_expiry,
    rank_audio_formats,
)


def _fmt(identifier, *, bitrate=None, container=None, mime_type=None, url="https://cdn.example/a"):
    return FormatDescriptor(
        identifier=identifier,
        url=url,
        mime_type=mime_type,
        container=container,
        codecs=None,
        audio_bitrate_kbps=bitrate,
        content_length=None,
    )


@pytest.mark.parametrize(
    "mime_type, container, expected",
    [
        ('audio/mp4; codecs="mp4a.40.2"', None, True),
        ("AUDIO/MP4", None, True),
        (None, "M4A", True),
        (None, "mp4", True),
        ('audio/webm; codecs="opus"', "webm", False),
        (None, None, False),
    ],
)
def test_is_device_preferred(mime_type, container, expected) -> None:
    assert is_device_preferred(mime_type, container) is expected


def test_rank_prefers_device_format_over_higher_bitrate() -> None:
    mp4 = _fmt(140, bitrate=128, container="mp4")
    webm = _fmt(251, bitrate=256, container="webm")

    ranked = rank_audio_formats([webm, mp4])

    assert ranked == [mp4, webm]


def test_rank_treats_missing_bitrate_as_zero() -> None:
    unknown = _fmt(1, bitrate=None, container="webm")
    low = _fmt(2, bitrate=48, container="webm")

    assert rank_audio_formats([unknown, low]) == [low, unknown]
    assert format_score(unknown) == 0


def test_rank_empty_input_returns_empty_list() -> None:
    assert rank_audio_formats([]) == []


def test_rank_is_stable_sorted_permutation_for_random_inputs() -> None:
    rng = random.Random(20240611)
    for _ in range(200):
        formats = [
            _fmt(
                idx,
                bitrate=rng.choice([None, 0, 48, 64, 128, 128, 160, 256]),
                container=rng.choice(["m4a", "mp4", "webm", None]),
            )
            for idx in range(rng.randint(0, 12))
        ]
        expected = [
            fmt for _, fmt in sorted(enumerate(formats), key=lambda pair: (-format_score(pair[1]), pair[0]))
        ]

        ranked = rank_audio_formats(formats)

        assert ranked == expected
        assert sorted(f.identifier for f in ranked) == sorted(f.identifier for f in formats)


def test_from_upstream_coerces_ytdlp_audio_format() -> None:
    fmt = FormatDescriptor.from_upstream(
        {
            "format_id": "140",
            "url": "https://rr1.googlevideo.com/videoplayback?expire=1700000000",
            "ext": "m4a",
            "acodec": "mp4a.40.2",
            "vcodec": "none",
            "abr": 129.47,
            "filesize": 3400000,
        }
    )

    assert fmt.identifier == 140
    assert fmt.mime_type == 'audio/mp4; codecs="mp4a.40.2"'
    assert fmt.base_mime_type == "audio/mp4"
    assert fmt.container == "m4a"
    assert fmt.codecs == "mp4a.40.2"
    assert fmt.audio_bitrate_kbps == 129
    assert fmt.content_length == 3400000
    assert fmt.is_audio_only
    assert fmt.is_preferred_for_device


def test_from_upstream_defaults_missing_fields() -> None:
    fmt = FormatDescriptor.from_upstream({"format_id": "hls-abc", "abr": "not-a-number"})

    assert fmt.identifier is None
    assert fmt.url is None
    assert fmt.mime_type is None
    assert fmt.audio_bitrate_kbps is None
    assert fmt.content_length is None
    assert not fmt.has_audio


def test_from_upstream_marks_muxed_formats_as_not_audio_only() -> None:
    fmt = FormatDescriptor.from_upstream(
        {"format_id": "18", "ext": "mp4", "acodec": "mp4a.40.2", "vcodec": "avc1.42001E", "tbr": 500}
    )

    assert fmt.has_video
    assert not fmt.is_audio_only
    assert fmt.mime_type.startswith("video/mp4")
    assert fmt.audio_bitrate_kbps is None


def test_to_dict_uses_client_field_names() -> None:
    payload = _fmt(140, bitrate=128, container="m4a").to_dict()

    assert payload == {
        "itag": 140,
        "mimeType": None,
        "container": "m4a",
        "codecs": None,
        "audioBitrateKbps": 128,
        "contentLength": None,
        "iosPreferred": True,
    }


@pytest.mark.parametrize("seconds", [0, 1, 1700000000, 1893456000])
def test_parse_expiry_round_trips_to_same_second(seconds) -> None:
    url = f"https://rr3.googlevideo.com/videoplayback?ei=abc&expire={seconds}&itag=140"

    result = parse_expiry(url)

    assert result is not None
    assert result.endswith("Z")
    parsed = datetime.fromisoformat(result.replace("Z", "+00:00"))
    assert int(parsed.timestamp()) == seconds
    assert expiry_epoch_ms(result) == seconds * 1000


@pytest.mark.parametrize(
    "url",
    [
        None,
        "",
        "not a url",
        "https://rr3.googlevideo.com/videoplayback?itag=140",
        "https://rr3.googlevideo.com/videoplayback?expire=",
        "https://rr3.googlevideo.com/videoplayback?expire=soon",
        "https://rr3.googlevideo.com/videoplayback?expire=inf",
        "https://rr3.googlevideo.com/videoplayback?expire=nan",
        "https://rr3.googlevideo.com/videoplayback?expire=1e400",
    ],
)
def test_parse_expiry_returns_none_for_missing_or_malformed(url) -> None:
    assert parse_expiry(url) is None


def test_expiry_epoch_ms_rejects_garbage() -> None:
    assert expiry_epoch_ms(None) is None
    assert expiry_epoch_ms("yesterday") is None


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://rr1.googlevideo.com/videoplayback?itag=140&clen=3456789", 3456789),
        ("https://rr1.googlevideo.com/videoplayback?itag=140", None),
        ("https://rr1.googlevideo.com/videoplayback?clen=abc", None),
        ("https://rr1.googlevideo.com/videoplayback?clen=0", None),
        (None, None),
    ],
)
def test_content_length_from_url(url, expected) -> None:
    assert content_length_from_url(url) == expected
