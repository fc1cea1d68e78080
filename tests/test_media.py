from io import BytesIO

import pytest
from PIL import Image

from tourworker.generation.media import (
    CROSSFADE_SECONDS,
    LOGO_MARGIN,
    LOGO_MAX_SIZE,
    build_subtitle_cues,
    chunk_subtitle_text,
    expected_duration,
    logo_position,
    logo_scale,
    prepare_logo,
)


def test_expected_duration_subtracts_crossfades():
    assert expected_duration([5.0, 5.0, 5.0]) == 15.0 - 2 * CROSSFADE_SECONDS
    assert expected_duration([5.0, 5.0, 5.0], transitions=False) == 15.0
    assert expected_duration([10.0]) == 10.0


def test_subtitle_chunks_respect_width_and_keep_words():
    chunks = chunk_subtitle_text("Welcome to this beautifully renovated three bedroom family home", max_chars=20)
    assert all(len(c) <= 20 for c in chunks)
    assert " ".join(chunks) == "Welcome to this beautifully renovated three bedroom family home"


def test_overlong_words_are_split():
    assert chunk_subtitle_text("a" * 45, max_chars=20) == ["a" * 20, "a" * 20, "a" * 5]


def test_subtitle_cues_are_ordered_and_cover_the_video():
    cues = build_subtitle_cues("one two three four five six seven eight nine ten", 13.7, max_chars=10)

    assert cues[0].start == 0
    assert cues[-1].end == 13.7
    for earlier, later in zip(cues, cues[1:]):
        assert earlier.end == pytest.approx(later.start)
        assert earlier.start < later.start
    assert [c.text for c in cues][0] == "one two"


def test_no_cues_without_text_or_duration():
    assert build_subtitle_cues("   ", 10) == []
    assert build_subtitle_cues("hello", 0) == []


def test_logo_is_scaled_to_a_quarter_of_frame_width():
    assert logo_scale((200, 100), (1280, 720)) == 1.0
    assert logo_scale((640, 100), (1280, 720)) == pytest.approx(0.5)
    assert logo_scale((1000, 1000), (1280, 720)) == pytest.approx(0.32)


@pytest.mark.parametrize("position, expected", [
    ("top-left", (LOGO_MARGIN, LOGO_MARGIN)),
    ("top-right", (1280 - 100 - LOGO_MARGIN, LOGO_MARGIN)),
    ("bottom-left", (LOGO_MARGIN, 720 - 50 - LOGO_MARGIN)),
    ("bottom-right", (1280 - 100 - LOGO_MARGIN, 720 - 50 - LOGO_MARGIN)),
    ("middle", (1280 - 100 - LOGO_MARGIN, 720 - 50 - LOGO_MARGIN)),
])
def test_logo_corners(position, expected):
    assert logo_position(position, (1280, 720), (100, 50)) == expected


def test_prepare_logo_caps_size_and_outputs_png():
    source = BytesIO()
    Image.new("RGB", (2000, 1000), (0, 0, 255)).save(source, format="JPEG")

    prepared = Image.open(BytesIO(prepare_logo(source.getvalue())))

    assert prepared.format == "PNG"
    assert prepared.mode == "RGBA"
    assert max(prepared.size) == LOGO_MAX_SIZE


def test_prepare_logo_rejects_non_images():
    with pytest.raises(ValueError):
        prepare_logo(b"<svg></svg>")
