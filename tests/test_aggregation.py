from diagram_gen.models import AudioUnit, ImageUnit, TextUnit, TranscriptionStatus
from diagram_gen.services.aggregation import (
    TRUNCATION_MARKER,
    ContentAggregator,
    format_unit,
    has_content,
)
from helpers import make_settings


def _bodies(text: str) -> list[str]:
    return [block.split("\n", 1)[1] for block in text.split("\n\n")]


def test_units_are_ordered_by_timestamp() -> None:
    units = [TextUnit("u3", 300, "C"), TextUnit("u1", 100, "A"), TextUnit("u2", 200, "B")]

    text = ContentAggregator().aggregate(units)

    assert _bodies(text) == ["A", "B", "C"]


def test_ties_keep_input_order() -> None:
    units = [TextUnit("x", 100, "first"), TextUnit("y", 100, "second")]

    assert _bodies(ContentAggregator().aggregate(units)) == ["first", "second"]


def test_block_header_format() -> None:
    block = format_unit(TextUnit("n1", 0, "hello"))

    assert block == "[text] 1970-01-01T00:00:00.000Z (#n1)\nhello"


def test_audio_and_image_placeholders() -> None:
    audio = AudioUnit("a1", 100, raw_bytes=b"x", duration_ms=4600)
    heard = AudioUnit("a2", 200, raw_bytes=b"x", duration_ms=1000)
    heard.apply_transcription(TranscriptionStatus.RECOGNIZED, "user logs in", 0.9)
    bare = ImageUnit("i1", 300)
    captioned = ImageUnit("i2", 400, caption="  login screen  ")

    text = ContentAggregator().aggregate([captioned, bare, heard, audio])

    assert _bodies(text) == [
        "[audio: 5s, no transcription]",
        "user logs in",
        "[image]",
        "login screen",
    ]


def test_only_real_material_counts_as_content() -> None:
    heard = AudioUnit("a2", 200, raw_bytes=b"x", duration_ms=1000)
    heard.apply_transcription(TranscriptionStatus.RECOGNIZED, "user logs in", 0.9)
    silent = AudioUnit("a3", 300, raw_bytes=b"x", duration_ms=1000)
    silent.apply_transcription(TranscriptionStatus.NO_MATCH, error="No speech detected")

    assert has_content(TextUnit("t1", 1, "pay")) is True
    assert has_content(TextUnit("t2", 1, " \n ")) is False
    assert has_content(heard) is True
    assert has_content(silent) is False
    assert has_content(AudioUnit("a1", 100, raw_bytes=b"x")) is False
    assert has_content(ImageUnit("i1", 300)) is False
    assert has_content(ImageUnit("i2", 400, caption="login screen")) is True


def test_empty_input_gives_empty_text() -> None:
    assert ContentAggregator().aggregate([]) == ""


def test_truncation_drops_whole_blocks_and_marks() -> None:
    units = [TextUnit(f"u{i}", i, "x" * 40) for i in range(10)]
    limit = 150

    text = ContentAggregator().aggregate(units, max_chars=limit)

    assert text.endswith(TRUNCATION_MARKER)
    assert len(text) <= limit + len(TRUNCATION_MARKER)
    body = text[: -len(TRUNCATION_MARKER)]
    assert all(b == "x" * 40 for b in _bodies(body))


def test_oversized_first_block_is_cut() -> None:
    text = ContentAggregator().aggregate([TextUnit("big", 0, "y" * 500)], max_chars=100)

    assert text == format_unit(TextUnit("big", 0, "y" * 500))[:100] + TRUNCATION_MARKER


def test_bound_comes_from_settings(tmp_path) -> None:
    aggregator = ContentAggregator(make_settings(tmp_path, max_source_chars=60))
    units = [TextUnit("a", 0, "a" * 30), TextUnit("b", 1, "b" * 30)]

    assert aggregator.aggregate(units).endswith(TRUNCATION_MARKER)
