import asyncio

import numpy as np

from diagram_gen.recording.audio_utils import (
    AudioNormalizer,
    downmix,
    encode_pcm16_wav,
    parse_wav_header,
    resample,
)
from helpers import canonical_wav, stereo_wav


def test_encode_writes_canonical_44_byte_header() -> None:
    data = encode_pcm16_wav(np.zeros(1600, dtype=np.float32))
    header = parse_wav_header(data)

    assert header is not None
    assert header.is_canonical
    assert header.data_offset == 44
    assert header.data_size == 3200
    assert header.byte_rate == 32000
    assert header.block_align == 2
    assert len(data) == 44 + 3200


def test_parse_header_rejects_non_riff_bytes() -> None:
    assert parse_wav_header(b"not a wav file at all") is None
    assert parse_wav_header(b"") is None


def test_canonical_input_takes_fast_path_unchanged() -> None:
    data = canonical_wav(1.0)

    out = AudioNormalizer().normalize(data)

    assert out.data == data
    assert out.canonical is True
    assert out.converted is False
    assert out.duration_ms == 1000


def test_stereo_44k_is_downmixed_and_resampled() -> None:
    out = AudioNormalizer().normalize(stereo_wav(1.0, 44100))
    header = parse_wav_header(out.data)

    assert out.canonical is True
    assert out.converted is True
    assert header.channels == 1
    assert header.sample_rate == 16000
    assert header.bits_per_sample == 16
    assert header.data_size == 16000 * 2
    assert out.duration_ms == 1000


def test_normalize_is_idempotent() -> None:
    normalizer = AudioNormalizer()
    once = normalizer.normalize(stereo_wav(0.5, 48000))
    twice = normalizer.normalize(once.data)

    assert twice.data == once.data
    assert twice.converted is False


def test_undecodable_input_passes_through() -> None:
    garbage = b"\x00\x01garbage-bytes" * 10

    out = AudioNormalizer().normalize(garbage, "audio/webm")

    assert out.data == garbage
    assert out.canonical is False
    assert out.converted is False


def test_silence_is_only_a_warning(caplog) -> None:
    data = encode_pcm16_wav(np.zeros(16000, dtype=np.float32))

    out = AudioNormalizer().normalize(data)

    assert out.data == data
    assert "low amplitude" in caplog.text


def test_normalize_async_matches_sync() -> None:
    data = stereo_wav(0.25, 22050)
    normalizer = AudioNormalizer()

    assert asyncio.run(normalizer.normalize_async(data)).data == normalizer.normalize(data).data


def test_downmix_averages_channels() -> None:
    samples = np.array([[1.0, 0.0], [0.5, 0.5], [-1.0, 1.0]], dtype=np.float32)

    assert np.allclose(downmix(samples), [0.5, 0.5, 0.0])


def test_resample_length_follows_rate_ratio() -> None:
    samples = np.ones(48000, dtype=np.float32)

    out = resample(samples, 48000, 16000)

    assert out.size == 16000
    assert np.allclose(out, 1.0)
