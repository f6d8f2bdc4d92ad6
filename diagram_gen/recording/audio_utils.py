import asyncio
import io
import logging
import struct
from dataclasses import dataclass

import numpy as np
import soundfile as sf

from diagram_gen.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

CANONICAL_SAMPLE_RATE = 16000
CANONICAL_CHANNELS = 1
CANONICAL_BITS = 16
WAV_HEADER_SIZE = 44
PCM_FORMAT_TAG = 1


@dataclass(frozen=True)
class WavHeader:
    audio_format: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_offset: int
    data_size: int

    @property
    def is_canonical(self) -> bool:
        return (
            self.audio_format == PCM_FORMAT_TAG
            and self.channels == CANONICAL_CHANNELS
            and self.sample_rate == CANONICAL_SAMPLE_RATE
            and self.bits_per_sample == CANONICAL_BITS
        )


@dataclass(frozen=True)
class CanonicalAudio:
    """Output of :meth:`AudioNormalizer.normalize`.

    ``canonical`` is False only on the passthrough escape hatch, when the
    original bytes are handed back because they could not be decoded.
    """

    data: bytes
    canonical: bool
    converted: bool
    duration_ms: int = 0


def parse_wav_header(data: bytes) -> WavHeader | None:
    """Walk the RIFF chunks and return the ``fmt `` / ``data`` fields.

    Returns None for anything that is not a RIFF/WAVE container.
    """
    if len(data) < 12 or data[0:4] != b"RIFF" or data[8:12] != b"WAVE":
        return None

    fmt: tuple | None = None
    pos = 12
    while pos + 8 <= len(data):
        chunk_id = data[pos:pos + 4]
        (chunk_size,) = struct.unpack_from("<I", data, pos + 4)
        body = pos + 8
        if chunk_id == b"fmt " and chunk_size >= 16 and body + 16 <= len(data):
            fmt = struct.unpack_from("<HHIIHH", data, body)
        elif chunk_id == b"data" and fmt is not None:
            audio_format, channels, rate, byte_rate, block_align, bits = fmt
            return WavHeader(
                audio_format=audio_format,
                channels=channels,
                sample_rate=rate,
                byte_rate=byte_rate,
                block_align=block_align,
                bits_per_sample=bits,
                data_offset=body,
                data_size=min(chunk_size, len(data) - body),
            )
        pos = body + chunk_size + (chunk_size & 1)  # chunks are word-aligned
    return None


def encode_pcm16_wav(samples: np.ndarray, sample_rate: int = CANONICAL_SAMPLE_RATE) -> bytes:
    """Encode mono float samples in [-1, 1] as a 44-byte-header PCM_16 WAV.

    Every header field is derived from *sample_rate* and the fixed mono
    16-bit layout, never copied from the input.
    """
    pcm = (np.clip(samples, -1.0, 1.0) * 0x7FFF).astype("<i2")
    block_align = CANONICAL_CHANNELS * CANONICAL_BITS // 8
    data_size = pcm.size * block_align
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        WAV_HEADER_SIZE - 8 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        PCM_FORMAT_TAG,
        CANONICAL_CHANNELS,
        sample_rate,
        sample_rate * block_align,
        block_align,
        CANONICAL_BITS,
        b"data",
        data_size,
    )
    return header + pcm.tobytes()


def downmix(samples: np.ndarray) -> np.ndarray:
    """Average a (frames, channels) array down to one channel."""
    if samples.ndim == 1:
        return samples
    return samples.mean(axis=1)


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resample of a whole mono clip."""
    if source_rate == target_rate or samples.size == 0:
        return samples.astype(np.float32)
    duration = samples.size / source_rate
    n_out = int(np.ceil(duration * target_rate))
    x_old = np.arange(samples.size) / source_rate
    x_new = np.arange(n_out) / target_rate
    return np.interp(x_new, x_old, samples).astype(np.float32)


class AudioNormalizer:
    """Convert captured audio to canonical mono / 16 kHz / 16-bit PCM WAV.

    ``normalize`` never raises.  When the input cannot be decoded it hands
    back the original bytes and logs the degradation; recognition
    downstream may then fail or degrade.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        cfg = settings or default_settings
        self.silence_threshold = cfg.silence_threshold
        self.silence_window_seconds = cfg.silence_window_seconds

    def normalize(self, data: bytes, declared_format: str = "audio/wav") -> CanonicalAudio:
        try:
            header = parse_wav_header(data)
            if header is not None and header.is_canonical:
                self._diagnose(data)
                return CanonicalAudio(
                    data=data,
                    canonical=True,
                    converted=False,
                    duration_ms=_duration_ms(header),
                )

            samples, source_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
            mono = downmix(samples)
            resampled = resample(mono, source_rate, CANONICAL_SAMPLE_RATE)
            out = encode_pcm16_wav(resampled)
            logger.info(
                "Normalized %s audio: %d Hz x %d ch -> %d Hz mono PCM_16 (%d bytes)",
                declared_format,
                source_rate,
                samples.shape[1],
                CANONICAL_SAMPLE_RATE,
                len(out),
            )
            self._diagnose(out)
            return CanonicalAudio(
                data=out,
                canonical=True,
                converted=True,
                duration_ms=int(round(resampled.size * 1000 / CANONICAL_SAMPLE_RATE)),
            )
        except Exception as exc:
            logger.warning(
                "Audio normalization failed for %s input (%d bytes); passing original bytes through: %s",
                declared_format,
                len(data),
                exc,
            )
            return CanonicalAudio(data=data, canonical=False, converted=False)

    async def normalize_async(
        self, data: bytes, declared_format: str = "audio/wav"
    ) -> CanonicalAudio:
        """Run :meth:`normalize` in a worker thread."""
        return await asyncio.to_thread(self.normalize, data, declared_format)

    # ------------------------------------------------------------------
    # Diagnostics: advisory only
    # ------------------------------------------------------------------

    def _diagnose(self, data: bytes) -> None:
        try:
            header = parse_wav_header(data)
            if header is None:
                logger.warning("Normalized audio has no readable WAV header")
                return
            expected_align = header.channels * header.bits_per_sample // 8
            if (
                not header.is_canonical
                or header.block_align != expected_align
                or header.byte_rate != header.sample_rate * expected_align
            ):
                logger.warning(
                    "Inconsistent WAV header: %d Hz, %d ch, %d bit, byte_rate=%d, block_align=%d",
                    header.sample_rate,
                    header.channels,
                    header.bits_per_sample,
                    header.byte_rate,
                    header.block_align,
                )

            window = int(header.sample_rate * self.silence_window_seconds)
            end = header.data_offset + min(header.data_size, window * 2) // 2 * 2
            pcm = np.frombuffer(data[header.data_offset:end], dtype="<i2")
            if pcm.size == 0:
                logger.warning("Normalized audio contains no samples")
                return
            avg_amp = float(np.abs(pcm.astype(np.float32)).mean()) / 0x7FFF
            if avg_amp < self.silence_threshold:
                logger.warning(
                    "Very low amplitude detected (avg ~%.4f); input may be silence or gain too low",
                    avg_amp,
                )
        except Exception as exc:
            logger.warning("WAV diagnostics failed: %s", exc)


def _duration_ms(header: WavHeader) -> int:
    if not header.byte_rate:
        return 0
    return int(round(header.data_size * 1000 / header.byte_rate))
