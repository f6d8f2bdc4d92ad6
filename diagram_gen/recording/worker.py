import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from diagram_gen.config import Settings, settings as default_settings
from diagram_gen.recording.audio_utils import encode_pcm16_wav

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapturedAudio:
    data: bytes
    duration_ms: int
    audio_format: str = "audio/wav"


class CaptureSource(Protocol):
    async def capture(self) -> CapturedAudio:
        """Block (without blocking the event loop) until one clip is recorded."""
        ...


class RecordingWorker:
    """Records one microphone clip and hands it over as WAV bytes.

    Threading model (two contexts):

    1. **Audio callback**: runs in sounddevice's internal C audio thread.
       May ONLY append to the buffer and increment the sample counter.
       No I/O or logging here.

    2. **Event loop**: ``capture()`` waits on the stop event from a worker
       thread, then encodes the buffer.  ``stop()`` may be called from any
       thread (typically a route handler).
    """

    def __init__(
        self,
        max_duration_seconds: float = 300.0,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or default_settings
        self.sample_rate = cfg.sample_rate
        self.max_duration_seconds = max_duration_seconds

        # Audio buffer, guarded by _lock
        self._buffer: list[np.ndarray] = []
        self._total_samples: int = 0
        self._lock = threading.Lock()

        # Lifecycle
        self._running = False
        self._stopped = threading.Event()
        self._stream = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Open the microphone."""
        import sounddevice as sd  # PortAudio is loaded on first use only

        self._running = True
        self._stopped.clear()
        self._stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            callback=self._audio_callback,
            blocksize=1024,
        )
        self._stream.start()
        logger.info("Recording started at %d Hz", self.sample_rate)

    def stop(self) -> None:
        """Close the microphone and release ``capture()``."""
        self._running = False
        if self._stream:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        self._stopped.set()

    async def capture(self) -> CapturedAudio:
        if not self._running and not self._stopped.is_set():
            self.start()
        finished = await asyncio.to_thread(self._stopped.wait, self.max_duration_seconds)
        if not finished:
            logger.info("Recording hit the %.0f s limit", self.max_duration_seconds)
            self.stop()
        return self.take_clip()

    def take_clip(self) -> CapturedAudio:
        """Encode everything buffered so far as canonical WAV bytes."""
        with self._lock:
            if self._buffer:
                samples = np.concatenate(self._buffer, axis=0).flatten()
            else:
                samples = np.zeros(0, dtype=np.float32)
            self._buffer = []
            self._total_samples = 0
        duration_ms = int(round(samples.size * 1000 / self.sample_rate))
        logger.info("Captured %d ms of audio", duration_ms)
        return CapturedAudio(data=encode_pcm16_wav(samples, self.sample_rate), duration_ms=duration_ms)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def total_duration_seconds(self) -> float:
        with self._lock:
            return self._total_samples / self.sample_rate

    # ------------------------------------------------------------------
    # Audio callback (C audio thread)
    # ------------------------------------------------------------------

    def _audio_callback(
        self,
        indata: np.ndarray,
        frames: int,
        timeinfo,  # noqa: ANN001
        status,  # noqa: ANN001
    ) -> None:
        """sounddevice callback.  Buffer only, no I/O."""
        with self._lock:
            self._buffer.append(indata.copy())
            self._total_samples += frames
