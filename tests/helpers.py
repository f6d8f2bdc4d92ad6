import asyncio
import io

import numpy as np
import soundfile as sf

from diagram_gen.clients import Completion
from diagram_gen.config import Settings
from diagram_gen.database import RecordStore
from diagram_gen.recording.audio_utils import AudioNormalizer, encode_pcm16_wav
from diagram_gen.services.aggregation import ContentAggregator
from diagram_gen.services.cache import ResultCache
from diagram_gen.services.generation import DiagramGenerationService
from diagram_gen.services.pipeline import PipelineOrchestrator
from diagram_gen.services.recognizers import RecognitionResult
from diagram_gen.services.repair import SyntaxRepairer
from diagram_gen.services.transcription import TranscriptionOrchestrator


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "groq_api_key": "test-key",
        "db_path": str(tmp_path / "test.db"),
        "retry_jitter_ms": 0,
    }
    values.update(overrides)
    return Settings(**values)


def make_store(tmp_path) -> RecordStore:
    store = RecordStore(str(tmp_path / "test.db"))
    asyncio.run(store.init())
    return store


def sine(seconds: float = 1.0, rate: int = 16000, amplitude: float = 0.5) -> np.ndarray:
    t = np.arange(int(seconds * rate)) / rate
    return (amplitude * np.sin(2 * np.pi * 440 * t)).astype(np.float32)


def canonical_wav(seconds: float = 1.0) -> bytes:
    return encode_pcm16_wav(sine(seconds))


def stereo_wav(seconds: float = 1.0, rate: int = 44100) -> bytes:
    mono = sine(seconds, rate)
    buf = io.BytesIO()
    sf.write(buf, np.stack([mono, mono * 0.5], axis=1), rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def mermaid_reply(code: str, kind: str = "flowchart", title: str = "Flow") -> str:
    return f"TYPE: {kind}\nTITLE: {title}\n```mermaid\n{code}\n```"


GOOD_FLOWCHART = "flowchart TD\n    A[Start] --> B[Process]\n    B --> C[End]"


class FakeRecognizer:
    """Returns queued outcomes (or raises queued exceptions) in order."""

    def __init__(self, *outcomes, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls: list[tuple[bytes, str]] = []

    async def recognize(self, audio: bytes, language: str) -> RecognitionResult:
        self.calls.append((audio, language))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeBackend:
    """Generative backend that replays queued replies or exceptions."""

    def __init__(self, *replies, tokens_used: int = 120, delay: float = 0.0) -> None:
        self.replies = list(replies)
        self.tokens_used = tokens_used
        self.delay = delay
        self.calls: list[dict] = []

    async def complete(self, messages, *, temperature=None, max_tokens=None) -> Completion:
        self.calls.append(
            {"messages": messages, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return Completion(text=reply, tokens_used=self.tokens_used)


class StatusError(Exception):
    """Stand-in for an SDK error carrying an HTTP status code."""

    def __init__(self, status_code: int, message: str = "backend error") -> None:
        super().__init__(f"{status_code} {message}")
        self.status_code = status_code


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def build_pipeline(settings, store, backend, recognizer=None, sleep=None) -> PipelineOrchestrator:
    normalizer = AudioNormalizer(settings)
    transcriber = TranscriptionOrchestrator(
        recognizer or FakeRecognizer(RecognitionResult.recognized("hello", 0.9)),
        store,
        normalizer,
        settings,
    )
    generator = DiagramGenerationService(
        backend, settings, sleep=sleep or SleepRecorder(), rng=lambda: 0.0
    )
    return PipelineOrchestrator(
        store=store,
        normalizer=normalizer,
        transcriber=transcriber,
        aggregator=ContentAggregator(settings),
        generator=generator,
        repairer=SyntaxRepairer(),
        cache=ResultCache(store),
        settings=settings,
    )
