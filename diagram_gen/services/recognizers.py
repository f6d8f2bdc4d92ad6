import asyncio
import io
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass

import groq

from diagram_gen.clients import GroqClient
from diagram_gen.config import Settings, settings as default_settings
from diagram_gen.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Whisper marks a segment as silence above this no-speech probability.
NO_SPEECH_PROBABILITY = 0.6


@dataclass(frozen=True)
class RecognitionResult:
    """One recognition outcome.

    ``kind`` is ``recognized``, ``no_speech`` or ``error``.  For errors,
    ``hint`` is ``auth``, ``rate_limit``, ``transient`` or ``fatal``.
    """

    kind: str
    text: str = ""
    confidence: float | None = None
    error: str | None = None
    hint: str | None = None

    @classmethod
    def recognized(cls, text: str, confidence: float | None = None) -> "RecognitionResult":
        return cls("recognized", text=text, confidence=confidence)

    @classmethod
    def no_speech(cls) -> "RecognitionResult":
        return cls("no_speech")

    @classmethod
    def failed(cls, error: str, hint: str = "fatal") -> "RecognitionResult":
        return cls("error", error=error, hint=hint)


class SpeechRecognizer(ABC):
    @abstractmethod
    async def recognize(self, audio: bytes, language: str) -> RecognitionResult:
        """Recognize canonical WAV bytes. Returns a single outcome."""


def whisper_language(tag: str) -> str:
    """``en-US`` -> ``en``: Whisper takes ISO-639-1 codes."""
    return tag.split("-")[0].lower()


def confidence_from_logprobs(logprobs: list[float]) -> float | None:
    """Mean per-segment probability from Whisper's average log-probabilities."""
    if not logprobs:
        return None
    return round(sum(math.exp(lp) for lp in logprobs) / len(logprobs), 4)


def _segment_field(segment, name: str, default=None):
    if isinstance(segment, dict):
        return segment.get(name, default)
    return getattr(segment, name, default)


class GroqSpeechRecognizer(SpeechRecognizer):
    """Groq-hosted Whisper."""

    def __init__(self, groq_client: GroqClient | None = None) -> None:
        self.groq = groq_client or GroqClient()

    async def recognize(self, audio: bytes, language: str) -> RecognitionResult:
        try:
            resp = await self.groq.transcribe(audio, language=whisper_language(language))
        except groq.AuthenticationError as exc:
            return RecognitionResult.failed(str(exc), "auth")
        except groq.PermissionDeniedError as exc:
            return RecognitionResult.failed(str(exc), "auth")
        except groq.RateLimitError as exc:
            return RecognitionResult.failed(str(exc), "rate_limit")
        except groq.APIConnectionError as exc:  # includes APITimeoutError
            return RecognitionResult.failed(str(exc), "transient")
        except groq.APIStatusError as exc:
            hint = "transient" if exc.status_code >= 500 else "fatal"
            return RecognitionResult.failed(str(exc), hint)

        segments = resp["segments"]
        speech = [
            s for s in segments
            if (_segment_field(s, "no_speech_prob", 0.0) or 0.0) < NO_SPEECH_PROBABILITY
        ]
        text = resp["text"].strip()
        if not text or (segments and not speech):
            return RecognitionResult.no_speech()
        logprobs = [_segment_field(s, "avg_logprob") for s in speech]
        return RecognitionResult.recognized(
            text, confidence_from_logprobs([lp for lp in logprobs if lp is not None])
        )


class WhisperSpeechRecognizer(SpeechRecognizer):
    """Local faster-whisper model.

    The model is downloaded and loaded on the first recognition, not at
    construction.  On CPU with ``int8``, ``small`` takes roughly 5-10 s per
    60 s of audio.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        cfg = settings or default_settings
        self.model_name = cfg.whisper_model
        self.device = cfg.whisper_device
        self.compute_type = cfg.whisper_compute_type
        self._model = None

    def _load_model(self):
        if self._model is None:
            from faster_whisper import WhisperModel

            logger.info("Loading Whisper model %s on %s", self.model_name, self.device)
            self._model = WhisperModel(
                self.model_name,
                device=self.device,
                compute_type=self.compute_type,
            )
        return self._model

    def _transcribe_blocking(self, audio: bytes, language: str) -> list[dict]:
        model = self._load_model()
        segments, _info = model.transcribe(io.BytesIO(audio), language=language, beam_size=5)
        # segments is a lazy generator; the list forces decoding
        return [
            {
                "text": seg.text.strip(),
                "avg_logprob": seg.avg_logprob,
                "no_speech_prob": seg.no_speech_prob,
            }
            for seg in segments
        ]

    async def recognize(self, audio: bytes, language: str) -> RecognitionResult:
        try:
            segments = await asyncio.to_thread(
                self._transcribe_blocking, audio, whisper_language(language)
            )
        except (RuntimeError, ValueError) as exc:
            return RecognitionResult.failed(str(exc), "fatal")

        speech = [s for s in segments if s["no_speech_prob"] < NO_SPEECH_PROBABILITY and s["text"]]
        text = " ".join(s["text"] for s in speech).strip()
        if not text:
            return RecognitionResult.no_speech()
        return RecognitionResult.recognized(
            text, confidence_from_logprobs([s["avg_logprob"] for s in speech])
        )


def build_recognizer(settings: Settings | None = None) -> SpeechRecognizer:
    cfg = settings or default_settings
    if cfg.recognizer_backend == "groq":
        return GroqSpeechRecognizer(GroqClient(settings=cfg))
    if cfg.recognizer_backend == "whisper":
        return WhisperSpeechRecognizer(cfg)
    raise ConfigurationError(f"Unknown recognizer backend: {cfg.recognizer_backend!r}")
