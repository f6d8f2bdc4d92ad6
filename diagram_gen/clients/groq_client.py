import logging
from dataclasses import dataclass

from groq import AsyncGroq

from diagram_gen.config import Settings, settings as default_settings
from diagram_gen.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completion:
    text: str
    tokens_used: int


class GroqClient:
    """Async wrapper around the official Groq SDK.

    Serves both external backends the pipeline needs: chat completions for
    diagram generation and the hosted Whisper endpoint for speech
    recognition.

    Usage::

        groq = GroqClient()                            # key + models from settings
        reply = await groq.complete(messages)          # Completion(text, tokens_used)

        fast = groq.with_model("llama-3.1-8b-instant")  # zero-cost clone
        reply = await fast.complete(messages)

        data = await groq.transcribe(wav_bytes, language="en")

    ``with_model()`` shares the underlying ``AsyncGroq`` HTTP session, so
    switching models mid-request is allocation-free beyond the wrapper object.
    """

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or default_settings
        key = api_key or cfg.groq_api_key
        if not key:
            raise ConfigurationError(
                "GROQ_API_KEY is not set; the Groq backend cannot be reached."
            )
        self._model = model or cfg.generation_model
        self._transcription_model = cfg.transcription_model
        self._client = AsyncGroq(api_key=key)

    # ------------------------------------------------------------------
    # Model switching
    # ------------------------------------------------------------------
    @property
    def default_model(self) -> str:
        return self._model

    def with_model(self, model_name: str) -> "GroqClient":
        """Return a new GroqClient bound to *model_name*.

        The underlying ``AsyncGroq`` client (and its httpx session) is shared.
        """
        clone = GroqClient.__new__(GroqClient)
        clone._model = model_name
        clone._transcription_model = self._transcription_model
        clone._client = self._client  # shared HTTP session
        return clone

    # ------------------------------------------------------------------
    # Completions
    # ------------------------------------------------------------------
    async def complete(
        self,
        messages: list[dict],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion:
        """Plain-text chat completion with token accounting."""
        kwargs: dict = {
            "model": model or self._model,
            "messages": messages,
            "top_p": 0.9,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        resp = await self._client.chat.completions.create(**kwargs)
        usage = getattr(resp, "usage", None)
        return Completion(
            text=resp.choices[0].message.content or "",
            tokens_used=getattr(usage, "total_tokens", 0) or 0,
        )

    # ------------------------------------------------------------------
    # Speech recognition
    # ------------------------------------------------------------------
    async def transcribe(
        self,
        audio: bytes,
        *,
        language: str | None = None,
        filename: str = "audio.wav",
    ) -> dict:
        """Send WAV bytes to Groq's Whisper endpoint.

        Returns::

            {"text": str, "segments": [{"avg_logprob": float, "no_speech_prob": float, ...}]}
        """
        kwargs: dict = {
            "file": (filename, audio),
            "model": self._transcription_model,
            "response_format": "verbose_json",
        }
        if language:
            kwargs["language"] = language

        resp = await self._client.audio.transcriptions.create(**kwargs)
        logger.debug("Groq transcription returned %d chars", len(resp.text or ""))
        return {
            "text": resp.text or "",
            "segments": list(getattr(resp, "segments", None) or []),
        }
