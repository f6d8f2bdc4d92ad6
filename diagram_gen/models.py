import base64
import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field


class TranscriptionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RECOGNIZED = "recognized"
    NO_MATCH = "no_match"
    RECOGNITION_ERROR = "recognition_error"
    TIMEOUT = "timeout"


class Phase(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    NORMALIZING = "normalizing"
    TRANSCRIBING = "transcribing"
    AGGREGATING = "aggregating"
    GENERATING = "generating"
    REPAIRING = "repairing"
    READY = "ready"
    FAILED = "failed"


# ----------------------------------------------------------------------
# Content units
# ----------------------------------------------------------------------


@dataclass
class ContentUnit:
    id: str
    timestamp_ms: int

    kind: ClassVar[str] = ""


@dataclass
class TextUnit(ContentUnit):
    content: str = ""

    kind: ClassVar[str] = "text"


@dataclass
class ImageUnit(ContentUnit):
    caption: str | None = None

    kind: ClassVar[str] = "image"


@dataclass
class AudioUnit(ContentUnit):
    """A recorded clip plus its transcription state.

    Only ``TranscriptionOrchestrator`` writes the ``transcript*`` fields,
    and always through :meth:`apply_transcription` so the
    transcript is only set on recognized units.
    """

    raw_bytes: bytes = b""
    duration_ms: int = 0
    audio_format: str = "audio/wav"
    transcript: str | None = None
    transcription_status: TranscriptionStatus = TranscriptionStatus.PENDING
    transcription_confidence: float | None = None
    transcription_error: str | None = None

    kind: ClassVar[str] = "audio"

    @property
    def needs_transcription(self) -> bool:
        return self.transcription_status != TranscriptionStatus.RECOGNIZED

    def transcription_fields(self) -> dict:
        return {
            "transcript": self.transcript,
            "transcription_status": self.transcription_status,
            "transcription_confidence": self.transcription_confidence,
            "transcription_error": self.transcription_error,
        }

    def apply_transcription(
        self,
        status: TranscriptionStatus,
        transcript: str | None = None,
        confidence: float | None = None,
        error: str | None = None,
    ) -> None:
        if transcript is not None and status != TranscriptionStatus.RECOGNIZED:
            raise ValueError("a transcript is only kept for recognized units")
        self.transcription_status = status
        self.transcript = transcript
        self.transcription_confidence = confidence
        self.transcription_error = error


# ----------------------------------------------------------------------
# Generation
# ----------------------------------------------------------------------

DiagramKind = Literal["auto", "flowchart", "sequence", "state", "class", "gantt"]
Direction = Literal["TD", "LR", "RL", "BT"]


class GenerationOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    diagram_kind: DiagramKind = "auto"
    direction: Direction = "TD"
    include_title: bool = True
    max_tokens: int = Field(default=1000, ge=1, le=4096)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)

    def canonical_json(self) -> str:
        return json.dumps(self.model_dump(), sort_keys=True, separators=(",", ":"))


def normalize_source_text(text: str) -> str:
    """Collapse whitespace runs so cosmetic differences share a fingerprint."""
    return " ".join(text.split())


@dataclass(frozen=True)
class GenerationRequest:
    source_text: str
    options: GenerationOptions = field(default_factory=GenerationOptions)

    def fingerprint(self) -> str:
        """128-bit BLAKE2b over the normalized text and serialized options."""
        digest = hashlib.blake2b(digest_size=16)
        digest.update(normalize_source_text(self.source_text).encode("utf-8"))
        digest.update(b"\x00")
        digest.update(self.options.canonical_json().encode("utf-8"))
        return digest.hexdigest()


@dataclass(frozen=True)
class GenerationMetadata:
    tokens_used: int
    processing_time_ms: int
    confidence: float


@dataclass(frozen=True)
class GenerationResult:
    markup_code: str
    diagram_kind: str
    metadata: GenerationMetadata
    title: str | None = None
    from_cache: bool = False
    is_fallback: bool = False
    issues: tuple[str, ...] = ()


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    result: GenerationResult
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PipelineState:
    phase: Phase = Phase.IDLE
    error: str | None = None


# ----------------------------------------------------------------------
# Record mapping for the keyed store
# ----------------------------------------------------------------------


# Store records of any other kind (cache entries) are not content units.
UNIT_KINDS = (TextUnit.kind, AudioUnit.kind, ImageUnit.kind)


def unit_to_record(unit: ContentUnit) -> dict:
    record = {"id": unit.id, "kind": unit.kind, "timestamp_ms": unit.timestamp_ms}
    if isinstance(unit, TextUnit):
        record["content"] = unit.content
    elif isinstance(unit, ImageUnit):
        record["caption"] = unit.caption
    elif isinstance(unit, AudioUnit):
        record.update(
            raw_bytes=base64.b64encode(unit.raw_bytes).decode("ascii"),
            duration_ms=unit.duration_ms,
            audio_format=unit.audio_format,
            transcript=unit.transcript,
            transcription_status=unit.transcription_status.value,
            transcription_confidence=unit.transcription_confidence,
            transcription_error=unit.transcription_error,
        )
    else:
        raise TypeError(f"Unsupported content unit: {type(unit).__name__}")
    return record


def unit_from_record(record: dict) -> ContentUnit:
    kind = record["kind"]
    if kind == "text":
        return TextUnit(record["id"], record["timestamp_ms"], record.get("content", ""))
    if kind == "image":
        return ImageUnit(record["id"], record["timestamp_ms"], record.get("caption"))
    if kind == "audio":
        return AudioUnit(
            id=record["id"],
            timestamp_ms=record["timestamp_ms"],
            raw_bytes=base64.b64decode(record.get("raw_bytes") or ""),
            duration_ms=record.get("duration_ms", 0),
            audio_format=record.get("audio_format", "audio/wav"),
            transcript=record.get("transcript"),
            transcription_status=TranscriptionStatus(
                record.get("transcription_status", "pending")
            ),
            transcription_confidence=record.get("transcription_confidence"),
            transcription_error=record.get("transcription_error"),
        )
    raise ValueError(f"Unknown content unit kind: {kind}")


def result_to_record(entry: CacheEntry) -> dict:
    result = entry.result
    return {
        "fingerprint": entry.fingerprint,
        "created_at": entry.created_at,
        "markup_code": result.markup_code,
        "diagram_kind": result.diagram_kind,
        "title": result.title,
        "tokens_used": result.metadata.tokens_used,
        "processing_time_ms": result.metadata.processing_time_ms,
        "confidence": result.metadata.confidence,
        "is_fallback": result.is_fallback,
        "issues": list(result.issues),
    }


def result_from_record(record: dict) -> CacheEntry:
    result = GenerationResult(
        markup_code=record["markup_code"],
        diagram_kind=record["diagram_kind"],
        title=record.get("title"),
        metadata=GenerationMetadata(
            tokens_used=record.get("tokens_used", 0),
            processing_time_ms=record.get("processing_time_ms", 0),
            confidence=record.get("confidence", 0.0),
        ),
        is_fallback=record.get("is_fallback", False),
        issues=tuple(record.get("issues", ())),
    )
    return CacheEntry(record["fingerprint"], result, record.get("created_at", 0.0))
