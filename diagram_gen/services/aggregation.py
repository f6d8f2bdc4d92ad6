from datetime import datetime, timezone

from diagram_gen.config import Settings, settings as default_settings
from diagram_gen.models import AudioUnit, ContentUnit, ImageUnit, TextUnit, TranscriptionStatus

TRUNCATION_MARKER = "\n[TRUNCATED]"
SEPARATOR = "\n\n"


def _format_timestamp(timestamp_ms: int) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def unit_body(unit: ContentUnit) -> str:
    """Text a single unit contributes to the generation input."""
    if isinstance(unit, TextUnit):
        return unit.content
    if isinstance(unit, AudioUnit):
        if unit.transcription_status == TranscriptionStatus.RECOGNIZED and unit.transcript:
            return unit.transcript
        return f"[audio: {round(unit.duration_ms / 1000)}s, no transcription]"
    if isinstance(unit, ImageUnit):
        return unit.caption.strip() if unit.caption and unit.caption.strip() else "[image]"
    raise TypeError(f"Unsupported content unit: {type(unit).__name__}")


def has_content(unit: ContentUnit) -> bool:
    """True when *unit* carries real material rather than a placeholder."""
    if isinstance(unit, TextUnit):
        return bool(unit.content.strip())
    if isinstance(unit, AudioUnit):
        return unit.transcription_status == TranscriptionStatus.RECOGNIZED and bool(
            unit.transcript and unit.transcript.strip()
        )
    if isinstance(unit, ImageUnit):
        return bool(unit.caption and unit.caption.strip())
    return False


def format_unit(unit: ContentUnit) -> str:
    header = f"[{unit.kind}] {_format_timestamp(unit.timestamp_ms)} (#{unit.id})"
    return f"{header}\n{unit_body(unit)}"


class ContentAggregator:
    """Merge text, transcribed audio and image captions into one bounded blob."""

    def __init__(self, settings: Settings | None = None) -> None:
        cfg = settings or default_settings
        self.max_chars = cfg.max_source_chars

    def aggregate(self, units: list[ContentUnit], max_chars: int | None = None) -> str:
        """Chronological (stable on ties) join of every unit's block.

        Blocks are added one at a time; the first block that would push the
        text past *max_chars* is dropped along with everything after it and
        ``[TRUNCATED]`` is appended.  A leading block longer than the bound
        is cut to fit.
        """
        limit = self.max_chars if max_chars is None else max_chars
        ordered = sorted(units, key=lambda u: u.timestamp_ms)

        text = ""
        for unit in ordered:
            block = format_unit(unit)
            candidate = f"{text}{SEPARATOR}{block}" if text else block
            if len(candidate) > limit:
                if not text:
                    text = block[:limit]
                return text + TRUNCATION_MARKER
            text = candidate
        return text
