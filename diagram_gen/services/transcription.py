import asyncio
import logging
from dataclasses import dataclass

from diagram_gen.config import Settings, settings as default_settings
from diagram_gen.database import RecordStore
from diagram_gen.errors import ConfigurationError
from diagram_gen.models import AudioUnit, TranscriptionStatus, unit_to_record
from diagram_gen.recording.audio_utils import AudioNormalizer
from diagram_gen.services.recognizers import SpeechRecognizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptionSummary:
    processed: int
    recognized: int
    failed: int


class TranscriptionOrchestrator:
    """Drive one recognition attempt per audio unit and persist the outcome.

    State machine per unit::

        pending -> processing -> recognized | no_match | recognition_error | timeout

    Non-recognized terminal states are only retried by a later
    ``transcribe_all`` call; there is no in-place retry loop.
    """

    def __init__(
        self,
        recognizer: SpeechRecognizer,
        store: RecordStore,
        normalizer: AudioNormalizer | None = None,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or default_settings
        self.recognizer = recognizer
        self.store = store
        self.normalizer = normalizer or AudioNormalizer(cfg)
        self.language = cfg.recognition_language
        self.timeout_seconds = cfg.recognition_timeout_seconds
        self.default_confidence = cfg.default_recognition_confidence
        self.concurrency = max(1, cfg.transcription_concurrency)

    async def transcribe(self, unit: AudioUnit, canonical: bytes | None = None) -> AudioUnit:
        """Transcribe *unit* in place and return it.

        *canonical* may carry already-normalized bytes; otherwise the raw
        bytes are normalized here.  The final fields are written to the store
        before they are applied to the unit, so a cancelled call leaves the
        unit as it was.
        """
        previous = unit.transcription_fields()

        if not unit.raw_bytes:
            logger.warning("Audio unit %s has no recorded bytes; skipping recognition", unit.id)
            await self._commit(
                unit,
                TranscriptionStatus.RECOGNITION_ERROR,
                error="Audio unit has no recorded bytes",
            )
            return unit

        unit.transcription_status = TranscriptionStatus.PROCESSING
        try:
            if canonical is None:
                normalized = await self.normalizer.normalize_async(unit.raw_bytes, unit.audio_format)
                canonical = normalized.data

            try:
                result = await asyncio.wait_for(
                    self.recognizer.recognize(canonical, self.language),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Recognition of %s timed out after %.0f s", unit.id, self.timeout_seconds
                )
                await self._commit(
                    unit,
                    TranscriptionStatus.TIMEOUT,
                    error=f"Recognition timed out after {self.timeout_seconds:.0f}s",
                )
                return unit
            except ConfigurationError:
                raise
            except Exception as exc:
                logger.exception("Recognizer raised for %s", unit.id)
                await self._commit(
                    unit, TranscriptionStatus.RECOGNITION_ERROR, error=str(exc) or type(exc).__name__
                )
                return unit

            if result.kind == "recognized" and result.text.strip():
                confidence = (
                    result.confidence if result.confidence is not None else self.default_confidence
                )
                await self._commit(
                    unit,
                    TranscriptionStatus.RECOGNIZED,
                    transcript=result.text.strip(),
                    confidence=confidence,
                )
                logger.info("Recognized %s (confidence %.2f)", unit.id, confidence)
            elif result.kind == "error":
                logger.warning(
                    "Recognition error for %s [%s]: %s", unit.id, result.hint, result.error
                )
                await self._commit(
                    unit,
                    TranscriptionStatus.RECOGNITION_ERROR,
                    error=result.error or "Speech recognition failed",
                )
            else:
                logger.info("No speech detected in %s", unit.id)
                await self._commit(unit, TranscriptionStatus.NO_MATCH, error="No speech detected")
            return unit
        except BaseException:
            # Cancellation or configuration failure: leave the unit untouched.
            unit.apply_transcription(
                previous["transcription_status"],
                previous["transcript"],
                previous["transcription_confidence"],
                previous["transcription_error"],
            )
            raise

    async def transcribe_all(
        self,
        units: list[AudioUnit],
        prepared: dict[str, bytes] | None = None,
    ) -> TranscriptionSummary:
        """Transcribe every unit not yet ``recognized``.

        One unit failing never aborts the batch; the outcome is reported as
        counts.  Up to ``transcription_concurrency`` units run at once.
        """
        prepared = prepared or {}
        targets = [u for u in units if u.needs_transcription]
        logger.info("Transcribing %d of %d audio units", len(targets), len(units))

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(unit: AudioUnit) -> AudioUnit:
            async with semaphore:
                try:
                    return await self.transcribe(unit, prepared.get(unit.id))
                except ConfigurationError:
                    raise
                except Exception as exc:
                    # Usually a failed store write: mark the unit failed in memory only.
                    logger.exception("Transcription of %s failed", unit.id)
                    unit.apply_transcription(
                        TranscriptionStatus.RECOGNITION_ERROR,
                        error=str(exc) or type(exc).__name__,
                    )
                    return unit

        done = await asyncio.gather(*(_one(u) for u in targets))
        recognized = sum(1 for u in done if u.transcription_status == TranscriptionStatus.RECOGNIZED)
        summary = TranscriptionSummary(
            processed=len(done), recognized=recognized, failed=len(done) - recognized
        )
        logger.info(
            "Transcription batch done: %d processed, %d recognized, %d failed",
            summary.processed,
            summary.recognized,
            summary.failed,
        )
        return summary

    async def _commit(
        self,
        unit: AudioUnit,
        status: TranscriptionStatus,
        transcript: str | None = None,
        confidence: float | None = None,
        error: str | None = None,
    ) -> None:
        """Persist the terminal fields, then apply them to the unit."""
        record = unit_to_record(unit)
        record.update(
            transcript=transcript,
            transcription_status=status.value,
            transcription_confidence=confidence,
            transcription_error=error,
        )
        await self.store.put(unit.id, record)
        unit.apply_transcription(status, transcript, confidence, error)
