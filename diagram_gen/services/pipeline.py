import asyncio
import dataclasses
import logging
import time
import uuid
from collections.abc import Callable

from diagram_gen.config import Settings, settings as default_settings
from diagram_gen.database import RecordStore
from diagram_gen.errors import PipelineError
from diagram_gen.models import (
    UNIT_KINDS,
    AudioUnit,
    ContentUnit,
    GenerationMetadata,
    GenerationOptions,
    GenerationRequest,
    GenerationResult,
    Phase,
    PipelineState,
    unit_from_record,
    unit_to_record,
)
from diagram_gen.recording.audio_utils import AudioNormalizer
from diagram_gen.recording.worker import CaptureSource
from diagram_gen.services.aggregation import ContentAggregator, has_content
from diagram_gen.services.cache import ResultCache
from diagram_gen.services.generation import DiagramGenerationService
from diagram_gen.services.repair import SyntaxRepairer
from diagram_gen.services.transcription import TranscriptionOrchestrator

logger = logging.getLogger(__name__)

StateCallback = Callable[[PipelineState], None]


class PipelineOrchestrator:
    """Run capture -> normalize -> transcribe -> aggregate -> generate -> repair.

    The current :class:`PipelineState` is observable through
    :meth:`subscribe`.  Observers are called synchronously on every phase
    change; one raising never affects the run or the other observers.
    """

    def __init__(
        self,
        store: RecordStore,
        normalizer: AudioNormalizer,
        transcriber: TranscriptionOrchestrator,
        aggregator: ContentAggregator,
        generator: DiagramGenerationService,
        repairer: SyntaxRepairer,
        cache: ResultCache,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or default_settings
        self.store = store
        self.normalizer = normalizer
        self.transcriber = transcriber
        self.aggregator = aggregator
        self.generator = generator
        self.repairer = repairer
        self.cache = cache
        self.fallback_confidence = cfg.fallback_confidence

        self._state = PipelineState()
        self._observers: dict[int, StateCallback] = {}
        self._next_handle = 0
        # Token of the run allowed to move the state; a shared cache
        # computation left running by a cancelled run must stay silent.
        self._current_run: object | None = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def get_state(self) -> PipelineState:
        return self._state

    def subscribe(self, callback: StateCallback) -> int:
        """Register *callback*; returns a handle for :meth:`unsubscribe`."""
        self._next_handle += 1
        self._observers[self._next_handle] = callback
        return self._next_handle

    def unsubscribe(self, handle: int) -> None:
        self._observers.pop(handle, None)

    def _set_phase(self, phase: Phase, error: str | None = None) -> None:
        self._state = PipelineState(phase=phase, error=error)
        logger.debug("Pipeline phase -> %s", phase.value)
        for callback in list(self._observers.values()):
            try:
                callback(self._state)
            except Exception:
                logger.exception("Pipeline observer raised on %s", phase.value)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run(
        self,
        units: list[ContentUnit],
        options: GenerationOptions | None = None,
        *,
        capture: CaptureSource | None = None,
        bypass_cache: bool = False,
    ) -> GenerationResult:
        """Turn *units* (plus an optional fresh recording) into a diagram.

        Cancellation resets the state to ``idle`` and propagates.  Any other
        failure moves it to ``failed`` and raises :class:`PipelineError`.
        Fallback results are cached like any other; ``bypass_cache`` retries
        the backend.
        """
        options = options or GenerationOptions()
        units = list(units)
        token = object()
        self._current_run = token

        def report(phase: Phase, error: str | None = None) -> None:
            if self._current_run is token:
                self._set_phase(phase, error)

        try:
            if capture is not None:
                report(Phase.RECORDING)
                units.append(await self._record(capture))

            audio = [u for u in units if isinstance(u, AudioUnit)]
            pending = [u for u in audio if u.needs_transcription and u.raw_bytes]

            report(Phase.NORMALIZING)
            prepared: dict[str, bytes] = {}
            for unit in pending:
                normalized = await self.normalizer.normalize_async(unit.raw_bytes, unit.audio_format)
                prepared[unit.id] = normalized.data

            report(Phase.TRANSCRIBING)
            await self.transcriber.transcribe_all(audio, prepared)

            report(Phase.AGGREGATING)
            if not any(has_content(u) for u in units):
                raise PipelineError("No content available for diagram generation")
            source_text = self.aggregator.aggregate(units)

            request = GenerationRequest(source_text, options)
            result = await self.cache.get_or_compute(
                request.fingerprint(),
                lambda: self._generate_and_repair(request, report),
                bypass=bypass_cache,
            )
        except asyncio.CancelledError:
            logger.info("Pipeline run cancelled")
            report(Phase.IDLE)
            if self._current_run is token:
                self._current_run = None
            raise
        except PipelineError as exc:
            report(Phase.FAILED, str(exc))
            raise
        except Exception as exc:
            logger.exception("Pipeline run failed")
            report(Phase.FAILED, str(exc) or type(exc).__name__)
            raise PipelineError(f"Pipeline run failed: {exc}") from exc

        report(Phase.READY)
        logger.info(
            "Pipeline produced %s diagram (cache=%s, fallback=%s)",
            result.diagram_kind,
            result.from_cache,
            result.is_fallback,
        )
        return result

    async def generate_from_store(
        self, options: GenerationOptions | None = None, *, bypass_cache: bool = False
    ) -> GenerationResult:
        """Run the pipeline over every content unit in the store."""
        records = await self.store.query_all()
        units = [unit_from_record(r) for r in records if r.get("kind") in UNIT_KINDS]
        return await self.run(units, options, bypass_cache=bypass_cache)

    async def _record(self, capture: CaptureSource) -> AudioUnit:
        clip = await capture.capture()
        unit = AudioUnit(
            id=str(uuid.uuid4()),
            timestamp_ms=int(time.time() * 1000),
            raw_bytes=clip.data,
            duration_ms=clip.duration_ms,
            audio_format=clip.audio_format,
        )
        await self.store.put(unit.id, unit_to_record(unit))
        logger.info("Stored recorded clip %s (%d ms)", unit.id, unit.duration_ms)
        return unit

    async def _generate_and_repair(
        self, request: GenerationRequest, report: Callable[[Phase], None]
    ) -> GenerationResult:
        report(Phase.GENERATING)
        result = await self.generator.generate(request.source_text, request.options)

        report(Phase.REPAIRING)
        report = self.repairer.repair(result.markup_code, context=request.source_text)
        repaired = dataclasses.replace(
            result, markup_code=report.fixed_code, issues=report.issues
        )
        if report.used_fallback:
            repaired = dataclasses.replace(
                repaired,
                diagram_kind=report.fallback_kind,
                title=None,
                is_fallback=True,
                metadata=GenerationMetadata(
                    tokens_used=0,
                    processing_time_ms=result.metadata.processing_time_ms,
                    confidence=self.fallback_confidence,
                ),
            )
        return repaired
