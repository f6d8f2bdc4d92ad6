from dataclasses import dataclass

from fastapi.requests import HTTPConnection

from diagram_gen.clients import GroqClient
from diagram_gen.config import Settings, settings as default_settings
from diagram_gen.database import RecordStore
from diagram_gen.recording import AudioNormalizer
from diagram_gen.services.aggregation import ContentAggregator
from diagram_gen.services.cache import ResultCache
from diagram_gen.services.generation import DiagramGenerationService
from diagram_gen.services.pipeline import PipelineOrchestrator
from diagram_gen.services.recognizers import build_recognizer
from diagram_gen.services.repair import SyntaxRepairer
from diagram_gen.services.transcription import TranscriptionOrchestrator


@dataclass
class Services:
    """Everything a request handler needs, built once per process."""

    settings: Settings
    store: RecordStore
    transcriber: TranscriptionOrchestrator
    pipeline: PipelineOrchestrator


def build_services(settings: Settings | None = None) -> Services:
    """Wire the pipeline.  Raises ConfigurationError without a Groq key."""
    cfg = settings or default_settings
    store = RecordStore(cfg.db_path)
    normalizer = AudioNormalizer(cfg)
    transcriber = TranscriptionOrchestrator(build_recognizer(cfg), store, normalizer, cfg)
    generator = DiagramGenerationService(GroqClient(settings=cfg), cfg)
    pipeline = PipelineOrchestrator(
        store=store,
        normalizer=normalizer,
        transcriber=transcriber,
        aggregator=ContentAggregator(cfg),
        generator=generator,
        repairer=SyntaxRepairer(),
        cache=ResultCache(store),
        settings=cfg,
    )
    return Services(settings=cfg, store=store, transcriber=transcriber, pipeline=pipeline)


def get_services(conn: HTTPConnection) -> Services:
    return conn.app.state.services
