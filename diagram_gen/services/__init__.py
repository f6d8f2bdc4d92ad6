from diagram_gen.services.aggregation import ContentAggregator
from diagram_gen.services.cache import ResultCache
from diagram_gen.services.fallback import FallbackGenerator
from diagram_gen.services.generation import DiagramGenerationService
from diagram_gen.services.pipeline import PipelineOrchestrator
from diagram_gen.services.recognizers import (
    GroqSpeechRecognizer,
    SpeechRecognizer,
    WhisperSpeechRecognizer,
    build_recognizer,
)
from diagram_gen.services.repair import SyntaxRepairer
from diagram_gen.services.transcription import TranscriptionOrchestrator

__all__ = [
    "ContentAggregator",
    "DiagramGenerationService",
    "FallbackGenerator",
    "GroqSpeechRecognizer",
    "PipelineOrchestrator",
    "ResultCache",
    "SpeechRecognizer",
    "SyntaxRepairer",
    "TranscriptionOrchestrator",
    "WhisperSpeechRecognizer",
    "build_recognizer",
]
