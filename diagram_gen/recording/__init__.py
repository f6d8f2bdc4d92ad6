from diagram_gen.recording.audio_utils import AudioNormalizer, CanonicalAudio
from diagram_gen.recording.worker import CapturedAudio, CaptureSource, RecordingWorker

__all__ = [
    "AudioNormalizer",
    "CanonicalAudio",
    "CapturedAudio",
    "CaptureSource",
    "RecordingWorker",
]
