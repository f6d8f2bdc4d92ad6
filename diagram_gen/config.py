from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Groq
    groq_api_key: str = ""
    generation_model: str = "llama-3.3-70b-versatile"
    transcription_model: str = "whisper-large-v3-turbo"

    # Speech recognition
    recognizer_backend: str = "groq"  # groq | whisper
    recognition_language: str = "en-US"
    recognition_timeout_seconds: float = 30.0
    default_recognition_confidence: float = 0.8
    transcription_concurrency: int = 1

    # Local Whisper (recognizer_backend = "whisper")
    whisper_model: str = "small"
    whisper_device: str = "cpu"
    whisper_compute_type: str = "int8"

    # Audio normalization
    sample_rate: int = 16000
    silence_threshold: float = 0.005
    silence_window_seconds: float = 0.1

    # Aggregation
    max_source_chars: int = 8000

    # Generation
    generation_max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    retry_jitter_ms: int = 1000
    generation_timeout_seconds: float = 60.0
    fallback_confidence: float = 0.5

    # Storage
    db_path: str = "diagram_gen.db"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
