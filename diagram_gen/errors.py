"""Exception taxonomy shared by the pipeline components."""


class DiagramGenError(Exception):
    """Base class for every error raised by diagram_gen."""


class ConfigurationError(DiagramGenError):
    """Missing credentials, endpoints or an unknown backend.  Never retried."""


class BackendError(DiagramGenError):
    """An external recognition or generation backend failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientBackendError(BackendError):
    """Network failure, timeout, 5xx or 429.  Safe to retry."""


class FatalBackendError(BackendError):
    """Bad request, auth failure or any other 4xx except 429."""


class ParseError(DiagramGenError):
    """A backend response lacked the expected structured fields.

    Retryable: a malformed completion is usually a one-off.
    """


class MarkupSyntaxError(DiagramGenError):
    """Generated markup is structurally invalid after repair."""


class GenerationError(DiagramGenError):
    """Every generation path, fallback included, failed."""


class PipelineError(DiagramGenError):
    """A pipeline run ended in the ``failed`` phase."""
