import asyncio
import logging
import random
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

import groq

from diagram_gen.clients import Completion
from diagram_gen.config import Settings, settings as default_settings
from diagram_gen.errors import (
    ConfigurationError,
    FatalBackendError,
    GenerationError,
    ParseError,
    TransientBackendError,
)
from diagram_gen.models import GenerationMetadata, GenerationOptions, GenerationResult
from diagram_gen.services.fallback import FallbackGenerator

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 502, 503, 504}
FATAL_STATUS = {400, 401, 403}
NETWORK_HINTS = ("timeout", "timed out", "network", "econnreset", "enotfound", "socket hang up", "connection")
FATAL_HINTS = ("invalid", "malformed")

DIAGRAM_KEYWORD = re.compile(
    r"^(graph|flowchart|sequenceDiagram|classDiagram|stateDiagram|gantt)", re.MULTILINE
)
POSITIVE_SIGNALS = (
    DIAGRAM_KEYWORD,
    re.compile(r"-->"),
    re.compile(r"\[[^\]]+\]"),
    re.compile(r"\([^)]+\)"),
)
NEGATIVE_SIGNALS = (
    re.compile(r"\n\s*\n"),  # blank interior line
    re.compile(r"[{}]"),
)

SYSTEM_PROMPT = (
    "You are an expert at creating Mermaid diagrams. Convert text content into clear, "
    "accurate Mermaid diagrams.\n\n"
    "Guidelines:\n"
    "- Choose the most appropriate diagram type (flowchart, sequence, class, state, gantt)\n"
    "- Use clear, complete-word labels; never abbreviate or cut a label short\n"
    "- Close every bracket, brace and parenthesis on the line where it opens\n"
    "- Ensure logical flow and hierarchy\n"
    "- Follow Mermaid syntax precisely\n\n"
    "Diagram types:\n"
    "- Flowchart: processes, decision trees, workflows\n"
    "- Sequence: interactions between entities over time\n"
    "- Class: object-oriented relationships\n"
    "- State: state machines and transitions\n"
    "- Gantt: timelines and schedules"
)


class GenerativeBackend(Protocol):
    async def complete(
        self,
        messages: list[dict],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion:
        ...


@dataclass(frozen=True)
class ParsedResponse:
    markup_code: str
    diagram_kind: str
    title: str | None


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _status_of(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable(exc: BaseException) -> bool:
    """Retryable: network/timeout, 429/502/503/504, parse failures, unknowns.

    Fatal: 400/401/403 and messages flagging an invalid or malformed request.
    """
    if isinstance(exc, (TransientBackendError, ParseError)):
        return True
    if isinstance(exc, FatalBackendError):
        return False
    if isinstance(exc, (asyncio.TimeoutError, groq.APIConnectionError, ConnectionError)):
        return True

    status = _status_of(exc)
    if status in RETRYABLE_STATUS:
        return True
    if status in FATAL_STATUS:
        return False

    message = str(exc).lower()
    if any(hint in message for hint in NETWORK_HINTS):
        return True
    if any(code in message for code in ("429", "502", "503", "504")):
        return True
    if any(code in message for code in ("400", "401", "403")):
        return False
    if any(hint in message for hint in FATAL_HINTS):
        return False
    return True


def backoff_delay_ms(
    attempt: int,
    base_ms: int = 1000,
    max_ms: int = 10000,
    jitter_ms: int = 1000,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay after failed attempt *attempt* (0-indexed): capped exponential plus jitter."""
    return min(base_ms * 2**attempt, max_ms) + rng() * jitter_ms


# ---------------------------------------------------------------------------
# Prompt / response helpers
# ---------------------------------------------------------------------------


def build_prompt(content: str, options: GenerationOptions) -> str:
    if options.diagram_kind != "auto":
        kind_hint = f"Create a {options.diagram_kind} diagram."
    else:
        kind_hint = "Determine the most appropriate diagram type based on the content."
    direction_hint = f"Use {options.direction} direction for the diagram."
    title_hint = "Include a descriptive title for the diagram." if options.include_title else ""

    return (
        f"{kind_hint} {direction_hint} {title_hint}".strip()
        + "\n\nContent to visualize:\n"
        + f'"""\n{content}\n"""\n\n'
        + "Requirements:\n"
        + "1. Generate valid Mermaid syntax\n"
        + "2. Make the diagram clear and logical\n"
        + "3. Include all important elements from the content\n\n"
        + "Respond in exactly this format:\n"
        + "TYPE: [type]\n"
        + "TITLE: [title if applicable]\n"
        + "```mermaid\n"
        + "[your mermaid code here]\n"
        + "```"
    )


def parse_response(text: str) -> ParsedResponse:
    """Pull type, title and the fenced markup block out of a completion.

    Raises ParseError when no non-empty fenced block is present.
    """
    diagram_kind = "flowchart"
    title: str | None = None
    code_lines: list[str] = []
    in_block = False
    found_block = False

    for line in text.splitlines():
        stripped = line.strip()
        if in_block:
            if stripped.startswith("```"):
                in_block = False
                continue
            code_lines.append(line)
        elif stripped.startswith("```"):
            if found_block:
                continue  # keep the first block only
            in_block = found_block = True
        elif stripped.startswith("DIAGRAM_TYPE:"):
            diagram_kind = stripped[len("DIAGRAM_TYPE:"):].strip() or diagram_kind
        elif stripped.startswith("TYPE:"):
            diagram_kind = stripped[len("TYPE:"):].strip() or diagram_kind
        elif stripped.startswith("TITLE:"):
            title = stripped[len("TITLE:"):].strip() or None

    markup = "\n".join(code_lines).strip()
    if not markup:
        raise ParseError("No mermaid code block found in response")
    return ParsedResponse(markup, diagram_kind.strip("[]").strip(), title)


def calculate_confidence(markup: str) -> float:
    confidence = 0.5
    for pattern in POSITIVE_SIGNALS:
        if pattern.search(markup):
            confidence += 0.1
    for pattern in NEGATIVE_SIGNALS:
        if pattern.search(markup):
            confidence -= 0.1
    return round(max(0.0, min(1.0, confidence)), 2)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class DiagramGenerationService:
    """Generate Mermaid markup through the generative backend.

    Retries transient failures with capped exponential backoff and falls back
    to :class:`FallbackGenerator` once attempts are exhausted or a failure is
    fatal.  Only a failing fallback raises :class:`GenerationError`.
    """

    def __init__(
        self,
        backend: GenerativeBackend,
        settings: Settings | None = None,
        *,
        fallback: FallbackGenerator | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        cfg = settings or default_settings
        self.backend = backend
        self.fallback = fallback or FallbackGenerator()
        self.max_attempts = max(1, cfg.generation_max_attempts)
        self.base_delay_ms = cfg.retry_base_delay_ms
        self.max_delay_ms = cfg.retry_max_delay_ms
        self.jitter_ms = cfg.retry_jitter_ms
        self.timeout_seconds = cfg.generation_timeout_seconds
        self.fallback_confidence = cfg.fallback_confidence
        self._sleep = sleep
        self._rng = rng

    async def generate(
        self, source_text: str, options: GenerationOptions | None = None
    ) -> GenerationResult:
        options = options or GenerationOptions()
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(source_text, options)},
        ]

        for attempt in range(self.max_attempts):
            started = time.monotonic()
            try:
                logger.debug("Generation attempt %d/%d", attempt + 1, self.max_attempts)
                completion = await asyncio.wait_for(
                    self.backend.complete(
                        messages,
                        temperature=options.temperature,
                        max_tokens=options.max_tokens,
                    ),
                    timeout=self.timeout_seconds,
                )
                parsed = parse_response(completion.text)
                elapsed_ms = int((time.monotonic() - started) * 1000)
                logger.info(
                    "Generated %s diagram on attempt %d (%d tokens, %d ms)",
                    parsed.diagram_kind,
                    attempt + 1,
                    completion.tokens_used,
                    elapsed_ms,
                )
                return GenerationResult(
                    markup_code=parsed.markup_code,
                    diagram_kind=parsed.diagram_kind,
                    title=parsed.title,
                    metadata=GenerationMetadata(
                        tokens_used=completion.tokens_used,
                        processing_time_ms=elapsed_ms,
                        confidence=calculate_confidence(parsed.markup_code),
                    ),
                )
            except ConfigurationError:
                raise
            except Exception as exc:
                retryable = is_retryable(exc)
                logger.warning(
                    "Generation attempt %d/%d failed (%s): %s",
                    attempt + 1,
                    self.max_attempts,
                    "retryable" if retryable else "fatal",
                    exc,
                )
                if not retryable or attempt == self.max_attempts - 1:
                    break
                delay = backoff_delay_ms(
                    attempt, self.base_delay_ms, self.max_delay_ms, self.jitter_ms, self._rng
                )
                logger.info("Retrying generation in %d ms", delay)
                await self._sleep(delay / 1000)

        return self.generate_fallback(source_text, options)

    def generate_fallback(
        self, source_text: str, options: GenerationOptions | None = None
    ) -> GenerationResult:
        started = time.monotonic()
        try:
            markup, kind = self.fallback.generate(source_text, options)
        except Exception as exc:
            raise GenerationError(f"Fallback diagram generation failed: {exc}") from exc
        logger.warning("Using fallback %s diagram", kind)
        return GenerationResult(
            markup_code=markup,
            diagram_kind=kind,
            title=None,
            metadata=GenerationMetadata(
                tokens_used=0,
                processing_time_ms=int((time.monotonic() - started) * 1000),
                confidence=self.fallback_confidence,
            ),
            is_fallback=True,
        )
