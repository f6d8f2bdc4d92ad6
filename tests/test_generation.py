import asyncio

import pytest

from diagram_gen.errors import ConfigurationError, FatalBackendError, ParseError, TransientBackendError
from diagram_gen.models import GenerationOptions
from diagram_gen.services.fallback import FallbackGenerator, analyze_diagram_kind, summarize
from diagram_gen.services.generation import (
    DiagramGenerationService,
    backoff_delay_ms,
    build_prompt,
    calculate_confidence,
    is_retryable,
    parse_response,
)
from diagram_gen.services.repair import balance_counts
from helpers import (
    GOOD_FLOWCHART,
    FakeBackend,
    SleepRecorder,
    StatusError,
    make_settings,
    mermaid_reply,
)


def _service(tmp_path, backend, sleep=None, **overrides) -> DiagramGenerationService:
    return DiagramGenerationService(
        backend,
        make_settings(tmp_path, **overrides),
        sleep=sleep or SleepRecorder(),
        rng=lambda: 0.0,
    )


def test_three_503s_fall_back_without_raising(tmp_path) -> None:
    backend = FakeBackend(StatusError(503, "Service Unavailable"))
    sleep = SleepRecorder()

    result = asyncio.run(_service(tmp_path, backend, sleep).generate("User logs in then pays"))

    assert result.is_fallback is True
    assert result.metadata.tokens_used == 0
    assert result.metadata.confidence == 0.5
    assert len(backend.calls) == 3
    assert sleep.delays == [1.0, 2.0]
    assert balance_counts(result.markup_code)


def test_fatal_status_is_not_retried(tmp_path) -> None:
    backend = FakeBackend(StatusError(401, "Unauthorized"))
    sleep = SleepRecorder()

    result = asyncio.run(_service(tmp_path, backend, sleep).generate("anything"))

    assert result.is_fallback is True
    assert len(backend.calls) == 1
    assert sleep.delays == []


def test_parse_failure_is_retried(tmp_path) -> None:
    backend = FakeBackend("Sorry, I cannot draw that.", mermaid_reply(GOOD_FLOWCHART, title="Login"))

    result = asyncio.run(_service(tmp_path, backend).generate("login flow"))

    assert result.is_fallback is False
    assert result.markup_code == GOOD_FLOWCHART
    assert result.title == "Login"
    assert result.diagram_kind == "flowchart"
    assert result.metadata.tokens_used == 120
    assert len(backend.calls) == 2


def test_options_reach_the_backend(tmp_path) -> None:
    backend = FakeBackend(mermaid_reply(GOOD_FLOWCHART))
    options = GenerationOptions(diagram_kind="sequence", temperature=0.7, max_tokens=500)

    asyncio.run(_service(tmp_path, backend).generate("chat", options))

    call = backend.calls[0]
    assert call["temperature"] == 0.7
    assert call["max_tokens"] == 500
    assert call["messages"][0]["role"] == "system"
    assert "Create a sequence diagram." in call["messages"][1]["content"]


def test_slow_backend_times_out_then_falls_back(tmp_path) -> None:
    backend = FakeBackend(mermaid_reply(GOOD_FLOWCHART), delay=1.0)
    service = _service(
        tmp_path, backend, generation_timeout_seconds=0.05, generation_max_attempts=1
    )

    result = asyncio.run(service.generate("slow"))

    assert result.is_fallback is True


def test_configuration_error_propagates(tmp_path) -> None:
    backend = FakeBackend(ConfigurationError("GROQ_API_KEY is not set"))

    with pytest.raises(ConfigurationError):
        asyncio.run(_service(tmp_path, backend).generate("x"))


def test_fallback_honours_explicit_kind(tmp_path) -> None:
    service = _service(tmp_path, FakeBackend(StatusError(400)))

    result = asyncio.run(service.generate("steps", GenerationOptions(diagram_kind="state")))

    assert result.diagram_kind == "state"
    assert result.markup_code.startswith("stateDiagram-v2")


@pytest.mark.parametrize(
    "exc, expected",
    [
        (asyncio.TimeoutError(), True),
        (ConnectionError("reset"), True),
        (StatusError(429), True),
        (StatusError(502), True),
        (StatusError(400), False),
        (StatusError(403), False),
        (TransientBackendError("busy"), True),
        (FatalBackendError("bad key"), False),
        (ParseError("no block"), True),
        (RuntimeError("socket hang up"), True),
        (RuntimeError("invalid request body"), False),
        (RuntimeError("something odd"), True),
    ],
)
def test_error_classification(exc, expected) -> None:
    assert is_retryable(exc) is expected


def test_backoff_is_capped_exponential_plus_jitter() -> None:
    assert backoff_delay_ms(0, rng=lambda: 0.0) == 1000
    assert backoff_delay_ms(1, rng=lambda: 0.0) == 2000
    assert backoff_delay_ms(3, rng=lambda: 0.0) == 8000
    assert backoff_delay_ms(6, rng=lambda: 0.0) == 10000
    assert backoff_delay_ms(0, rng=lambda: 0.5) == 1500


def test_parse_response_reads_type_title_and_first_block() -> None:
    text = (
        "DIAGRAM_TYPE: sequence\nTITLE: Checkout\n"
        "```mermaid\nsequenceDiagram\n    A->>B: pay\n```\n"
        "```mermaid\nflowchart TD\n```"
    )

    parsed = parse_response(text)

    assert parsed.diagram_kind == "sequence"
    assert parsed.title == "Checkout"
    assert parsed.markup_code == "sequenceDiagram\n    A->>B: pay"


def test_parse_response_without_block_raises() -> None:
    with pytest.raises(ParseError):
        parse_response("TYPE: flowchart\nTITLE: nothing")


def test_confidence_scoring() -> None:
    assert calculate_confidence(GOOD_FLOWCHART) == 0.8
    assert calculate_confidence("A(round) --> B[box]\n\nC{x}") == 0.6
    assert 0.0 <= calculate_confidence("") <= 1.0


def test_prompt_mentions_direction_and_title() -> None:
    prompt = build_prompt("content here", GenerationOptions(direction="LR"))

    assert "Use LR direction" in prompt
    assert "descriptive title" in prompt
    assert "content here" in prompt
    assert "```mermaid" in prompt


def test_fallback_generator_templates() -> None:
    fallback = FallbackGenerator()

    seq, seq_kind = fallback.generate("User: hi\nAssistant: hello")
    flow, flow_kind = fallback.generate("Open [the] {door}", GenerationOptions(direction="LR"))

    assert seq_kind == "sequence" and seq.startswith("sequenceDiagram")
    assert flow_kind == "flowchart" and flow.startswith("flowchart LR")
    assert balance_counts(flow)
    assert analyze_diagram_kind("the order status changes") == "state"
    assert summarize("") == "Content"
