"""Deterministic, backend-free diagram synthesis.

Used when the generative backend is unavailable or keeps producing markup
that cannot be repaired.  Output is always balanced and starts with a
declaration keyword.
"""

import re

from diagram_gen.models import GenerationOptions

CONVERSATION_HINTS = ("user:", "assistant:", "says", "responds", "message", "chat")
STATE_HINTS = ("state", "status", "phase", "stage")

_UNSAFE_CHARS = re.compile(r"[\[\]{}()<>\"'`|;#:]")


def analyze_diagram_kind(content: str) -> str:
    lower = content.lower()
    if any(hint in lower for hint in CONVERSATION_HINTS):
        return "sequence"
    if any(hint in lower for hint in STATE_HINTS):
        return "state"
    return "flowchart"


def summarize(content: str, max_words: int = 10, max_chars: int = 50) -> str:
    """First words of *content*, stripped of characters that break markup."""
    words = _UNSAFE_CHARS.sub(" ", content).split()
    summary = " ".join(words[:max_words])
    if len(summary) > max_chars:
        summary = summary[:max_chars].rstrip() + "..."
    return summary or "Content"


class FallbackGenerator:
    def generate(self, content: str, options: GenerationOptions | None = None) -> tuple[str, str]:
        """Return ``(markup_code, diagram_kind)`` for *content*."""
        options = options or GenerationOptions()
        kind = options.diagram_kind
        if kind not in ("flowchart", "sequence", "state"):
            kind = analyze_diagram_kind(content)
        summary = summarize(content)

        if kind == "sequence":
            markup = (
                "sequenceDiagram\n"
                "    participant U as User\n"
                "    participant S as System\n"
                f"    U->>S: {summary}\n"
                "    S-->>U: Response\n"
                "    Note over U,S: Generated from content"
            )
        elif kind == "state":
            markup = (
                "stateDiagram-v2\n"
                "    [*] --> Initial\n"
                f"    Initial --> Processing: {summary[:20].strip()}\n"
                "    Processing --> Complete\n"
                "    Complete --> [*]"
            )
        else:
            markup = (
                f"flowchart {options.direction}\n"
                f"    A[Start: {summary[:20].strip()}] --> B{{Process}}\n"
                "    B -->|Success| C[Complete]\n"
                "    B -->|Error| D[Retry]\n"
                "    D --> B\n"
                "    C --> E[End]"
            )
        return markup, kind
