import logging
import re
from dataclasses import dataclass

from diagram_gen.errors import MarkupSyntaxError
from diagram_gen.services.fallback import FallbackGenerator

logger = logging.getLogger(__name__)

DECLARATION = re.compile(
    r"^(flowchart|graph|sequenceDiagram|stateDiagram|classDiagram|erDiagram|gantt"
    r"|journey|gitGraph|pie|mindmap|timeline)\b"
)
DEFAULT_DECLARATION = "flowchart TD"

BLACKLISTED_KEYWORD = re.compile(r"^(\s*)arc\s+", re.IGNORECASE | re.MULTILINE)
QUOTED_LABEL = re.compile(r"\[([^\[\]]*'[^\[\]]*)\]|\{([^{}]*'[^{}]*)\}")
LABEL = re.compile(r"([\[{])([^\[\]{}()\"]*)([\]}])")
SHORT_ALPHA = re.compile(r"^[A-Za-z]{1,4}$")
# Single words this short may be cut even when their group was closed.
MAYBE_CUT = re.compile(r"^[A-Za-z]{3,5}$")
WORD = re.compile(r"[A-Za-z]+")

NODE_TOKEN = re.compile(r"\w\s*[\[({]|\bparticipant\b|\bactor\b|\[\*\]|\bclass\s+\w")
CONNECTOR_TOKEN = re.compile(r"-->|->>|-\.->|==>|---|->|--")

PAIRS = {"[": "]", "{": "}", "(": ")"}
CLOSERS = {closer: opener for opener, closer in PAIRS.items()}

# Generic labels for truncated fragments, matched by prefix.
LABEL_VOCABULARY = (
    "Start", "End", "Process", "Decision", "Input", "Output", "Yes", "No",
    "Done", "Error", "Retry", "Success", "Review", "Data", "User", "System",
)
GENERIC_LABEL = "Step"


@dataclass(frozen=True)
class RepairReport:
    is_valid: bool
    fixed_code: str
    issues: tuple[str, ...]
    fallback_kind: str | None = None

    @property
    def used_fallback(self) -> bool:
        return self.fallback_kind is not None


def complete_label(fragment: str) -> str:
    frag = fragment.strip().lower()
    if frag:
        for word in LABEL_VOCABULARY:
            if word.lower().startswith(frag):
                return word
    return GENERIC_LABEL


def context_words(context: str | None) -> list[str]:
    """Distinct lower-cased words of *context*, in order of appearance."""
    return list(dict.fromkeys(w.lower() for w in WORD.findall(context or "")))


def complete_from_context(fragment: str, vocabulary: list[str]) -> str | None:
    """Shortest *vocabulary* word that *fragment* is a strict prefix of.

    The result takes the fragment's leading case.  ``None`` when the
    fragment is not a 3+ letter word, is itself a known word, or has no
    completion.
    """
    frag = fragment.lower()
    if len(frag) < 3 or not frag.isalpha() or frag in vocabulary:
        return None
    if frag in (word.lower() for word in LABEL_VOCABULARY):
        return None
    candidates = [w for w in vocabulary if len(w) > len(frag) and w.startswith(frag)]
    if not candidates:
        return None
    word = min(candidates, key=len)
    return word.capitalize() if fragment[0].isupper() else word


def _complete_cut_label(content: str, vocabulary: list[str]) -> str:
    """Repair a label whose closing token was missing (the line was cut)."""
    words = content.split()
    if not words:
        return GENERIC_LABEL
    completed = complete_from_context(words[-1], vocabulary) or complete_label(words[-1])
    if completed != GENERIC_LABEL:
        return " ".join(words[:-1] + [completed])
    if len(words) > 1:
        return " ".join(words[:-1])  # drop the partial trailing word
    return GENERIC_LABEL


def balance_counts(code: str) -> bool:
    return all(code.count(opener) == code.count(closer) for opener, closer in PAIRS.items())


def close_open_groups(line: str) -> tuple[str, set[int]]:
    """Close groups left open at end of *line*.

    Only unambiguous cases are fixed: the line has no stray closer and no
    closer of the needed type after the opener.  An opener that is the last
    character of the line starts a block (``class X {``) and is left alone.
    Returns the line and the start offsets of the groups it closed.
    """
    stack: list[tuple[str, int]] = []
    in_quote = False
    for i, ch in enumerate(line):
        if ch == '"':
            in_quote = not in_quote
        elif in_quote:
            continue
        elif ch in PAIRS:
            stack.append((ch, i))
        elif ch in CLOSERS:
            if not stack or stack[-1][0] != CLOSERS[ch]:
                return line, set()
            stack.pop()

    body = line.rstrip()
    if not stack or stack[-1][1] == len(body) - 1:
        return line, set()
    for opener, idx in stack:
        if PAIRS[opener] in line[idx + 1:]:
            return line, set()
    closing = "".join(PAIRS[opener] for opener, _ in reversed(stack))
    return body + closing, {idx for _, idx in stack}


class SyntaxRepairer:
    """Validate and auto-fix generated Mermaid markup.

    Purely structural.  Whatever comes in, the returned code has balanced
    bracket/brace/parenthesis counts and starts with a declaration keyword;
    when the fixes cannot get there the fallback diagram is returned.
    The optional *context* (the source text) supplies words for completing
    truncated labels and the content of the fallback diagram.
    """

    def __init__(self, fallback: FallbackGenerator | None = None) -> None:
        self.fallback = fallback or FallbackGenerator()

    def repair(self, markup_code: str, context: str | None = None) -> RepairReport:
        issues: list[str] = []
        code = (markup_code or "").strip()

        if not code:
            issues.append("Empty diagram code")
            return self._fallback(context or "Empty content", issues)

        fixed = QUOTED_LABEL.sub(_requote, code)
        if fixed != code:
            issues.append("Fixed single quotes in labels")
        code = fixed

        fixed = BLACKLISTED_KEYWORD.sub(r"\1", code)
        if fixed != code:
            issues.append('Removed problematic "arc" keywords')
        code = fixed

        vocabulary = context_words(context)
        lines = code.split("\n")
        cut_groups: dict[int, set[int]] = {}
        for n, line in enumerate(lines):
            closed, starts = close_open_groups(line)
            if starts:
                lines[n] = closed
                cut_groups[n] = starts
                issues.append(f"Line {n + 1}: closed unclosed bracket group")

        for n, line in enumerate(lines):
            fixed_line = self._fix_truncated_labels(line, cut_groups.get(n, set()), vocabulary)
            if fixed_line != line:
                lines[n] = fixed_line
                issues.append(f"Line {n + 1}: replaced truncated labels")
        code = "\n".join(lines).strip()

        first_line = next((line.strip() for line in code.split("\n") if line.strip()), "")
        if not DECLARATION.match(first_line):
            code = f"{DEFAULT_DECLARATION}\n{code}"
            issues.append("Added missing diagram declaration")

        try:
            self.validate(code)
        except MarkupSyntaxError as exc:
            issues.append(str(exc))
            return self._fallback(context or code, issues)

        if issues:
            logger.info("Repaired diagram markup: %s", "; ".join(issues))
        return RepairReport(is_valid=not issues, fixed_code=code, issues=tuple(issues))

    @staticmethod
    def validate(code: str) -> None:
        """Raise MarkupSyntaxError unless *code* is structurally sound."""
        if not balance_counts(code):
            raise MarkupSyntaxError("Unbalanced brackets, braces or parentheses")
        if not (NODE_TOKEN.search(code) or CONNECTOR_TOKEN.search(code)):
            raise MarkupSyntaxError("No valid nodes or connections found")

    @staticmethod
    def _fix_truncated_labels(
        line: str, cut_starts: set[int], vocabulary: list[str] | None = None
    ) -> str:
        vocabulary = vocabulary or []

        def _replace(match: re.Match) -> str:
            opener, content, closer = match.groups()
            if PAIRS[opener] != closer or content.strip() == "*":
                return match.group(0)
            stripped = content.strip()
            completed = (
                complete_from_context(stripped, vocabulary) if MAYBE_CUT.match(stripped) else None
            )
            if match.start() in cut_starts:
                label = _complete_cut_label(stripped, vocabulary)
            elif completed:
                label = completed
            elif stripped.lower() in vocabulary:
                return match.group(0)
            elif len(stripped) < 2 or SHORT_ALPHA.match(stripped):
                label = complete_label(stripped)
                if label.lower() == stripped.lower():
                    return match.group(0)
            else:
                return match.group(0)
            return f"{opener}{label}{closer}"

        return LABEL.sub(_replace, line)

    def _fallback(self, context: str, issues: list[str]) -> RepairReport:
        markup, kind = self.fallback.generate(context)
        logger.warning("Markup could not be repaired (%s); using fallback diagram", issues[-1])
        return RepairReport(
            is_valid=False, fixed_code=markup, issues=tuple(issues), fallback_kind=kind
        )


def _requote(match: re.Match) -> str:
    """``['Label']`` / ``[User's cart]`` -> ``["Label"]`` / ``["User's cart"]``."""
    if match.group(1) is not None:
        opener, content, closer = "[", match.group(1), "]"
    else:
        opener, content, closer = "{", match.group(2), "}"
    if '"' in content:
        return match.group(0)
    inner = content.strip()
    if len(inner) >= 2 and inner[0] == inner[-1] == "'":
        inner = inner[1:-1]
    return f'{opener}"{inner}"{closer}'
