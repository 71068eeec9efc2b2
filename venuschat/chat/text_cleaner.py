"""
Strip reasoning-phase markers from assistant text.

The system prompt asks the model to label its reasoning with headers such as
"**Step 1: THINK (plan)**". They are useful while streaming but are noise in
stored history, so `clean()` runs only before persistence.

Only markers at the start of a line are removed; whatever follows a marker on
the same line is kept. `clean()` is idempotent.
"""

from __future__ import annotations

import re

_PHASES = r"(?:THINK|ACT|OBSERVE|RESPOND)"

# Applied in order, repeatedly, until a line stops changing
_LINE_MARKERS = [
    re.compile(rf"^\s*\*\*Step\s+\d+:\s*{_PHASES}\b(?:\s*\([^)]*\))?\*\*\s*", re.IGNORECASE),
    re.compile(rf"^\s*Step\s+\d+:\s*{_PHASES}\b(?:\s*\([^)]*\))?\s*", re.IGNORECASE),
    re.compile(r"^\s*\*\*Step\s+\d+:\*\*\s*", re.IGNORECASE),
    re.compile(r"^\s*Step\s+\d+:\s*", re.IGNORECASE),
    re.compile(rf"^\s*{_PHASES}:\s*", re.IGNORECASE),
]

# Lines consisting of nothing but a phase name are dropped entirely
_STANDALONE_PHASE = re.compile(rf"^\s*(?:\*\*)?{_PHASES}(?:\*\*)?\s*$", re.IGNORECASE)

_EXCESS_NEWLINES = re.compile(r"\n{3,}")


def _clean_line(line: str) -> str | None:
    """Return the line without leading markers, or None if it should be dropped."""
    current = line
    while True:
        if _STANDALONE_PHASE.match(current):
            return None
        stripped = current
        for pattern in _LINE_MARKERS:
            stripped = pattern.sub("", stripped, count=1)
        if stripped == current:
            break
        current = stripped

    if not current.strip() and line.strip():
        return None
    return current


def clean(text: str) -> str:
    """Remove step markers, collapse runs of blank lines and trim."""
    if not text:
        return text

    kept = [cleaned for cleaned in map(_clean_line, text.split("\n")) if cleaned is not None]
    return _EXCESS_NEWLINES.sub("\n\n", "\n".join(kept)).strip()
