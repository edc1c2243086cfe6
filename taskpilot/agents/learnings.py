"""
Heuristic mining of short "learnings" from an agent transcript.

Best-effort only: false positives and misses are expected.
"""

from __future__ import annotations

import re

LEARNING_PATTERNS = [
    re.compile(r"(?:discovered|found|learned|noticed) (?:that )?(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"(?:pattern|approach|solution): (.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"(?:important|note|key point): (.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
]

MIN_LENGTH = 10
MAX_LENGTH = 200
MAX_LEARNINGS = 10


def extract_learnings(text: str) -> list[str]:
    """Return up to 10 distinct declarative snippets, pattern by pattern in order of appearance."""
    found: list[str] = []
    for pattern in LEARNING_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1)
            if candidate and MIN_LENGTH < len(candidate) < MAX_LENGTH:
                found.append(candidate.strip())

    return list(dict.fromkeys(found))[:MAX_LEARNINGS]
