"""Turn free-form completion text into questions / answers / suggestions.

The model is asked to answer with "Questions:", "Answers:" and
"Suggestions:" headers followed by bulleted items, but often replies with a
plain sentence instead; text before any header is kept as a direct answer.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from common.schemas import EnrichmentResult, InputKind

logger = logging.getLogger(__name__)

BULLETS = ("-", "•")
# Checked in order; the first keyword found in a line selects the section.
HEADER_KEYWORDS = ("question", "answer", "suggestion")


def strip_emphasis(line: str) -> str:
    return line.replace("**", "").replace("*", "").replace("_", "")


def is_skip_signal(content: str) -> bool:
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return False
    return isinstance(data, dict) and data.get("skip") is True


def parse_response(content: str, input_kind: InputKind = InputKind.text) -> EnrichmentResult:
    if input_kind == InputKind.voice and is_skip_signal(content):
        return EnrichmentResult.skipped()

    sections: dict[str, list[str]] = {keyword: [] for keyword in HEADER_KEYWORDS}
    current: Optional[list[str]] = None
    # Lines seen before the first header; a header ends the collection.
    direct_answer: list[str] = []

    for raw_line in content.split("\n"):
        line = strip_emphasis(raw_line.strip())
        if not line:
            continue
        lower = line.lower()

        header = next((keyword for keyword in HEADER_KEYWORDS if keyword in lower), None)
        if header is not None:
            current = sections[header]
        elif current is None:
            direct_answer.append(line)
        elif line.startswith(BULLETS):
            item = line[1:].strip()
            if item:
                current.append(item)
        elif current:
            current[-1] = f"{current[-1]} {line}"
        else:
            current.append(line)

    answers = sections["answer"]
    if direct_answer and not answers:
        answers.append(" ".join(direct_answer))

    return EnrichmentResult(
        questions=_clean(sections["question"]),
        answers=_clean(answers),
        suggestions=_clean(sections["suggestion"]),
    )


def _clean(items: list[str]) -> list[str]:
    return [item.strip() for item in items if item.strip()]
