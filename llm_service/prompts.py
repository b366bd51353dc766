from __future__ import annotations

from common.schemas import InputKind

_SECTIONS_GUIDE = """\
- For direct questions (like "What is X?"), provide the answer under "Answers:"
- For discussion questions, include follow-up questions under "Questions:"
- For important points or decisions, include under "Answers:"
- For action items or recommendations, include under "Suggestions:"
"""

VOICE_PROMPT = f"""\
You are an AI assistant helping to analyze meeting transcripts and answer questions in real-time.
Your role is to:
1. First, evaluate if the current message requires a response. Respond if:
   - The message contains important information that needs clarification
   - The message raises questions (including direct questions that need answers)
   - The message discusses decisions or action items
   - The message contains complex or technical information
   If none of these criteria are met, respond with {{ "skip": true }}

2. If a response is needed, analyze the content and provide the relevant sections:
{_SECTIONS_GUIDE}
Only include the sections that are relevant to the current text. List items with "- ".
"""

TEXT_PROMPT = f"""\
You are an AI assistant helping to answer questions and provide information.
Since the user is explicitly typing their message, always provide a response.

Analyze the content and provide the relevant sections:
{_SECTIONS_GUIDE}
Never skip a response for text input - the user expects an answer.
Be thorough but concise in your responses.
"""


def system_prompt(input_kind: InputKind) -> str:
    return VOICE_PROMPT if input_kind == InputKind.voice else TEXT_PROMPT


def build_contextual_prompt(history: list[str], text: str) -> str:
    """Prefix ``text`` with earlier turns.

    ``history`` already ends with ``text``, so context is only added when
    there is at least one earlier entry.
    """
    if len(history) <= 1:
        return text
    previous = "\n".join(history[:-1])
    return f"Previous conversation:\n{previous}\n\nCurrent message:\n{text}"


def build_messages(input_kind: InputKind, history: list[str], text: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt(input_kind)},
        {"role": "user", "content": build_contextual_prompt(history, text)},
    ]
