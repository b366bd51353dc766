"""Events emitted by recognition streams."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass
class RecognitionResult:
    text: str
    is_final: bool
    confidence: Optional[float] = None


@dataclass
class StreamFailure:
    message: str
    code: int = 0
    # The provider closed the stream because it ran for too long.
    duration_exceeded: bool = False


StreamEvent = Union[RecognitionResult, StreamFailure]
