from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for JSON frames: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class InputKind(str, Enum):
    voice = "voice"
    text = "text"


# --- Inbound: client -> gateway ---

class ProcessLLMMessage(WireModel):
    type: Literal["process_llm"] = "process_llm"
    data: str = ""
    transcript_id: Optional[str] = None
    input_kind: InputKind = InputKind.text


class TextInputMessage(WireModel):
    type: Literal["text_input"] = "text_input"
    data: str = ""


class PauseTranscriptionMessage(WireModel):
    type: Literal["pause_transcription"] = "pause_transcription"
    pause: bool


class PauseLLMMessage(WireModel):
    type: Literal["pause_llm"] = "pause_llm"
    pause: bool


class StopStreamMessage(WireModel):
    type: Literal["stop_stream"] = "stop_stream"


class StartStreamMessage(WireModel):
    type: Literal["start_stream"] = "start_stream"


class RecordingStateMessage(WireModel):
    type: Literal["recording_state"] = "recording_state"
    is_recording: bool


ClientMessage = Annotated[
    Union[
        ProcessLLMMessage,
        TextInputMessage,
        PauseTranscriptionMessage,
        PauseLLMMessage,
        StopStreamMessage,
        StartStreamMessage,
        RecordingStateMessage,
    ],
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes):
    """Validate a JSON text frame into one of the inbound message models.

    Raises pydantic.ValidationError on malformed JSON, unknown ``type`` or
    missing fields.
    """
    return _client_message_adapter.validate_json(raw)


# --- Transcripts and enrichment ---

class Transcript(BaseModel):
    text: str
    is_final: bool
    confidence: Optional[float] = None
    correlation_id: Optional[str] = None
    input_kind: InputKind = InputKind.voice
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EnrichmentResult(WireModel):
    questions: list[str] = []
    answers: list[str] = []
    suggestions: list[str] = []
    skip: bool = False
    # Set when the completion call failed; kept off the wire.
    error: Optional[str] = Field(default=None, exclude=True)

    @classmethod
    def skipped(cls) -> EnrichmentResult:
        return cls(skip=True)

    @classmethod
    def failure(cls, explanation: str) -> EnrichmentResult:
        return cls(suggestions=[explanation], error=explanation)

    @property
    def failed(self) -> bool:
        return self.error is not None


# --- Outbound: gateway -> client ---

class TranscriptMessage(WireModel):
    type: Literal["transcript"] = "transcript"
    data: str
    is_final: bool
    confidence: Optional[float] = None
    transcript_id: Optional[str] = None

    @classmethod
    def from_transcript(cls, transcript: Transcript) -> TranscriptMessage:
        return cls(
            data=transcript.text,
            is_final=transcript.is_final,
            confidence=transcript.confidence,
            transcript_id=transcript.correlation_id,
        )


class LLMResponseMessage(WireModel):
    type: Literal["llm_response"] = "llm_response"
    data: EnrichmentResult
    transcript_id: Optional[str] = None


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    message: str
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    transcript_id: Optional[str] = None
