from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from common.config import GatewaySettings, LLMSettings, SpeechSettings
from common.schemas import (
    ErrorMessage,
    InputKind,
    LLMResponseMessage,
    PauseLLMMessage,
    PauseTranscriptionMessage,
    ProcessLLMMessage,
    RecordingStateMessage,
    StartStreamMessage,
    StopStreamMessage,
    TextInputMessage,
    Transcript,
    TranscriptMessage,
    WireModel,
    parse_client_message,
)
from gateway.audio_utils import extract_pcm
from llm_service.dispatcher import CompletionClient, EnrichmentDispatcher
from stt_service.models import RecognitionResult
from stt_service.provider import SpeechProvider
from stt_service.session import SpeechStreamingSession

logger = logging.getLogger(__name__)

SendText = Callable[[str], Awaitable[None]]


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ConnectionState:
    """Per-connection flags. Setters return True when the value changed."""

    transcription_paused: bool = False
    enrichment_paused: bool = False
    is_recording: bool = False
    closed: bool = False

    def set_transcription_paused(self, paused: bool) -> bool:
        return self._update("transcription_paused", paused)

    def set_enrichment_paused(self, paused: bool) -> bool:
        return self._update("enrichment_paused", paused)

    def set_recording(self, recording: bool) -> bool:
        return self._update("is_recording", recording)

    def close(self) -> None:
        self.closed = True

    @property
    def accepts_audio(self) -> bool:
        return not self.closed and not self.transcription_paused

    @property
    def enrichment_enabled(self) -> bool:
        return not self.closed and not self.enrichment_paused

    def _update(self, name: str, value: bool) -> bool:
        if self.closed or getattr(self, name) == value:
            return False
        setattr(self, name, value)
        return True


class SessionController:
    """Supervises one client connection.

    Owns the connection's speech session and enrichment dispatcher (both
    created on first use), applies client commands, and tags every final
    transcript with a correlation id that its enrichment result echoes back.
    """

    def __init__(
        self,
        connection_id: str,
        send_text: SendText,
        speech_provider: SpeechProvider,
        completion_client: CompletionClient,
        gateway_settings: GatewaySettings | None = None,
        speech_settings: SpeechSettings | None = None,
        llm_settings: LLMSettings | None = None,
    ):
        self.connection_id = connection_id
        self._send_text = send_text
        self.speech_provider = speech_provider
        self.completion_client = completion_client
        self.gateway_settings = gateway_settings or GatewaySettings()
        self.speech_settings = speech_settings or SpeechSettings()
        self.llm_settings = llm_settings or LLMSettings()

        self.state = ConnectionState()
        self.speech: Optional[SpeechStreamingSession] = None
        self.dispatcher: Optional[EnrichmentDispatcher] = None
        self._last_typed_turn: Optional[Transcript] = None
        self._pending: set[asyncio.Task] = set()
        # Audio waits here so control messages are never stuck behind a retrying frame.
        self._audio: asyncio.Queue[bytes] = asyncio.Queue(maxsize=self.gateway_settings.audio_queue_frames)

    @property
    def pending_enrichments(self) -> int:
        return len(self._pending)

    def get_speech(self) -> SpeechStreamingSession:
        if self.speech is None:
            logger.info("[%s] Creating speech session", self.connection_id)
            self.speech = SpeechStreamingSession(self.speech_provider, self, self.speech_settings)
        return self.speech

    def get_dispatcher(self) -> EnrichmentDispatcher:
        if self.dispatcher is None:
            logger.info("[%s] Creating enrichment dispatcher", self.connection_id)
            self.dispatcher = EnrichmentDispatcher(self.completion_client, self.llm_settings)
        return self.dispatcher

    @property
    def queued_audio(self) -> int:
        return self._audio.qsize()

    # --- ingress ---

    def enqueue_audio(self, data: bytes) -> None:
        try:
            self._audio.put_nowait(data)
        except asyncio.QueueFull:
            logger.warning("[%s] Audio queue full, dropping frame", self.connection_id)

    async def feed_audio(self) -> None:
        """Forward queued audio to the speech session in arrival order. Runs until cancelled."""
        while True:
            data = await self._audio.get()
            await self.handle_audio(data)

    def _drop_queued_audio(self) -> None:
        dropped = 0
        while not self._audio.empty():
            self._audio.get_nowait()
            dropped += 1
        if dropped:
            logger.info("[%s] Discarded %d queued audio frame(s)", self.connection_id, dropped)

    async def handle_audio(self, data: bytes) -> None:
        pcm = extract_pcm(data, self.gateway_settings.min_audio_frame_bytes)
        if pcm is None:
            return
        if not self.state.accepts_audio:
            logger.debug("[%s] Transcription paused, audio not forwarded", self.connection_id)
            return
        self.state.set_recording(True)
        try:
            await self.get_speech().send(pcm)
        except Exception:
            # Per-frame glitches must not interrupt the conversation.
            logger.exception("[%s] Audio processing error", self.connection_id)

    async def handle_text(self, raw: str) -> None:
        try:
            message = parse_client_message(raw)
        except ValidationError as exc:
            logger.warning("[%s] Ignoring invalid client message: %s", self.connection_id, exc.errors()[0]["msg"])
            return

        if isinstance(message, ProcessLLMMessage):
            await self._on_process_llm(message)
        elif isinstance(message, TextInputMessage):
            self._record_typed_turn(message.data)
        elif isinstance(message, PauseTranscriptionMessage):
            await self.set_transcription_paused(message.pause)
        elif isinstance(message, PauseLLMMessage):
            self.state.set_enrichment_paused(message.pause)
            logger.info("[%s] LLM %s", self.connection_id, "paused" if message.pause else "resumed")
        elif isinstance(message, StopStreamMessage):
            self._drop_queued_audio()
            if self.speech is not None:
                await self.speech.stop()
        elif isinstance(message, StartStreamMessage):
            if self.state.accepts_audio:
                await self.get_speech().start()
            else:
                logger.info("[%s] start_stream ignored while transcription is paused", self.connection_id)
        elif isinstance(message, RecordingStateMessage):
            logger.info("[%s] Recording %s", self.connection_id, "started" if message.is_recording else "stopped")
            self.state.set_recording(message.is_recording)

    async def set_transcription_paused(self, paused: bool) -> None:
        self.state.set_transcription_paused(paused)
        logger.info("[%s] Transcription %s", self.connection_id, "paused" if paused else "resumed")
        if paused:
            self._drop_queued_audio()
            if self.speech is not None:
                await self.speech.stop()
        elif self.state.is_recording:
            await self.get_speech().start()

    async def _on_process_llm(self, message: ProcessLLMMessage) -> None:
        if not self.state.enrichment_enabled:
            logger.info("[%s] LLM processing is paused", self.connection_id)
            return
        text = message.data.strip()
        if not text:
            logger.warning("[%s] Empty text received, skipping LLM processing", self.connection_id)
            return

        transcript_id = message.transcript_id
        turn = self._last_typed_turn
        if transcript_id is None and turn is not None and turn.text == text:
            transcript_id = turn.correlation_id
        self._schedule_enrichment(text, message.input_kind, transcript_id)

    def _record_typed_turn(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        turn = Transcript(
            text=text,
            is_final=True,
            correlation_id=new_correlation_id(),
            input_kind=InputKind.text,
        )
        self._last_typed_turn = turn
        logger.info("[%s] Typed turn recorded (%s)", self.connection_id, turn.correlation_id)

    # --- speech session listener ---

    async def on_partial(self, result: RecognitionResult) -> None:
        await self._send(TranscriptMessage(data=result.text, is_final=False))

    async def on_final(self, result: RecognitionResult) -> None:
        transcript = Transcript(
            text=result.text,
            is_final=True,
            confidence=result.confidence,
            correlation_id=new_correlation_id(),
        )
        logger.info("[%s] Final transcript %s: %s", self.connection_id, transcript.correlation_id, transcript.text)
        await self._send(TranscriptMessage.from_transcript(transcript))

        if self.state.enrichment_enabled and transcript.text.strip():
            self._schedule_enrichment(transcript.text, InputKind.voice, transcript.correlation_id)

    async def on_error(self, message: str) -> None:
        await self._send_error(f"Error processing audio: {message}")

    # --- enrichment ---

    def _schedule_enrichment(self, text: str, input_kind: InputKind, transcript_id: Optional[str]) -> None:
        task = asyncio.create_task(self._enrich(text, input_kind, transcript_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _enrich(self, text: str, input_kind: InputKind, transcript_id: Optional[str]) -> None:
        try:
            result = await self.get_dispatcher().process_text(text, input_kind)
        except Exception as exc:
            logger.exception("[%s] LLM processing error", self.connection_id)
            await self._send_error(f"Error processing with LLM: {exc}", transcript_id)
            return

        await self._send(LLMResponseMessage(data=result, transcript_id=transcript_id))
        if result.failed:
            await self._send_error(f"Error processing with LLM: {result.error}", transcript_id)

    # --- egress ---

    async def _send(self, message: WireModel) -> None:
        if self.state.closed:
            logger.debug("[%s] Connection closed, dropping %s", self.connection_id, type(message).__name__)
            return
        try:
            await self._send_text(message.to_json())
        except Exception as exc:
            logger.warning("[%s] Failed to send %s: %s", self.connection_id, type(message).__name__, exc)
            if not isinstance(message, ErrorMessage):
                await self._send_error("Error sending message")

    async def _send_error(self, message: str, transcript_id: Optional[str] = None) -> None:
        logger.error("[%s] Sending error to client: %s", self.connection_id, message)
        await self._send(ErrorMessage(message=message, transcript_id=transcript_id))

    # --- teardown ---

    async def close(self) -> None:
        if self.state.closed:
            return
        self.state.close()
        self._drop_queued_audio()

        pending = set(self._pending)
        if pending:
            logger.info("[%s] Waiting for %d pending enrichment(s)", self.connection_id, len(pending))
            _, unfinished = await asyncio.wait(pending, timeout=self.gateway_settings.close_grace_s)
            for task in unfinished:
                task.cancel()

        if self.speech is not None:
            await self.speech.stop()
            self.speech = None
        self.dispatcher = None
        logger.info("[%s] Connection torn down", self.connection_id)


class SessionManager:
    def __init__(self, max_sessions: int = 50) -> None:
        self._max = max_sessions
        self._sessions: dict[str, SessionController] = {}
        self._lock = asyncio.Lock()

    async def add(self, controller: SessionController) -> SessionController:
        async with self._lock:
            if len(self._sessions) >= self._max:
                raise RuntimeError(f"Max sessions ({self._max}) reached")
            if controller.connection_id in self._sessions:
                raise RuntimeError(f"Session {controller.connection_id} already exists")
            self._sessions[controller.connection_id] = controller
            logger.info("Session created: %s (%d active)", controller.connection_id, len(self._sessions))
            return controller

    async def remove(self, connection_id: str) -> None:
        async with self._lock:
            self._sessions.pop(connection_id, None)
            logger.info("Session removed: %s (%d active)", connection_id, len(self._sessions))

    @property
    def active_count(self) -> int:
        return len(self._sessions)
