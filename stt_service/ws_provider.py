"""Relay audio to a remote websocket ASR service.

Protocol: a JSON ``start`` message, then binary PCM frames, then a JSON
``end`` message. The service answers with JSON ``transcript`` events
(``text``, ``is_final``, ``confidence``) and ``error`` events (``code``,
``message``).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Optional

import websockets

from common.config import SpeechSettings
from common.errors import StreamStartError, StreamWriteError
from stt_service.models import RecognitionResult, StreamFailure
from stt_service.provider import EventCallback, RecognitionStream, SpeechProvider

logger = logging.getLogger(__name__)

DURATION_EXCEEDED_CODE = 11


class WebSocketRecognitionStream(RecognitionStream):
    def __init__(self, settings: SpeechSettings):
        self.settings = settings
        self._ws = None
        self._on_event: Optional[EventCallback] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    async def start(self, on_event: EventCallback) -> None:
        self._on_event = on_event
        try:
            self._ws = await websockets.connect(
                self.settings.asr_ws_url,
                ping_interval=30,
                ping_timeout=300,
                close_timeout=5,
            )
            await self._ws.send(json.dumps({
                "type": "start",
                "sample_rate": self.settings.sample_rate,
                "encoding": "pcm_s16le",
                "channels": 1,
                "language": self.settings.language_code,
            }))
        except (OSError, websockets.WebSocketException) as exc:
            raise StreamStartError(f"Cannot reach ASR service: {exc}") from exc
        self._task = asyncio.create_task(self._receive())

    @property
    def writable(self) -> bool:
        return self._ws is not None and not self._closed

    async def send(self, chunk: bytes) -> None:
        if not self.writable:
            raise StreamWriteError("ASR connection is not writable")
        try:
            await self._ws.send(chunk)
        except websockets.ConnectionClosed as exc:
            self._closed = True
            raise StreamWriteError(str(exc)) from exc

    async def stop(self) -> None:
        if self._closed and self._ws is None:
            return
        was_open = not self._closed
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is not None:
            if was_open:
                with contextlib.suppress(websockets.WebSocketException):
                    await ws.send(json.dumps({"type": "end"}))
            await ws.close()
        task = self._task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _receive(self) -> None:
        ws = self._ws
        try:
            async for message in ws:
                if not isinstance(message, str):
                    continue
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("ASR service sent invalid JSON: %.200s", message)
                    continue
                event = _to_event(data)
                if event is not None:
                    await self._on_event(event)
            if not self._closed:
                # The service hung up on us; treat it as the end of this stream's lifetime.
                self._closed = True
                await self._on_event(StreamFailure(message="ASR stream closed", duration_exceeded=True))
        except websockets.ConnectionClosedError as exc:
            if not self._closed:
                self._closed = True
                await self._on_event(StreamFailure(message=f"ASR connection lost: {exc}"))


def _to_event(data: dict):
    kind = data.get("type")
    if kind == "transcript":
        return RecognitionResult(
            text=data.get("text", ""),
            is_final=bool(data.get("is_final")),
            confidence=data.get("confidence"),
        )
    if kind == "error":
        code = int(data.get("code") or 0)
        return StreamFailure(
            message=data.get("message", "ASR error"),
            code=code,
            duration_exceeded=code == DURATION_EXCEEDED_CODE,
        )
    logger.debug("Ignoring ASR message type %r", kind)
    return None


class WebSocketSpeechProvider(SpeechProvider):
    name = "websocket"

    def __init__(self, settings: SpeechSettings | None = None):
        self.settings = settings or SpeechSettings()

    def create_stream(self) -> WebSocketRecognitionStream:
        return WebSocketRecognitionStream(self.settings)
