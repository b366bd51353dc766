"""Capability interface for streaming speech-recognition providers.

A provider hands out recognition streams. Each stream is single-use: it is
started once, fed audio, and stopped. The session layer replaces streams
freely, so adapters must not keep state across streams.
"""

from __future__ import annotations

import abc
from typing import Awaitable, Callable

from common.errors import ConfigurationError
from stt_service.models import StreamEvent

EventCallback = Callable[[StreamEvent], Awaitable[None]]


class RecognitionStream(abc.ABC):
    @abc.abstractmethod
    async def start(self, on_event: EventCallback) -> None:
        """Open the stream and begin delivering events to ``on_event``.

        Raises StreamStartError if the stream could not be opened.
        """

    @property
    @abc.abstractmethod
    def writable(self) -> bool:
        ...

    @abc.abstractmethod
    async def send(self, chunk: bytes) -> None:
        """Push PCM audio. Raises StreamWriteError if the stream rejects it."""

    @abc.abstractmethod
    async def stop(self) -> None:
        """Half-close the audio input and release the stream. Idempotent."""


class SpeechProvider(abc.ABC):
    name: str = "provider"

    @abc.abstractmethod
    def create_stream(self) -> RecognitionStream:
        ...

    async def close(self) -> None:
        pass


def build_speech_provider(settings) -> SpeechProvider:
    """Instantiate the provider selected by ``settings.provider``.

    Raises ConfigurationError when the provider is unknown or lacks
    credentials.
    """
    if settings.provider == "google":
        from stt_service.google_provider import GoogleSpeechProvider

        return GoogleSpeechProvider(settings)
    if settings.provider == "websocket":
        from stt_service.ws_provider import WebSocketSpeechProvider

        return WebSocketSpeechProvider(settings)
    raise ConfigurationError(f"Unknown speech provider: {settings.provider!r}")
