"""Google Cloud Speech-to-Text streaming adapter.

Google caps a single streaming_recognize call at a few minutes and reports
it as OUT_OF_RANGE (gRPC code 11); the session layer bridges to a new
stream when it sees that.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from google.api_core import exceptions as google_exceptions
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import speech_v1p1beta1 as speech

from common.config import SpeechSettings
from common.errors import ConfigurationError, StreamStartError, StreamWriteError
from stt_service.models import RecognitionResult, StreamFailure
from stt_service.provider import EventCallback, RecognitionStream, SpeechProvider

logger = logging.getLogger(__name__)

OUT_OF_RANGE = 11


def build_streaming_config(settings: SpeechSettings) -> speech.StreamingRecognitionConfig:
    config = speech.RecognitionConfig(
        encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
        sample_rate_hertz=settings.sample_rate,
        audio_channel_count=1,
        language_code=settings.language_code,
        enable_automatic_punctuation=settings.enable_automatic_punctuation,
        model=settings.model,
        use_enhanced=True,
        max_alternatives=1,
        enable_word_time_offsets=False,
        enable_word_confidence=True,
        profanity_filter=False,
        speech_contexts=[
            speech.SpeechContext(
                phrases=settings.speech_context_phrases,
                boost=settings.speech_context_boost,
            )
        ],
    )
    return speech.StreamingRecognitionConfig(
        config=config,
        interim_results=True,
        single_utterance=False,
    )


def _status_code(exc: google_exceptions.GoogleAPICallError) -> int:
    status = exc.grpc_status_code
    return status.value[0] if status is not None else 0


class GoogleRecognitionStream(RecognitionStream):
    def __init__(self, client: speech.SpeechAsyncClient, streaming_config: speech.StreamingRecognitionConfig):
        self._client = client
        self._streaming_config = streaming_config
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._on_event: Optional[EventCallback] = None
        self._task: Optional[asyncio.Task] = None
        self._open = False
        self._closed = False

    async def start(self, on_event: EventCallback) -> None:
        self._on_event = on_event
        try:
            responses = await self._client.streaming_recognize(requests=self._requests())
        except google_exceptions.GoogleAPICallError as exc:
            raise StreamStartError(str(exc)) from exc
        self._open = True
        self._task = asyncio.create_task(self._receive(responses))

    @property
    def writable(self) -> bool:
        return self._open and not self._closed

    async def send(self, chunk: bytes) -> None:
        if not self.writable:
            raise StreamWriteError("Google stream is not writable")
        self._queue.put_nowait(chunk)

    async def stop(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        self._queue.put_nowait(None)
        task = self._task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _requests(self):
        yield speech.StreamingRecognizeRequest(streaming_config=self._streaming_config)
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield speech.StreamingRecognizeRequest(audio_content=chunk)

    async def _receive(self, responses) -> None:
        try:
            async for response in responses:
                if response.error and response.error.code:
                    logger.error("Google response error: %s", response.error.message)
                    continue
                if not response.results:
                    continue
                result = response.results[0]
                if not result.alternatives:
                    continue
                alternative = result.alternatives[0]
                if not alternative.transcript:
                    continue
                await self._on_event(
                    RecognitionResult(
                        text=alternative.transcript,
                        is_final=result.is_final,
                        confidence=alternative.confidence if result.is_final else None,
                    )
                )
            self._open = False
            if not self._closed:
                # Server ended the call without an error; the stream is spent.
                await self._on_event(StreamFailure(message="Google stream ended", duration_exceeded=True))
        except google_exceptions.OutOfRange as exc:
            self._open = False
            await self._on_event(StreamFailure(message=str(exc), code=OUT_OF_RANGE, duration_exceeded=True))
        except google_exceptions.GoogleAPICallError as exc:
            self._open = False
            await self._on_event(StreamFailure(message=exc.message or str(exc), code=_status_code(exc)))
        except Exception as exc:
            logger.exception("Unexpected error reading Google responses")
            self._open = False
            if not self._closed:
                await self._on_event(StreamFailure(message=str(exc) or type(exc).__name__))
        finally:
            self._open = False


class GoogleSpeechProvider(SpeechProvider):
    name = "google"

    def __init__(self, settings: SpeechSettings | None = None):
        settings = settings or SpeechSettings()
        try:
            if settings.google_credentials_path:
                self.client = speech.SpeechAsyncClient.from_service_account_file(
                    settings.google_credentials_path
                )
            else:
                self.client = speech.SpeechAsyncClient()
        except (DefaultCredentialsError, OSError, ValueError) as exc:
            raise ConfigurationError(f"Google Speech credentials unavailable: {exc}") from exc

        self.streaming_config = build_streaming_config(settings)
        logger.info(
            "Google Speech provider ready (model=%s, language=%s)",
            settings.model, settings.language_code,
        )

    def create_stream(self) -> GoogleRecognitionStream:
        return GoogleRecognitionStream(self.client, self.streaming_config)
