"""One logical recognition session per client connection.

The provider stream underneath is disposable: it is replaced ("bridged")
when the provider hits its stream duration limit, when it errors, when a
write fails, and when a long stretch of silence ends an utterance without a
final result. The last few frames written are replayed into the replacement
stream so nothing is lost at the seam.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Optional, Protocol

from common.config import SpeechSettings
from common.errors import ProviderError
from stt_service.models import RecognitionResult, StreamEvent, StreamFailure
from stt_service.provider import RecognitionStream, SpeechProvider
from stt_service.silence import SilenceDetector, frame_duration_ms, frame_level, whole_samples

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    idle = "idle"
    starting = "starting"
    active = "active"
    bridging = "bridging"
    stopped = "stopped"


class TranscriptListener(Protocol):
    async def on_partial(self, result: RecognitionResult) -> None: ...

    async def on_final(self, result: RecognitionResult) -> None: ...

    async def on_error(self, message: str) -> None: ...


class SpeechStreamingSession:
    def __init__(
        self,
        provider: SpeechProvider,
        listener: TranscriptListener,
        settings: SpeechSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.listener = listener
        self.settings = settings or SpeechSettings()

        self.state = SessionState.idle
        self.is_active = False
        self.restart_counter = 0
        self.last_result_was_final = False
        self.current_partial = ""
        self.bridging_offset = 0.0  # ms of replayed audio overlapping the new stream

        self.silence = SilenceDetector(
            threshold=self.settings.silence_threshold,
            duration_ms=self.settings.silence_duration_ms,
            clock=clock,
        )

        self._stream: Optional[RecognitionStream] = None
        self._trailing: deque[bytes] = deque(maxlen=max(self.settings.bridge_buffer_frames, 1))
        self._replay: list[bytes] = []
        self._new_stream = True
        self._started_once = False
        # Outage notices go to the client once until the next successful open/write.
        self._start_failure_reported = False
        self._drop_reported = False
        # Identifies the current stream; events from older streams are dropped.
        self._generation = 0
        # Bumped by stop(); pending send retries give up when it changes.
        self._epoch = 0
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def stream(self) -> Optional[RecognitionStream]:
        return self._stream

    @property
    def trailing_frames(self) -> list[bytes]:
        return list(self._trailing)

    # --- lifecycle ---

    async def start(self) -> bool:
        async with self._lock:
            if self.is_active and self._stream is not None:
                return True
            self.is_active = True
            self._trailing.clear()
            self._replay = []
            self.bridging_offset = 0.0
            self._reset_utterance()
            return await self._open_stream()

    async def stop(self) -> None:
        self._epoch += 1
        for task in list(self._tasks):
            task.cancel()
        async with self._lock:
            self.is_active = False
            await self._discard_stream()
            self._trailing.clear()
            self._replay = []
            self.bridging_offset = 0.0
            self._new_stream = True
            self._start_failure_reported = False
            self._drop_reported = False
            self._reset_utterance()
            self.state = SessionState.stopped
        logger.info("Speech session stopped (restarts=%d)", self.restart_counter)

    # --- audio ---

    async def send(self, frame: bytes) -> bool:
        """Deliver one PCM frame, waiting for the stream to become writable.

        Returns True once the frame is written, False if the session was
        stopped first or the retry budget ran out.
        """
        pcm = whole_samples(frame)
        if not pcm:
            return False

        if self.state in (SessionState.idle, SessionState.stopped):
            await self.start()

        epoch = self._epoch
        silence_boundary = self.silence.update(frame_level(pcm))
        attempts = self.settings.send_max_attempts
        stalled = 0

        for attempt in range(1, attempts + 1):
            if epoch != self._epoch:
                logger.debug("Session stopped, discarding queued frame")
                return False

            async with self._lock:
                if epoch != self._epoch:
                    return False

                if silence_boundary and self._stream is not None:
                    silence_boundary = False
                    if not self.last_result_was_final:
                        await self._force_boundary()

                if self._stream is None:
                    await self._open_stream()

                stream = self._stream
                if stream is not None and stream.writable:
                    stalled = 0
                    try:
                        await self._deliver(stream, pcm)
                        self._drop_reported = False
                        return True
                    except ProviderError as exc:
                        logger.warning("Write to recognition stream failed: %s", exc)
                        await self._bridge("write failure")
                elif stream is not None:
                    # A stream can die without telling us; replace it if it never recovers.
                    stalled += 1
                    if stalled >= self.settings.stall_bridge_attempts:
                        stalled = 0
                        await self._bridge("stream stalled")

            logger.debug("Stream not writable, retrying frame (attempt %d/%d)", attempt, attempts)
            await asyncio.sleep(self.settings.send_retry_delay_s)

        logger.error("Dropping audio frame after %d attempts", attempts)
        if not self._drop_reported:
            self._drop_reported = True
            await self.listener.on_error("Audio stream unavailable, audio was dropped")
        return False

    async def _deliver(self, stream: RecognitionStream, pcm: bytes) -> None:
        if self._new_stream:
            chunk_ms = frame_duration_ms(pcm, self.settings.sample_rate)
            self.bridging_offset = max(0.0, min(self.bridging_offset, chunk_ms))
            self._new_stream = False
        await self._transmit(stream, pcm)

    async def _transmit(self, stream: RecognitionStream, pcm: bytes) -> None:
        await stream.send(pcm)
        self._trailing.append(pcm)

    # --- stream management (callers hold self._lock) ---

    async def _open_stream(self) -> bool:
        await self._discard_stream()
        self.state = SessionState.starting
        self._generation += 1
        generation = self._generation

        stream = self.provider.create_stream()
        try:
            await stream.start(functools.partial(self._on_stream_event, generation))
        except asyncio.CancelledError:
            await stream.stop()
            raise
        except Exception as exc:
            logger.warning("Failed to start recognition stream: %s", exc)
            self.state = SessionState.bridging
            if self._started_once and not self._start_failure_reported:
                self._start_failure_reported = True
                await self.listener.on_error(f"Failed to start stream: {exc}")
            return False

        self._stream = stream
        self._start_failure_reported = False
        if self.settings.stream_ready_delay_s > 0:
            await asyncio.sleep(self.settings.stream_ready_delay_s)

        replay, self._replay = self._replay, []
        self.bridging_offset = sum(frame_duration_ms(f, self.settings.sample_rate) for f in replay)
        self._new_stream = True
        for frame in replay:
            try:
                await self._transmit(stream, frame)
            except ProviderError as exc:
                logger.warning("Replaying bridge audio failed: %s", exc)
                break

        self.state = SessionState.active
        self._started_once = True
        logger.info(
            "Recognition stream open (provider=%s, restarts=%d, replayed=%d frames)",
            self.provider.name, self.restart_counter, len(replay),
        )
        return True

    async def _discard_stream(self) -> None:
        stream, self._stream = self._stream, None
        self._generation += 1
        if stream is None:
            return
        try:
            await stream.stop()
        except Exception:
            logger.warning("Error while stopping recognition stream", exc_info=True)

    async def _bridge(self, reason: str) -> bool:
        self.state = SessionState.bridging
        self.restart_counter += 1
        self._replay.extend(self._trailing)
        del self._replay[: -self._trailing.maxlen]
        self._trailing.clear()
        self._reset_utterance()
        logger.info("Bridging recognition stream: %s (restart #%d)", reason, self.restart_counter)
        return await self._open_stream()

    async def _force_boundary(self) -> None:
        # Detach the old stream first so its late results cannot produce a second final.
        self._generation += 1
        pending, self.current_partial = self.current_partial, ""
        if pending:
            self.last_result_was_final = True
            await self.listener.on_final(RecognitionResult(text=pending, is_final=True))
        await self._bridge("silence")

    async def _bridge_from(self, generation: int, reason: str) -> None:
        async with self._lock:
            if generation != self._generation or not self.is_active:
                return
            await self._bridge(reason)

    def _reset_utterance(self) -> None:
        self.silence.reset()
        self.last_result_was_final = False
        self.current_partial = ""

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # --- provider events ---

    async def _on_stream_event(self, generation: int, event: StreamEvent) -> None:
        if generation != self._generation or not self.is_active:
            return

        if isinstance(event, StreamFailure):
            if event.duration_exceeded:
                logger.info("Stream duration limit reached, bridging")
                self._spawn(self._bridge_from(generation, "duration limit"))
                return
            logger.error("Recognition stream error (code=%s): %s", event.code, event.message)
            if self._started_once:
                await self.listener.on_error(event.message)
            self._spawn(self._bridge_from(generation, "stream error"))
            return

        if not event.text:
            return
        if event.is_final:
            self.last_result_was_final = True
            self.current_partial = ""
            await self.listener.on_final(event)
        else:
            self.last_result_was_final = False
            self.current_partial = event.text
            await self.listener.on_partial(event)
