import asyncio

import numpy as np
import pytest

from common.config import GatewaySettings, LLMSettings, SpeechSettings
from common.errors import StreamStartError, StreamWriteError
from stt_service.provider import RecognitionStream, SpeechProvider


class FakeStream(RecognitionStream):
    def __init__(self, fail_start: bool = False):
        self.fail_start = fail_start
        self.on_event = None
        self.started = False
        self.stopped = False
        self.ready = True
        self.fail_writes = 0
        self.sent: list[bytes] = []

    async def start(self, on_event):
        if self.fail_start:
            raise StreamStartError("cannot open stream")
        self.on_event = on_event
        self.started = True

    @property
    def writable(self) -> bool:
        return self.started and not self.stopped and self.ready

    async def send(self, chunk: bytes) -> None:
        if self.fail_writes:
            self.fail_writes -= 1
            raise StreamWriteError("write rejected")
        self.sent.append(chunk)

    async def stop(self) -> None:
        self.stopped = True

    async def emit(self, event) -> None:
        await self.on_event(event)


class FakeProvider(SpeechProvider):
    name = "fake"

    def __init__(self):
        self.streams: list[FakeStream] = []
        self.fail_next_starts = 0

    def create_stream(self) -> FakeStream:
        stream = FakeStream(fail_start=self.fail_next_starts > 0)
        if self.fail_next_starts:
            self.fail_next_starts -= 1
        self.streams.append(stream)
        return stream

    @property
    def current(self) -> FakeStream:
        return self.streams[-1]


class RecordingListener:
    def __init__(self):
        self.partials: list[str] = []
        self.finals: list[str] = []
        self.errors: list[str] = []

    async def on_partial(self, result):
        self.partials.append(result.text)

    async def on_final(self, result):
        self.finals.append(result.text)

    async def on_error(self, message):
        self.errors.append(message)


class FakeCompletionClient:
    """Answers each request with ``responder(messages)``.

    Set ``gate`` to an asyncio.Event to hold every call until it is set.
    """

    def __init__(self, responder=None):
        self.responder = responder or (lambda messages: "Answers:\n- ok")
        self.calls: list[list[dict]] = []
        self.gate: asyncio.Event | None = None

    async def complete(self, messages):
        self.calls.append(messages)
        if self.gate is not None:
            await self.gate.wait()
        reply = self.responder(messages)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def pcm_frame(amplitude: int, samples: int = 4096) -> bytes:
    return np.full(samples, amplitude, dtype=np.int16).tobytes()


@pytest.fixture
def loud():
    return pcm_frame(8000)


@pytest.fixture
def silent():
    return pcm_frame(0)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def completion():
    return FakeCompletionClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def speech_settings():
    return SpeechSettings(
        stream_ready_delay_s=0.0,
        send_retry_delay_s=0.001,
        send_max_attempts=50,
        stall_bridge_attempts=30,
        bridge_buffer_frames=3,
    )


@pytest.fixture
def llm_settings():
    return LLMSettings(api_key="sk-test", retry_delay_s=0.0, history_size=20)


@pytest.fixture
def gateway_settings():
    return GatewaySettings(close_grace_s=1.0)


@pytest.fixture
def eventually():
    async def wait(predicate, timeout: float = 1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.001)

    return wait
