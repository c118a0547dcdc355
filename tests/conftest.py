import asyncio

import pytest

from diagno.capture import (
    CaptureAdapter,
    MediaDevices,
    MediaHandles,
    MediaTrack,
    Recognizer,
    Synthesizer,
    TranscriptEvent,
)
from diagno.controller import ConsultationController
from diagno.errors import recognizer_error


class FakeDevices(MediaDevices):
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.acquire_count = 0
        self.handles: MediaHandles | None = None

    async def acquire(self, audio=True, video=True):
        self.acquire_count += 1
        if self.error:
            raise self.error
        self.handles = MediaHandles(
            audio=[MediaTrack("audio")] if audio else [],
            video=[MediaTrack("video")] if video else [],
        )
        return self.handles


class FakeRecognizer(Recognizer):
    def __init__(self, start_errors=None):
        super().__init__()
        self.active = False
        self.start_count = 0
        self.stop_count = 0
        self.start_errors = list(start_errors or [])

    def start(self):
        self.start_count += 1
        if self.start_errors:
            raise self.start_errors.pop(0)
        self.active = True

    def stop(self):
        self.stop_count += 1
        self.active = False

    # Test helpers: simulate what the speech service reports.

    def say(self, text, final=True):
        self.listener.on_transcript(TranscriptEvent(text=text, is_final=final))

    def end(self):
        self.active = False
        self.listener.on_recognition_end()

    def fail(self, code):
        self.active = False
        self.listener.on_recognition_error(recognizer_error(code))


class FakeSynthesizer(Synthesizer):
    def __init__(self, voices=None, error: Exception | None = None, hold: bool = False):
        self.voices = list(voices or [])
        self.voice = None
        self.error = error
        self.hold = hold
        self.spoken: list[str] = []
        self.cancel_count = 0
        self._gate: asyncio.Event | None = None

    async def load_voices(self):
        return list(self.voices)

    def use_voice(self, voice):
        self.voice = voice

    async def speak(self, text):
        self.spoken.append(text)
        if self.error:
            raise self.error
        if self.hold:
            self._gate = asyncio.Event()
            await self._gate.wait()
        await asyncio.sleep(0)

    def cancel(self):
        self.cancel_count += 1

    def finish(self):
        if self._gate is not None:
            self._gate.set()


class FakeReplies:
    """Reply source returning queued replies (exceptions are raised), else an echo."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.transcripts: list[str] = []
        self.closed = False

    async def reply(self, transcript):
        self.transcripts.append(transcript)
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        return f"echo: {transcript}"

    async def close(self):
        self.closed = True


class FakeCompletion:
    """Stand-in for CompletionClient; queued exceptions are raised in order."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls: list[dict] = []

    async def complete(self, messages, temperature=0.3, max_tokens=500, circuit=None):
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        return "Pouvez-vous préciser vos symptômes ?"

    async def close(self):
        pass


async def settle(seconds: float = 0.05):
    """Let scheduled controller tasks run."""
    await asyncio.sleep(seconds)


@pytest.fixture
def devices():
    return FakeDevices()


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def adapter(devices, recognizer, synthesizer):
    return CaptureAdapter(devices, recognizer=recognizer, synthesizer=synthesizer)


@pytest.fixture
def replies():
    return FakeReplies()


@pytest.fixture
def controller(adapter, replies):
    ctrl = ConsultationController(adapter, replies)
    ctrl.GREETING_DELAY_S = 0
    ctrl.LISTEN_DELAY_S = 0
    ctrl.REPLY_TIMEOUT_S = 5.0
    ctrl.RESTART_DELAY_S = 0
    ctrl.RECOGNIZER_RETRY_S = 0
    ctrl.UNMUTE_DELAY_S = 0
    return ctrl
